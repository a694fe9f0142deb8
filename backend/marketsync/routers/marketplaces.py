from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from marketsync.dependencies import get_sync_core
from marketsync.models_sqlalchemy import get_db
from marketsync.models_sqlalchemy.models import MarketplaceAccount
from marketsync.services.sync_core import SyncCore

router = APIRouter(prefix="/api/marketplaces", tags=["marketplaces"])


class StockItem(BaseModel):
    sku: str = Field(..., min_length=1)
    quantity: int = Field(..., ge=0)


class StockUpdateRequest(BaseModel):
    account_id: str
    items: List[StockItem] = Field(..., min_length=1)
    dry_run: bool = False
    batch_size: Optional[int] = Field(None, ge=1, le=25)


class ReconcileRequest(BaseModel):
    account_id: Optional[str] = None
    dry_run: bool = False
    batch_size: Optional[int] = Field(None, ge=1, le=25)


class OrdersSyncRequest(BaseModel):
    account_id: Optional[str] = None


class MappingRequest(BaseModel):
    action: Literal["link", "link_by_sku", "bulk_link_by_sku", "ignore", "create"]
    account_id: str
    remote_sku: Optional[str] = None
    remote_skus: Optional[List[str]] = None
    product_id: Optional[str] = None
    remote_id: Optional[str] = None
    override: bool = False
    dry_run: bool = False
    title: Optional[str] = None
    price: Optional[float] = None
    ean: Optional[str] = None


def _account_or_404(core: SyncCore, db: Session, account_id: str) -> MarketplaceAccount:
    account = core.accounts.get_account(db, account_id)
    if account is None or not account.is_active:
        raise HTTPException(status_code=404, detail={"error": "account_not_found", "detail": account_id})
    return account


@router.get("/accounts")
async def list_accounts(
    core: SyncCore = Depends(get_sync_core),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    """Active accounts, one per seller identity, with their token state."""
    return {"accounts": core.accounts.list_accounts_overview(db)}


@router.post("/orders/sync")
async def sync_orders(
    body: OrdersSyncRequest,
    core: SyncCore = Depends(get_sync_core),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    if body.account_id:
        _account_or_404(core, db, body.account_id)
    summaries = await core.orders.run(db, account_id=body.account_id)
    return {"accounts": summaries}


@router.post("/stock/update")
async def update_stock(
    body: StockUpdateRequest,
    core: SyncCore = Depends(get_sync_core),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    account = _account_or_404(core, db, body.account_id)
    return await core.push.update_stock(
        db,
        account,
        [item.model_dump() for item in body.items],
        batch_size=body.batch_size,
        dry_run=body.dry_run,
    )


@router.post("/stock/reconcile")
async def reconcile_stock(
    body: ReconcileRequest,
    core: SyncCore = Depends(get_sync_core),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    if body.account_id:
        _account_or_404(core, db, body.account_id)
    return await core.push.reconcile(
        db, account_id=body.account_id, batch_size=body.batch_size, dry_run=body.dry_run
    )


@router.get("/listings")
async def get_listings(
    account_id: str = Query(..., min_length=1),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    page: Optional[int] = Query(None, ge=1),
    core: SyncCore = Depends(get_sync_core),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    account = _account_or_404(core, db, account_id)
    return await core.listings.fetch(db, account, limit=limit, offset=offset, page=page)


@router.get("/mapping/candidates")
async def mapping_candidates(
    sku: str = Query(..., min_length=1),
    core: SyncCore = Depends(get_sync_core),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    return {"remote_sku": sku, **core.mappings.resolver.find_candidates(db, sku).to_dict()}


@router.post("/mapping")
async def apply_mapping(
    body: MappingRequest,
    core: SyncCore = Depends(get_sync_core),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    account = _account_or_404(core, db, body.account_id)
    mappings = core.mappings

    if body.action == "bulk_link_by_sku":
        return mappings.bulk_link_by_sku(db, account, body.remote_skus or [], dry_run=body.dry_run)
    if not body.remote_sku:
        raise HTTPException(status_code=400, detail={"error": "missing_fields", "detail": "remote_sku is required"})
    if body.action == "link":
        return mappings.link(
            db, account, body.remote_sku, body.product_id or "",
            override=body.override, remote_id=body.remote_id,
        )
    if body.action == "link_by_sku":
        return mappings.link_by_sku(db, account, body.remote_sku)
    if body.action == "ignore":
        return mappings.ignore(db, account, body.remote_sku)
    return mappings.create_product_and_link(
        db, account, body.remote_sku, title=body.title, price=body.price, ean=body.ean
    )
