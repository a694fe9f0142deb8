"""Local quantities -> marketplace, through the bulk price/quantity endpoint.

Planning (which SKU gets which quantity, split into batches) is shared by the
dry-run and live paths; only the live path touches the network. A batch
whose response carries no usable per-item detail is failed as a whole.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import httpx
from sqlalchemy.orm import Session

from marketsync.config import SyncConfig
from marketsync.errors import AccountError, ConfigurationError, InvalidRequest, RemoteError, TokenMissing, truncate_payload
from marketsync.models_sqlalchemy.models import MarketplaceAccount
from marketsync.services.account_service import MarketplaceAccountService
from marketsync.services.endpoints import BULK_UPDATE_PATH, SCOPE_INVENTORY
from marketsync.services.mapping_service import SkuMappingService
from marketsync.services.marketplace_client import AccountSession, MarketplaceClient
from marketsync.services.stock_ledger import StockLedger
from marketsync.services.sync_log_service import SyncLogService
from marketsync.utils.logger import logger

PROVIDER_BATCH_LIMIT = 25
OP_RECONCILE = "inventory_reconcile_qty"
OP_BULK_UPDATE = "inventory_bulk_update_qty"


@dataclass(frozen=True)
class PushItem:
    sku: str
    quantity: int
    product_id: Optional[str] = None

    def to_request(self) -> Dict[str, Any]:
        return {"sku": self.sku, "shipToLocationAvailability": {"quantity": self.quantity}}


def plan_batches(items: Sequence[PushItem], batch_size: int = PROVIDER_BATCH_LIMIT) -> List[List[PushItem]]:
    size = max(1, min(PROVIDER_BATCH_LIMIT, int(batch_size or PROVIDER_BATCH_LIMIT)))
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


def describe_plan(batches: List[List[PushItem]]) -> List[Dict[str, Any]]:
    return [
        {"batch": i + 1, "size": len(batch), "requests": [item.to_request() for item in batch]}
        for i, batch in enumerate(batches)
    ]


def _result(item: PushItem, status: str, **extra) -> Dict[str, Any]:
    row = {"sku": item.sku, "quantity": item.quantity, "status": status}
    row.update({k: v for k, v in extra.items() if v is not None})
    return row


def interpret_bulk_response(batch: List[PushItem], resp: httpx.Response) -> List[Dict[str, Any]]:
    """Per-item outcome of one bulk call.

    An item only counts as updated when the provider returned a 2xx
    ``statusCode`` for its SKU.
    """
    try:
        body = resp.json() if resp.content else {}
    except ValueError:
        body = {}
    responses = body.get("responses") if isinstance(body, dict) else None
    responses = responses if isinstance(responses, list) else []

    if not responses:
        error = "no_responses_from_ebay" if resp.is_success else f"http_{resp.status_code}"
        payload = None if resp.is_success else truncate_payload(resp.text)
        return [_result(item, "failed", error=error, http_status=resp.status_code, detail=payload) for item in batch]

    by_sku = {}
    for entry in responses:
        if isinstance(entry, dict) and entry.get("sku"):
            by_sku[str(entry["sku"])] = entry

    results = []
    for item in batch:
        entry = by_sku.get(item.sku)
        if entry is None:
            results.append(_result(item, "failed", error="missing_item_response", http_status=resp.status_code))
            continue
        try:
            code = int(entry.get("statusCode") or 0)
        except (TypeError, ValueError):
            code = 0
        if 200 <= code < 300:
            results.append(_result(item, "ok", http_status=code))
        else:
            results.append(_result(
                item, "failed",
                error="item_rejected",
                http_status=code or resp.status_code,
                detail=truncate_payload(entry.get("errors")),
            ))
    return results


class InventoryPushEngine:
    def __init__(
        self,
        config: SyncConfig,
        client: MarketplaceClient,
        accounts: MarketplaceAccountService,
        mappings: SkuMappingService,
        stock: StockLedger,
        sync_logs: SyncLogService,
    ):
        self.config = config
        self.client = client
        self.accounts = accounts
        self.mappings = mappings
        self.stock = stock
        self.sync_logs = sync_logs

    # -- planning -------------------------------------------------------

    def plan_for_account(self, db: Session, account: MarketplaceAccount) -> Tuple[List[PushItem], Optional[str]]:
        """One item per mapped SKU carrying its parent's bucket quantity."""
        mappings = self.mappings.linked_mappings(db, account.id)
        if not mappings:
            return [], "no_mapping"

        parent_by_sku: Dict[str, str] = {}
        for mapping in mappings:
            if mapping.remote_sku in parent_by_sku:
                continue
            parent = self.stock.resolve_parent(db, mapping.product_id)
            if parent is not None:
                parent_by_sku[mapping.remote_sku] = parent.id
        if not parent_by_sku:
            return [], "no_items"

        quantities = self.stock.bucket_quantities(db, parent_by_sku.values())
        items = [
            PushItem(sku=sku, quantity=quantities.get(parent_id, 0), product_id=parent_id)
            for sku, parent_id in parent_by_sku.items()
        ]
        return items, None

    def plan_explicit(
        self, db: Session, account: MarketplaceAccount, raw_items: Iterable[Dict[str, Any]]
    ) -> Tuple[List[PushItem], List[Dict[str, Any]]]:
        """Operator-supplied quantities, restricted to SKUs this account lists."""
        listed = {m.remote_sku: m.product_id for m in self.mappings.linked_mappings(db, account.id)}
        items: Dict[str, PushItem] = {}
        rejected = []
        for raw in raw_items:
            sku = str(raw.get("sku") or "").strip()
            if not sku:
                raise InvalidRequest("item without sku", code="missing_sku")
            try:
                quantity = max(0, int(raw.get("quantity")))
            except (TypeError, ValueError):
                raise InvalidRequest(f"invalid quantity for sku {sku!r}", code="invalid_quantity")
            item = PushItem(sku=sku, quantity=quantity, product_id=listed.get(sku))
            if sku not in listed:
                rejected.append(_result(item, "failed", error="not_listed_on_ebay"))
                continue
            items.setdefault(sku, item)
        return list(items.values()), rejected

    # -- execution ------------------------------------------------------

    async def _push_batches(
        self, session: AccountSession, batches: List[List[PushItem]]
    ) -> Tuple[List[Dict[str, Any]], Optional[int], Optional[str]]:
        results: List[Dict[str, Any]] = []
        last_status = None
        stop_reason = None
        for index, batch in enumerate(batches):
            if stop_reason:
                results.extend(_result(item, "failed", error=stop_reason) for item in batch)
                continue
            try:
                resp = await session.request(
                    "POST", BULK_UPDATE_PATH,
                    json={"requests": [item.to_request() for item in batch]},
                )
            except AccountError as exc:
                stop_reason = exc.code
                results.extend(_result(item, "failed", error=stop_reason) for item in batch)
                logger.warning("[stock-push] account %s halted at batch %s: %s", session.account.id, index + 1, exc.message)
                continue
            except RemoteError as exc:
                results.extend(_result(item, "failed", error="network_error", detail=exc.message) for item in batch)
                continue
            last_status = resp.status_code
            results.extend(interpret_bulk_response(batch, resp))
        return results, last_status, stop_reason

    async def push(
        self,
        db: Session,
        account: MarketplaceAccount,
        items: List[PushItem],
        *,
        operation: str,
        batch_size: Optional[int] = None,
        dry_run: bool = False,
        pre_failed: Optional[List[Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        batches = plan_batches(items, batch_size or self.config.bulk_batch_size)
        pre_failed = pre_failed or []
        if dry_run:
            return {
                "account_id": account.id,
                "dry_run": True,
                "plan": describe_plan(batches),
                "total_items": len(items),
                "rejected": pre_failed,
            }

        session = self.client.session(db, account, default_scope=SCOPE_INVENTORY)
        results, last_status, stop_reason = await self._push_batches(session, batches)
        results = pre_failed + results
        updated = sum(1 for r in results if r["status"] == "ok")
        failed = len(results) - updated

        if updated and not stop_reason:
            self.accounts.clear_needs_reauth(db, account)

        outcome = "ok" if failed == 0 else ("fail" if updated == 0 else "retry")
        self.sync_logs.record(
            db,
            operation=operation,
            outcome=outcome,
            account_id=account.id,
            http_status=last_status,
            metadata={
                "updated": updated,
                "failed": failed,
                "total_items": len(results),
                "batches": len(batches),
                "reason": stop_reason,
            },
        )
        logger.info(
            "[stock-push] account=%s op=%s batches=%s updated=%s failed=%s",
            account.id, operation, len(batches), updated, failed,
        )
        return {
            "account_id": account.id,
            "updated": updated,
            "failed": failed,
            "results": results,
            "reason": stop_reason,
            "retry_recommended": outcome != "ok",
        }

    async def update_stock(
        self,
        db: Session,
        account: MarketplaceAccount,
        raw_items: List[Dict[str, Any]],
        *,
        batch_size: Optional[int] = None,
        dry_run: bool = False,
    ) -> Dict[str, Any]:
        items, rejected = self.plan_explicit(db, account, raw_items)
        return await self.push(
            db, account, items,
            operation=OP_BULK_UPDATE, batch_size=batch_size, dry_run=dry_run, pre_failed=rejected,
        )

    async def reconcile(
        self,
        db: Session,
        *,
        account_id: Optional[str] = None,
        batch_size: Optional[int] = None,
        dry_run: bool = False,
    ) -> Dict[str, Any]:
        """Push bucket quantities for one or every active account."""
        per_account = []
        for account in self.accounts.list_active_accounts(db, account_id):
            try:
                per_account.append(await self._reconcile_account(db, account, batch_size, dry_run))
            except ConfigurationError:
                raise
            except Exception as exc:
                db.rollback()
                logger.exception("[stock-push] reconcile failed for account %s: %s", account.id, exc)
                per_account.append({"account_id": account.id, "updated": 0, "failed": 0, "results": [],
                                    "reason": "unexpected_error"})

        if dry_run:
            return {"dry_run": True, "plan": per_account}
        return {
            "updated": sum(a.get("updated", 0) for a in per_account),
            "failed": sum(a.get("failed", 0) for a in per_account),
            "results": per_account,
        }

    async def _reconcile_account(
        self, db: Session, account: MarketplaceAccount, batch_size: Optional[int], dry_run: bool
    ) -> Dict[str, Any]:
        items, skip_reason = self.plan_for_account(db, account)
        if skip_reason:
            return {"account_id": account.id, "skipped": True, "reason": skip_reason, "updated": 0, "failed": 0}
        try:
            return await self.push(
                db, account, items, operation=OP_RECONCILE, batch_size=batch_size, dry_run=dry_run,
            )
        except TokenMissing:
            return {"account_id": account.id, "skipped": True, "reason": "token_missing", "updated": 0, "failed": 0}
