"""Read-only view joining the marketplace catalog with local state.

Inventory items come one offset/limit page at a time; offers are then looked
up per SKU, ``concurrency`` SKUs at a time with a pause between groups.
Every processed SKU without an offer still gets an ``inv:{sku}`` placeholder
row. Rows carry both remote fields and UI-only fields (mapped product,
quantities, internal price); only the remote ones are cached in
``marketplace_listings``.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from marketsync.config import SyncConfig
from marketsync.errors import AccountError
from marketsync.models_sqlalchemy.models import PROVIDER_EBAY, MarketplaceAccount, MarketplaceListing, Product
from marketsync.services.endpoints import INVENTORY_ITEMS_PATH, OFFERS_PATH, SCOPE_INVENTORY
from marketsync.services.mapping_service import SkuMappingService
from marketsync.services.marketplace_client import (
    INVALID_SKU_ERROR_ID,
    AccountSession,
    MarketplaceClient,
    raise_for_marketplace_status,
    response_error_ids,
)
from marketsync.services.stock_ledger import StockLedger
from marketsync.utils.logger import logger

DEFAULT_PAGE_LIMIT = 50
MAX_PAGE_LIMIT = 200
MAX_OFFERS_PER_SKU = 5
DEFAULT_CURRENCY = "EUR"
PERSISTED_FIELDS = ("remote_sku", "title", "price_amount", "price_currency", "status_sync")


def normalize_listing_status(value: Optional[str]) -> str:
    v = (value or "").upper()
    if "PUBLISH" in v or "ACTIVE" in v:
        return "ok"
    if "PEND" in v or "READY" in v or "PREP" in v:
        return "pending"
    if "FAIL" in v or "ERROR" in v or "BLOCK" in v:
        return "failed"
    return "unmapped"


def _decimal(value: Any) -> Optional[Decimal]:
    if value in (None, ""):
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def _ship_quantity(item: Dict[str, Any]) -> Optional[int]:
    availability = item.get("availability") or {}
    ship = availability.get("shipToLocationAvailability") or {}
    qty = ship.get("quantity")
    if qty is None:
        return None
    try:
        return int(qty)
    except (TypeError, ValueError):
        return None


class ListingsFetchEngine:
    def __init__(
        self,
        config: SyncConfig,
        client: MarketplaceClient,
        mappings: SkuMappingService,
        stock: StockLedger,
    ):
        self.config = config
        self.client = client
        self.mappings = mappings
        self.stock = stock

    async def fetch(
        self,
        db: Session,
        account: MarketplaceAccount,
        *,
        limit: int = DEFAULT_PAGE_LIMIT,
        offset: int = 0,
        page: Optional[int] = None,
    ) -> Dict[str, Any]:
        limit = max(1, min(MAX_PAGE_LIMIT, int(limit or DEFAULT_PAGE_LIMIT)))
        if page is not None and page > 0:
            offset = (page - 1) * limit
        offset = max(0, int(offset or 0))

        session = self.client.session(db, account, default_scope=SCOPE_INVENTORY)
        inventory_resp = await session.request_localized(
            "GET", INVENTORY_ITEMS_PATH, params={"limit": limit, "offset": offset}
        )
        raise_for_marketplace_status(inventory_resp)
        inventory = inventory_resp.json() if inventory_resp.content else {}
        inventory_items = [i for i in inventory.get("inventoryItems") or [] if isinstance(i, dict) and i.get("sku")]

        skus = list(dict.fromkeys(str(i["sku"]) for i in inventory_items))
        processed = skus[: self.config.max_skus_per_run]
        skipped = len(skus) - len(processed)

        offers_by_sku, invalid = await self._fetch_offers(session, processed)
        skipped += invalid

        rows = self._build_rows(db, account, inventory_items, processed, offers_by_sku)
        self._upsert_cache(db, account, [r for r in rows if not r["placeholder"]])

        logger.info(
            "[listings] account=%s skus=%s offers=%s skipped=%s retries=%s",
            account.id, len(processed), sum(len(v) for v in offers_by_sku.values()), skipped, session.retries,
        )
        return {
            "items": rows,
            "count": len(rows),
            "limit": limit,
            "offset": offset,
            "processed_skus": len(processed),
            "skipped_skus": skipped,
            "retries": session.retries,
            "total": inventory.get("total", len(inventory_items)),
        }

    # -- offers ---------------------------------------------------------

    async def _fetch_offers(self, session: AccountSession, skus: List[str]):
        offers_by_sku: Dict[str, List[Dict[str, Any]]] = {}
        invalid = 0
        step = max(1, self.config.concurrency)
        for start in range(0, len(skus), step):
            group = skus[start:start + step]
            results = await asyncio.gather(
                *(self._offers_for_sku(session, sku) for sku in group),
                return_exceptions=True,
            )
            for sku, result in zip(group, results):
                if isinstance(result, AccountError):
                    raise result
                if isinstance(result, BaseException):
                    logger.warning("[listings] offers for %s failed: %s", sku, result)
                    offers_by_sku[sku] = []
                elif result is None:
                    invalid += 1
                else:
                    offers_by_sku[sku] = result
            if start + step < len(skus) and self.config.batch_delay_ms:
                await asyncio.sleep(self.config.batch_delay_ms / 1000)
        return offers_by_sku, invalid

    async def _offers_for_sku(self, session: AccountSession, sku: str) -> Optional[List[Dict[str, Any]]]:
        """Offers for one SKU; ``None`` when the provider rejects the SKU itself."""
        resp = await session.request_localized(
            "GET", OFFERS_PATH, params={"sku": sku, "limit": MAX_OFFERS_PER_SKU, "offset": 0}
        )
        if resp.status_code == 404:
            return []
        if resp.status_code >= 400 and INVALID_SKU_ERROR_ID in response_error_ids(resp):
            logger.info("[listings] sku %s rejected by marketplace, skipping", sku)
            return None
        raise_for_marketplace_status(resp)
        body = resp.json() if resp.content else {}
        return [o for o in body.get("offers") or [] if isinstance(o, dict)]

    # -- join -----------------------------------------------------------

    def _local_view(self, db: Session, account: MarketplaceAccount, skus: List[str]) -> Dict[str, Dict[str, Any]]:
        view: Dict[str, Dict[str, Any]] = {}
        mappings = self.mappings.mappings_by_sku(db, account.id, skus)
        for sku in skus:
            mapping = mappings.get(sku)
            entry = {"product_id": None, "qty_app": None, "internal_price": None}
            if mapping is not None and mapping.status == "linked" and mapping.product_id:
                product = db.query(Product).filter(Product.id == mapping.product_id).first()
                parent = self.stock.resolve_parent(db, mapping.product_id)
                entry["product_id"] = mapping.product_id
                if parent is not None:
                    entry["qty_app"] = self.stock.read(db, parent).quantity
                price = (product.retail_price if product is not None else None)
                if price is None and parent is not None:
                    price = parent.retail_price
                entry["internal_price"] = float(price) if price is not None else None
            view[sku] = entry
        return view

    def _build_rows(
        self,
        db: Session,
        account: MarketplaceAccount,
        inventory_items: List[Dict[str, Any]],
        skus: List[str],
        offers_by_sku: Dict[str, List[Dict[str, Any]]],
    ) -> List[Dict[str, Any]]:
        local = self._local_view(db, account, skus)
        item_by_sku = {str(i["sku"]): i for i in inventory_items}
        rows = []

        for sku in skus:
            item = item_by_sku.get(sku, {})
            qty_ebay = _ship_quantity(item)
            entry = local.get(sku, {})
            offers = [o for o in offers_by_sku.get(sku) or [] if o.get("offerId")]
            title_fallback = ((item.get("product") or {}).get("title")) or ""

            for offer in offers:
                price = ((offer.get("pricingSummary") or {}).get("price")) or {}
                status = "ok" if entry.get("product_id") else normalize_listing_status(offer.get("listingStatus"))
                rows.append({
                    "provider": PROVIDER_EBAY,
                    "account_id": account.id,
                    "remote_id": str(offer["offerId"]),
                    "remote_sku": sku,
                    "title": offer.get("listingDescription") or title_fallback,
                    "price_amount": _decimal(price.get("value")),
                    "price_currency": price.get("currency") or DEFAULT_CURRENCY,
                    "status_sync": status,
                    "metadata": {
                        "listingStatus": offer.get("listingStatus"),
                        "marketplaceId": offer.get("marketplaceId"),
                        "availableQuantity": offer.get("availableQuantity"),
                        "format": offer.get("format") or offer.get("offerType"),
                    },
                    "placeholder": False,
                    "product_id": entry.get("product_id"),
                    "internal_price": entry.get("internal_price"),
                    "qty_ebay": qty_ebay,
                    "qty_app": entry.get("qty_app"),
                })

            # also covers SKUs the marketplace rejected while looking up offers
            if not offers:
                rows.append({
                    "provider": PROVIDER_EBAY,
                    "account_id": account.id,
                    "remote_id": f"inv:{sku}",
                    "remote_sku": sku,
                    "title": title_fallback,
                    "price_amount": None,
                    "price_currency": DEFAULT_CURRENCY,
                    "status_sync": "unmapped",
                    "metadata": {"listingStatus": None, "marketplaceId": None, "availableQuantity": None, "format": None},
                    "placeholder": True,
                    "product_id": entry.get("product_id"),
                    "internal_price": entry.get("internal_price"),
                    "qty_ebay": qty_ebay,
                    "qty_app": entry.get("qty_app"),
                })
        return rows

    def _upsert_cache(self, db: Session, account: MarketplaceAccount, rows: List[Dict[str, Any]]) -> None:
        if not rows:
            return
        remote_ids = [r["remote_id"] for r in rows]
        existing = {
            row.remote_id: row
            for row in db.query(MarketplaceListing).filter(
                MarketplaceListing.provider == PROVIDER_EBAY,
                MarketplaceListing.account_id == account.id,
                MarketplaceListing.remote_id.in_(remote_ids),
            )
        }
        now = datetime.now(timezone.utc)
        for r in rows:
            cached = existing.get(r["remote_id"])
            if cached is None:
                cached = MarketplaceListing(provider=PROVIDER_EBAY, account_id=account.id, remote_id=r["remote_id"])
                db.add(cached)
                existing[r["remote_id"]] = cached
            for name in PERSISTED_FIELDS:
                setattr(cached, name, r[name])
            cached.updated_at = now
        try:
            db.commit()
        except Exception:
            db.rollback()
            raise
