from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marketsync.config import SyncConfig
from marketsync.errors import AccountError, ConfigurationError, RemoteError, TokenMissing
from marketsync.models_sqlalchemy.models import PROVIDER_EBAY, MarketplaceAccount, ProcessedOrderLine
from marketsync.services.account_service import MarketplaceAccountService
from marketsync.services.endpoints import ORDERS_PATH, SCOPE_FULFILLMENT_READONLY
from marketsync.services.mapping_service import SkuMappingService
from marketsync.services.marketplace_client import MarketplaceClient
from marketsync.services.stock_ledger import StockLedger
from marketsync.utils.logger import logger

ORDERS_PAGE_LIMIT = 100


class LineOutcome(str, enum.Enum):
    PROCESSED = "processed"
    UNMAPPED = "unmapped"
    IDEMPOTENT_SKIP = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class OrderLine:
    remote_order_id: str
    remote_line_id: str
    sku: str
    quantity: int

    @property
    def key(self) -> tuple:
        return (self.remote_order_id, self.remote_line_id)


def _first(d: Dict[str, Any], *names: str) -> str:
    for name in names:
        value = d.get(name)
        if value not in (None, ""):
            return str(value).strip()
    return ""


def _quantity(line: Dict[str, Any]) -> int:
    for name in ("quantity", "quantityPurchased"):
        value = line.get(name)
        if value in (None, ""):
            continue
        try:
            qty = int(float(value))
        except (TypeError, ValueError):
            continue
        if qty:
            return qty
    return 0


def extract_lines(order: Dict[str, Any]) -> Iterator[OrderLine]:
    """Order payload -> usable lines.

    The API has shipped both ``lineItems`` and ``lineItemSummaries`` and
    several SKU field names; they are tried in a fixed order. Lines without
    an order id, line id or SKU, or with a non-positive quantity, are dropped.
    """
    order_id = _first(order, "orderId", "order_id", "id")
    items = order.get("lineItems")
    if not isinstance(items, list):
        items = order.get("lineItemSummaries")
    if not isinstance(items, list):
        items = []
    for item in items:
        if not isinstance(item, dict):
            continue
        sku = _first(item, "sku", "legacySku", "lineItemSku")
        line_id = _first(item, "lineItemId", "lineItemIdValue")
        qty = _quantity(item)
        if not order_id or not line_id or not sku or qty <= 0:
            continue
        yield OrderLine(order_id, line_id, sku, qty)


def _iso_z(dt: datetime) -> str:
    dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def build_window_filter(now: datetime, lookback_minutes: int) -> str:
    start = now - timedelta(minutes=lookback_minutes)
    return f"lastmodifieddate:[{_iso_z(start)}..{_iso_z(now)}]"


def _new_summary(account_id: str) -> Dict[str, Any]:
    return {
        "account_id": account_id,
        "orders_seen": 0,
        "lines_seen": 0,
        "processed": 0,
        "skipped": 0,
        "unmapped": 0,
        "failed": 0,
        "reason": None,
    }


class OrderIngestionEngine:
    """Remote orders -> local stock decrements, at most once per order line."""

    def __init__(
        self,
        config: SyncConfig,
        client: MarketplaceClient,
        accounts: MarketplaceAccountService,
        mappings: SkuMappingService,
        stock: StockLedger,
    ):
        self.config = config
        self.client = client
        self.accounts = accounts
        self.mappings = mappings
        self.stock = stock

    def _now_utc(self) -> datetime:
        return datetime.now(timezone.utc)

    async def run(self, db: Session, *, account_id: Optional[str] = None, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        summaries = []
        accounts = self.accounts.list_active_accounts(db, account_id)
        logger.info("[orders-sync] starting for %s account(s)", len(accounts))
        for account in accounts:
            try:
                summaries.append(await self.run_for_account(db, account, now=now))
            except ConfigurationError:
                raise
            except Exception as exc:
                db.rollback()
                logger.exception("[orders-sync] account %s aborted: %s", account.id, exc)
                summary = _new_summary(account.id)
                summary["reason"] = "unexpected_error"
                summaries.append(summary)
        return summaries

    async def run_for_account(
        self, db: Session, account: MarketplaceAccount, *, now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        summary = _new_summary(account.id)
        now = now or self._now_utc()

        try:
            session = self.client.session(db, account, default_scope=SCOPE_FULFILLMENT_READONLY)
        except TokenMissing:
            summary["reason"] = "missing_token"
            logger.info("[orders-sync] account %s has no usable token", account.id)
            return summary

        params = {
            "filter": build_window_filter(now, self.config.orders_lookback_minutes),
            "limit": ORDERS_PAGE_LIMIT,
        }
        seen = set()
        try:
            async for page in session.iter_next_pages(ORDERS_PATH, params=params):
                for order in page.get("orders") or []:
                    summary["orders_seen"] += 1
                    for line in extract_lines(order):
                        if line.key in seen:
                            continue
                        seen.add(line.key)
                        summary["lines_seen"] += 1
                        outcome = self.process_line(db, account, line)
                        summary[outcome.value] += 1
        except AccountError as exc:
            summary["reason"] = exc.code
            logger.warning("[orders-sync] account %s stopped: %s", account.id, exc.message)
        except RemoteError as exc:
            summary["reason"] = "remote_error"
            summary["http_status"] = exc.status_code
            summary["error"] = exc.detail
            logger.warning("[orders-sync] account %s paging aborted: %s", account.id, exc.message)

        logger.info(
            "[orders-sync] account=%s orders=%s lines=%s processed=%s skipped=%s unmapped=%s failed=%s",
            account.id, summary["orders_seen"], summary["lines_seen"], summary["processed"],
            summary["skipped"], summary["unmapped"], summary["failed"],
        )
        return summary

    # -- per line -------------------------------------------------------

    def _already_processed(self, db: Session, account_id: str, line: OrderLine) -> bool:
        return (
            db.query(ProcessedOrderLine.id)
            .filter(
                ProcessedOrderLine.provider == PROVIDER_EBAY,
                ProcessedOrderLine.account_id == account_id,
                ProcessedOrderLine.remote_order_id == line.remote_order_id,
                ProcessedOrderLine.remote_line_id == line.remote_line_id,
            )
            .first()
            is not None
        )

    def _ledger_row(self, account_id: str, line: OrderLine, product_id: Optional[str]) -> ProcessedOrderLine:
        return ProcessedOrderLine(
            provider=PROVIDER_EBAY,
            account_id=account_id,
            remote_order_id=line.remote_order_id,
            remote_line_id=line.remote_line_id,
            remote_sku=line.sku,
            quantity=line.quantity,
            product_id=product_id,
        )

    def process_line(self, db: Session, account: MarketplaceAccount, line: OrderLine) -> LineOutcome:
        """Apply one line; never raises."""
        try:
            if self._already_processed(db, account.id, line):
                return LineOutcome.IDEMPOTENT_SKIP

            product_id = self.mappings.mapped_product_id(db, account.id, line.sku)
            parent = self.stock.resolve_parent(db, product_id) if product_id else None
            if parent is None:
                db.add(self._ledger_row(account.id, line, None))
                db.commit()
                logger.info("[orders-sync] unmapped sku %s (order %s)", line.sku, line.remote_order_id)
                return LineOutcome.UNMAPPED

            result = self.stock.decrement(db, parent, line.quantity)
            self.stock.mirror_decrement(db, parent.id, line.quantity)
            db.add(self._ledger_row(account.id, line, product_id))
            db.commit()
            logger.info(
                "[orders-sync] %s x%s -> parent %s %s %s->%s",
                line.sku, line.quantity, parent.id, result.source, result.before, result.after,
            )
            return LineOutcome.PROCESSED
        except IntegrityError:
            # A concurrent run recorded this line first; its decrement stands, ours is rolled back.
            db.rollback()
            return LineOutcome.IDEMPOTENT_SKIP
        except Exception as exc:
            db.rollback()
            logger.error("[orders-sync] line %s/%s failed: %s", line.remote_order_id, line.remote_line_id, exc)
            return LineOutcome.FAILED
