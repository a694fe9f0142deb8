"""Local stock quantities as seen by the marketplace sync.

Stock always lives on the parent product: ``parent_id``, else the product it
mirrors, else itself. One field is authoritative per product, found by
walking shared pool -> mirrored quantity -> ``stock_total`` -> ``stock``; the
chain is a fallback, never a sum.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from marketsync.config import SyncConfig
from marketsync.models_sqlalchemy.models import Product, SharedStock, Stock, StockLevel
from marketsync.utils.best_effort import BestEffortResult, attempt


@dataclass(frozen=True)
class QuantityReading:
    product_id: str
    source: str  # shared_pool | mirror_stock | stock_total | stock
    quantity: int


@dataclass(frozen=True)
class DecrementResult:
    product_id: str
    source: str
    before: int
    after: int

    @property
    def applied(self) -> int:
        return self.before - self.after


def parent_id_of(product: Product) -> str:
    return product.parent_id or product.mirror_of or product.id


class StockLedger:
    def __init__(self, config: SyncConfig):
        self.config = config
        self._bucket_id: Optional[str] = None
        self._bucket_resolved = False

    def resolve_parent(self, db: Session, product_id: str) -> Optional[Product]:
        product = db.query(Product).filter(Product.id == product_id).first()
        if product is None:
            return None
        parent_id = parent_id_of(product)
        if parent_id == product.id:
            return product
        return db.query(Product).filter(Product.id == parent_id).first() or product

    def read(self, db: Session, product: Product) -> QuantityReading:
        if product.shared_stock_id:
            pool = db.query(SharedStock).filter(SharedStock.id == product.shared_stock_id).first()
            if pool is not None:
                return QuantityReading(product.id, "shared_pool", int(pool.qty or 0))
        if product.mirror_stock is not None:
            return QuantityReading(product.id, "mirror_stock", int(product.mirror_stock))
        if product.stock_total is not None:
            return QuantityReading(product.id, "stock_total", int(product.stock_total))
        return QuantityReading(product.id, "stock", int(product.stock or 0))

    def decrement(self, db: Session, parent: Product, quantity: int) -> DecrementResult:
        """Lower the authoritative field by ``quantity``, clamped at zero. Not committed."""
        reading = self.read(db, parent)
        after = max(0, reading.quantity - max(0, int(quantity)))
        if reading.source == "shared_pool":
            pool = db.query(SharedStock).filter(SharedStock.id == parent.shared_stock_id).first()
            pool.qty = after
        else:
            setattr(parent, reading.source, after)
        db.flush()
        return DecrementResult(parent.id, reading.source, reading.quantity, after)

    # -- marketplace-labeled bucket ------------------------------------

    def bucket_id(self, db: Session) -> Optional[str]:
        if not self._bucket_resolved:
            if self.config.stock_bucket_id:
                self._bucket_id = self.config.stock_bucket_id
            else:
                row = (
                    db.query(Stock)
                    .filter(func.upper(Stock.name) == self.config.stock_bucket_name.upper())
                    .first()
                )
                self._bucket_id = row.id if row else None
            self._bucket_resolved = True
        return self._bucket_id

    def mirror_decrement(self, db: Session, parent_id: str, quantity: int) -> BestEffortResult[int]:
        """Mirror a decrement into the marketplace bucket inside a savepoint."""

        def _apply() -> Optional[int]:
            bucket = self.bucket_id(db)
            if not bucket:
                return None
            with db.begin_nested():
                level = (
                    db.query(StockLevel)
                    .filter(StockLevel.stock_id == bucket, StockLevel.product_id == parent_id)
                    .first()
                )
                if level is None:
                    return None
                level.qty = max(0, int(level.qty or 0) - max(0, int(quantity)))
                return level.qty

        return attempt(f"stock_bucket_mirror:{parent_id}", _apply)

    def bucket_quantities(self, db: Session, parent_ids: Iterable[str]) -> Dict[str, int]:
        """Bucket quantity per parent; zero when the bucket or the row is missing."""
        ids = list(dict.fromkeys(parent_ids))
        quantities = {pid: 0 for pid in ids}
        bucket = self.bucket_id(db)
        if not bucket or not ids:
            return quantities
        rows = (
            db.query(StockLevel)
            .filter(StockLevel.stock_id == bucket, StockLevel.product_id.in_(ids))
            .all()
        )
        for row in rows:
            quantities[row.product_id] = max(0, int(row.qty or 0))
        return quantities
