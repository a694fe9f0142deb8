from __future__ import annotations

import uuid
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from marketsync.errors import InvalidRequest, MappingConflict
from marketsync.models_sqlalchemy.models import PROVIDER_EBAY, MarketplaceAccount, Product, SkuMapping
from marketsync.services.sku_resolver import MatchStatus, SkuMappingResolver, sku_resolver
from marketsync.services.sync_log_service import SyncLogService, sync_log_service
from marketsync.utils.logger import logger

BULK_LINK_LIMIT = 100


class SkuMappingService:
    """Operator and automatic actions on remote SKU -> product mappings."""

    def __init__(self, resolver: SkuMappingResolver = sku_resolver, sync_logs: SyncLogService = sync_log_service):
        self.resolver = resolver
        self.sync_logs = sync_logs

    # -- lookups --------------------------------------------------------

    def get_mapping(self, db: Session, account_id: str, remote_sku: str) -> Optional[SkuMapping]:
        return (
            db.query(SkuMapping)
            .filter(
                SkuMapping.provider == PROVIDER_EBAY,
                SkuMapping.account_id == account_id,
                SkuMapping.remote_sku == remote_sku,
            )
            .first()
        )

    def mapped_product_id(self, db: Session, account_id: str, remote_sku: str) -> Optional[str]:
        """Linked product for the SKU; ignored or absent mappings give ``None``."""
        mapping = self.get_mapping(db, account_id, remote_sku)
        if mapping is None or mapping.status != "linked":
            return None
        return mapping.product_id

    def linked_mappings(self, db: Session, account_id: str) -> List[SkuMapping]:
        return (
            db.query(SkuMapping)
            .filter(
                SkuMapping.provider == PROVIDER_EBAY,
                SkuMapping.account_id == account_id,
                SkuMapping.status == "linked",
                SkuMapping.product_id.isnot(None),
            )
            .order_by(SkuMapping.remote_sku)
            .all()
        )

    def mappings_by_sku(self, db: Session, account_id: str, skus: Iterable[str]) -> Dict[str, SkuMapping]:
        """Account mappings for ``skus``; when the account has none at all, provider-wide ones."""
        skus = [s for s in set(skus) if s]
        if not skus:
            return {}
        base = db.query(SkuMapping).filter(
            SkuMapping.provider == PROVIDER_EBAY, SkuMapping.remote_sku.in_(skus)
        )
        has_own = (
            db.query(SkuMapping.id)
            .filter(SkuMapping.provider == PROVIDER_EBAY, SkuMapping.account_id == account_id)
            .first()
            is not None
        )
        rows = base.filter(SkuMapping.account_id == account_id).all() if has_own else base.all()
        return {row.remote_sku: row for row in rows}

    # -- actions --------------------------------------------------------

    def link(
        self,
        db: Session,
        account: MarketplaceAccount,
        remote_sku: str,
        product_id: str,
        *,
        override: bool = False,
        source: str = "manual",
        remote_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        remote_sku = (remote_sku or "").strip()
        if not remote_sku or not product_id:
            raise InvalidRequest("remote_sku and product_id are required", code="missing_fields")
        if db.query(Product.id).filter(Product.id == product_id).first() is None:
            raise InvalidRequest(f"unknown product {product_id}", code="product_not_found")

        mapping = self.get_mapping(db, account.id, remote_sku)
        if mapping is not None and mapping.status == "linked" and mapping.product_id == product_id:
            return {"status": "unchanged", "remote_sku": remote_sku, "product_id": product_id}
        if mapping is not None and mapping.status == "linked" and mapping.product_id and not override:
            raise MappingConflict(
                f"{remote_sku} is already mapped to another product",
                detail={"remote_sku": remote_sku, "product_id": mapping.product_id},
            )

        status = "linked"
        if mapping is None:
            mapping = SkuMapping(
                id=str(uuid.uuid4()),
                provider=PROVIDER_EBAY,
                account_id=account.id,
                remote_sku=remote_sku,
            )
            db.add(mapping)
        elif mapping.product_id and mapping.product_id != product_id:
            status = "relinked"
        mapping.product_id = product_id
        mapping.status = "linked"
        mapping.source = source
        if remote_id:
            mapping.remote_id = remote_id
        db.commit()

        self.sync_logs.record(
            db, operation="mapping_link", outcome="ok", account_id=account.id,
            metadata={"remote_sku": remote_sku, "product_id": product_id, "status": status},
        )
        logger.info("[mapping] %s %s -> %s (account %s)", status, remote_sku, product_id, account.id)
        return {"status": status, "remote_sku": remote_sku, "product_id": product_id}

    def link_by_sku(self, db: Session, account: MarketplaceAccount, remote_sku: str) -> Dict[str, Any]:
        result = self.resolver.find_candidates(db, remote_sku)
        if result.status is not MatchStatus.MATCHED:
            self.sync_logs.record(
                db, operation="mapping_link_by_sku", outcome="fail", account_id=account.id,
                metadata={"remote_sku": remote_sku, "status": result.status.value},
            )
            return {"remote_sku": remote_sku, **result.to_dict()}
        linked = self.link(db, account, remote_sku, result.product.id, source="auto")
        return {"remote_sku": remote_sku, **result.to_dict(), "link": linked["status"]}

    def bulk_link_by_sku(
        self, db: Session, account: MarketplaceAccount, remote_skus: List[str], *, dry_run: bool = False
    ) -> Dict[str, Any]:
        """Exact-tier matching only; anything fuzzier needs an operator."""
        skus = [s.strip() for s in remote_skus if s and s.strip()]
        if len(skus) > BULK_LINK_LIMIT:
            raise InvalidRequest(f"at most {BULK_LINK_LIMIT} skus per call", code="too_many_skus")

        results = []
        counts = {"linked": 0, "would_link": 0, "skipped": 0}
        for sku in dict.fromkeys(skus):
            existing = self.get_mapping(db, account.id, sku)
            if existing is not None and existing.status == "linked" and existing.product_id:
                results.append({"remote_sku": sku, "status": "already_mapped", "product_id": existing.product_id})
                counts["skipped"] += 1
                continue
            match = self.resolver.find_candidates(db, sku, exact_only=True)
            if match.status is not MatchStatus.MATCHED:
                results.append({"remote_sku": sku, "status": match.status.value})
                counts["skipped"] += 1
                continue
            if dry_run:
                results.append({"remote_sku": sku, "status": "would_link", "product_id": match.product.id})
                counts["would_link"] += 1
                continue
            self.link(db, account, sku, match.product.id, source="auto")
            results.append({"remote_sku": sku, "status": "linked", "product_id": match.product.id})
            counts["linked"] += 1

        self.sync_logs.record(
            db, operation="mapping_bulk_link", outcome="ok", account_id=account.id,
            metadata={"dry_run": dry_run, **counts},
        )
        return {"dry_run": dry_run, **counts, "results": results}

    def ignore(self, db: Session, account: MarketplaceAccount, remote_sku: str) -> Dict[str, Any]:
        remote_sku = (remote_sku or "").strip()
        if not remote_sku:
            raise InvalidRequest("remote_sku is required", code="missing_fields")
        mapping = self.get_mapping(db, account.id, remote_sku)
        if mapping is None:
            mapping = SkuMapping(
                id=str(uuid.uuid4()), provider=PROVIDER_EBAY, account_id=account.id, remote_sku=remote_sku
            )
            db.add(mapping)
        mapping.product_id = None
        mapping.status = "ignored"
        mapping.source = "manual"
        db.commit()
        self.sync_logs.record(
            db, operation="mapping_ignore", outcome="ok", account_id=account.id,
            metadata={"remote_sku": remote_sku},
        )
        return {"status": "ignored", "remote_sku": remote_sku}

    def create_product_and_link(
        self,
        db: Session,
        account: MarketplaceAccount,
        remote_sku: str,
        *,
        title: Optional[str] = None,
        price: Any = None,
        ean: Optional[str] = None,
    ) -> Dict[str, Any]:
        remote_sku = (remote_sku or "").strip()
        if not remote_sku:
            raise InvalidRequest("remote_sku is required", code="missing_fields")
        existing = self.get_mapping(db, account.id, remote_sku)
        if existing is not None and existing.status == "linked" and existing.product_id:
            raise MappingConflict(
                f"{remote_sku} is already mapped",
                detail={"remote_sku": remote_sku, "product_id": existing.product_id},
            )
        try:
            retail_price = Decimal(str(price)) if price not in (None, "") else None
        except InvalidOperation:
            retail_price = None
        product = Product(
            id=str(uuid.uuid4()),
            sku=remote_sku,
            name=(title or remote_sku)[:255],
            retail_price=retail_price,
            ean=ean,
            stock=0,
        )
        db.add(product)
        db.commit()
        linked = self.link(db, account, remote_sku, product.id, source="created")
        return {"status": "created", "product_id": product.id, "link": linked["status"]}
