"""Remote SKU -> local product candidates.

Tiers, first non-empty one wins:

1. exact, against the raw value, its upper-case form and the upper-case form
   with leading zeros stripped;
2. partial, with runs of spaces/hyphens/underscores turned into wildcards;
3. partial, with those separators removed altogether.

Several candidates collapse to the single root product among them (no
parent); more than one root is reported as ``multiple_matches``.
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from marketsync.models_sqlalchemy.models import Product

_SEPARATORS = re.compile(r"[\s\-_]+")
PARTIAL_LIMIT = 25
MAX_CANDIDATES = 10


class MatchStatus(str, enum.Enum):
    MATCHED = "matched"
    MULTIPLE_MATCHES = "multiple_matches"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class SkuMatchers:
    exact: frozenset
    separator_pattern: str
    stripped_pattern: str


@dataclass
class MatchResult:
    status: MatchStatus
    product: Optional[Product] = None
    candidates: List[Product] = field(default_factory=list)
    tier: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "tier": self.tier,
            "product_id": self.product.id if self.product else None,
            "candidates": [
                {"id": p.id, "sku": p.sku, "name": p.name, "parent_id": p.parent_id}
                for p in self.candidates[:MAX_CANDIDATES]
            ],
        }


def build_sku_matchers(raw_sku: str) -> SkuMatchers:
    base = (raw_sku or "").strip()
    upper = base.upper()
    zero_stripped = upper.lstrip("0")
    exact = frozenset(v for v in (base, upper, zero_stripped) if v)
    return SkuMatchers(
        exact=exact,
        separator_pattern=f"%{_SEPARATORS.sub('%', upper)}%",
        stripped_pattern=f"%{_SEPARATORS.sub('', upper)}%",
    )


def pick_root(candidates: List[Product]) -> MatchResult:
    if not candidates:
        return MatchResult(status=MatchStatus.NOT_FOUND)
    if len(candidates) == 1:
        return MatchResult(status=MatchStatus.MATCHED, product=candidates[0], candidates=candidates)
    roots = [p for p in candidates if not p.parent_id]
    if len(roots) == 1:
        return MatchResult(status=MatchStatus.MATCHED, product=roots[0], candidates=candidates)
    return MatchResult(status=MatchStatus.MULTIPLE_MATCHES, candidates=candidates[:MAX_CANDIDATES])


class SkuMappingResolver:
    def find_candidates(self, db: Session, raw_sku: str, *, exact_only: bool = False) -> MatchResult:
        matchers = build_sku_matchers(raw_sku)
        if not matchers.exact:
            return MatchResult(status=MatchStatus.NOT_FOUND)

        upper_exact = {v.upper() for v in matchers.exact}
        found = (
            db.query(Product)
            .filter(func.upper(Product.sku).in_(upper_exact))
            .order_by(Product.sku, Product.id)
            .all()
        )
        if found or exact_only:
            return self._finish(found, "exact")

        for tier, pattern in (
            ("separator_tolerant", matchers.separator_pattern),
            ("separator_stripped", matchers.stripped_pattern),
        ):
            if pattern == "%%":
                continue
            found = (
                db.query(Product)
                .filter(Product.sku.ilike(pattern))
                .order_by(Product.sku, Product.id)
                .limit(PARTIAL_LIMIT)
                .all()
            )
            if found:
                return self._finish(found, tier)
        return MatchResult(status=MatchStatus.NOT_FOUND)

    @staticmethod
    def _finish(found: List[Product], tier: str) -> MatchResult:
        result = pick_root(found)
        result.tier = tier if found else None
        return result


sku_resolver = SkuMappingResolver()
