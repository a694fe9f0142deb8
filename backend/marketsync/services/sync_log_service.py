from __future__ import annotations

from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from marketsync.models_sqlalchemy.models import PROVIDER_EBAY, SyncLog
from marketsync.utils.best_effort import BestEffortResult, attempt

OUTCOMES = ("ok", "retry", "fail")


class SyncLogService:
    """Append-only audit trail of batch operations."""

    def record(
        self,
        db: Session,
        *,
        operation: str,
        outcome: str,
        account_id: Optional[str] = None,
        http_status: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> BestEffortResult[str]:
        if outcome not in OUTCOMES:
            raise ValueError(f"unknown sync log outcome: {outcome}")

        def _write() -> str:
            row = SyncLog(
                provider=PROVIDER_EBAY,
                account_id=account_id,
                operation=operation,
                outcome=outcome,
                http_status=http_status,
                meta=metadata or {},
            )
            try:
                db.add(row)
                db.commit()
            except Exception:
                db.rollback()
                raise
            return row.id

        return attempt(f"sync_log:{operation}", _write)

    def latest(self, db: Session, account_id: Optional[str], operation: str) -> Optional[SyncLog]:
        return (
            db.query(SyncLog)
            .filter(SyncLog.account_id == account_id, SyncLog.operation == operation)
            .order_by(SyncLog.created_at.desc())
            .first()
        )

    def retry_eligible(self, db: Session, account_id: Optional[str], operation: str) -> bool:
        """True when the last run of ``operation`` for the account did not fully succeed."""
        last = self.latest(db, account_id, operation)
        return last is not None and last.outcome in ("retry", "fail")


sync_log_service = SyncLogService()
