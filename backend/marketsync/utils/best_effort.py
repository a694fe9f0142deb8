"""Non-critical side steps whose failure must never undo the primary work."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Generic, Optional, TypeVar

from marketsync.utils.logger import logger

T = TypeVar("T")


@dataclass(frozen=True)
class BestEffortResult(Generic[T]):
    label: str
    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None

    @property
    def skipped(self) -> bool:
        return self.ok and self.value is None


def attempt(label: str, fn: Callable[[], T]) -> BestEffortResult[T]:
    """Run ``fn``; a raised exception becomes a failed result and a warning.

    Callers are free to ignore the returned value.
    """
    try:
        return BestEffortResult(label=label, ok=True, value=fn())
    except Exception as exc:
        logger.warning("[best-effort] %s failed: %s", label, exc)
        return BestEffortResult(label=label, ok=False, error=str(exc)[:500])
