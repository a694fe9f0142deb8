"""Explicit token lifecycle state for an account.

``NoToken -> Pending(nonce) -> Active -> Expiring -> Refreshing -> Active | NeedsReauth``

The persisted columns (``needs_reauth``, the ``"pending"`` access-token
sentinel, ``expires_at``) are folded into one of these variants by
:func:`classify`; code that moves an account forward goes through
:func:`transition`, which refuses edges that are not in the graph above.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Union

EXPIRING_THRESHOLD = timedelta(minutes=5)


def _to_utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass(frozen=True)
class NoToken:
    kind = "no_token"


@dataclass(frozen=True)
class Pending:
    nonce: Optional[str]
    expires_at: Optional[datetime] = None
    kind = "pending"


@dataclass(frozen=True)
class Active:
    token_id: str
    expires_at: Optional[datetime]
    kind = "active"


@dataclass(frozen=True)
class Expiring:
    token_id: str
    expires_at: Optional[datetime]
    kind = "expiring"


@dataclass(frozen=True)
class Refreshing:
    token_id: str
    kind = "refreshing"


@dataclass(frozen=True)
class NeedsReauthState:
    reason: Optional[str] = None
    kind = "needs_reauth"


TokenState = Union[NoToken, Pending, Active, Expiring, Refreshing, NeedsReauthState]

_ALLOWED = {
    "no_token": {"pending"},
    "pending": {"active", "no_token"},
    "active": {"expiring", "refreshing", "needs_reauth"},
    "expiring": {"refreshing", "needs_reauth"},
    "refreshing": {"active", "needs_reauth"},
    "needs_reauth": {"pending", "refreshing"},
}


class IllegalTransition(Exception):
    def __init__(self, current: TokenState, target: TokenState):
        super().__init__(f"cannot move token state from {current.kind} to {target.kind}")
        self.current = current
        self.target = target


def can_transition(current: TokenState, target: TokenState) -> bool:
    return target.kind in _ALLOWED.get(current.kind, set())


def transition(current: TokenState, target: TokenState) -> TokenState:
    if not can_transition(current, target):
        raise IllegalTransition(current, target)
    return target


def classify(account, token, *, now: Optional[datetime] = None) -> TokenState:
    """Fold an account row and its authoritative token row into a state."""
    now = _to_utc(now) or datetime.now(timezone.utc)

    if account is not None and getattr(account, "needs_reauth", False):
        return NeedsReauthState(reason=getattr(account, "last_error", None))
    if token is None:
        return NoToken()
    if token.is_pending:
        return Pending(nonce=token.state_nonce, expires_at=_to_utc(token.expires_at))

    expires_at = _to_utc(token.expires_at)
    if expires_at is not None and expires_at - now <= EXPIRING_THRESHOLD:
        return Expiring(token_id=token.id, expires_at=expires_at)
    return Active(token_id=token.id, expires_at=expires_at)
