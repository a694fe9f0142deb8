from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from marketsync.services.token_state import (
    Active,
    Expiring,
    IllegalTransition,
    NeedsReauthState,
    NoToken,
    Pending,
    Refreshing,
    classify,
    transition,
)

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


def _token(access_token="tok", expires_in=3600, nonce=None):
    return SimpleNamespace(
        id="t1",
        access_token=access_token,
        is_pending=access_token == "pending",
        state_nonce=nonce,
        expires_at=NOW + timedelta(seconds=expires_in),
    )


def test_classify_covers_each_variant():
    account = SimpleNamespace(needs_reauth=False, last_error=None)

    assert isinstance(classify(account, None, now=NOW), NoToken)
    assert classify(account, _token("pending", nonce="n1"), now=NOW) == Pending(
        nonce="n1", expires_at=NOW + timedelta(hours=1)
    )
    assert isinstance(classify(account, _token(), now=NOW), Active)
    assert isinstance(classify(account, _token(expires_in=60), now=NOW), Expiring)

    flagged = SimpleNamespace(needs_reauth=True, last_error="refresh_rejected")
    assert classify(flagged, _token(), now=NOW) == NeedsReauthState(reason="refresh_rejected")


def test_naive_expiry_is_treated_as_utc():
    token = _token(expires_in=60)
    token.expires_at = token.expires_at.replace(tzinfo=None)
    assert isinstance(classify(None, token, now=NOW), Expiring)


def test_refresh_cycle_transitions():
    state = transition(Active(token_id="t1", expires_at=None), Refreshing(token_id="t1"))
    assert transition(state, Active(token_id="t1", expires_at=None)).kind == "active"
    assert transition(state, NeedsReauthState(reason="x")).kind == "needs_reauth"


@pytest.mark.parametrize(
    "current,target",
    [
        (NoToken(), Active(token_id="t1", expires_at=None)),
        (Pending(nonce="n"), Refreshing(token_id="t1")),
        (NeedsReauthState(), Active(token_id="t1", expires_at=None)),
    ],
)
def test_illegal_transitions_are_rejected(current, target):
    with pytest.raises(IllegalTransition):
        transition(current, target)
