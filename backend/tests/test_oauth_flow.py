from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import TOKEN_PATH
from marketsync.dependencies import get_sync_core
from marketsync.main import app
from marketsync.models_sqlalchemy import get_db
from marketsync.models_sqlalchemy.models import MarketplaceAccount, OAuthToken
from marketsync.services.endpoints import PRIVILEGE_PATH, REQUIRED_SCOPES
from marketsync.services.oauth_flow import REAUTH_ONCE_COOKIE, decode_state, encode_state

IDENTITY_PATH = "/commerce/identity/v1/user"


def _exchange(scope=" ".join(REQUIRED_SCOPES), refresh_token="v^1.1#fresh", token_type="User Access Token"):
    payload = {"access_token": "acc-new", "expires_in": 7200, "token_type": token_type, "scope": scope}
    if refresh_token:
        payload["refresh_token"] = refresh_token
    return httpx.Response(200, json=payload)


def _cookies(outcome):
    return {c.name: c.value for c in outcome.cookies}


def test_state_round_trip_and_garbage():
    state = encode_state({"n": "abc", "environment": "sandbox"})

    assert decode_state(state) == {"n": "abc", "environment": "sandbox"}
    assert decode_state("not-base64-json") is None
    assert decode_state(encode_state({"environment": "sandbox"})) is None
    assert decode_state(None) is None


def test_start_authorization_records_pending_row(db, core):
    started = core.oauth.start_authorization(db)

    url = urlparse(started["url"])
    query = parse_qs(url.query)
    assert url.netloc == "auth.ebay.com"
    assert query["client_id"] == ["app-id"]
    assert query["redirect_uri"] == ["RuName-prod"]
    assert query["scope"] == [" ".join(REQUIRED_SCOPES)]
    nonce = decode_state(started["state"])["n"]
    pending = core.accounts.find_pending_token(db, nonce)
    assert pending is not None and pending.is_pending


@pytest.mark.asyncio
async def test_callback_connects_account(db, core, marketplace):
    started = core.oauth.start_authorization(db)
    marketplace.add("POST", TOKEN_PATH, _exchange())
    marketplace.add("GET", IDENTITY_PATH, httpx.Response(200, json={"userId": "seller-42", "username": "shop42"}))

    outcome = await core.oauth.handle_callback(db, code="auth-code", state=started["state"])

    assert outcome.kind == "redirect"
    assert outcome.location == "https://shop.example/pricing?provider=ebay&connected=1"
    assert _cookies(outcome)["gf_ebay"] == "connected"
    account = db.query(MarketplaceAccount).one()
    assert account.provider_account_id == "seller-42"
    assert account.display_name == "shop42"
    token = core.accounts.get_usable_token(db, account.id)
    assert token.access_token == "acc-new"
    assert core.accounts.open_refresh_token(db, token) == "v^1.1#fresh"
    assert db.query(OAuthToken).filter(OAuthToken.status == "pending").count() == 0
    body = marketplace.calls_to(TOKEN_PATH)[0].content.decode()
    assert "grant_type=authorization_code" in body
    assert "code=auth-code" in body


@pytest.mark.asyncio
async def test_reconnect_supersedes_old_token(db, core, marketplace, make_account):
    account = make_account(provider_account_id="seller-42")
    started = core.oauth.start_authorization(db, account_id=account.id)
    marketplace.add("POST", TOKEN_PATH, _exchange())
    marketplace.add("GET", IDENTITY_PATH, httpx.Response(200, json={"userId": "seller-42"}))

    outcome = await core.oauth.handle_callback(db, code="auth-code", state=started["state"])

    assert outcome.account_id == account.id
    assert db.query(MarketplaceAccount).count() == 1
    statuses = sorted(t.status for t in db.query(OAuthToken).filter(OAuthToken.account_id == account.id))
    assert statuses == ["active", "consumed"]
    assert core.accounts.get_usable_token(db, account.id).access_token == "acc-new"


@pytest.mark.asyncio
async def test_missing_refresh_token_is_a_gateway_error(db, core, marketplace):
    started = core.oauth.start_authorization(db)
    marketplace.add("POST", TOKEN_PATH, _exchange(refresh_token=None))

    outcome = await core.oauth.handle_callback(db, code="auth-code", state=started["state"])

    assert (outcome.kind, outcome.status_code, outcome.error) == ("error", 502, "missing_refresh_token")
    assert db.query(MarketplaceAccount).count() == 0


@pytest.mark.asyncio
async def test_wrong_token_type_is_rejected(db, core, marketplace):
    started = core.oauth.start_authorization(db)
    marketplace.add("POST", TOKEN_PATH, _exchange(token_type="Application Access Token"))

    outcome = await core.oauth.handle_callback(db, code="auth-code", state=started["state"])

    assert outcome.error == "invalid_token_type"
    assert "error=invalid_token_type" in outcome.location


@pytest.mark.asyncio
async def test_partial_scope_rescued_by_privilege_probe(db, core, marketplace):
    started = core.oauth.start_authorization(db)
    marketplace.add("POST", TOKEN_PATH, _exchange(scope=REQUIRED_SCOPES[1]))
    marketplace.add("GET", PRIVILEGE_PATH, httpx.Response(200, json={}))
    marketplace.add("GET", IDENTITY_PATH, httpx.Response(200, json={"userId": "seller-1"}))

    outcome = await core.oauth.handle_callback(db, code="auth-code", state=started["state"])

    assert outcome.error is None
    assert db.query(MarketplaceAccount).count() == 1


@pytest.mark.asyncio
async def test_insufficient_scope_is_rejected(db, core, marketplace):
    started = core.oauth.start_authorization(db)
    marketplace.add("POST", TOKEN_PATH, _exchange(scope=REQUIRED_SCOPES[1]))
    marketplace.add("GET", PRIVILEGE_PATH, httpx.Response(403))

    outcome = await core.oauth.handle_callback(db, code="auth-code", state=started["state"])

    assert outcome.error == "insufficient_scope"
    assert db.query(MarketplaceAccount).count() == 0


@pytest.mark.asyncio
async def test_unknown_state_reconsents_once_then_shows_link(db, core, marketplace):
    stale = encode_state({"n": "gone", "environment": "production"})

    first = await core.oauth.handle_callback(db, code="auth-code", state=stale)
    second = await core.oauth.handle_callback(db, code="auth-code", state=stale, reauth_once=True)

    assert first.kind == "redirect"
    assert first.location.startswith("https://auth.ebay.com/oauth2/authorize?")
    assert _cookies(first) == {REAUTH_ONCE_COOKIE: "1", "gf_ebay": "reauth"}
    assert second.kind == "html"
    assert "Reconnect the account" in second.body
    assert marketplace.calls_to(TOKEN_PATH) == []


# -- HTTP layer ------------------------------------------------------------


@pytest.fixture
def client(db, core):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_sync_core] = lambda: core
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def test_callback_route_sets_host_only_cookies(client):
    stale = encode_state({"n": "gone"})

    resp = client.get("/api/ebay/callback", params={"code": "c", "state": stale}, follow_redirects=False)

    assert resp.status_code == 302
    cookies = "; ".join(resp.headers.get_list("set-cookie"))
    assert f"{REAUTH_ONCE_COOKIE}=1" in cookies
    assert "Domain" not in cookies
    assert "HttpOnly" in cookies

    client.cookies.set(REAUTH_ONCE_COOKIE, "1")
    again = client.get("/api/ebay/callback", params={"code": "c", "state": stale}, follow_redirects=False)
    assert again.status_code == 200
    assert again.headers["content-type"].startswith("text/html")


def test_authorize_route_returns_consent_url(client):
    resp = client.post("/api/ebay/authorize", json={})

    assert resp.status_code == 200
    assert resp.json()["url"].startswith("https://auth.ebay.com/oauth2/authorize?")


def test_sync_errors_become_json(client, make_account):
    account = make_account(with_token=False)

    resp = client.post(
        "/api/marketplaces/stock/update",
        json={"account_id": account.id, "items": [{"sku": "A", "quantity": 1}]},
    )

    assert resp.status_code == 401
    assert resp.json()["error"] == "missing_token"


def test_unknown_account_is_404(client):
    resp = client.get("/api/marketplaces/listings", params={"account_id": "nope"})

    assert resp.status_code == 404
    assert resp.json()["detail"]["error"] == "account_not_found"


def test_accounts_route_lists_connected_accounts(client, make_account):
    account = make_account(provider_account_id="seller-9")

    resp = client.get("/api/marketplaces/accounts")

    [row] = resp.json()["accounts"]
    assert row["id"] == account.id
    assert row["connected"] is True
