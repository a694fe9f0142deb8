import httpx
import pytest

from conftest import TOKEN_PATH, bearer, token_ok
from marketsync.errors import NeedsReauth, RemoteClientError, TokenExpired
from marketsync.services.endpoints import INVENTORY_ITEMS_PATH, OFFERS_PATH, ORDERS_PATH

INVENTORY_URL_PATH = INVENTORY_ITEMS_PATH


def _expired_until_refreshed(request):
    if bearer(request) == "tok-1":
        return httpx.Response(401, json={"errors": [{"errorId": 1001}]})
    return httpx.Response(200, json={"inventoryItems": [], "total": 0})


@pytest.mark.asyncio
async def test_401_refreshes_once_and_later_calls_reuse_new_token(db, core, marketplace, make_account):
    marketplace.add("GET", INVENTORY_URL_PATH, _expired_until_refreshed)
    marketplace.add("POST", TOKEN_PATH, token_ok("tok-2"))
    account = make_account()
    session = core.client.session(db, account)

    await session.get_json(INVENTORY_URL_PATH)
    await session.get_json(INVENTORY_URL_PATH)

    assert len(marketplace.calls_to(TOKEN_PATH)) == 1
    used = [bearer(c) for c in marketplace.calls_to(INVENTORY_URL_PATH)]
    assert used == ["tok-1", "tok-2", "tok-2"]
    assert session.refreshes == 1


@pytest.mark.asyncio
async def test_second_401_after_refresh_is_a_hard_failure(db, core, marketplace, make_account):
    marketplace.add("GET", INVENTORY_URL_PATH, httpx.Response(401))
    marketplace.add("POST", TOKEN_PATH, token_ok("tok-2"))
    session = core.client.session(db, make_account())

    with pytest.raises(TokenExpired):
        await session.request("GET", INVENTORY_URL_PATH)

    assert len(marketplace.calls_to(TOKEN_PATH)) == 1
    assert len(marketplace.calls_to(INVENTORY_URL_PATH)) == 2


@pytest.mark.asyncio
async def test_failed_refresh_flags_account_for_reauth(db, core, marketplace, make_account):
    marketplace.add("GET", INVENTORY_URL_PATH, httpx.Response(401))
    marketplace.add("POST", TOKEN_PATH, httpx.Response(400, json={"error": "invalid_grant"}))
    account = make_account()
    session = core.client.session(db, account)

    with pytest.raises(TokenExpired) as excinfo:
        await session.request("GET", INVENTORY_URL_PATH)

    assert excinfo.value.code == "token_expired"
    assert account.needs_reauth is True

    # the dead refresh is not retried by later calls in the same session
    with pytest.raises(NeedsReauth):
        await session.request("GET", INVENTORY_URL_PATH)
    assert len(marketplace.calls_to(TOKEN_PATH)) == 1


@pytest.mark.asyncio
async def test_transient_errors_are_retried_a_bounded_number_of_times(db, core, marketplace, make_account):
    marketplace.add("GET", INVENTORY_URL_PATH, httpx.Response(503))
    session = core.client.session(db, make_account())

    resp = await session.request("GET", INVENTORY_URL_PATH)

    assert resp.status_code == 503
    assert len(marketplace.calls_to(INVENTORY_URL_PATH)) == 1 + len(core.config.retry_delays_ms)
    assert session.retries == len(core.config.retry_delays_ms)


@pytest.mark.asyncio
async def test_rate_limit_then_success(db, core, marketplace, make_account):
    marketplace.add(
        "GET", INVENTORY_URL_PATH,
        httpx.Response(429),
        httpx.Response(200, json={"inventoryItems": []}),
    )
    session = core.client.session(db, make_account())

    assert await session.get_json(INVENTORY_URL_PATH) == {"inventoryItems": []}
    assert len(marketplace.calls_to(INVENTORY_URL_PATH)) == 2


@pytest.mark.asyncio
async def test_client_errors_are_not_retried(db, core, marketplace, make_account):
    marketplace.add("GET", INVENTORY_URL_PATH, httpx.Response(400, json={"errors": [{"errorId": 25002}]}))
    session = core.client.session(db, make_account())

    with pytest.raises(RemoteClientError) as excinfo:
        await session.get_json(INVENTORY_URL_PATH)

    assert excinfo.value.status_code == 400
    assert "25002" in excinfo.value.detail
    assert len(marketplace.calls_to(INVENTORY_URL_PATH)) == 1


@pytest.mark.asyncio
async def test_localization_error_replays_with_fallback_languages(db, core, marketplace, make_account):
    def offers(request):
        if request.headers.get("Accept-Language") == "fr-FR":
            return httpx.Response(200, json={"offers": []})
        return httpx.Response(400, json={"errors": [{"errorId": 25709}]})

    marketplace.add("GET", OFFERS_PATH, offers)
    session = core.client.session(db, make_account())

    resp = await session.request_localized("GET", OFFERS_PATH, params={"sku": "A"})

    assert resp.status_code == 200
    sent = [c.headers.get("Accept-Language") for c in marketplace.calls_to(OFFERS_PATH)]
    assert sent == [None, "en-US", "fr-FR"]


@pytest.mark.asyncio
async def test_next_links_are_followed_until_exhausted(db, core, marketplace, make_account):
    marketplace.add(
        "GET", ORDERS_PATH,
        httpx.Response(200, json={"orders": [{"orderId": "1"}], "next": f"{ORDERS_PATH}?offset=100"}),
        httpx.Response(200, json={"orders": [{"orderId": "2"}], "next": None}),
    )
    session = core.client.session(db, make_account())

    pages = [page async for page in session.iter_next_pages(ORDERS_PATH, params={"limit": 100})]

    assert [p["orders"][0]["orderId"] for p in pages] == ["1", "2"]
    assert marketplace.calls_to(ORDERS_PATH)[1].url.params["offset"] == "100"
