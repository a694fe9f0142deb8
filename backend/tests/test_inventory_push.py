import json

import httpx
import pytest

from conftest import TOKEN_PATH, bearer, token_ok
from marketsync.errors import InvalidRequest
from marketsync.models_sqlalchemy.models import SyncLog
from marketsync.services.endpoints import BULK_UPDATE_PATH
from marketsync.services.inventory_push import (
    OP_BULK_UPDATE,
    OP_RECONCILE,
    PushItem,
    interpret_bulk_response,
    plan_batches,
)


def _accept_all(request):
    skus = [r["sku"] for r in json.loads(request.content)["requests"]]
    return httpx.Response(200, json={"responses": [{"sku": s, "statusCode": 200} for s in skus]})


def _listed(account, make_product, link_sku, count, ebay_bucket=None, qty=1):
    products = []
    for i in range(count):
        product = make_product(f"P-{i:03d}")
        link_sku(account, f"SKU-{i:03d}", product)
        if ebay_bucket is not None:
            ebay_bucket(product, qty)
        products.append(product)
    return products


def test_batches_never_exceed_provider_limit():
    items = [PushItem(sku=f"S{i}", quantity=1) for i in range(63)]

    assert [len(b) for b in plan_batches(items, 25)] == [25, 25, 13]
    assert [len(b) for b in plan_batches(items, 100)] == [25, 25, 13]
    assert [len(b) for b in plan_batches(items, 10)][:2] == [10, 10]


def test_item_without_response_entry_is_failed():
    batch = [PushItem("A", 1), PushItem("B", 2), PushItem("C", 3)]
    resp = httpx.Response(207, json={"responses": [
        {"sku": "A", "statusCode": 200},
        {"sku": "B", "statusCode": 400, "errors": [{"errorId": 25002}]},
    ]})

    results = {r["sku"]: r for r in interpret_bulk_response(batch, resp)}

    assert results["A"]["status"] == "ok"
    assert results["B"]["error"] == "item_rejected"
    assert results["C"]["error"] == "missing_item_response"


@pytest.mark.asyncio
async def test_reconcile_sends_three_batches_for_63_skus(db, core, marketplace, make_account, make_product, link_sku, ebay_bucket):
    account = make_account()
    _listed(account, make_product, link_sku, 63, ebay_bucket, qty=2)
    marketplace.add("POST", BULK_UPDATE_PATH, _accept_all)

    result = await core.push.reconcile(db)

    calls = marketplace.calls_to(BULK_UPDATE_PATH)
    assert [len(json.loads(c.content)["requests"]) for c in calls] == [25, 25, 13]
    assert result["updated"] == 63
    assert result["failed"] == 0
    first = json.loads(calls[0].content)["requests"][0]
    assert first["shipToLocationAvailability"] == {"quantity": 2}
    log = db.query(SyncLog).one()
    assert (log.operation, log.outcome) == (OP_RECONCILE, "ok")


@pytest.mark.asyncio
async def test_empty_bulk_response_fails_the_whole_batch(db, core, marketplace, make_account, make_product, link_sku):
    account = make_account()
    _listed(account, make_product, link_sku, 3)
    marketplace.add("POST", BULK_UPDATE_PATH, httpx.Response(200, json={}))

    result = await core.push.update_stock(
        db, account, [{"sku": f"SKU-{i:03d}", "quantity": 4} for i in range(3)]
    )

    assert result["updated"] == 0
    assert result["failed"] == 3
    assert {r["error"] for r in result["results"]} == {"no_responses_from_ebay"}
    assert result["retry_recommended"] is True
    log = db.query(SyncLog).one()
    assert (log.operation, log.outcome) == (OP_BULK_UPDATE, "fail")
    assert core.sync_logs.retry_eligible(db, account.id, OP_BULK_UPDATE)


@pytest.mark.asyncio
async def test_partial_failure_is_logged_for_retry(db, core, marketplace, make_account, make_product, link_sku):
    account = make_account()
    _listed(account, make_product, link_sku, 2)
    marketplace.add("POST", BULK_UPDATE_PATH, httpx.Response(200, json={"responses": [
        {"sku": "SKU-000", "statusCode": 200},
        {"sku": "SKU-001", "statusCode": 500},
    ]}))

    result = await core.push.update_stock(
        db, account, [{"sku": "SKU-000", "quantity": 1}, {"sku": "SKU-001", "quantity": 1}]
    )

    assert (result["updated"], result["failed"]) == (1, 1)
    assert db.query(SyncLog).one().outcome == "retry"


@pytest.mark.asyncio
async def test_dry_run_plans_without_network(db, core, marketplace, make_account, make_product, link_sku, ebay_bucket):
    account = make_account()
    _listed(account, make_product, link_sku, 30, ebay_bucket, qty=5)

    result = await core.push.reconcile(db, dry_run=True)

    assert marketplace.calls == []
    [plan] = result["plan"]
    assert plan["total_items"] == 30
    assert [b["size"] for b in plan["plan"]] == [25, 5]
    assert db.query(SyncLog).count() == 0


@pytest.mark.asyncio
async def test_401_mid_push_refreshes_and_retries_same_batch(db, core, marketplace, make_account, make_product, link_sku):
    account = make_account()
    _listed(account, make_product, link_sku, 2)

    def bulk(request):
        if bearer(request) == "tok-1":
            return httpx.Response(401)
        return _accept_all(request)

    marketplace.add("POST", BULK_UPDATE_PATH, bulk)
    marketplace.add("POST", TOKEN_PATH, token_ok("tok-2"))

    result = await core.push.update_stock(
        db, account, [{"sku": "SKU-000", "quantity": 1}, {"sku": "SKU-001", "quantity": 0}]
    )

    assert result["updated"] == 2
    calls = marketplace.calls_to(BULK_UPDATE_PATH)
    assert [bearer(c) for c in calls] == ["tok-1", "tok-2"]
    assert calls[0].content == calls[1].content


@pytest.mark.asyncio
async def test_failed_refresh_fails_remaining_batches(db, core, marketplace, make_account, make_product, link_sku):
    account = make_account()
    _listed(account, make_product, link_sku, 30)
    marketplace.add("POST", BULK_UPDATE_PATH, httpx.Response(401))
    marketplace.add("POST", TOKEN_PATH, httpx.Response(400, json={"error": "invalid_grant"}))

    result = await core.push.update_stock(
        db, account, [{"sku": f"SKU-{i:03d}", "quantity": 1} for i in range(30)]
    )

    assert result["failed"] == 30
    assert result["reason"] == "token_expired"
    assert len(marketplace.calls_to(BULK_UPDATE_PATH)) == 1
    db.refresh(account)
    assert account.needs_reauth is True


@pytest.mark.asyncio
async def test_explicit_items_must_be_listed(db, core, marketplace, make_account, make_product, link_sku):
    account = make_account()
    _listed(account, make_product, link_sku, 1)
    marketplace.add("POST", BULK_UPDATE_PATH, _accept_all)

    result = await core.push.update_stock(
        db, account, [{"sku": "SKU-000", "quantity": 3}, {"sku": "UNKNOWN", "quantity": 3}]
    )

    by_sku = {r["sku"]: r for r in result["results"]}
    assert by_sku["SKU-000"]["status"] == "ok"
    assert by_sku["UNKNOWN"]["error"] == "not_listed_on_ebay"
    sent = json.loads(marketplace.calls_to(BULK_UPDATE_PATH)[0].content)["requests"]
    assert [r["sku"] for r in sent] == ["SKU-000"]


@pytest.mark.asyncio
async def test_explicit_items_are_validated(db, core, make_account):
    account = make_account()

    with pytest.raises(InvalidRequest) as excinfo:
        await core.push.update_stock(db, account, [{"sku": "A", "quantity": "lots"}])
    assert excinfo.value.code == "invalid_quantity"

    with pytest.raises(InvalidRequest) as excinfo:
        await core.push.update_stock(db, account, [{"quantity": 1}])
    assert excinfo.value.code == "missing_sku"


@pytest.mark.asyncio
async def test_reconcile_skip_reasons(db, core, marketplace, make_account, make_product, link_sku):
    unmapped = make_account()
    tokenless = make_account(with_token=False)
    _listed(tokenless, make_product, link_sku, 1)

    result = await core.push.reconcile(db)

    reasons = {r["account_id"]: r["reason"] for r in result["results"]}
    assert reasons == {unmapped.id: "no_mapping", tokenless.id: "token_missing"}
    assert marketplace.calls == []


@pytest.mark.asyncio
async def test_skus_sharing_a_parent_push_the_parent_quantity(
    db, core, marketplace, make_account, make_product, link_sku, ebay_bucket
):
    account = make_account()
    parent = make_product("PARENT")
    child = make_product("CHILD", parent_id=parent.id)
    ebay_bucket(parent, 7)
    link_sku(account, "A", parent)
    link_sku(account, "B", child)
    marketplace.add("POST", BULK_UPDATE_PATH, _accept_all)

    await core.push.reconcile(db, account_id=account.id)

    sent = json.loads(marketplace.calls_to(BULK_UPDATE_PATH)[0].content)["requests"]
    assert sorted((r["sku"], r["shipToLocationAvailability"]["quantity"]) for r in sent) == [("A", 7), ("B", 7)]


@pytest.mark.asyncio
async def test_successful_push_clears_reauth_flag(db, core, marketplace, make_account, make_product, link_sku):
    account = make_account(needs_reauth=True)
    _listed(account, make_product, link_sku, 1)
    marketplace.add("POST", BULK_UPDATE_PATH, _accept_all)

    await core.push.update_stock(db, account, [{"sku": "SKU-000", "quantity": 2}])

    db.refresh(account)
    assert account.needs_reauth is False
