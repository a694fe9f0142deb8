import httpx
import pytest

from marketsync.models_sqlalchemy.models import ProcessedOrderLine
from marketsync.services.endpoints import BULK_UPDATE_PATH, ORDERS_PATH
from marketsync.workers import sync_loop


@pytest.mark.asyncio
async def test_one_cycle_ingests_then_reconciles(db, config, http, marketplace, make_account, make_product, link_sku, ebay_bucket, monkeypatch):
    account = make_account()
    product = make_product("P-1", stock=4)
    ebay_bucket(product, 4)
    link_sku(account, "ABC", product)
    marketplace.add("GET", ORDERS_PATH, httpx.Response(200, json={"orders": [
        {"orderId": "O-1", "lineItems": [{"lineItemId": "L1", "sku": "ABC", "quantity": 1}]},
    ]}))
    marketplace.add("POST", BULK_UPDATE_PATH, httpx.Response(200, json={"responses": [{"sku": "ABC", "statusCode": 200}]}))
    monkeypatch.setattr(sync_loop, "new_http_client", lambda cfg: http)
    # the cycle closes its session; keep the fixture's open for assertions
    monkeypatch.setattr(db, "close", lambda: None)

    result = await sync_loop.run_sync_once(config, session_factory=lambda: db)

    assert result["orders"][0]["processed"] == 1
    assert result["reconcile"]["updated"] == 1
    assert db.query(ProcessedOrderLine).count() == 1
    sent = marketplace.calls_to(BULK_UPDATE_PATH)[0].content
    assert b'"quantity":3' in sent.replace(b" ", b"")
