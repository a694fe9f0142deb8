import base64
import uuid
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from marketsync.config import SyncConfig
from marketsync.models_sqlalchemy import Base
from marketsync.models_sqlalchemy.models import (
    MarketplaceAccount,
    OAuthToken,
    Product,
    SkuMapping,
    Stock,
    StockLevel,
)
from marketsync.services.endpoints import REQUIRED_SCOPES
from marketsync.services.sync_core import build_sync_core

TEST_KEY = base64.b64encode(b"0123456789abcdef0123456789abcdef").decode()
TOKEN_PATH = "/identity/v1/oauth2/token"


class FakeMarketplace:
    """Answers httpx requests from per-(method, path) queues.

    A queue entry is an ``httpx.Response`` or a callable taking the request.
    The last entry of a queue keeps answering once the others are used up.
    """

    def __init__(self):
        self.routes = {}
        self.calls = []

    def add(self, method, path, *responses):
        self.routes.setdefault((method, path), []).extend(responses)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        queue = self.routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404, json={"errors": [{"errorId": 0, "message": "no route"}]})
        entry = queue.pop(0) if len(queue) > 1 else queue[0]
        return entry(request) if callable(entry) else entry

    def calls_to(self, path):
        return [c for c in self.calls if c.url.path == path]


@pytest.fixture
def db():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    session = sessionmaker(bind=engine, autocommit=False, autoflush=False)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def config():
    return SyncConfig(
        encryption_key=TEST_KEY,
        app_id="app-id",
        cert_id="cert-id",
        runame_production="RuName-prod",
        runame_sandbox="RuName-sbx",
        frontend_url="https://shop.example",
        retry_delays_ms=(0, 0, 0),
        batch_delay_ms=0,
    )


@pytest.fixture
def marketplace():
    return FakeMarketplace()


@pytest.fixture
def http(marketplace):
    return httpx.AsyncClient(transport=httpx.MockTransport(marketplace.handler))


@pytest.fixture
def core(config, http):
    return build_sync_core(config, http)


@pytest.fixture
def make_account(db, core):
    def _make(
        *,
        access_token="tok-1",
        refresh_token="v^1.1#refresh",
        expires_in=3600,
        scope=None,
        with_token=True,
        needs_reauth=False,
        provider_account_id=None,
    ):
        account = MarketplaceAccount(
            id=str(uuid.uuid4()),
            provider="ebay",
            environment="production",
            provider_account_id=provider_account_id or f"seller-{uuid.uuid4().hex[:6]}",
            display_name="eBay Production",
            is_active=True,
            needs_reauth=needs_reauth,
        )
        db.add(account)
        if with_token:
            sealed = core.vault.encrypt(refresh_token)
            db.add(OAuthToken(
                id=str(uuid.uuid4()),
                account_id=account.id,
                provider="ebay",
                environment="production",
                access_token=access_token,
                refresh_token_enc=sealed.ciphertext,
                refresh_token_iv=sealed.iv,
                scope=scope or " ".join(REQUIRED_SCOPES),
                token_type="User Access Token",
                expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
                status="active",
            ))
        db.commit()
        return account

    return _make


@pytest.fixture
def make_product(db):
    def _make(sku, *, name=None, parent_id=None, stock=None, stock_total=None, mirror_stock=None,
              shared_stock_id=None, retail_price=None, mirror_of=None):
        product = Product(
            id=str(uuid.uuid4()),
            sku=sku,
            name=name or sku,
            parent_id=parent_id,
            mirror_of=mirror_of,
            stock=stock,
            stock_total=stock_total,
            mirror_stock=mirror_stock,
            shared_stock_id=shared_stock_id,
            retail_price=retail_price,
        )
        db.add(product)
        db.commit()
        return product

    return _make


@pytest.fixture
def link_sku(db):
    def _link(account, remote_sku, product):
        db.add(SkuMapping(
            id=str(uuid.uuid4()),
            provider="ebay",
            account_id=account.id,
            remote_sku=remote_sku,
            product_id=product.id,
            status="linked",
        ))
        db.commit()

    return _link


@pytest.fixture
def ebay_bucket(db):
    stock = Stock(id=str(uuid.uuid4()), name="EBAY")
    db.add(stock)
    db.commit()

    def _set(product, qty):
        db.add(StockLevel(id=str(uuid.uuid4()), stock_id=stock.id, product_id=product.id, qty=qty))
        db.commit()

    _set.stock = stock
    return _set


def token_ok(access_token="tok-2", expires_in=7200):
    return httpx.Response(200, json={"access_token": access_token, "expires_in": expires_in, "token_type": "User Access Token"})


def bearer(request: httpx.Request) -> str:
    return request.headers.get("Authorization", "").replace("Bearer ", "")
