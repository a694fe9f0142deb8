import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)

from . import Base

PROVIDER_EBAY = "ebay"
PENDING_ACCESS_TOKEN = "pending"


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MarketplaceAccount(Base):
    """One connected seller identity for a provider/environment."""

    __tablename__ = "marketplace_accounts"

    id = Column(String(36), primary_key=True, default=_uuid)
    provider = Column(String(20), nullable=False, default=PROVIDER_EBAY)
    environment = Column(String(20), nullable=False, default="production")
    provider_account_id = Column(String(100), nullable=True)
    display_name = Column(String(255), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    needs_reauth = Column(Boolean, nullable=False, default=False)
    last_error = Column(Text, nullable=True)

    # Optional per-account app credentials; the secret is vault-encrypted.
    client_id = Column(String(255), nullable=True)
    client_secret_enc = Column(Text, nullable=True)
    client_secret_iv = Column(String(64), nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("idx_mp_accounts_provider_env", "provider", "environment"),
        Index("idx_mp_accounts_provider_account", "provider", "provider_account_id"),
    )


class OAuthToken(Base):
    """Access/refresh token pair for an account.

    ``access_token == "pending"`` marks a consent handshake that has not
    completed yet; such rows are never usable and expire quickly.
    """

    __tablename__ = "oauth_tokens"

    id = Column(String(36), primary_key=True, default=_uuid)
    account_id = Column(String(36), ForeignKey("marketplace_accounts.id", ondelete="CASCADE"), nullable=True, index=True)
    provider = Column(String(20), nullable=False, default=PROVIDER_EBAY)
    environment = Column(String(20), nullable=False, default="production")
    access_token = Column(Text, nullable=False)
    refresh_token_enc = Column(Text, nullable=True)
    refresh_token_iv = Column(String(64), nullable=True)
    scope = Column(Text, nullable=True)
    token_type = Column(String(50), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    state_nonce = Column(String(64), nullable=True, unique=True)
    status = Column(String(20), nullable=False, default="active")
    refresh_error = Column(Text, nullable=True)
    last_refreshed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("idx_oauth_tokens_account_updated", "account_id", "updated_at"),
    )

    @property
    def is_pending(self) -> bool:
        return self.access_token == PENDING_ACCESS_TOKEN


class ProviderAppCredential(Base):
    """Provider-wide app credentials, used when an account carries none."""

    __tablename__ = "provider_app_credentials"

    id = Column(String(36), primary_key=True, default=_uuid)
    provider = Column(String(20), nullable=False, default=PROVIDER_EBAY)
    environment = Column(String(20), nullable=False)
    client_id = Column(String(255), nullable=False)
    client_secret_enc = Column(Text, nullable=False)
    client_secret_iv = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint("provider", "environment", name="uq_provider_app_credentials_env"),
    )


class SharedStock(Base):
    __tablename__ = "shared_stocks"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=True)
    qty = Column(Integer, nullable=False, default=0)


class Product(Base):
    __tablename__ = "products"

    id = Column(String(36), primary_key=True, default=_uuid)
    sku = Column(String(100), nullable=True, index=True)
    name = Column(String(255), nullable=False)
    parent_id = Column(String(36), ForeignKey("products.id"), nullable=True, index=True)
    mirror_of = Column(String(36), ForeignKey("products.id"), nullable=True)
    shared_stock_id = Column(String(36), ForeignKey("shared_stocks.id"), nullable=True)

    # Quantity fields, consulted in order by the stock ledger.
    mirror_stock = Column(Integer, nullable=True)
    stock_total = Column(Integer, nullable=True)
    stock = Column(Integer, nullable=True)

    retail_price = Column(Numeric(12, 2), nullable=True)
    ean = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class Stock(Base):
    """Named stock bucket (e.g. the marketplace-labeled "EBAY" bucket)."""

    __tablename__ = "stocks"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(100), nullable=False, unique=True)


class StockLevel(Base):
    __tablename__ = "stock_levels"

    id = Column(String(36), primary_key=True, default=_uuid)
    stock_id = Column(String(36), ForeignKey("stocks.id", ondelete="CASCADE"), nullable=False)
    product_id = Column(String(36), ForeignKey("products.id", ondelete="CASCADE"), nullable=False)
    qty = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("stock_id", "product_id", name="uq_stock_levels_stock_product"),
    )


class SkuMapping(Base):
    """Remote SKU -> local product, scoped to provider and account."""

    __tablename__ = "marketplace_sku_mappings"

    id = Column(String(36), primary_key=True, default=_uuid)
    provider = Column(String(20), nullable=False, default=PROVIDER_EBAY)
    account_id = Column(String(36), ForeignKey("marketplace_accounts.id", ondelete="CASCADE"), nullable=False)
    remote_sku = Column(String(100), nullable=False)
    remote_id = Column(String(100), nullable=True)
    product_id = Column(String(36), ForeignKey("products.id"), nullable=True)
    status = Column(String(20), nullable=False, default="linked")  # linked | ignored
    source = Column(String(20), nullable=False, default="manual")  # manual | auto | created
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("provider", "account_id", "remote_sku", name="uq_sku_mapping_account_sku"),
        Index("idx_sku_mapping_product", "product_id"),
    )


class ProcessedOrderLine(Base):
    """Idempotency ledger for ingested order lines."""

    __tablename__ = "marketplace_processed_lines"

    id = Column(String(36), primary_key=True, default=_uuid)
    provider = Column(String(20), nullable=False, default=PROVIDER_EBAY)
    account_id = Column(String(36), nullable=False)
    remote_order_id = Column(String(100), nullable=False)
    remote_line_id = Column(String(100), nullable=False)
    remote_sku = Column(String(100), nullable=True)
    quantity = Column(Integer, nullable=False, default=0)
    product_id = Column(String(36), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint(
            "provider", "account_id", "remote_order_id", "remote_line_id",
            name="uq_processed_line_key",
        ),
    )


class MarketplaceListing(Base):
    """Cache of marketplace-sourced listing fields (never UI-derived ones)."""

    __tablename__ = "marketplace_listings"

    id = Column(String(36), primary_key=True, default=_uuid)
    provider = Column(String(20), nullable=False, default=PROVIDER_EBAY)
    account_id = Column(String(36), nullable=False)
    remote_id = Column(String(100), nullable=False)
    remote_sku = Column(String(100), nullable=True)
    title = Column(Text, nullable=True)
    price_amount = Column(Numeric(12, 2), nullable=True)
    price_currency = Column(String(3), nullable=True)
    status_sync = Column(String(20), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("provider", "account_id", "remote_id", name="uq_listing_remote"),
    )


class SyncLog(Base):
    """Append-only audit row for one batch operation."""

    __tablename__ = "sync_logs"

    id = Column(String(36), primary_key=True, default=_uuid)
    provider = Column(String(20), nullable=False, default=PROVIDER_EBAY)
    account_id = Column(String(36), nullable=True, index=True)
    operation = Column(String(64), nullable=False)
    outcome = Column(String(10), nullable=False)  # ok | retry | fail
    http_status = Column(Integer, nullable=True)
    meta = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("idx_sync_logs_account_operation", "account_id", "operation", "created_at"),
    )
