"""marketplace sync core tables

Revision ID: marketplace_sync_core_001
Revises:
Create Date: 2026-10-19

"""
from alembic import op
import sqlalchemy as sa

revision = 'marketplace_sync_core_001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'marketplace_accounts',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('provider', sa.String(20), nullable=False),
        sa.Column('environment', sa.String(20), nullable=False),
        sa.Column('provider_account_id', sa.String(100), nullable=True),
        sa.Column('display_name', sa.String(255), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('needs_reauth', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('client_id', sa.String(255), nullable=True),
        sa.Column('client_secret_enc', sa.Text(), nullable=True),
        sa.Column('client_secret_iv', sa.String(64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('idx_mp_accounts_provider_env', 'marketplace_accounts', ['provider', 'environment'])
    op.create_index('idx_mp_accounts_provider_account', 'marketplace_accounts', ['provider', 'provider_account_id'])

    op.create_table(
        'oauth_tokens',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('account_id', sa.String(36), sa.ForeignKey('marketplace_accounts.id', ondelete='CASCADE'), nullable=True),
        sa.Column('provider', sa.String(20), nullable=False),
        sa.Column('environment', sa.String(20), nullable=False),
        sa.Column('access_token', sa.Text(), nullable=False),
        sa.Column('refresh_token_enc', sa.Text(), nullable=True),
        sa.Column('refresh_token_iv', sa.String(64), nullable=True),
        sa.Column('scope', sa.Text(), nullable=True),
        sa.Column('token_type', sa.String(50), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('state_nonce', sa.String(64), nullable=True, unique=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('refresh_error', sa.Text(), nullable=True),
        sa.Column('last_refreshed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_oauth_tokens_account_id', 'oauth_tokens', ['account_id'])
    op.create_index('idx_oauth_tokens_account_updated', 'oauth_tokens', ['account_id', 'updated_at'])

    op.create_table(
        'provider_app_credentials',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('provider', sa.String(20), nullable=False),
        sa.Column('environment', sa.String(20), nullable=False),
        sa.Column('client_id', sa.String(255), nullable=False),
        sa.Column('client_secret_enc', sa.Text(), nullable=False),
        sa.Column('client_secret_iv', sa.String(64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint('provider', 'environment', name='uq_provider_app_credentials_env'),
    )

    op.create_table(
        'shared_stocks',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('qty', sa.Integer(), nullable=False, server_default='0'),
    )

    op.create_table(
        'products',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('sku', sa.String(100), nullable=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('parent_id', sa.String(36), sa.ForeignKey('products.id'), nullable=True),
        sa.Column('mirror_of', sa.String(36), sa.ForeignKey('products.id'), nullable=True),
        sa.Column('shared_stock_id', sa.String(36), sa.ForeignKey('shared_stocks.id'), nullable=True),
        sa.Column('mirror_stock', sa.Integer(), nullable=True),
        sa.Column('stock_total', sa.Integer(), nullable=True),
        sa.Column('stock', sa.Integer(), nullable=True),
        sa.Column('retail_price', sa.Numeric(12, 2), nullable=True),
        sa.Column('ean', sa.String(64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_products_sku', 'products', ['sku'])
    op.create_index('ix_products_parent_id', 'products', ['parent_id'])

    op.create_table(
        'stocks',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('name', sa.String(100), nullable=False, unique=True),
    )

    op.create_table(
        'stock_levels',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('stock_id', sa.String(36), sa.ForeignKey('stocks.id', ondelete='CASCADE'), nullable=False),
        sa.Column('product_id', sa.String(36), sa.ForeignKey('products.id', ondelete='CASCADE'), nullable=False),
        sa.Column('qty', sa.Integer(), nullable=False, server_default='0'),
        sa.UniqueConstraint('stock_id', 'product_id', name='uq_stock_levels_stock_product'),
    )

    op.create_table(
        'marketplace_sku_mappings',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('provider', sa.String(20), nullable=False),
        sa.Column('account_id', sa.String(36), sa.ForeignKey('marketplace_accounts.id', ondelete='CASCADE'), nullable=False),
        sa.Column('remote_sku', sa.String(100), nullable=False),
        sa.Column('remote_id', sa.String(100), nullable=True),
        sa.Column('product_id', sa.String(36), sa.ForeignKey('products.id'), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='linked'),
        sa.Column('source', sa.String(20), nullable=False, server_default='manual'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint('provider', 'account_id', 'remote_sku', name='uq_sku_mapping_account_sku'),
    )
    op.create_index('idx_sku_mapping_product', 'marketplace_sku_mappings', ['product_id'])

    op.create_table(
        'marketplace_processed_lines',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('provider', sa.String(20), nullable=False),
        sa.Column('account_id', sa.String(36), nullable=False),
        sa.Column('remote_order_id', sa.String(100), nullable=False),
        sa.Column('remote_line_id', sa.String(100), nullable=False),
        sa.Column('remote_sku', sa.String(100), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('product_id', sa.String(36), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint(
            'provider', 'account_id', 'remote_order_id', 'remote_line_id',
            name='uq_processed_line_key',
        ),
    )

    op.create_table(
        'marketplace_listings',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('provider', sa.String(20), nullable=False),
        sa.Column('account_id', sa.String(36), nullable=False),
        sa.Column('remote_id', sa.String(100), nullable=False),
        sa.Column('remote_sku', sa.String(100), nullable=True),
        sa.Column('title', sa.Text(), nullable=True),
        sa.Column('price_amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('price_currency', sa.String(3), nullable=True),
        sa.Column('status_sync', sa.String(20), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint('provider', 'account_id', 'remote_id', name='uq_listing_remote'),
    )

    op.create_table(
        'sync_logs',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('provider', sa.String(20), nullable=False),
        sa.Column('account_id', sa.String(36), nullable=True),
        sa.Column('operation', sa.String(64), nullable=False),
        sa.Column('outcome', sa.String(10), nullable=False),
        sa.Column('http_status', sa.Integer(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_sync_logs_account_id', 'sync_logs', ['account_id'])
    op.create_index('idx_sync_logs_account_operation', 'sync_logs', ['account_id', 'operation', 'created_at'])


def downgrade():
    for table in (
        'sync_logs',
        'marketplace_listings',
        'marketplace_processed_lines',
        'marketplace_sku_mappings',
        'stock_levels',
        'stocks',
        'products',
        'shared_stocks',
        'provider_app_credentials',
        'oauth_tokens',
        'marketplace_accounts',
    ):
        op.drop_table(table)
