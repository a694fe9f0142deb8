from __future__ import annotations

from dataclasses import dataclass

import httpx

from marketsync.config import SyncConfig
from marketsync.services.account_service import MarketplaceAccountService
from marketsync.services.inventory_push import InventoryPushEngine
from marketsync.services.listings_fetch import ListingsFetchEngine
from marketsync.services.mapping_service import SkuMappingService
from marketsync.services.marketplace_client import MarketplaceClient
from marketsync.services.oauth_flow import OAuthFlowService
from marketsync.services.order_ingestion import OrderIngestionEngine
from marketsync.services.sku_resolver import SkuMappingResolver
from marketsync.services.stock_ledger import StockLedger
from marketsync.services.sync_log_service import SyncLogService
from marketsync.services.token_manager import TokenLifecycleManager
from marketsync.utils.crypto import CredentialVault


@dataclass
class SyncCore:
    config: SyncConfig
    vault: CredentialVault
    accounts: MarketplaceAccountService
    tokens: TokenLifecycleManager
    client: MarketplaceClient
    mappings: SkuMappingService
    stock: StockLedger
    sync_logs: SyncLogService
    orders: OrderIngestionEngine
    push: InventoryPushEngine
    listings: ListingsFetchEngine
    oauth: OAuthFlowService


def build_sync_core(config: SyncConfig, http: httpx.AsyncClient) -> SyncCore:
    """Wire every component from one config and one HTTP client."""
    vault = CredentialVault.from_config(config)
    accounts = MarketplaceAccountService(vault, fallback_credentials=(config.app_id, config.cert_id))
    tokens = TokenLifecycleManager(config, accounts, http)
    client = MarketplaceClient(config, tokens, http)
    sync_logs = SyncLogService()
    mappings = SkuMappingService(SkuMappingResolver(), sync_logs)
    stock = StockLedger(config)
    return SyncCore(
        config=config,
        vault=vault,
        accounts=accounts,
        tokens=tokens,
        client=client,
        mappings=mappings,
        stock=stock,
        sync_logs=sync_logs,
        orders=OrderIngestionEngine(config, client, accounts, mappings, stock),
        push=InventoryPushEngine(config, client, accounts, mappings, stock, sync_logs),
        listings=ListingsFetchEngine(config, client, mappings, stock),
        oauth=OAuthFlowService(config, accounts, tokens),
    )


def new_http_client(config: SyncConfig) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=httpx.Timeout(config.http_timeout_seconds, connect=5.0))
