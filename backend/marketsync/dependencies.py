from typing import AsyncIterator

from marketsync.config import SyncConfig, settings
from marketsync.services.sync_core import SyncCore, build_sync_core, new_http_client


def get_sync_config() -> SyncConfig:
    return SyncConfig.from_settings(settings)


async def get_sync_core() -> AsyncIterator[SyncCore]:
    config = get_sync_config()
    async with new_http_client(config) as http:
        yield build_sync_core(config, http)
