"""Scheduled marketplace sync.

Each cycle runs order ingestion for every active account, then stock
reconciliation, then drops consent handshakes that never completed. Started
from the FastAPI startup hook, or standalone::

    python -m marketsync.workers.sync_loop [--once]
"""

import argparse
import asyncio
from typing import Any, Dict, Optional

from marketsync.config import SyncConfig, settings
from marketsync.errors import ConfigurationError
from marketsync.models_sqlalchemy import SessionLocal
from marketsync.services.sync_core import build_sync_core, new_http_client
from marketsync.utils.logger import logger

WORKER_NAME = "marketplace_sync_loop"


async def run_sync_once(config: Optional[SyncConfig] = None, session_factory=SessionLocal) -> Dict[str, Any]:
    config = config or SyncConfig.from_settings(settings)
    db = session_factory()
    try:
        async with new_http_client(config) as http:
            core = build_sync_core(config, http)
            orders = await core.orders.run(db)
            reconcile = await core.push.reconcile(db)
            purged = core.accounts.purge_expired_pending(db)
        logger.info(
            "[%s] cycle done: accounts=%s pushed=%s failed=%s purged_pending=%s",
            WORKER_NAME, len(orders), reconcile.get("updated", 0), reconcile.get("failed", 0), purged,
        )
        return {"orders": orders, "reconcile": reconcile, "purged_pending": purged}
    finally:
        db.close()


async def run_sync_loop(interval_seconds: int = 600) -> None:
    logger.info("[%s] starting, interval=%ss", WORKER_NAME, interval_seconds)
    while True:
        try:
            await run_sync_once()
        except ConfigurationError as exc:
            logger.error("[%s] configuration error, cycle skipped: %s", WORKER_NAME, exc.message)
        except Exception as exc:
            logger.exception("[%s] cycle failed: %s", WORKER_NAME, exc)
        await asyncio.sleep(interval_seconds)


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the marketplace sync loop")
    parser.add_argument("--once", action="store_true", help="run a single cycle and exit")
    args = parser.parse_args()
    if args.once:
        asyncio.run(run_sync_once())
    else:
        asyncio.run(run_sync_loop(settings.SYNC_LOOP_INTERVAL_SECONDS))


if __name__ == "__main__":
    main()
