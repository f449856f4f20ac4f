#!/usr/bin/env python3
"""
Billing service bootstrap
Loads configuration, prepares the database, wires services once and runs the
aiohttp server and the optional pricing sync in a single event loop
"""

import asyncio
import logging
import signal
import sys
from typing import Optional

# Configure logging
logging.basicConfig(
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    level=logging.INFO
)

# Prevent httpx from logging request URLs (registrar credentials travel in the query string)
logging.getLogger("httpx").setLevel(logging.WARNING)

# Suppress aiohttp access logs for successful requests but keep errors
logging.getLogger("aiohttp.access").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)

from config import BillingConfig
from database import close_connection_pool, get_connection_pool, init_database
from services.container import BillingServices, build_postgres_services
from services.errors import BillingError
from services.quote_engine import DEFAULT_SEARCH_TLDS
from webhook_handler import start_webhook_server, stop_webhook_server

# Global shutdown flag
shutdown_requested = False

def signal_handler(signum, frame):
    """Handle shutdown signals gracefully"""
    global shutdown_requested
    shutdown_requested = True
    logger.info(f"🛑 Shutdown signal received ({signum}), initiating graceful shutdown...")

async def run_pricing_sync(services: BillingServices) -> None:
    """Refresh rates and TLD prices on a fixed interval until shutdown"""
    config = services.config
    interval = config.pricing_sync_interval
    logger.info(f"✅ Pricing sync scheduled every {interval}s")

    while not shutdown_requested:
        try:
            tlds = await services.repositories.pricing.list_priced_tlds()
            summary = await services.pricing_sync.run_once(
                [('USD', config.settlement_currency)],
                sorted(set(tlds) | set(DEFAULT_SEARCH_TLDS)),
            )
            logger.info(f"🔄 Pricing sync complete: {len(summary['tlds'])} TLD(s) refreshed")
        except Exception as e:
            # The next run retries; quoting keeps using the stored rows
            logger.error(f"❌ Pricing sync failed: {e}")
        await asyncio.sleep(interval)

async def main_service_loop() -> bool:
    runner = None
    services: Optional[BillingServices] = None
    sync_task: Optional[asyncio.Task] = None

    try:
        config = BillingConfig()

        logger.info("🔄 Initializing database...")
        get_connection_pool(config.database_url)
        await init_database()

        services = build_postgres_services(config)
        runner = await start_webhook_server(services, config.port)

        if config.pricing_sync_interval > 0:
            sync_task = asyncio.create_task(run_pricing_sync(services))

        logger.info("✅ Billing service running")
        while not shutdown_requested:
            await asyncio.sleep(1)

        logger.info("🛑 Shutdown requested - cleaning up...")
        return True

    except BillingError as e:
        logger.error(f"❌ Startup failed: {e}")
        return False
    finally:
        if sync_task is not None:
            sync_task.cancel()
            await asyncio.gather(sync_task, return_exceptions=True)
        if runner is not None:
            await stop_webhook_server(runner)
        if services is not None:
            await services.close()
        close_connection_pool()
        logger.info("✅ Cleanup completed")

def main():
    """Main entry point"""
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    logger.info("🚀 Starting billing service...")

    result = asyncio.run(main_service_loop())
    logger.info("✅ Service stopped normally" if result else "⚠️ Service stopped with error")
    if not result:
        sys.exit(1)

if __name__ == '__main__':
    main()
