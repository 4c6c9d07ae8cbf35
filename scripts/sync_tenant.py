#!/usr/bin/env python3
"""CLI script to run a full sync for one tenant, or for every tenant."""

import argparse
import asyncio
import sys
from dataclasses import asdict
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import structlog

from commerce_sync.infrastructure.database.connection import get_db_session
from commerce_sync.infrastructure.redis import CacheService, close_redis, get_redis_client
from commerce_sync.log_config import configure_logging
from commerce_sync.services.locking import LockManager
from commerce_sync.services.sync import SyncOrchestrator, SyncStatus

logger = structlog.get_logger()


async def main(tenant_id: str | None) -> int:
    """Run the sync and return a process exit code."""
    redis_client = await get_redis_client()
    try:
        async with get_db_session() as session:
            orchestrator = SyncOrchestrator(
                session, LockManager(redis_client), CacheService(redis_client)
            )
            if tenant_id:
                report = await orchestrator.sync_tenant(tenant_id)
            else:
                report = await orchestrator.sync_all_tenants()
    finally:
        await close_redis()

    for result in report.results:
        logger.info("Tenant result", **asdict(result))
    logger.info("Sync finished", status=report.status.value, error=report.error)
    return 0 if report.status == SyncStatus.OK else 1


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run a full storefront sync")
    parser.add_argument("tenant_id", nargs="?", help="Tenant to sync; all tenants when omitted")
    args = parser.parse_args()

    configure_logging()
    sys.exit(asyncio.run(main(args.tenant_id)))
