#!/usr/bin/env python3
"""
Run entitlement maintenance jobs outside the service.

Intended for a scheduler (cron, Kubernetes CronJob): prunes the processed
webhook ledger and folds live usage counters into PostgreSQL.
"""

import argparse
import asyncio
import json
import sys

from service_entitlements.app.cache.redis_cache import EntitlementCache
from service_entitlements.app.jobs.maintenance import prune_processed_events, reconcile_usage
from service_entitlements.app.persistence.postgres import PostgresStore
from shared.cache_client import CacheClient
from shared.config import get_config
from shared.database import Database
from shared.logging import configure_logging


async def run(job: str, retention_days: int) -> dict:
    """Open resources, run the selected jobs and return a summary."""
    config = get_config("entitlements", 8011)
    configure_logging("entitlements", config.log_level)

    database = Database(
        config.postgres_dsn,
        min_size=1,
        max_size=2,
        command_timeout=config.db_command_timeout
    )
    cache_client = CacheClient(config.redis_url, socket_timeout=config.redis_socket_timeout)
    store = PostgresStore(database)
    cache = EntitlementCache(cache_client, default_ttl=config.entitlement_cache_ttl)

    summary = {}
    await database.open()
    await cache_client.open()
    try:
        if job in ("prune", "all"):
            summary["pruned"] = await prune_processed_events(store, retention_days)
        if job in ("reconcile", "all"):
            report = await reconcile_usage(store, cache, config.usage_reset_period_days)
            summary["reconciliation"] = report.to_dict()
    finally:
        await cache_client.close()
        await database.close()

    return summary


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run entitlement maintenance jobs.")
    parser.add_argument("job", choices=["prune", "reconcile", "all"], help="Job to run")
    parser.add_argument("--retention-days", type=int, default=None, help="Ledger retention in days")
    return parser.parse_args()


def main() -> int:
    args = _parse_args()
    retention_days = args.retention_days or get_config("entitlements", 8011).ledger_retention_days
    try:
        summary = asyncio.run(run(args.job, retention_days))
    except KeyboardInterrupt:
        return 130
    except Exception as exc:  # pragma: no cover - CLI surface
        print(f"[maintenance] failed: {exc}", file=sys.stderr)
        return 1

    print(json.dumps(summary, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
