"""
Periodic maintenance: ledger pruning and usage reconciliation.

Run from ``scripts/run_maintenance.py`` on a schedule, or on demand through
the internal maintenance routes.
"""

from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import Any, Callable, Dict

from shared.errors import StoreUnavailable
from shared.logging import get_logger
from ..cache.redis_cache import EntitlementCache
from ..models import Entitlement, utcnow


logger = get_logger("entitlements.jobs.maintenance")


@dataclass
class ReconciliationReport:
    """Outcome of one reconciliation run."""
    scanned: int = 0
    folded: int = 0
    units_folded: int = 0
    reset: int = 0
    aborted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


async def prune_processed_events(store, retention_days: int = 90) -> int:
    """Delete ledger rows older than the retention period."""
    async with store.session() as session:
        await session.begin()
        deleted = await session.ledger.prune(retention_days)
        await session.commit()
    return deleted


async def webhook_stats(store, hours: int = 24) -> Dict[str, int]:
    """Processed webhook counts by type over a trailing window."""
    async with store.session() as session:
        return await session.ledger.event_counts(hours)


def next_reset_boundary(reset_at: datetime, now: datetime, period: timedelta) -> datetime:
    """First boundary after ``now`` on the entitlement's reset schedule."""
    boundary = reset_at
    while boundary <= now:
        boundary += period
    return boundary


async def reconcile_usage(
    store,
    cache: EntitlementCache,
    usage_reset_period_days: int = 30,
    clock: Callable[[], datetime] = utcnow
) -> ReconciliationReport:
    """Fold live usage counters into the store and close out elapsed periods.

    Each counter is drained atomically before its delta is written. If the
    write fails the delta is put back so the next run picks it up.
    """
    period = timedelta(days=usage_reset_period_days)
    report = ReconciliationReport()
    now = clock()

    async with store.session() as session:
        entitlements = await session.entitlements.list_for_reconciliation()

    for entitlement in entitlements:
        report.scanned += 1

        delta = await cache.take_usage(entitlement.user_id, entitlement.product_id)
        if delta is None:
            logger.error("Cache unavailable, aborting usage reconciliation", scanned=report.scanned)
            report.aborted = True
            break

        period_closed = entitlement.usage_reset_at is not None and entitlement.usage_reset_at <= now
        if not delta and not period_closed:
            continue

        next_reset = next_reset_boundary(entitlement.usage_reset_at, now, period) if period_closed else None

        try:
            await _apply(store, entitlement, delta, next_reset)
        except StoreUnavailable:
            if delta:
                await cache.increment_usage(
                    entitlement.user_id, entitlement.product_id, delta,
                    max(1, int(period.total_seconds()))
                )
            raise

        if period_closed:
            report.reset += 1
        else:
            report.folded += 1
            report.units_folded += delta

        await cache.invalidate_entitlement(entitlement.user_id, entitlement.product_id)

    logger.info("Usage reconciliation finished", **report.to_dict())
    return report


async def _apply(store, entitlement: Entitlement, delta: int, next_reset):
    async with store.session() as session:
        await session.begin()
        await session.entitlements.roll_usage(entitlement.entitlement_id, delta, next_reset)
        await session.commit()
