"""
Idempotency ledger for provider webhooks.

A row in ``processed_events`` is the only proof that an event's side effect
committed. The claim runs on the same transactional session as the handler,
so a rollback discards both together.
"""

from typing import Dict

from shared.database import Session
from shared.logging import get_logger


class IdempotencyLedger:
    """Processed-event ledger over a transactional session."""

    def __init__(self, session: Session):
        self.session = session
        self.logger = get_logger("entitlements.ledger")

    async def claim(self, event_id: str, event_type: str) -> bool:
        """Record an event as processed. False if it already was.

        A concurrent claim of the same id blocks on the primary key until the
        first transaction commits (False) or rolls back (True).
        """
        inserted = await self.session.fetchval("""
            INSERT INTO processed_events (event_id, event_type, processed_at)
            VALUES ($1, $2, NOW())
            ON CONFLICT (event_id) DO NOTHING
            RETURNING event_id
        """, event_id, event_type)

        if inserted is None:
            self.logger.info("Event already processed", event_id=event_id, event_type=event_type)
            return False
        return True

    async def event_counts(self, hours: int = 24) -> Dict[str, int]:
        """Processed events per type over a trailing window."""
        rows = await self.session.fetch("""
            SELECT event_type, COUNT(*) AS count
            FROM processed_events
            WHERE processed_at > NOW() - make_interval(hours => $1)
            GROUP BY event_type
            ORDER BY count DESC
        """, hours)
        return {row["event_type"]: row["count"] for row in rows}

    async def prune(self, retention_days: int = 90) -> int:
        """Delete ledger rows older than the retention period."""
        status = await self.session.execute("""
            DELETE FROM processed_events
            WHERE processed_at < NOW() - make_interval(days => $1)
        """, retention_days)
        deleted = int(status.split()[-1]) if status else 0
        self.logger.info("Pruned processed events", deleted=deleted, retention_days=retention_days)
        return deleted
