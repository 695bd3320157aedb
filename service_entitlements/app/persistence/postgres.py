"""
PostgreSQL persistence layer for Entitlements Service.
"""

import json
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional

import asyncpg

from shared.database import Database, Session
from shared.errors import StoreResult
from shared.logging import get_logger
from ..ledger.idempotency import IdempotencyLedger
from ..models import Entitlement, EntitlementStatus, Plan, FeatureValue
from .schema import SCHEMA_STATEMENTS


ENTITLEMENT_COLUMNS = """
    entitlement_id::text AS entitlement_id, user_id, product_id, plan_id, status,
    feature_flags, usage_limit, usage_count, soft_limit, usage_reset_at,
    valid_until, stripe_customer_id, stripe_subscription_id, created_at, updated_at
"""

PLAN_COLUMNS = """
    plan_id, product_id, name, status, usage_limit, soft_limit_percent,
    feature_flags, stripe_price_id
"""


def _load_json(value: Any) -> Dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, str):
        return json.loads(value)
    return dict(value)


def _row_to_plan(row: asyncpg.Record) -> Plan:
    return Plan(
        plan_id=row["plan_id"],
        product_id=row["product_id"],
        name=row["name"],
        status=row["status"],
        usage_limit=row["usage_limit"],
        soft_limit_percent=float(row["soft_limit_percent"]) if row["soft_limit_percent"] is not None else None,
        feature_flags=_load_json(row["feature_flags"]),
        stripe_price_id=row["stripe_price_id"]
    )


def _row_to_entitlement(row: asyncpg.Record) -> Entitlement:
    return Entitlement(
        entitlement_id=row["entitlement_id"],
        user_id=row["user_id"],
        product_id=row["product_id"],
        plan_id=row["plan_id"],
        status=EntitlementStatus(row["status"]),
        feature_flags=_load_json(row["feature_flags"]),
        usage_limit=row["usage_limit"],
        usage_count=row["usage_count"],
        soft_limit=row["soft_limit"],
        usage_reset_at=row["usage_reset_at"],
        valid_until=row["valid_until"],
        stripe_customer_id=row["stripe_customer_id"],
        stripe_subscription_id=row["stripe_subscription_id"],
        created_at=row["created_at"],
        updated_at=row["updated_at"]
    )


class EntitlementRepository:
    """Plan lookups and entitlement writes over a session."""

    def __init__(self, session: Session):
        self.session = session
        self.logger = get_logger("entitlements.persistence.postgres")

    async def find_active_plan(self, plan_id: str, product_id: str) -> StoreResult[Plan]:
        """Resolve an active plan belonging to a product."""
        row = await self.session.fetchrow(f"""
            SELECT {PLAN_COLUMNS} FROM plans
            WHERE plan_id = $1 AND product_id = $2 AND status = 'active'
        """, plan_id, product_id)
        if row is None:
            return StoreResult.not_found(f"Plan {plan_id} not found or not active for product {product_id}")
        return StoreResult.success(_row_to_plan(row))

    async def find_plan_by_price(self, price_id: str) -> StoreResult[Plan]:
        """Resolve a plan from a provider price id."""
        row = await self.session.fetchrow(f"""
            SELECT {PLAN_COLUMNS} FROM plans WHERE stripe_price_id = $1
        """, price_id)
        if row is None:
            return StoreResult.not_found(f"No plan for price {price_id}")
        return StoreResult.success(_row_to_plan(row))

    async def get(self, user_id: str, product_id: str) -> Optional[Entitlement]:
        """Load one entitlement."""
        row = await self.session.fetchrow(f"""
            SELECT {ENTITLEMENT_COLUMNS} FROM entitlements
            WHERE user_id = $1 AND product_id = $2
        """, user_id, product_id)
        return _row_to_entitlement(row) if row else None

    async def find_by_subscription(self, subscription_id: str) -> List[Entitlement]:
        """Lock and load every entitlement linked to a provider subscription."""
        rows = await self.session.fetch(f"""
            SELECT {ENTITLEMENT_COLUMNS} FROM entitlements
            WHERE stripe_subscription_id = $1
            ORDER BY created_at
            FOR UPDATE
        """, subscription_id)
        return [_row_to_entitlement(row) for row in rows]

    async def provision(
        self,
        user_id: str,
        product_id: str,
        plan_id: str,
        status: EntitlementStatus,
        feature_flags: Dict[str, FeatureValue],
        usage_limit: int,
        soft_limit: int,
        usage_reset_at: datetime,
        valid_until: Optional[datetime] = None,
        stripe_customer_id: Optional[str] = None,
        stripe_subscription_id: Optional[str] = None
    ) -> Entitlement:
        """Create or replace the entitlement for (user, product).

        The row identity, usage count and reset boundary survive a re-grant.
        """
        row = await self.session.fetchrow(f"""
            INSERT INTO entitlements (
                user_id, product_id, plan_id, status, feature_flags, usage_limit,
                usage_count, soft_limit, usage_reset_at, valid_until,
                stripe_customer_id, stripe_subscription_id, created_at, updated_at
            ) VALUES ($1, $2, $3, $4, $5::jsonb, $6, 0, $7, $8, $9, $10, $11, NOW(), NOW())
            ON CONFLICT (user_id, product_id) DO UPDATE SET
                plan_id = EXCLUDED.plan_id,
                status = EXCLUDED.status,
                feature_flags = EXCLUDED.feature_flags,
                usage_limit = EXCLUDED.usage_limit,
                soft_limit = EXCLUDED.soft_limit,
                usage_reset_at = COALESCE(entitlements.usage_reset_at, EXCLUDED.usage_reset_at),
                valid_until = EXCLUDED.valid_until,
                stripe_customer_id = COALESCE(EXCLUDED.stripe_customer_id, entitlements.stripe_customer_id),
                stripe_subscription_id = COALESCE(EXCLUDED.stripe_subscription_id, entitlements.stripe_subscription_id),
                updated_at = NOW()
            RETURNING {ENTITLEMENT_COLUMNS}
        """,
            user_id, product_id, plan_id, status.value, json.dumps(feature_flags),
            usage_limit, soft_limit, usage_reset_at, valid_until,
            stripe_customer_id, stripe_subscription_id
        )
        entitlement = _row_to_entitlement(row)
        self.logger.info(
            "Entitlement provisioned",
            entitlement_id=entitlement.entitlement_id,
            user_id=user_id,
            product_id=product_id,
            plan_id=plan_id,
            status=status.value
        )
        return entitlement

    async def save(self, entitlement: Entitlement) -> Entitlement:
        """Persist handler changes to an existing entitlement."""
        row = await self.session.fetchrow(f"""
            UPDATE entitlements SET
                plan_id = $2,
                status = $3,
                feature_flags = $4::jsonb,
                usage_limit = $5,
                soft_limit = $6,
                valid_until = $7,
                updated_at = NOW()
            WHERE entitlement_id = $1::uuid
            RETURNING {ENTITLEMENT_COLUMNS}
        """,
            entitlement.entitlement_id, entitlement.plan_id, entitlement.status.value,
            json.dumps(entitlement.feature_flags), entitlement.usage_limit,
            entitlement.soft_limit, entitlement.valid_until
        )
        return _row_to_entitlement(row)

    async def revoke(self, user_id: str, product_id: str) -> StoreResult[Entitlement]:
        """Cancel a live entitlement."""
        row = await self.session.fetchrow(f"""
            UPDATE entitlements SET status = 'cancelled', updated_at = NOW()
            WHERE user_id = $1 AND product_id = $2 AND status IN ('active', 'pending')
            RETURNING {ENTITLEMENT_COLUMNS}
        """, user_id, product_id)
        if row is None:
            return StoreResult.not_found(f"No active entitlement for {user_id}/{product_id}")
        return StoreResult.success(_row_to_entitlement(row))

    async def add_usage(self, user_id: str, product_id: str, amount: int) -> Optional[Entitlement]:
        """Increment the durable usage count."""
        row = await self.session.fetchrow(f"""
            UPDATE entitlements SET usage_count = usage_count + $3, updated_at = NOW()
            WHERE user_id = $1 AND product_id = $2
            RETURNING {ENTITLEMENT_COLUMNS}
        """, user_id, product_id, amount)
        return _row_to_entitlement(row) if row else None

    async def list_for_reconciliation(self) -> List[Entitlement]:
        """Entitlements whose usage is still tracked."""
        rows = await self.session.fetch(f"""
            SELECT {ENTITLEMENT_COLUMNS} FROM entitlements
            WHERE status IN ('active', 'pending')
            ORDER BY user_id, product_id
        """)
        return [_row_to_entitlement(row) for row in rows]

    async def roll_usage(self, entitlement_id: str, delta: int,
                         next_reset_at: Optional[datetime] = None) -> None:
        """Fold a counter delta into usage_count, or close out a usage period."""
        if next_reset_at is not None:
            await self.session.execute("""
                UPDATE entitlements SET usage_count = 0, usage_reset_at = $2, updated_at = NOW()
                WHERE entitlement_id = $1::uuid
            """, entitlement_id, next_reset_at)
        elif delta:
            await self.session.execute("""
                UPDATE entitlements SET usage_count = usage_count + $2, updated_at = NOW()
                WHERE entitlement_id = $1::uuid
            """, entitlement_id, delta)


class StoreSession:
    """One transactional unit of work against the entitlement store."""

    def __init__(self, session: Session):
        self.session = session
        self.ledger = IdempotencyLedger(session)
        self.entitlements = EntitlementRepository(session)

    async def begin(self):
        await self.session.begin()

    async def commit(self):
        await self.session.commit()

    async def rollback(self):
        await self.session.rollback()


class PostgresStore:
    """Entitlement store backed by the shared Database resource."""

    def __init__(self, database: Database):
        self.database = database
        self.logger = get_logger("entitlements.persistence.postgres")

    async def apply_schema(self):
        """Create tables and indexes that do not exist yet."""
        async with self.database.session() as session:
            for statement in SCHEMA_STATEMENTS:
                await session.execute(statement)
        self.logger.info("Schema applied", statements=len(SCHEMA_STATEMENTS))

    @asynccontextmanager
    async def session(self) -> AsyncIterator[StoreSession]:
        async with self.database.session() as session:
            yield StoreSession(session)

    async def health_check(self) -> bool:
        return await self.database.health_check()
