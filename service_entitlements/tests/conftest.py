"""
Shared fixtures and test doubles for Entitlements Service tests.
"""

import asyncio
import copy
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

import pytest

from shared.cache_client import CacheClient
from shared.errors import StoreResult, StoreUnavailable
from shared.test_helpers import FakeRedis, ManualClock
from service_entitlements.app.cache.redis_cache import EntitlementCache
from service_entitlements.app.models import Entitlement, EntitlementStatus, Plan


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class InMemoryLedger:
    """Processed-event ledger honouring the primary-key blocking behaviour."""

    def __init__(self, session: "InMemorySession"):
        self.session = session
        self.store = session.store

    async def claim(self, event_id: str, event_type: str) -> bool:
        self.store.check_available()
        while True:
            if event_id in self.store.processed:
                return False
            pending = self.store.pending_claims.get(event_id)
            if pending is None:
                break
            await pending.wait()

        if not self.session.in_transaction:
            self.store.processed[event_id] = (event_type, self.store.clock())
            return True

        self.store.pending_claims[event_id] = asyncio.Event()
        self.session.claims.append((event_id, event_type))
        return True

    async def event_counts(self, hours: int = 24) -> Dict[str, int]:
        self.store.check_available()
        cutoff = self.store.clock() - timedelta(hours=hours)
        counts: Dict[str, int] = {}
        for event_type, processed_at in self.store.processed.values():
            if processed_at > cutoff:
                counts[event_type] = counts.get(event_type, 0) + 1
        return dict(sorted(counts.items(), key=lambda item: item[1], reverse=True))

    async def prune(self, retention_days: int = 90) -> int:
        self.store.check_available()
        cutoff = self.store.clock() - timedelta(days=retention_days)
        expired = [event_id for event_id, (_, at) in self.store.processed.items() if at < cutoff]
        for event_id in expired:
            del self.store.processed[event_id]
        return len(expired)


class InMemoryEntitlements:
    """Entitlement repository over in-memory rows with transactional writes."""

    def __init__(self, session: "InMemorySession"):
        self.session = session
        self.store = session.store

    def _read(self, key) -> Optional[Entitlement]:
        if key in self.session.writes:
            return copy.deepcopy(self.session.writes[key])
        row = self.store.entitlements.get(key)
        return copy.deepcopy(row) if row else None

    async def _write(self, entitlement: Entitlement) -> Entitlement:
        await asyncio.sleep(0)
        key = (entitlement.user_id, entitlement.product_id)
        self.store.write_log.append(key)
        if self.session.in_transaction:
            self.session.writes[key] = copy.deepcopy(entitlement)
        else:
            self.store.entitlements[key] = copy.deepcopy(entitlement)
        return copy.deepcopy(entitlement)

    def _keys(self):
        return set(self.store.entitlements) | set(self.session.writes)

    async def find_active_plan(self, plan_id: str, product_id: str) -> StoreResult[Plan]:
        self.store.check_available()
        plan = self.store.plans.get(plan_id)
        if plan is None or plan.product_id != product_id or not plan.is_active:
            return StoreResult.not_found(f"Plan {plan_id} not found or not active for product {product_id}")
        return StoreResult.success(copy.deepcopy(plan))

    async def find_plan_by_price(self, price_id: str) -> StoreResult[Plan]:
        self.store.check_available()
        for plan in self.store.plans.values():
            if plan.stripe_price_id == price_id:
                return StoreResult.success(copy.deepcopy(plan))
        return StoreResult.not_found(f"No plan for price {price_id}")

    async def get(self, user_id: str, product_id: str) -> Optional[Entitlement]:
        self.store.check_available()
        return self._read((user_id, product_id))

    async def find_by_subscription(self, subscription_id: str) -> List[Entitlement]:
        self.store.check_available()
        found = [self._read(key) for key in self._keys()]
        found = [e for e in found if e and e.stripe_subscription_id == subscription_id]
        return sorted(found, key=lambda e: e.created_at)

    async def provision(self, user_id, product_id, plan_id, status, feature_flags, usage_limit,
                        soft_limit, usage_reset_at, valid_until=None, stripe_customer_id=None,
                        stripe_subscription_id=None) -> Entitlement:
        self.store.check_available()
        now = self.store.clock()
        existing = self._read((user_id, product_id))
        if existing is None:
            entitlement = Entitlement(
                entitlement_id=str(uuid.uuid4()),
                user_id=user_id,
                product_id=product_id,
                plan_id=plan_id,
                status=status,
                feature_flags=dict(feature_flags),
                usage_limit=usage_limit,
                usage_count=0,
                soft_limit=soft_limit,
                usage_reset_at=usage_reset_at,
                valid_until=valid_until,
                stripe_customer_id=stripe_customer_id,
                stripe_subscription_id=stripe_subscription_id,
                created_at=now,
                updated_at=now
            )
        else:
            entitlement = existing
            entitlement.plan_id = plan_id
            entitlement.status = status
            entitlement.feature_flags = dict(feature_flags)
            entitlement.usage_limit = usage_limit
            entitlement.soft_limit = soft_limit
            entitlement.usage_reset_at = existing.usage_reset_at or usage_reset_at
            entitlement.valid_until = valid_until
            entitlement.stripe_customer_id = stripe_customer_id or existing.stripe_customer_id
            entitlement.stripe_subscription_id = stripe_subscription_id or existing.stripe_subscription_id
            entitlement.updated_at = now
        self.store.provision_calls += 1
        return await self._write(entitlement)

    async def save(self, entitlement: Entitlement) -> Entitlement:
        self.store.check_available()
        entitlement.updated_at = self.store.clock()
        return await self._write(entitlement)

    async def revoke(self, user_id: str, product_id: str) -> StoreResult[Entitlement]:
        self.store.check_available()
        entitlement = self._read((user_id, product_id))
        if entitlement is None or entitlement.status not in (EntitlementStatus.ACTIVE, EntitlementStatus.PENDING):
            return StoreResult.not_found(f"No active entitlement for {user_id}/{product_id}")
        entitlement.status = EntitlementStatus.CANCELLED
        entitlement.updated_at = self.store.clock()
        return StoreResult.success(await self._write(entitlement))

    async def add_usage(self, user_id: str, product_id: str, amount: int) -> Optional[Entitlement]:
        self.store.check_available()
        entitlement = self._read((user_id, product_id))
        if entitlement is None:
            return None
        entitlement.usage_count += amount
        entitlement.updated_at = self.store.clock()
        return await self._write(entitlement)

    async def list_for_reconciliation(self) -> List[Entitlement]:
        self.store.check_available()
        rows = [self._read(key) for key in sorted(self._keys())]
        return [e for e in rows if e.status in (EntitlementStatus.ACTIVE, EntitlementStatus.PENDING)]

    async def roll_usage(self, entitlement_id: str, delta: int, next_reset_at=None) -> None:
        self.store.check_available()
        for key in self._keys():
            entitlement = self._read(key)
            if entitlement.entitlement_id != entitlement_id:
                continue
            if next_reset_at is not None:
                entitlement.usage_count = 0
                entitlement.usage_reset_at = next_reset_at
            else:
                entitlement.usage_count += delta
            entitlement.updated_at = self.store.clock()
            await self._write(entitlement)


class InMemorySession:
    """Unit of work with the same surface as the PostgreSQL StoreSession."""

    def __init__(self, store: "InMemoryStore"):
        self.store = store
        self.in_transaction = False
        self.claims: List[Tuple[str, str]] = []
        self.writes: Dict[Tuple[str, str], Entitlement] = {}
        self.ledger = InMemoryLedger(self)
        self.entitlements = InMemoryEntitlements(self)

    async def begin(self):
        self.store.check_available()
        self.in_transaction = True

    async def commit(self):
        self.store.check_available()
        now = self.store.clock()
        self.store.entitlements.update(self.writes)
        for event_id, event_type in self.claims:
            self.store.processed[event_id] = (event_type, now)
            self.store.pending_claims.pop(event_id).set()
        self._reset()
        self.store.commits += 1

    async def rollback(self):
        for event_id, _ in self.claims:
            self.store.pending_claims.pop(event_id).set()
        self._reset()
        self.store.rollbacks += 1

    def _reset(self):
        self.in_transaction = False
        self.claims = []
        self.writes = {}


class InMemoryStore:
    """Entitlement store double: plans, entitlements and the ledger."""

    def __init__(self, clock=None):
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.plans: Dict[str, Plan] = {}
        self.entitlements: Dict[Tuple[str, str], Entitlement] = {}
        self.processed: Dict[str, Tuple[str, datetime]] = {}
        self.pending_claims: Dict[str, asyncio.Event] = {}
        self.available = True
        self.provision_calls = 0
        self.commits = 0
        self.rollbacks = 0
        self.write_log: List[Tuple[str, str]] = []

    def check_available(self):
        if not self.available:
            raise StoreUnavailable("connection refused")

    def add_plan(self, plan: Plan) -> Plan:
        self.plans[plan.plan_id] = plan
        return plan

    def add_entitlement(self, entitlement: Entitlement) -> Entitlement:
        self.entitlements[(entitlement.user_id, entitlement.product_id)] = entitlement
        return entitlement

    def entitlement(self, user_id: str, product_id: str) -> Optional[Entitlement]:
        return self.entitlements.get((user_id, product_id))

    @asynccontextmanager
    async def session(self):
        self.check_available()
        session = InMemorySession(self)
        try:
            yield session
        finally:
            if session.in_transaction:
                await session.rollback()

    async def health_check(self) -> bool:
        return self.available


@pytest.fixture
def make_entitlement():
    """Factory for entitlement rows."""

    def _make(user_id="user_1", product_id="prod_api", plan_id="plan_basic",
              status=EntitlementStatus.ACTIVE, **kwargs) -> Entitlement:
        values = dict(
            entitlement_id=str(uuid.uuid4()),
            user_id=user_id,
            product_id=product_id,
            plan_id=plan_id,
            status=status,
            feature_flags={"exports": True},
            usage_limit=100,
            usage_count=0,
            soft_limit=110,
            usage_reset_at=NOW + timedelta(days=30),
            valid_until=None,
            stripe_customer_id="cus_1",
            stripe_subscription_id="sub_1",
            created_at=NOW,
            updated_at=NOW,
        )
        values.update(kwargs)
        return Entitlement(**values)

    return _make


@pytest.fixture
def basic_plan():
    return Plan(
        plan_id="plan_basic",
        product_id="prod_api",
        name="Basic",
        usage_limit=100,
        soft_limit_percent=0.1,
        feature_flags={"exports": True, "seats": 3},
        stripe_price_id="price_basic"
    )


@pytest.fixture
def pro_plan():
    return Plan(
        plan_id="plan_pro",
        product_id="prod_api",
        name="Pro",
        usage_limit=1000,
        soft_limit_percent=0.2,
        feature_flags={"exports": True, "seats": 10, "sso": True},
        stripe_price_id="price_pro"
    )


@pytest.fixture
def store(basic_plan, pro_plan):
    store = InMemoryStore()
    store.add_plan(basic_plan)
    store.add_plan(pro_plan)
    store.add_plan(Plan(
        plan_id="plan_legacy",
        product_id="prod_api",
        name="Legacy",
        status="inactive",
        usage_limit=50,
        stripe_price_id="price_legacy"
    ))
    return store


@pytest.fixture
def redis_clock():
    return ManualClock()


@pytest.fixture
def fake_redis(redis_clock):
    return FakeRedis(clock=redis_clock)


@pytest.fixture
def cache_client(fake_redis):
    return CacheClient("redis://fake:6379/0", client=fake_redis)


@pytest.fixture
def cache(cache_client):
    return EntitlementCache(cache_client, default_ttl=60)
