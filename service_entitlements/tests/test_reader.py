"""
Unit tests for entitlement reads and usage recording.
"""

from datetime import datetime, timedelta, timezone

import pytest

from shared.errors import NotFoundError, StoreUnavailable
from shared.metrics import MetricsCollector
from service_entitlements.app.cache.redis_cache import entitlement_key, usage_key
from service_entitlements.app.models import EntitlementStatus
from service_entitlements.app.reader import EntitlementReader


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class TestEntitlementReader:
    """Test cases for EntitlementReader."""

    @pytest.fixture
    def metrics(self):
        return MetricsCollector("entitlements")

    @pytest.fixture
    def reader(self, store, cache, metrics):
        return EntitlementReader(store, cache, metrics, entitlement_ttl=60, usage_counter_ttl=300, clock=lambda: NOW)

    @pytest.mark.asyncio
    async def test_check_populates_cache(self, reader, store, fake_redis, make_entitlement):
        """Test the first read misses and fills the cache, the second hits."""
        store.add_entitlement(make_entitlement())

        first, first_hit = await reader.check("user_1", "prod_api")
        second, second_hit = await reader.check("user_1", "prod_api")

        assert (first_hit, second_hit) == (False, True)
        assert first == second
        assert entitlement_key("user_1", "prod_api") in fake_redis.data

    @pytest.mark.asyncio
    async def test_check_response(self, reader, store, make_entitlement):
        """Test the response combines stored and live usage."""
        store.add_entitlement(make_entitlement(usage_count=60))
        await reader.cache.increment_usage("user_1", "prod_api", 45, 300)

        response, _ = await reader.check("user_1", "prod_api")

        assert response.status == EntitlementStatus.ACTIVE
        assert response.plan_id == "plan_basic"
        assert response.features == {"exports": True}
        assert response.usage.used == 105
        assert response.usage.remaining == 0
        assert response.usage.soft_limit == 110
        assert response.over_limit
        assert not response.over_soft_limit

    @pytest.mark.asyncio
    async def test_check_missing(self, reader):
        """Test a user without an entitlement gets NotFoundError."""
        with pytest.raises(NotFoundError):
            await reader.check("user_1", "prod_api")

    @pytest.mark.asyncio
    async def test_check_elapsed_reads_expired(self, reader, store, make_entitlement):
        """Test an active row past valid_until is reported expired."""
        store.add_entitlement(make_entitlement(valid_until=NOW - timedelta(minutes=1)))

        response, _ = await reader.check("user_1", "prod_api")

        assert response.status == EntitlementStatus.EXPIRED
        assert store.entitlement("user_1", "prod_api").status == EntitlementStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_check_with_cache_down(self, reader, store, fake_redis, make_entitlement):
        """Test reads fall through to the store when Redis is down."""
        store.add_entitlement(make_entitlement(usage_count=10))
        fake_redis.down = True

        response, cache_hit = await reader.check("user_1", "prod_api")

        assert not cache_hit
        assert response.usage.used == 10

    @pytest.mark.asyncio
    async def test_check_with_store_down(self, reader, store):
        """Test a cache miss with the store unreachable raises StoreUnavailable."""
        store.available = False

        with pytest.raises(StoreUnavailable):
            await reader.check("user_1", "prod_api")

    @pytest.mark.asyncio
    async def test_record_usage_counts_in_cache(self, reader, store, fake_redis, make_entitlement, metrics):
        """Test usage goes to the live counter with a TTL up to the reset."""
        store.add_entitlement(make_entitlement(usage_count=5, usage_reset_at=NOW + timedelta(hours=1)))

        response = await reader.record_usage("user_1", "prod_api", 3)

        assert response.used == 8
        assert response.remaining == 92
        assert response.soft_limit_remaining == 102
        assert not response.over_limit
        assert fake_redis.data[usage_key("user_1", "prod_api")] == "3"
        assert fake_redis.expire_calls == [(usage_key("user_1", "prod_api"), 3600)]
        assert store.entitlement("user_1", "prod_api").usage_count == 5
        assert metrics.registry.get_sample_value("usage_increments_total", {"backend": "cache"}) == 1.0

    @pytest.mark.asyncio
    async def test_record_usage_over_limit(self, reader, store, make_entitlement):
        """Test usage past the hard and soft limits is flagged, not refused."""
        store.add_entitlement(make_entitlement(usage_count=110))

        response = await reader.record_usage("user_1", "prod_api", 1)

        assert response.used == 111
        assert response.over_limit
        assert response.over_soft_limit
        assert response.soft_limit_remaining == 0

    @pytest.mark.asyncio
    async def test_record_usage_falls_back_to_store(self, reader, store, fake_redis, make_entitlement, metrics):
        """Test usage is written to the store when the counter is unavailable."""
        store.add_entitlement(make_entitlement(usage_count=5))
        fake_redis.down = True

        response = await reader.record_usage("user_1", "prod_api", 2)

        assert response.used == 7
        assert store.entitlement("user_1", "prod_api").usage_count == 7
        assert metrics.registry.get_sample_value("usage_increments_total", {"backend": "store"}) == 1.0

    @pytest.mark.asyncio
    async def test_record_usage_counted_once_when_ttl_fails(self, reader, store, fake_redis, make_entitlement):
        """Test a counter that cannot get a TTL is not also charged in the store."""
        store.add_entitlement(make_entitlement(usage_count=5))
        fake_redis.failing.add("expire")

        response = await reader.record_usage("user_1", "prod_api", 1)
        checked, _ = await reader.check("user_1", "prod_api")

        assert response.used == 6
        assert checked.usage.used == 6
        assert store.entitlement("user_1", "prod_api").usage_count == 6
        assert usage_key("user_1", "prod_api") not in fake_redis.data

    @pytest.mark.asyncio
    async def test_record_usage_requires_active(self, reader, store, make_entitlement):
        """Test pending, cancelled and expired entitlements take no usage."""
        for status, valid_until in [
            (EntitlementStatus.PENDING, None),
            (EntitlementStatus.CANCELLED, None),
            (EntitlementStatus.ACTIVE, NOW - timedelta(days=1)),
        ]:
            store.add_entitlement(make_entitlement(status=status, valid_until=valid_until))
            await reader.cache.invalidate_entitlement("user_1", "prod_api")

            with pytest.raises(NotFoundError):
                await reader.record_usage("user_1", "prod_api", 1)

    @pytest.mark.asyncio
    async def test_counter_ttl_defaults_when_period_elapsed(self, reader, make_entitlement):
        """Test an overdue reset falls back to the configured counter TTL."""
        assert reader._counter_ttl(make_entitlement(usage_reset_at=NOW - timedelta(days=1))) == 300
        assert reader._counter_ttl(make_entitlement(usage_reset_at=None)) == 300
        assert reader._counter_ttl(make_entitlement(usage_reset_at=NOW + timedelta(seconds=90))) == 90
