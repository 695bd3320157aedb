"""
Unit tests for the idempotency ledger and the PostgreSQL session it runs on.
"""

import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from shared.database import Session
from shared.errors import StoreUnavailable
from service_entitlements.app.ledger.idempotency import IdempotencyLedger
from service_entitlements.app.models import EntitlementStatus
from service_entitlements.app.persistence.postgres import EntitlementRepository, StoreSession


class TestIdempotencyLedger:
    """Test cases for IdempotencyLedger."""

    @pytest.fixture
    def session(self):
        """Mock transactional session."""
        session = MagicMock()
        session.fetchval = AsyncMock()
        session.fetch = AsyncMock()
        session.execute = AsyncMock()
        return session

    @pytest.fixture
    def ledger(self, session):
        return IdempotencyLedger(session)

    @pytest.mark.asyncio
    async def test_claim_new_event(self, ledger, session):
        """Test that an inserted row means the claim succeeded."""
        session.fetchval.return_value = "evt_1"

        assert await ledger.claim("evt_1", "invoice.paid") is True

        query, event_id, event_type = session.fetchval.call_args.args
        assert "ON CONFLICT (event_id) DO NOTHING" in query
        assert "RETURNING event_id" in query
        assert (event_id, event_type) == ("evt_1", "invoice.paid")

    @pytest.mark.asyncio
    async def test_claim_processed_event(self, ledger, session):
        """Test that a conflicting row means the event was already processed."""
        session.fetchval.return_value = None

        assert await ledger.claim("evt_1", "invoice.paid") is False

    @pytest.mark.asyncio
    async def test_claim_propagates_store_unavailable(self, ledger, session):
        """Test that a lost connection surfaces to the caller."""
        session.fetchval.side_effect = StoreUnavailable("connection reset")

        with pytest.raises(StoreUnavailable):
            await ledger.claim("evt_1", "invoice.paid")

    @pytest.mark.asyncio
    async def test_event_counts(self, ledger, session):
        """Test processed counts are keyed by event type."""
        session.fetch.return_value = [
            {"event_type": "invoice.paid", "count": 7},
            {"event_type": "checkout.session.completed", "count": 2},
        ]

        counts = await ledger.event_counts(hours=12)

        assert counts == {"invoice.paid": 7, "checkout.session.completed": 2}
        assert session.fetch.call_args.args[1] == 12

    @pytest.mark.asyncio
    async def test_prune_parses_command_status(self, ledger, session):
        """Test the deleted row count is read from the command status."""
        session.execute.return_value = "DELETE 3"

        assert await ledger.prune(retention_days=30) == 3
        assert session.execute.call_args.args[1] == 30

    @pytest.mark.asyncio
    async def test_prune_nothing_deleted(self, ledger, session):
        """Test pruning an empty ledger."""
        session.execute.return_value = "DELETE 0"

        assert await ledger.prune() == 0


class TestSession:
    """Test cases for the shared database Session."""

    @pytest.fixture
    def connection(self):
        connection = MagicMock()
        connection.fetchval = AsyncMock()
        connection.execute = AsyncMock()
        transaction = MagicMock()
        transaction.start = AsyncMock()
        transaction.commit = AsyncMock()
        transaction.rollback = AsyncMock()
        connection.transaction.return_value = transaction
        return connection

    @pytest.mark.asyncio
    async def test_connection_errors_become_store_unavailable(self, connection):
        """Test that a dropped connection is reported as StoreUnavailable."""
        connection.fetchval.side_effect = ConnectionResetError("reset by peer")
        session = Session(connection)

        with pytest.raises(StoreUnavailable):
            await session.fetchval("SELECT 1")

    @pytest.mark.asyncio
    async def test_transaction_lifecycle(self, connection):
        """Test begin and commit drive the underlying transaction."""
        session = Session(connection)

        await session.begin()
        assert session.in_transaction
        await session.commit()

        assert not session.in_transaction
        connection.transaction.return_value.start.assert_awaited_once()
        connection.transaction.return_value.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_rollback_without_transaction_is_noop(self, connection):
        """Test rollback outside a transaction does nothing."""
        session = Session(connection)

        await session.rollback()

        connection.transaction.return_value.rollback.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_begin_twice_fails(self, connection):
        """Test nested transactions are refused."""
        session = Session(connection)
        await session.begin()

        with pytest.raises(RuntimeError):
            await session.begin()

    def test_store_session_shares_connection(self, connection):
        """Test ledger and repository run on the same session."""
        session = Session(connection)
        store_session = StoreSession(session)

        assert store_session.ledger.session is session
        assert store_session.entitlements.session is session


class TestEntitlementRepository:
    """Test cases for row mapping in EntitlementRepository."""

    @pytest.fixture
    def row(self):
        now = datetime(2026, 3, 1, tzinfo=timezone.utc)
        return {
            "entitlement_id": "6f1c2d4e-0000-4000-8000-000000000001",
            "user_id": "user_1",
            "product_id": "prod_api",
            "plan_id": "plan_basic",
            "status": "active",
            "feature_flags": json.dumps({"exports": True}),
            "usage_limit": 100,
            "usage_count": 4,
            "soft_limit": 110,
            "usage_reset_at": now,
            "valid_until": None,
            "stripe_customer_id": "cus_1",
            "stripe_subscription_id": "sub_1",
            "created_at": now,
            "updated_at": now,
        }

    @pytest.mark.asyncio
    async def test_get_maps_row(self, row):
        """Test a row is mapped to an Entitlement."""
        session = MagicMock()
        session.fetchrow = AsyncMock(return_value=row)
        repository = EntitlementRepository(session)

        entitlement = await repository.get("user_1", "prod_api")

        assert entitlement.status == EntitlementStatus.ACTIVE
        assert entitlement.feature_flags == {"exports": True}
        assert entitlement.usage_count == 4

    @pytest.mark.asyncio
    async def test_find_active_plan_not_found(self):
        """Test a missing plan is an expected failure, not an exception."""
        session = MagicMock()
        session.fetchrow = AsyncMock(return_value=None)
        repository = EntitlementRepository(session)

        result = await repository.find_active_plan("plan_missing", "prod_api")

        assert not result.ok
        assert result.failure.value == "not_found"

    @pytest.mark.asyncio
    async def test_revoke_missing_entitlement(self):
        """Test revoking nothing reports not found."""
        session = MagicMock()
        session.fetchrow = AsyncMock(return_value=None)
        repository = EntitlementRepository(session)

        result = await repository.revoke("user_1", "prod_api")

        assert not result.ok

    @pytest.mark.asyncio
    async def test_roll_usage_closes_period(self):
        """Test closing a period zeroes usage and moves the reset boundary."""
        session = MagicMock()
        session.execute = AsyncMock()
        repository = EntitlementRepository(session)
        next_reset = datetime(2026, 4, 1, tzinfo=timezone.utc)

        await repository.roll_usage("6f1c2d4e-0000-4000-8000-000000000001", 5, next_reset)

        query = session.execute.call_args.args[0]
        assert "usage_count = 0" in query
        assert session.execute.call_args.args[2] == next_reset

    @pytest.mark.asyncio
    async def test_roll_usage_without_delta_is_noop(self):
        """Test an empty delta writes nothing."""
        session = MagicMock()
        session.execute = AsyncMock()
        repository = EntitlementRepository(session)

        await repository.roll_usage("6f1c2d4e-0000-4000-8000-000000000001", 0)

        session.execute.assert_not_awaited()
