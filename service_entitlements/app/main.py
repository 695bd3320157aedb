"""
Entitlements service for the Entitlement Platform.
"""

import hmac
from typing import Dict, Optional

from fastapi import Depends, Header, Query, Request, Response

from shared.auth import extract_subject
from shared.base_service import BaseService
from shared.cache_client import CacheClient
from shared.config import ServiceConfig, get_config, load_rate_limit_tiers
from shared.database import Database
from shared.errors import AuthenticationError, AuthorizationError
from shared.logging import set_user_context

from .cache.redis_cache import EntitlementCache
from .grants import GrantService
from .jobs.maintenance import prune_processed_events, reconcile_usage, webhook_stats
from .models import (
    EntitlementResponse, GrantRequest, GrantResponse, PruneResponse, RevokeRequest,
    RevokeResponse, UsageRequest, UsageResponse, WebhookAck, WebhookStatsResponse
)
from .persistence.postgres import PostgresStore
from .ratelimit.fixed_window import FixedWindowRateLimiter
from .ratelimit.middleware import RateLimitGuard
from .reader import EntitlementReader
from .webhook.handlers import EventHandlers
from .webhook.ingress import WebhookIngress
from .webhook.router import EventRouter
from .webhook.verifier import SignatureVerifier


SERVICE_NAME = "entitlements"
SERVICE_PORT = 8011


class EntitlementsService(BaseService):
    """Entitlements service implementation.

    Resources (database pool, Redis client) are built once here and passed
    by reference to every component. Tests hand in their own store and
    cache client.
    """

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        store=None,
        cache_client: Optional[CacheClient] = None,
        rate_limiter: Optional[FixedWindowRateLimiter] = None
    ):
        super().__init__(SERVICE_NAME, SERVICE_PORT, config or get_config(SERVICE_NAME, SERVICE_PORT))

        self.database: Optional[Database] = None
        if store is None:
            self.database = Database(
                self.config.postgres_dsn,
                min_size=self.config.db_pool_min_size,
                max_size=self.config.db_pool_max_size,
                command_timeout=self.config.db_command_timeout
            )
            store = PostgresStore(self.database)
        self.store = store

        self.cache_client = cache_client or CacheClient(
            self.config.redis_url,
            socket_timeout=self.config.redis_socket_timeout
        )
        self.cache = EntitlementCache(self.cache_client, self.metrics, self.config.entitlement_cache_ttl)
        self.rate_limiter = rate_limiter or FixedWindowRateLimiter(
            self.cache_client,
            tiers=load_rate_limit_tiers(self.config.rate_limits_file),
            metrics=self.metrics
        )
        self.rate_limit = RateLimitGuard(
            self.rate_limiter,
            tier=self.config.rate_limit_tier,
            jwt_secret=self.config.jwt_secret,
            jwt_algorithms=[self.config.jwt_algorithm],
            trust_unverified_jwt=self.config.jwt_trust_unverified
        )

        self.ingress = WebhookIngress(
            self.store,
            SignatureVerifier(self.config.stripe_webhook_secret, self.config.stripe_signature_tolerance),
            EventRouter(EventHandlers(
                usage_reset_period_days=self.config.usage_reset_period_days,
                default_soft_limit_percent=self.config.default_soft_limit_percent
            )),
            self.cache,
            self.metrics
        )
        self.grants = GrantService(
            self.store,
            self.cache,
            self.metrics,
            usage_reset_period_days=self.config.usage_reset_period_days,
            default_soft_limit_percent=self.config.default_soft_limit_percent
        )
        self.reader = EntitlementReader(
            self.store,
            self.cache,
            self.metrics,
            entitlement_ttl=self.config.entitlement_cache_ttl,
            usage_counter_ttl=self.config.usage_counter_ttl
        )

        self._setup_entitlements_routes()

    def _require_internal_key(self, x_internal_api_key: Optional[str] = Header(None)):
        """Gate internal routes behind the shared API key, when one is set."""
        expected = self.config.internal_api_key
        if not expected:
            return
        if not x_internal_api_key:
            raise AuthenticationError("Missing internal API key")
        if not hmac.compare_digest(x_internal_api_key, expected):
            raise AuthorizationError("Invalid internal API key")

    def _require_subject(self, request: Request) -> str:
        subject = extract_subject(
            request, self.config.jwt_secret, [self.config.jwt_algorithm], self.config.jwt_trust_unverified
        )
        if not subject:
            raise AuthenticationError("Missing authenticated subject")
        set_user_context(subject)
        return subject

    def _setup_entitlements_routes(self):
        """Set up entitlements-specific routes."""

        internal = [Depends(self._require_internal_key)]
        rate_limited = [Depends(self.rate_limit)]

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": self.service_name,
                "message": "Entitlement Platform - Entitlements Service",
                "version": "1.0.0"
            }

        @self.app.post("/webhooks/stripe", response_model=WebhookAck)
        async def stripe_webhook(request: Request):
            """Receive a Stripe webhook delivery."""
            payload = await request.body()
            return await self.ingress.handle(payload, request.headers.get("Stripe-Signature"))

        @self.app.post("/internal/entitlements/grant", response_model=GrantResponse, dependencies=internal)
        async def grant_entitlement(request: GrantRequest):
            """Grant or replace an entitlement."""
            entitlement = (await self.grants.grant(request)).raise_for_failure()
            return GrantResponse(
                entitlement_id=entitlement.entitlement_id,
                user_id=entitlement.user_id,
                product_id=entitlement.product_id,
                plan_id=entitlement.plan_id,
                status=entitlement.status,
                granted_at=entitlement.created_at
            )

        @self.app.post("/internal/entitlements/revoke", response_model=RevokeResponse, dependencies=internal)
        async def revoke_entitlement(request: RevokeRequest):
            """Cancel an active entitlement."""
            entitlement = (await self.grants.revoke(request)).raise_for_failure()
            return RevokeResponse(
                entitlement_id=entitlement.entitlement_id,
                user_id=entitlement.user_id,
                product_id=entitlement.product_id,
                status=entitlement.status,
                revoked_at=entitlement.updated_at
            )

        @self.app.get("/internal/webhooks/stats", response_model=WebhookStatsResponse, dependencies=internal)
        async def get_webhook_stats(
            hours: int = Query(self.config.webhook_stats_window_hours, ge=1, le=24 * 90)
        ):
            """Processed webhook counts by event type."""
            counts = await webhook_stats(self.store, hours)
            return WebhookStatsResponse(window_hours=hours, total=sum(counts.values()), by_type=counts)

        @self.app.post("/internal/maintenance/prune-events", response_model=PruneResponse, dependencies=internal)
        async def prune_events(
            retention_days: int = Query(self.config.ledger_retention_days, ge=1)
        ):
            """Delete processed-event records past retention."""
            deleted = await prune_processed_events(self.store, retention_days)
            return PruneResponse(retention_days=retention_days, deleted=deleted)

        @self.app.post("/internal/maintenance/reconcile-usage", dependencies=internal)
        async def reconcile():
            """Fold live usage counters into the store."""
            report = await reconcile_usage(self.store, self.cache, self.config.usage_reset_period_days)
            return report.to_dict()

        @self.app.get("/me/entitlements", response_model=EntitlementResponse, dependencies=rate_limited)
        async def get_my_entitlement(
            request: Request,
            response: Response,
            product_id: str = Query(..., min_length=1)
        ):
            """Entitlement of the calling user for a product."""
            user_id = self._require_subject(request)
            entitlement, cache_hit = await self.reader.check(user_id, product_id)
            response.headers["X-Cache"] = "HIT" if cache_hit else "MISS"
            return entitlement

        @self.app.post("/me/usage", response_model=UsageResponse, dependencies=rate_limited)
        async def record_my_usage(request: Request, body: UsageRequest):
            """Record usage for the calling user."""
            user_id = self._require_subject(request)
            return await self.reader.record_usage(user_id, body.product_id, body.count)

    async def _check_dependencies(self) -> Dict[str, str]:
        """Check entitlements service dependencies."""
        return {
            "postgres": "ok" if await self.store.health_check() else "error",
            "redis": "ok" if await self.cache.health_check() else "degraded",
        }

    async def start(self):
        """Open resources."""
        if self.database is not None:
            await self.database.open()
            if self.config.db_auto_migrate:
                await self.store.apply_schema()
        await self.cache_client.open()
        if not self.config.jwt_secret and not self.config.jwt_trust_unverified:
            self.logger.warning("No JWT secret configured, Bearer tokens are ignored")
        self.logger.info("Entitlements service started")

    async def stop(self):
        """Close resources."""
        await self.cache_client.close()
        if self.database is not None:
            await self.database.close()
        self.logger.info("Entitlements service stopped")


def create_app():
    """Create entitlements service application."""
    service = EntitlementsService()
    return service.app


if __name__ == "__main__":
    service = EntitlementsService()
    service.run()
