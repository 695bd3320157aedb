"""
Entitlements Service package for the Entitlement Platform.

This package decides what a user may use and keeps that answer consistent
with the payment provider. It provides:

- app.main: API surface for webhooks, grants, entitlement checks and usage.
- app.webhook: Signature verification, event parsing, routing and handlers.
- app.ledger: Idempotency ledger of processed provider events.
- app.persistence: PostgreSQL storage for plans and entitlements.
- app.cache: Redis-backed entitlement snapshots and usage counters.
- app.ratelimit: Distributed fixed-window rate limiting.
- app.jobs: Ledger pruning and usage reconciliation.

Guidelines:
- The service is stateless; rely on external cache/DB.
- The store is the source of truth; the cache may lag by its TTL.
- Cache and rate limiter failures degrade, they never fail a request.
"""
