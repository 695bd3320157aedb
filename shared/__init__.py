"""
Shared utilities for the Entitlement Platform.

This package aggregates common building blocks consumed by all services:

- config: Service configuration via pydantic-settings
- logging: Structured logging with request correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types, responses and store results
- retry: Retry decorators for resource startup
- database: asyncpg pool resource and transactional sessions
- cache_client: Redis client resource
- auth: Caller identity extraction

Any cross-service logic should live here to avoid import cycles across
service packages. Do not import from service packages into shared/.
"""
