"""
Cache package for Entitlements Service.

Provides a Redis-backed cache of entitlement snapshots with a short TTL and
the atomic usage counters recorded between reconciliation runs.
"""
