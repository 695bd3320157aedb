"""
Idempotency ledger for processed provider events.
"""
