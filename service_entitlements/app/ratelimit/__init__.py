"""
Rate limiting for Entitlements Service.
"""
