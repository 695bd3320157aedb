"""
Persistence package for Entitlements Service.
"""
