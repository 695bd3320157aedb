"""
Provider webhook processing: verification, parsing, routing and handlers.
"""
