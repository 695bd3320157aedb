"""
Database schema for Entitlements Service.

Catalog tables (plans) are owned by the catalog service; the definition here
only exists so a fresh database can be brought up for local development.
"""

SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS plans (
        plan_id VARCHAR(255) PRIMARY KEY,
        product_id VARCHAR(255) NOT NULL,
        name VARCHAR(255) NOT NULL,
        status VARCHAR(20) NOT NULL DEFAULT 'active',
        usage_limit INTEGER NOT NULL DEFAULT 0,
        soft_limit_percent NUMERIC(5, 4),
        feature_flags JSONB NOT NULL DEFAULT '{}',
        stripe_price_id VARCHAR(255) UNIQUE,
        created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS entitlements (
        entitlement_id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        user_id VARCHAR(255) NOT NULL,
        product_id VARCHAR(255) NOT NULL,
        plan_id VARCHAR(255) NOT NULL REFERENCES plans(plan_id),
        status VARCHAR(20) NOT NULL DEFAULT 'pending'
            CHECK (status IN ('active', 'expired', 'cancelled', 'pending')),
        feature_flags JSONB NOT NULL DEFAULT '{}',
        usage_limit INTEGER NOT NULL DEFAULT 0,
        usage_count INTEGER NOT NULL DEFAULT 0,
        soft_limit INTEGER NOT NULL DEFAULT 0,
        usage_reset_at TIMESTAMP WITH TIME ZONE,
        valid_until TIMESTAMP WITH TIME ZONE,
        stripe_customer_id VARCHAR(255),
        stripe_subscription_id VARCHAR(255),
        created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
        UNIQUE (user_id, product_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_entitlements_user ON entitlements(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_entitlements_subscription ON entitlements(stripe_subscription_id)",
    "CREATE INDEX IF NOT EXISTS idx_entitlements_reset ON entitlements(usage_reset_at)",
    """
    CREATE TABLE IF NOT EXISTS processed_events (
        event_id VARCHAR(255) PRIMARY KEY,
        event_type VARCHAR(255) NOT NULL,
        processed_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_processed_events_processed_at ON processed_events(processed_at)",
    "CREATE INDEX IF NOT EXISTS idx_processed_events_type ON processed_events(event_type)",
]
