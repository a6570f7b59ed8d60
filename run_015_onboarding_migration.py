#!/usr/bin/env python3
"""
Migration: Onboarding & ACH billing schema
Creates tenants, users, onboarding_session_tokens, payment_accounts,
memberships, webhook_events and idempotency_keys.
Run this in Railway console or with DATABASE_URL env var set
"""
import os
import sys
import psycopg2

DATABASE_URL = os.environ.get('DATABASE_URL')

if not DATABASE_URL:
    print("ERROR: DATABASE_URL not set")
    sys.exit(1)

STATEMENTS = [
    'CREATE EXTENSION IF NOT EXISTS "uuid-ossp";',

    # Tenants: one per processor customer
    """
    CREATE TABLE IF NOT EXISTS tenants (
        id UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
        name VARCHAR(255) NOT NULL,
        email VARCHAR(255) NOT NULL,
        industry VARCHAR(100),
        business_type VARCHAR(50),
        owner_id UUID NOT NULL,
        subscription_status VARCHAR(20) NOT NULL DEFAULT 'trial'
            CHECK (subscription_status IN ('trial', 'active', 'past_due', 'cancelled')),
        subscription_tier VARCHAR(20) NOT NULL,
        monthly_amount NUMERIC(10, 2) NOT NULL,
        trial_end_date DATE NOT NULL,
        next_billing_date DATE,
        billing_cycle_day SMALLINT,
        processor_customer_ref VARCHAR(255) NOT NULL UNIQUE,
        funding_source_ref VARCHAR(255),
        processor_subscription_ref VARCHAR(255),
        payment_method_status VARCHAR(20) NOT NULL DEFAULT 'pending'
            CHECK (payment_method_status IN ('pending', 'active', 'inactive')),
        payment_failure_count INTEGER NOT NULL DEFAULT 0,
        last_payment_failed_at TIMESTAMPTZ,
        cancelled_at TIMESTAMPTZ,
        billing_email VARCHAR(255),
        billing_name VARCHAR(255),
        created_at TIMESTAMPTZ DEFAULT NOW(),
        updated_at TIMESTAMPTZ DEFAULT NOW()
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_tenants_email ON tenants(email);",
    "CREATE INDEX IF NOT EXISTS idx_tenants_status ON tenants(subscription_status);",

    # Owner accounts
    """
    CREATE TABLE IF NOT EXISTS users (
        id UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
        email VARCHAR(255) UNIQUE NOT NULL,
        password_hash VARCHAR(255) NOT NULL,
        name VARCHAR(255),
        profile JSONB DEFAULT '{}'::jsonb,
        status VARCHAR(50) DEFAULT 'active',
        tenant_id UUID REFERENCES tenants(id),
        created_at TIMESTAMPTZ DEFAULT NOW(),
        updated_at TIMESTAMPTZ DEFAULT NOW()
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_users_tenant ON users(tenant_id);",

    # One-time onboarding links (hashed)
    """
    CREATE TABLE IF NOT EXISTS onboarding_session_tokens (
        id UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
        user_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        token_hash VARCHAR(64) NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        used_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ DEFAULT NOW()
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_onboarding_tokens_user ON onboarding_session_tokens(user_id);",

    # Processor-side billing relationship
    """
    CREATE TABLE IF NOT EXISTS payment_accounts (
        id UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
        customer_ref VARCHAR(255) NOT NULL UNIQUE,
        funding_source_ref VARCHAR(255),
        verification_ref VARCHAR(255),
        verification_status VARCHAR(20) NOT NULL DEFAULT 'unverified'
            CHECK (verification_status IN ('unverified', 'pending', 'verified', 'failed')),
        email VARCHAR(255) NOT NULL,
        plan_id VARCHAR(20) NOT NULL,
        signup_context JSONB NOT NULL DEFAULT '{}'::jsonb,
        tenant_id UUID REFERENCES tenants(id),
        created_at TIMESTAMPTZ DEFAULT NOW(),
        updated_at TIMESTAMPTZ DEFAULT NOW()
    );
    """,
    # At most one unlinked payment account per email
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_payment_accounts_pending_email
        ON payment_accounts(email) WHERE tenant_id IS NULL;
    """,
    "CREATE INDEX IF NOT EXISTS idx_payment_accounts_tenant ON payment_accounts(tenant_id);",

    """
    CREATE TABLE IF NOT EXISTS memberships (
        id UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
        tenant_id UUID NOT NULL REFERENCES tenants(id) ON DELETE CASCADE,
        account_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        role VARCHAR(20) NOT NULL DEFAULT 'owner',
        capabilities JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ DEFAULT NOW(),
        UNIQUE (tenant_id, account_id)
    );
    """,

    # Inbound webhook deliveries, never deleted
    """
    CREATE TABLE IF NOT EXISTS webhook_events (
        id UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
        external_event_id VARCHAR(255) UNIQUE,
        event_type VARCHAR(100),
        payload TEXT NOT NULL,
        outcome VARCHAR(20) NOT NULL DEFAULT 'unprocessed'
            CHECK (outcome IN ('unprocessed', 'processed', 'error')),
        error TEXT,
        tenant_id UUID REFERENCES tenants(id),
        customer_ref VARCHAR(255),
        retry_count INTEGER NOT NULL DEFAULT 0,
        claimed_at TIMESTAMPTZ,
        received_at TIMESTAMPTZ DEFAULT NOW(),
        last_received_at TIMESTAMPTZ DEFAULT NOW(),
        processed_at TIMESTAMPTZ
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_webhook_events_outcome ON webhook_events(outcome);",
    "CREATE INDEX IF NOT EXISTS idx_webhook_events_customer ON webhook_events(customer_ref);",

    # Shared reservation space for signup + webhook paths
    """
    CREATE TABLE IF NOT EXISTS idempotency_keys (
        key VARCHAR(320) PRIMARY KEY,
        tenant_id UUID REFERENCES tenants(id),
        reserved_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        bound_at TIMESTAMPTZ
    );
    """,
]

conn = psycopg2.connect(DATABASE_URL, connect_timeout=10)
cur = conn.cursor()

try:
    for statement in STATEMENTS:
        cur.execute(statement)

    conn.commit()
    print("✅ Migration complete: onboarding schema created")

    # Verify
    cur.execute("""
        SELECT table_name FROM information_schema.tables
        WHERE table_name IN ('tenants', 'users', 'onboarding_session_tokens', 'payment_accounts',
                             'memberships', 'webhook_events', 'idempotency_keys')
        ORDER BY table_name
    """)
    tables = [row[0] for row in cur.fetchall()]
    print(f"✅ Tables present: {tables}")

except Exception as e:
    conn.rollback()
    print(f"❌ Migration failed: {e}")
    sys.exit(1)

finally:
    cur.close()
    conn.close()
