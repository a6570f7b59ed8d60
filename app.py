#!/usr/bin/env python3
"""
TradeSphere API - Business Onboarding & Billing
PostgreSQL + Stripe ACH, multi-tenant
"""

import os
import sys
from datetime import datetime

import psycopg2
import psycopg2.extras
from flask import Flask, jsonify, g
from flask_cors import CORS

# Database URL from environment (Railway provides this)
DATABASE_URL = os.environ.get('DATABASE_URL')

# Startup logging for debugging
print(f"[STARTUP] DATABASE_URL set: {bool(DATABASE_URL)}", file=sys.stderr)
if DATABASE_URL:
    # Log sanitized URL (hide password)
    from urllib.parse import urlparse
    parsed = urlparse(DATABASE_URL)
    print(f"[STARTUP] Database host: {parsed.hostname}:{parsed.port}", file=sys.stderr)


def get_db():
    """Get database connection for current request context."""
    if 'db' not in g:
        if not DATABASE_URL:
            raise Exception("DATABASE_URL environment variable not set")
        # Add connection timeout to prevent hanging
        g.db = psycopg2.connect(DATABASE_URL, connect_timeout=10)
        g.db.autocommit = False
    return g.db


def get_cursor():
    """Get a cursor with dict-like row access."""
    db = get_db()
    return db.cursor(cursor_factory=psycopg2.extras.RealDictCursor)


def close_db(exception):
    """Close database connection at end of request."""
    db = g.pop('db', None)
    if db is not None:
        db.close()


def build_services(get_db=get_db, get_cursor=get_cursor):
    """
    Wire the onboarding saga and the reconciliation engine.

    Both share one idempotency guard and one tenant provisioner, so the
    signup path and the webhook path race on the same keys.
    """
    from auth.directory import UserDirectory
    from billing.db import RecordStore
    from billing.payment_accounts import PaymentAccountProvisioner
    from billing.processor import StripePaymentProcessor
    from billing.provisioning import TenantProvisioner
    from billing.reconciliation import ReconciliationEngine
    from email_service import EmailNotifier
    from onboarding.idempotency import IdempotencyGuard
    from onboarding.orchestrator import OnboardingOrchestrator

    store = RecordStore(get_db, get_cursor)
    directory = UserDirectory(get_db, get_cursor)
    processor = StripePaymentProcessor()
    notifier = EmailNotifier()
    guard = IdempotencyGuard(store)
    tenant_provisioner = TenantProvisioner(directory, store, guard, processor)

    return {
        'store': store,
        'directory': directory,
        'processor': processor,
        'notifier': notifier,
        'guard': guard,
        'orchestrator': OnboardingOrchestrator(
            guard,
            PaymentAccountProvisioner(processor, store),
            tenant_provisioner,
            directory,
            notifier
        ),
        'engine': ReconciliationEngine(
            processor, store, guard, tenant_provisioner, directory, notifier
        ),
    }


def create_app(services=None, rate_limiter=None):
    """Create the Flask app. Tests pass their own services."""
    from auth.login import init_login
    from billing.stripe_handler import init_billing
    from onboarding.routes import init_onboarding

    app = Flask(__name__)
    CORS(app)
    app.teardown_appcontext(close_db)

    if services is None:
        services = build_services()

    # ==================== ONBOARDING ====================
    app.register_blueprint(init_onboarding(services['orchestrator'], rate_limiter))
    print("[STARTUP] Onboarding endpoints registered: /v2/onboard/*", file=sys.stderr)

    # ==================== AUTH ====================
    app.register_blueprint(init_login(services['directory'], services['notifier']))
    print("[STARTUP] Auth endpoints registered: /v2/auth/*", file=sys.stderr)

    # ==================== BILLING ====================
    app.register_blueprint(init_billing(services['engine'], services['processor']))
    print("[STARTUP] Billing endpoints registered: /v2/billing/*", file=sys.stderr)

    @app.route('/health', methods=['GET'])
    def health_check():
        """Health check endpoint."""
        return jsonify({
            'status': 'ok',
            'service': 'tradesphere-onboarding',
            'database': 'postgres' if DATABASE_URL else 'unconfigured',
            'timestamp': datetime.utcnow().isoformat() + 'Z'
        })

    return app


if __name__ == '__main__':
    port = int(os.environ.get('PORT', 8080))
    create_app().run(host='0.0.0.0', port=port, debug=False)
