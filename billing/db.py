"""
Billing & Onboarding Record Store
Domain: Billing

Database operations for payment accounts, tenants, memberships, webhook
events and idempotency keys. Every write commits its own unit of work and
rolls back on failure; the saga above decides what to compensate.
"""

import uuid
from typing import Optional, Dict, Any, List

from psycopg2.extras import Json


PAYMENT_ACCOUNT_COLUMNS = (
    'funding_source_ref', 'verification_ref', 'verification_status', 'tenant_id'
)

TENANT_COLUMNS = (
    'subscription_status', 'subscription_tier', 'monthly_amount',
    'next_billing_date', 'processor_subscription_ref', 'payment_method_status',
    'payment_failure_count', 'last_payment_failed_at', 'cancelled_at',
    'billing_email', 'billing_name'
)


class RecordStore:
    """PostgreSQL-backed store for the onboarding saga."""

    def __init__(self, get_db, get_cursor):
        self.get_db = get_db
        self.get_cursor = get_cursor

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _fetch_one(self, sql: str, params) -> Optional[Dict[str, Any]]:
        cur = self.get_cursor()
        try:
            cur.execute(sql, params)
            row = cur.fetchone()
            return dict(row) if row else None
        finally:
            cur.close()

    def _fetch_all(self, sql: str, params) -> List[Dict[str, Any]]:
        cur = self.get_cursor()
        try:
            cur.execute(sql, params)
            return [dict(row) for row in cur.fetchall()]
        finally:
            cur.close()

    def _write(self, sql: str, params) -> Optional[Dict[str, Any]]:
        """Execute one statement in its own transaction, returning the RETURNING row."""
        db = self.get_db()
        cur = self.get_cursor()
        try:
            cur.execute(sql, params)
            row = cur.fetchone() if cur.description else None
            db.commit()
            return dict(row) if row else None
        except Exception:
            db.rollback()
            raise
        finally:
            cur.close()

    def _update(self, table: str, key_column: str, key_value, allowed, fields: Dict[str, Any]):
        """Build a dynamic UPDATE restricted to whitelisted columns."""
        updates = []
        params = []
        for column, value in fields.items():
            if column not in allowed:
                raise ValueError(f'{table}.{column} is not updatable')
            updates.append(f'{column} = %s')
            params.append(value)

        if not updates:
            return self._fetch_one(f'SELECT * FROM {table} WHERE {key_column} = %s', (key_value,))

        updates.append('updated_at = NOW()')
        params.append(key_value)

        sql = f'''UPDATE {table}
                  SET {', '.join(updates)}
                  WHERE {key_column} = %s
                  RETURNING *'''
        return self._write(sql, params)

    # ------------------------------------------------------------------
    # idempotency keys
    # ------------------------------------------------------------------

    def get_idempotency_key(self, key: str) -> Optional[Dict[str, Any]]:
        return self._fetch_one('SELECT * FROM idempotency_keys WHERE key = %s', (key,))

    def insert_idempotency_key(self, key: str, stale_after_seconds: int) -> bool:
        """
        Atomic check-and-set on the idempotency key space.

        Inserts the key, or takes over an unbound reservation older than
        stale_after_seconds. Bound keys are never taken over.

        Returns:
            True if this caller now holds the reservation
        """
        row = self._write(
            '''INSERT INTO idempotency_keys (key, reserved_at)
               VALUES (%s, NOW())
               ON CONFLICT (key) DO UPDATE SET reserved_at = NOW()
               WHERE idempotency_keys.tenant_id IS NULL
                 AND idempotency_keys.reserved_at < NOW() - make_interval(secs => %s)
               RETURNING key''',
            (key, stale_after_seconds)
        )
        return row is not None

    def bind_idempotency_key(self, key: str, tenant_id: str) -> bool:
        """Attach a tenant to a key. Refuses to re-point a key bound elsewhere."""
        row = self._write(
            '''INSERT INTO idempotency_keys (key, tenant_id, reserved_at, bound_at)
               VALUES (%s, %s, NOW(), NOW())
               ON CONFLICT (key) DO UPDATE SET
                   tenant_id = EXCLUDED.tenant_id,
                   bound_at = NOW()
               WHERE idempotency_keys.tenant_id IS NULL
                  OR idempotency_keys.tenant_id = EXCLUDED.tenant_id
               RETURNING key''',
            (key, tenant_id)
        )
        return row is not None

    def release_idempotency_key(self, key: str) -> None:
        """Drop an unbound reservation. Bound keys are left alone."""
        self._write(
            'DELETE FROM idempotency_keys WHERE key = %s AND tenant_id IS NULL',
            (key,)
        )

    # ------------------------------------------------------------------
    # payment accounts
    # ------------------------------------------------------------------

    def save_payment_account(
        self,
        customer_ref: str,
        funding_source_ref: str,
        email: str,
        plan_id: str,
        signup_context: Dict[str, Any],
        verification_status: str = 'unverified'
    ) -> Dict[str, Any]:
        """
        Create the PaymentAccount for a prospective tenant.

        At most one account per email may exist without a tenant; a new
        signup attempt for the same email supersedes the stale pending row.

        Returns:
            The stored payment account dict
        """
        return self._write(
            '''INSERT INTO payment_accounts
               (customer_ref, funding_source_ref, email, plan_id, signup_context,
                verification_status, created_at, updated_at)
               VALUES (%s, %s, %s, %s, %s, %s, NOW(), NOW())
               ON CONFLICT (email) WHERE tenant_id IS NULL DO UPDATE SET
                   customer_ref = EXCLUDED.customer_ref,
                   funding_source_ref = EXCLUDED.funding_source_ref,
                   plan_id = EXCLUDED.plan_id,
                   signup_context = EXCLUDED.signup_context,
                   verification_status = EXCLUDED.verification_status,
                   verification_ref = NULL,
                   updated_at = NOW()
               RETURNING *''',
            (customer_ref, funding_source_ref, email, plan_id, Json(signup_context),
             verification_status)
        )

    def get_payment_account(self, customer_ref: str) -> Optional[Dict[str, Any]]:
        return self._fetch_one(
            'SELECT * FROM payment_accounts WHERE customer_ref = %s',
            (customer_ref,)
        )

    def update_payment_account(self, customer_ref: str, **fields) -> Optional[Dict[str, Any]]:
        return self._update('payment_accounts', 'customer_ref', customer_ref,
                            PAYMENT_ACCOUNT_COLUMNS, fields)

    # ------------------------------------------------------------------
    # tenants & memberships
    # ------------------------------------------------------------------

    def create_tenant(self, tenant: Dict[str, Any]) -> Dict[str, Any]:
        """
        Insert a tenant row.

        processor_customer_ref is UNIQUE, so a second tenant for the same
        customer fails here even if the idempotency guard was bypassed.
        """
        tenant_id = str(uuid.uuid4())
        return self._write(
            '''INSERT INTO tenants
               (id, name, email, industry, business_type, owner_id,
                subscription_status, subscription_tier, monthly_amount,
                trial_end_date, next_billing_date, billing_cycle_day,
                processor_customer_ref, funding_source_ref, payment_method_status,
                payment_failure_count, billing_email, billing_name,
                created_at, updated_at)
               VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s,
                       0, %s, %s, NOW(), NOW())
               RETURNING *''',
            (tenant_id, tenant['name'], tenant['email'], tenant.get('industry'),
             tenant.get('business_type'), tenant['owner_id'],
             tenant['subscription_status'], tenant['subscription_tier'],
             tenant['monthly_amount'], tenant['trial_end_date'],
             tenant['next_billing_date'], tenant['billing_cycle_day'],
             tenant['processor_customer_ref'], tenant.get('funding_source_ref'),
             tenant['payment_method_status'], tenant.get('billing_email'),
             tenant.get('billing_name'))
        )

    def get_tenant(self, tenant_id: str) -> Optional[Dict[str, Any]]:
        return self._fetch_one('SELECT * FROM tenants WHERE id = %s', (tenant_id,))

    def get_tenant_by_customer(self, customer_ref: str) -> Optional[Dict[str, Any]]:
        return self._fetch_one(
            'SELECT * FROM tenants WHERE processor_customer_ref = %s',
            (customer_ref,)
        )

    def update_tenant(self, tenant_id: str, **fields) -> Optional[Dict[str, Any]]:
        return self._update('tenants', 'id', tenant_id, TENANT_COLUMNS, fields)

    def record_payment_failure(self, tenant_id: str) -> Optional[Dict[str, Any]]:
        """Increment the failure counter in place and move the tenant to past_due."""
        return self._write(
            '''UPDATE tenants SET
                   payment_failure_count = payment_failure_count + 1,
                   last_payment_failed_at = NOW(),
                   subscription_status = 'past_due',
                   updated_at = NOW()
               WHERE id = %s
               RETURNING *''',
            (tenant_id,)
        )

    def create_membership(
        self,
        tenant_id: str,
        account_id: str,
        role: str,
        capabilities: Dict[str, bool]
    ) -> Dict[str, Any]:
        return self._write(
            '''INSERT INTO memberships (id, tenant_id, account_id, role, capabilities, created_at)
               VALUES (%s, %s, %s, %s, %s, NOW())
               RETURNING *''',
            (str(uuid.uuid4()), tenant_id, account_id, role, Json(capabilities))
        )

    def get_memberships(self, tenant_id: str) -> List[Dict[str, Any]]:
        return self._fetch_all(
            'SELECT * FROM memberships WHERE tenant_id = %s ORDER BY created_at',
            (tenant_id,)
        )

    # ------------------------------------------------------------------
    # webhook events
    # ------------------------------------------------------------------

    def record_webhook_event(
        self,
        external_event_id: Optional[str],
        event_type: Optional[str],
        payload: str
    ) -> Dict[str, Any]:
        """
        Persist an inbound delivery before anything else happens to it.

        A redelivery of a known event id bumps retry_count and returns the
        existing row (with its current outcome) instead of inserting.
        """
        return self._write(
            '''INSERT INTO webhook_events
               (id, external_event_id, event_type, payload, outcome, retry_count,
                received_at, last_received_at)
               VALUES (%s, %s, %s, %s, 'unprocessed', 0, NOW(), NOW())
               ON CONFLICT (external_event_id) DO UPDATE SET
                   retry_count = webhook_events.retry_count + 1,
                   last_received_at = NOW()
               RETURNING *''',
            (str(uuid.uuid4()), external_event_id, event_type, payload)
        )

    def get_webhook_event(self, external_event_id: str) -> Optional[Dict[str, Any]]:
        return self._fetch_one(
            'SELECT * FROM webhook_events WHERE external_event_id = %s',
            (external_event_id,)
        )

    def claim_webhook_event(self, event_row_id: str, lease_seconds: int) -> bool:
        """Take the processing lease on an unprocessed event. False if someone else holds it."""
        row = self._write(
            '''UPDATE webhook_events SET claimed_at = NOW()
               WHERE id = %s
                 AND outcome <> 'processed'
                 AND (claimed_at IS NULL
                      OR claimed_at < NOW() - make_interval(secs => %s))
               RETURNING id''',
            (event_row_id, lease_seconds)
        )
        return row is not None

    def finish_webhook_event(
        self,
        event_row_id: str,
        outcome: str,
        error: Optional[str] = None,
        tenant_id: Optional[str] = None,
        customer_ref: Optional[str] = None
    ) -> None:
        """Record the processing outcome and release the lease."""
        self._write(
            '''UPDATE webhook_events SET
                   outcome = %s,
                   error = %s,
                   tenant_id = COALESCE(%s, tenant_id),
                   customer_ref = COALESCE(%s, customer_ref),
                   processed_at = CASE WHEN %s = 'processed' THEN NOW() ELSE processed_at END,
                   claimed_at = NULL
               WHERE id = %s''',
            (outcome, error, tenant_id, customer_ref, outcome, event_row_id)
        )

    def note_webhook_error(self, event_row_id: str, error: str) -> None:
        """Attach an error note without touching the outcome. Processed events keep theirs."""
        self._write(
            "UPDATE webhook_events SET error = %s WHERE id = %s AND outcome <> 'processed'",
            (error, event_row_id)
        )
