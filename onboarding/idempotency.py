"""
Onboarding Idempotency Guard
Domain: Onboarding

One reservation slot per owner email and per processor customer reference.
The signup handler and the payment webhook both go through this before
creating a tenant, so whichever gets there first wins and the other sees
"already exists". Backed by an atomic conditional insert in the record store,
never a read-then-write.

Key lifecycle:
- reserve(key)  -> slot taken, no tenant yet (in flight)
- bind(key, id) -> slot permanently points at a tenant
- release(key)  -> in-flight slot dropped after a failed saga
"""

import os
import sys

RESERVATION_TTL_SECONDS = int(os.environ.get('ONBOARDING_RESERVATION_TTL_SECONDS', 900))


def email_key(email: str) -> str:
    return f'email:{email.strip().lower()}'


def customer_key(customer_ref: str) -> str:
    return f'customer:{customer_ref}'


class IdempotencyGuard:

    def __init__(self, store, reservation_ttl: int = RESERVATION_TTL_SECONDS):
        self.store = store
        self.reservation_ttl = reservation_ttl

    def has_tenant_for(self, key: str) -> bool:
        """True if the key is already bound to a tenant."""
        row = self.store.get_idempotency_key(key)
        return bool(row and row.get('tenant_id'))

    def tenant_for(self, key: str):
        row = self.store.get_idempotency_key(key)
        return str(row['tenant_id']) if row and row.get('tenant_id') else None

    def reserve(self, key: str) -> bool:
        """
        Atomically claim the key.

        Only one concurrent caller gets True. An unbound reservation older than
        the TTL (a crashed saga) can be claimed again; a bound key never can.
        """
        reserved = self.store.insert_idempotency_key(key, self.reservation_ttl)
        if not reserved:
            print(f"[IDEMPOTENCY] Key already held: {key}", file=sys.stderr)
        return reserved

    def bind(self, key: str, tenant_id: str) -> bool:
        bound = self.store.bind_idempotency_key(key, tenant_id)
        if not bound:
            print(f"[IDEMPOTENCY] Refused to re-bind {key} to tenant {tenant_id}", file=sys.stderr)
        return bound

    def release(self, key: str) -> None:
        """Drop an in-flight reservation. Never raises; a leftover slot expires via the TTL."""
        try:
            self.store.release_idempotency_key(key)
        except Exception as e:
            print(f"[IDEMPOTENCY] Failed to release {key}: {e}", file=sys.stderr)
