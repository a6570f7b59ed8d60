"""In-memory stand-ins for the record store, directory, Stripe and Resend."""

import copy
import itertools
import secrets
import threading
import time
import uuid

from auth import hash_password, hash_token
from onboarding.exceptions import WebhookAuthenticityError


class Failures:
    """Named failure switches: failures.arm('create_tenant') makes that call raise."""

    def __init__(self):
        self._armed = {}

    def arm(self, name, exc=None):
        self._armed[name] = exc or RuntimeError(f'{name} failed')

    def check(self, name):
        if name in self._armed:
            raise self._armed[name]


class InMemoryStore:
    """Mirrors RecordStore, including its unique constraints and atomic key insert."""

    def __init__(self):
        self.lock = threading.Lock()
        self.failures = Failures()
        self.clock = time.time
        self.keys = {}
        self.payment_accounts = {}
        self.tenants = {}
        self.memberships = []
        self.webhook_events = {}

    # idempotency keys

    def get_idempotency_key(self, key):
        with self.lock:
            row = self.keys.get(key)
            return dict(row) if row else None

    def insert_idempotency_key(self, key, stale_after_seconds):
        with self.lock:
            now = self.clock()
            row = self.keys.get(key)
            if row is None:
                self.keys[key] = {'key': key, 'tenant_id': None, 'reserved_at': now}
                return True
            if row['tenant_id'] is None and row['reserved_at'] < now - stale_after_seconds:
                row['reserved_at'] = now
                return True
            return False

    def bind_idempotency_key(self, key, tenant_id):
        with self.lock:
            row = self.keys.get(key)
            if row is None:
                self.keys[key] = {'key': key, 'tenant_id': tenant_id, 'reserved_at': self.clock()}
                return True
            if row['tenant_id'] in (None, tenant_id):
                row['tenant_id'] = tenant_id
                return True
            return False

    def release_idempotency_key(self, key):
        with self.lock:
            row = self.keys.get(key)
            if row and row['tenant_id'] is None:
                del self.keys[key]

    # payment accounts

    def save_payment_account(self, customer_ref, funding_source_ref, email, plan_id,
                             signup_context, verification_status='unverified'):
        self.failures.check('save_payment_account')
        with self.lock:
            if customer_ref in self.payment_accounts:
                raise RuntimeError('duplicate customer_ref')
            # partial unique index: one unlinked account per email
            for ref, row in list(self.payment_accounts.items()):
                if row['email'] == email and row['tenant_id'] is None:
                    del self.payment_accounts[ref]
            row = {
                'customer_ref': customer_ref,
                'funding_source_ref': funding_source_ref,
                'verification_ref': None,
                'verification_status': verification_status,
                'email': email,
                'plan_id': plan_id,
                'signup_context': copy.deepcopy(signup_context),
                'tenant_id': None,
            }
            self.payment_accounts[customer_ref] = row
            return dict(row)

    def get_payment_account(self, customer_ref):
        with self.lock:
            row = self.payment_accounts.get(customer_ref)
            return dict(row) if row else None

    def update_payment_account(self, customer_ref, **fields):
        self.failures.check('update_payment_account')
        with self.lock:
            row = self.payment_accounts.get(customer_ref)
            if not row:
                return None
            row.update(fields)
            return dict(row)

    # tenants & memberships

    def create_tenant(self, tenant):
        self.failures.check('create_tenant')
        with self.lock:
            for existing in self.tenants.values():
                if existing['processor_customer_ref'] == tenant['processor_customer_ref']:
                    raise RuntimeError('duplicate processor_customer_ref')
            row = dict(tenant)
            row.update({
                'id': str(uuid.uuid4()),
                'payment_failure_count': 0,
                'last_payment_failed_at': None,
                'processor_subscription_ref': None,
                'cancelled_at': None,
            })
            self.tenants[row['id']] = row
            return dict(row)

    def get_tenant(self, tenant_id):
        with self.lock:
            row = self.tenants.get(tenant_id)
            return dict(row) if row else None

    def get_tenant_by_customer(self, customer_ref):
        with self.lock:
            for row in self.tenants.values():
                if row['processor_customer_ref'] == customer_ref:
                    return dict(row)
            return None

    def update_tenant(self, tenant_id, **fields):
        self.failures.check('update_tenant')
        with self.lock:
            row = self.tenants.get(tenant_id)
            if not row:
                return None
            row.update(fields)
            return dict(row)

    def record_payment_failure(self, tenant_id):
        with self.lock:
            row = self.tenants.get(tenant_id)
            if not row:
                return None
            row['payment_failure_count'] += 1
            row['last_payment_failed_at'] = self.clock()
            row['subscription_status'] = 'past_due'
            return dict(row)

    def create_membership(self, tenant_id, account_id, role, capabilities):
        self.failures.check('create_membership')
        with self.lock:
            row = {'id': str(uuid.uuid4()), 'tenant_id': tenant_id, 'account_id': account_id,
                   'role': role, 'capabilities': dict(capabilities)}
            self.memberships.append(row)
            return dict(row)

    def get_memberships(self, tenant_id):
        with self.lock:
            return [dict(m) for m in self.memberships if m['tenant_id'] == tenant_id]

    # webhook events

    def record_webhook_event(self, external_event_id, event_type, payload):
        with self.lock:
            if external_event_id is not None:
                for row in self.webhook_events.values():
                    if row['external_event_id'] == external_event_id:
                        row['retry_count'] += 1
                        return dict(row)
            row = {
                'id': str(uuid.uuid4()),
                'external_event_id': external_event_id,
                'event_type': event_type,
                'payload': payload,
                'outcome': 'unprocessed',
                'error': None,
                'tenant_id': None,
                'customer_ref': None,
                'retry_count': 0,
                'claimed_at': None,
                'processed_at': None,
            }
            self.webhook_events[row['id']] = row
            return dict(row)

    def get_webhook_event(self, external_event_id):
        with self.lock:
            for row in self.webhook_events.values():
                if row['external_event_id'] == external_event_id:
                    return dict(row)
            return None

    def claim_webhook_event(self, event_row_id, lease_seconds):
        with self.lock:
            row = self.webhook_events[event_row_id]
            now = self.clock()
            if row['outcome'] == 'processed':
                return False
            if row['claimed_at'] is not None and row['claimed_at'] >= now - lease_seconds:
                return False
            row['claimed_at'] = now
            return True

    def finish_webhook_event(self, event_row_id, outcome, error=None, tenant_id=None,
                             customer_ref=None):
        with self.lock:
            row = self.webhook_events[event_row_id]
            row['outcome'] = outcome
            row['error'] = error
            row['tenant_id'] = tenant_id or row['tenant_id']
            row['customer_ref'] = customer_ref or row['customer_ref']
            if outcome == 'processed':
                row['processed_at'] = self.clock()
            row['claimed_at'] = None

    def note_webhook_error(self, event_row_id, error):
        with self.lock:
            row = self.webhook_events[event_row_id]
            if row['outcome'] != 'processed':
                row['error'] = error


class InMemoryDirectory:

    def __init__(self):
        self.lock = threading.Lock()
        self.failures = Failures()
        self.accounts = {}
        self.tokens = {}

    def account_exists(self, email):
        return self.find_account(email) is not None

    def find_account(self, email):
        with self.lock:
            for account in self.accounts.values():
                if account['email'] == email.lower():
                    return dict(account)
            return None

    def create_account(self, email, password, profile):
        self.failures.check('create_account')
        with self.lock:
            if any(a['email'] == email.lower() for a in self.accounts.values()):
                raise RuntimeError('duplicate email')
            account_id = str(uuid.uuid4())
            self.accounts[account_id] = {
                'id': account_id,
                'email': email.lower(),
                'password_hash': hash_password(password or secrets.token_urlsafe(24)),
                'temporary_password': password is None,
                'name': profile.get('full_name'),
                'profile': dict(profile),
                'status': 'active',
                'tenant_id': None,
            }
            return account_id

    def delete_account(self, account_id):
        with self.lock:
            self.accounts.pop(account_id, None)

    def link_tenant(self, account_id, tenant_id):
        self.failures.check('link_tenant')
        with self.lock:
            self.accounts[account_id]['tenant_id'] = tenant_id

    def set_password(self, account_id, password):
        with self.lock:
            account = self.accounts.get(account_id)
            if not account:
                return False
            account['password_hash'] = hash_password(password)
            account['temporary_password'] = False
            return True

    def issue_session_token(self, email):
        self.failures.check('issue_session_token')
        account = self.find_account(email)
        if not account:
            raise LookupError(email)
        raw = secrets.token_urlsafe(16)
        with self.lock:
            self.tokens[hash_token(raw)] = {'user_id': account['id'], 'used': False}
        return raw

    def redeem_session_token(self, raw_token):
        with self.lock:
            entry = self.tokens.get(hash_token(raw_token))
            if not entry or entry['used']:
                return None
            entry['used'] = True
            account = self.accounts.get(entry['user_id'])
            if not account:
                return None
            return {k: account[k] for k in ('id', 'email', 'name', 'tenant_id')}


class FakeProcessor:
    """Stripe stand-in. A signature of 'valid' is authentic, anything else is not."""

    def __init__(self, verification_status='pending'):
        self.webhook_secret = 'whsec_test'
        self.configured = True
        self.verification_status = verification_status
        self.failures = Failures()
        self.calls = []
        self._ids = itertools.count(1)

    def create_customer(self, owner):
        self.calls.append(('create_customer', owner.email))
        self.failures.check('create_customer')
        return f'cus_{next(self._ids)}'

    def attach_bank_account(self, customer_ref, routing_number, account_number, account_type,
                            account_holder_name):
        self.calls.append(('attach_bank_account', customer_ref))
        self.failures.check('attach_bank_account')
        return f'pm_{next(self._ids)}'

    def initiate_verification(self, customer_ref, funding_source_ref):
        self.calls.append(('initiate_verification', customer_ref))
        self.failures.check('initiate_verification')
        return {'verification_ref': f'seti_{next(self._ids)}', 'status': self.verification_status}

    def create_subscription(self, customer_ref, price_id, trial_end, payment_method,
                            metadata=None):
        self.calls.append(('create_subscription', customer_ref, price_id, trial_end,
                           payment_method))
        self.failures.check('create_subscription')
        return f'sub_{next(self._ids)}'

    def verify_signature(self, payload, sig_header):
        if sig_header != 'valid':
            raise WebhookAuthenticityError('bad signature')


class RecordingNotifier:

    def __init__(self):
        self.sent = []
        self.fail = False

    def send(self, email, template, variables):
        if self.fail:
            raise RuntimeError('mail down')
        self.sent.append((email, template, dict(variables)))
        return True

    def templates_for(self, email):
        return [t for e, t, _ in self.sent if e == email]
