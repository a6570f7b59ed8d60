"""
Webhook Reconciliation Engine
Domain: Billing

Applies asynchronous Stripe events to local billing state. Every delivery
goes through the same pipeline:

    received -> verified -> deduplicated -> routed -> applied

The delivery is stored before the signature is checked so nothing is ever
lost; only authentic events are applied, and each event id is applied at
most once (outcome 'processed' plus a short claim lease for concurrent
redeliveries).

The funds-cleared handler is also the safety net for signups whose
synchronous saga died after the payment account was stored: it creates the
tenant from the saved signup context, guarded by the same customer key the
signup path uses.
"""

import os
import sys
import json
from datetime import datetime, timezone, date
from typing import Optional, Dict, Any

from billing.plans import get_plan, get_plan_by_stripe_price, get_monthly_amount
from billing.payment_accounts import VerificationStatus
from onboarding.exceptions import (
    DuplicateRegistration,
    ReconciliationError,
    WebhookAuthenticityError,
)
from onboarding.idempotency import email_key
from onboarding.models import OwnerInfo, TenantInfo
from auth.directory import ONBOARDING_LINK_TTL_MINUTES

WEBHOOK_CLAIM_LEASE_SECONDS = int(os.environ.get('WEBHOOK_CLAIM_LEASE_SECONDS', 300))

# Stripe event type -> category
EVENT_CATEGORIES = {
    'setup_intent.succeeded': 'verification_succeeded',
    'setup_intent.setup_failed': 'verification_failed',
    'invoice.payment_succeeded': 'funds_cleared',
    'invoice.paid': 'funds_cleared',
    'payment_intent.succeeded': 'funds_cleared',
    'invoice.payment_failed': 'funds_failed',
    'payment_intent.payment_failed': 'funds_failed',
    'customer.subscription.created': 'subscription_changed',
    'customer.subscription.updated': 'subscription_changed',
    'customer.subscription.deleted': 'subscription_changed',
}

# Stripe subscription status -> tenant subscription_status
SUBSCRIPTION_STATUS_MAP = {
    'trialing': 'trial',
    'active': 'active',
    'past_due': 'past_due',
    'unpaid': 'past_due',
    'incomplete': 'past_due',
    'canceled': 'cancelled',
    'incomplete_expired': 'cancelled',
}


def _from_timestamp(ts) -> Optional[date]:
    if not ts:
        return None
    return datetime.fromtimestamp(int(ts), tz=timezone.utc).date()


def _first_item(obj: Dict[str, Any], field: str) -> Dict[str, Any]:
    data = (obj.get(field) or {}).get('data') or []
    return data[0] if data else {}


class ReconciliationEngine:

    def __init__(self, processor, store, guard, tenant_provisioner, directory, notifier,
                 claim_lease: int = WEBHOOK_CLAIM_LEASE_SECONDS):
        self.processor = processor
        self.store = store
        self.guard = guard
        self.tenant_provisioner = tenant_provisioner
        self.directory = directory
        self.notifier = notifier
        self.claim_lease = claim_lease

        self.handlers = {
            'verification_succeeded': self._on_verification_succeeded,
            'verification_failed': self._on_verification_failed,
            'funds_cleared': self._on_funds_cleared,
            'funds_failed': self._on_funds_failed,
            'subscription_changed': self._on_subscription_changed,
        }

    def receive(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Process one webhook delivery.

        Args:
            payload: Raw request body, exactly as received
            signature: Stripe-Signature header value

        Returns:
            Outcome dict: {'status': processed | duplicate | in_progress |
            ignored | failed | error, 'event_id', 'event_type', ...}

        Raises:
            WebhookAuthenticityError: signature check failed (event stored, not applied)
        """
        text = payload.decode('utf-8', errors='replace') if isinstance(payload, bytes) else payload

        # received
        try:
            event = json.loads(text)
        except ValueError:
            event = None
        if not isinstance(event, dict):
            event = None

        event_id = event.get('id') if event else None
        event_type = event.get('type') if event else None
        row = self.store.record_webhook_event(event_id, event_type, text)
        row_id = str(row['id'])

        print(f"[WEBHOOK] Received {event_type} ({event_id}), delivery #{row['retry_count'] + 1}",
              flush=True)

        # verified
        try:
            self.processor.verify_signature(payload, signature)
        except WebhookAuthenticityError as e:
            self.store.note_webhook_error(row_id, f'signature: {e}')
            raise

        if not event_id or not event_type:
            self.store.finish_webhook_event(row_id, 'error', error='unparseable payload')
            return {'status': 'error', 'event_id': event_id, 'event_type': event_type}

        outcome = {'event_id': event_id, 'event_type': event_type}

        # deduplicated
        if row.get('outcome') == 'processed':
            print(f"[WEBHOOK] Duplicate {event_id}, already processed", flush=True)
            return dict(outcome, status='duplicate')
        if not self.store.claim_webhook_event(row_id, self.claim_lease):
            print(f"[WEBHOOK] {event_id} is being processed by another delivery", flush=True)
            return dict(outcome, status='in_progress')

        # routed
        category = EVENT_CATEGORIES.get(event_type)
        if category is None:
            self.store.finish_webhook_event(row_id, 'processed')
            return dict(outcome, status='ignored')

        obj = (event.get('data') or {}).get('object') or {}

        # applied
        try:
            links = self.handlers[category](obj, event_type) or {}
        except Exception as e:
            error = ReconciliationError(f'{category}: {e}')
            print(f"[WEBHOOK] {event_id} failed: {error}", file=sys.stderr)
            self.store.finish_webhook_event(
                row_id, 'unprocessed', error=str(error), customer_ref=obj.get('customer')
            )
            return dict(outcome, status='failed', category=category, error=str(error))

        self.store.finish_webhook_event(
            row_id, 'processed',
            tenant_id=links.get('tenant_id'),
            customer_ref=links.get('customer_ref')
        )
        print(f"[WEBHOOK] Applied {event_type} ({event_id}) as {category}", flush=True)
        return dict(outcome, status='processed', category=category, tenant_id=links.get('tenant_id'))

    # ------------------------------------------------------------------
    # handlers
    # ------------------------------------------------------------------

    def _on_verification_succeeded(self, obj: Dict[str, Any], event_type: str) -> Dict[str, Any]:
        customer_ref = obj.get('customer')
        if not customer_ref:
            raise ReconciliationError('setup intent without customer')

        if self.store.get_payment_account(customer_ref):
            self.store.update_payment_account(customer_ref,
                                              verification_status=VerificationStatus.VERIFIED)

        tenant = self.store.get_tenant_by_customer(customer_ref)
        tenant_id = None
        if tenant:
            tenant_id = str(tenant['id'])
            self.store.update_tenant(tenant_id, payment_method_status='active')

        return {'customer_ref': customer_ref, 'tenant_id': tenant_id}

    def _on_verification_failed(self, obj: Dict[str, Any], event_type: str) -> Dict[str, Any]:
        customer_ref = obj.get('customer')
        if not customer_ref:
            raise ReconciliationError('setup intent without customer')

        account = self.store.get_payment_account(customer_ref)
        if account:
            self.store.update_payment_account(customer_ref,
                                              verification_status=VerificationStatus.FAILED)

        tenant = self.store.get_tenant_by_customer(customer_ref)
        tenant_id = None
        if tenant:
            tenant_id = str(tenant['id'])
            self.store.update_tenant(tenant_id, payment_method_status='inactive')

        email = (tenant or {}).get('billing_email') or (account or {}).get('email')
        if email:
            context = _signup_context(account)
            self._notify(email, 'verification_failed', {
                'first_name': context.get('first_name', ''),
                'company_name': (tenant or {}).get('name') or context.get('company_name', ''),
                'trial_end_date': _iso((tenant or {}).get('trial_end_date')),
            })

        return {'customer_ref': customer_ref, 'tenant_id': tenant_id}

    def _on_funds_cleared(self, obj: Dict[str, Any], event_type: str) -> Dict[str, Any]:
        customer_ref = obj.get('customer')
        if not customer_ref:
            raise ReconciliationError('payment without customer')

        tenant = self.store.get_tenant_by_customer(customer_ref)
        if not tenant:
            tenant = self._create_deferred_tenant(customer_ref, obj.get('subscription'))
        if not tenant:
            print(f"[WEBHOOK] No payment account for {customer_ref}, nothing to apply", flush=True)
            return {'customer_ref': customer_ref}

        tenant_id = str(tenant['id'])
        fields = {
            'subscription_status': 'active',
            'payment_method_status': 'active',
            'payment_failure_count': 0,
        }
        next_billing = _next_billing_date(obj)
        if next_billing:
            fields['next_billing_date'] = next_billing
        self.store.update_tenant(tenant_id, **fields)

        if self.store.get_payment_account(customer_ref):
            self.store.update_payment_account(customer_ref,
                                              verification_status=VerificationStatus.VERIFIED)

        return {'customer_ref': customer_ref, 'tenant_id': tenant_id}

    def _on_funds_failed(self, obj: Dict[str, Any], event_type: str) -> Dict[str, Any]:
        customer_ref = obj.get('customer')
        if not customer_ref:
            raise ReconciliationError('payment without customer')

        tenant = self.store.get_tenant_by_customer(customer_ref)
        if not tenant:
            print(f"[WEBHOOK] Payment failed for {customer_ref} with no tenant", flush=True)
            return {'customer_ref': customer_ref}

        tenant_id = str(tenant['id'])
        updated = self.store.record_payment_failure(tenant_id) or tenant

        cents = obj.get('amount_due', obj.get('amount')) or 0
        self._notify(tenant.get('billing_email') or tenant['email'], 'payment_failed', {
            'first_name': (tenant.get('billing_name') or '').split(' ')[0],
            'company_name': tenant['name'],
            'amount': f'${int(cents) / 100:,.2f}',
            'failure_count': updated.get('payment_failure_count'),
        })

        return {'customer_ref': customer_ref, 'tenant_id': tenant_id}

    def _on_subscription_changed(self, obj: Dict[str, Any], event_type: str) -> Dict[str, Any]:
        customer_ref = obj.get('customer')
        if not customer_ref:
            raise ReconciliationError('subscription without customer')

        tenant = self.store.get_tenant_by_customer(customer_ref)
        if not tenant:
            print(f"[WEBHOOK] Subscription change for {customer_ref} with no tenant", flush=True)
            return {'customer_ref': customer_ref}

        tenant_id = str(tenant['id'])
        if event_type == 'customer.subscription.deleted':
            status = 'cancelled'
        else:
            status = SUBSCRIPTION_STATUS_MAP.get(obj.get('status'), tenant['subscription_status'])

        fields = {
            'subscription_status': status,
            'processor_subscription_ref': obj.get('id'),
        }

        item = _first_item(obj, 'items')
        period_end = obj.get('current_period_end') or item.get('current_period_end')
        if period_end:
            fields['next_billing_date'] = _from_timestamp(period_end)

        plan = get_plan_by_stripe_price((item.get('price') or {}).get('id'))
        if plan:
            fields['subscription_tier'] = plan['id']
            fields['monthly_amount'] = get_monthly_amount(plan['id'])

        if status == 'cancelled':
            canceled_at = obj.get('canceled_at') or obj.get('ended_at')
            fields['cancelled_at'] = (
                datetime.fromtimestamp(int(canceled_at), tz=timezone.utc)
                if canceled_at else datetime.now(timezone.utc)
            )

        self.store.update_tenant(tenant_id, **fields)
        return {'customer_ref': customer_ref, 'tenant_id': tenant_id}

    # ------------------------------------------------------------------
    # deferred tenant creation
    # ------------------------------------------------------------------

    def _create_deferred_tenant(self, customer_ref: str,
                                subscription_ref: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """
        Create the tenant for a payment account whose signup never finished.

        An invoice event names the subscription it bills; that one is reused
        instead of opening a second.

        Returns:
            Tenant dict, or None if there is no payment account for the customer

        Raises:
            ReconciliationError: another path is creating the tenant right now,
                                 or the owner email already belongs to a tenant
        """
        account = self.store.get_payment_account(customer_ref)
        if not account:
            return None
        if account.get('tenant_id'):
            return self.store.get_tenant(str(account['tenant_id']))

        context = _signup_context(account)
        email = account['email']
        key = email_key(email)
        if self.guard.has_tenant_for(key):
            raise ReconciliationError(f'{email} already has a tenant')

        owner = OwnerInfo(
            first_name=context.get('first_name') or '',
            last_name=context.get('last_name') or '',
            email=email,
            company_name=context.get('company_name') or email,
            business_type=context.get('business_type'),
            industry=context.get('industry'),
        )
        tenant_info = TenantInfo(
            company_name=owner.company_name,
            industry=context.get('industry'),
            business_type=context.get('business_type'),
        )
        plan_id = account.get('plan_id') or context.get('plan')

        try:
            created = self.tenant_provisioner.create_tenant(
                owner, tenant_info, account, plan_id, password=None,
                subscription_ref=subscription_ref
            )
        except DuplicateRegistration as e:
            if e.tenant_id:
                return self.store.get_tenant(e.tenant_id)
            raise ReconciliationError(f'tenant for {customer_ref} is being created elsewhere') from e

        tenant = created['tenant']
        self.guard.bind(key, str(tenant['id']))
        print(f"[WEBHOOK] Created deferred tenant {tenant['id']} for {customer_ref}", flush=True)

        session_token = None
        try:
            session_token = self.directory.issue_session_token(email)
        except Exception as e:
            print(f"[WEBHOOK] Session token failed for {email} (non-fatal): {e}", file=sys.stderr)

        plan = get_plan(plan_id) or {}
        self._notify(email, 'welcome', {
            'first_name': owner.first_name,
            'company_name': owner.company_name,
            'plan_name': plan.get('name', plan_id),
            'trial_end_date': _iso(tenant.get('trial_end_date')),
            'session_token': session_token,
            'link_ttl': ONBOARDING_LINK_TTL_MINUTES,
        })
        return tenant

    def _notify(self, email: str, template: str, variables: Dict[str, Any]) -> None:
        """Send a mail without letting delivery affect the event outcome."""
        try:
            self.notifier.send(email, template, variables)
        except Exception as e:
            print(f"[WEBHOOK] '{template}' email to {email} failed (non-fatal): {e}", file=sys.stderr)


def _signup_context(account: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    context = (account or {}).get('signup_context') or {}
    if isinstance(context, str):
        context = json.loads(context)
    return context


def _next_billing_date(obj: Dict[str, Any]) -> Optional[date]:
    line = _first_item(obj, 'lines')
    period_end = (line.get('period') or {}).get('end') or obj.get('period_end')
    return _from_timestamp(period_end)


def _iso(value) -> str:
    if value is None:
        return ''
    return value.isoformat() if hasattr(value, 'isoformat') else str(value)
