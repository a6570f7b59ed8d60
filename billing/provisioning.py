"""
Shared Tenant Provisioning Logic
Domain: Onboarding

Both the signup saga (POST /v2/onboard/signup) and the funds-cleared webhook
call this. Creation is guarded by the processor customer key so exactly one
tenant exists per payment account, whichever path gets there first.

Steps and their compensation:
  0. reserve customer key   - taken: DuplicateRegistration
  1. identity account       - failure: release key
  2. tenant                 - failure: delete identity, release key
  3. owner membership       - failure: logged, tenant kept
  4. processor subscription - failure: logged, a later subscription event fills it in
Afterwards the key is bound and the payment account and identity are linked
to the tenant (link failures are logged only).
"""

import sys
from datetime import date, timedelta
from typing import Optional, Dict, Any

from billing.plans import TRIAL_DAYS, get_monthly_amount, get_plan
from billing.payment_accounts import VerificationStatus
from onboarding.exceptions import DuplicateRegistration, ProvisionError
from onboarding.idempotency import customer_key


OWNER_ROLE = 'owner'

OWNER_CAPABILITIES = {
    'manage_billing': True,
    'manage_users': True,
    'manage_settings': True,
    'manage_jobs': True,
    'manage_customers': True,
    'view_reports': True,
}


def trial_dates(today: date) -> Dict[str, Any]:
    """Trial end, first billing date and billing cycle day for a signup on `today`."""
    trial_end = today + timedelta(days=TRIAL_DAYS)
    next_billing = trial_end + timedelta(days=1)
    return {
        'trial_end_date': trial_end,
        'next_billing_date': next_billing,
        'billing_cycle_day': next_billing.day,
    }


class TenantProvisioner:

    def __init__(self, directory, store, guard, processor, today=date.today):
        self.directory = directory
        self.store = store
        self.guard = guard
        self.processor = processor
        self.today = today

    def create_tenant(
        self,
        owner,
        tenant_info,
        payment_account: Dict[str, Any],
        plan_id: str,
        password: Optional[str] = None,
        subscription_ref: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Create identity, tenant and owner membership for a payment account.

        Args:
            owner: OwnerInfo
            tenant_info: TenantInfo
            payment_account: Stored payment account dict
            plan_id: Selected plan
            password: Owner's chosen password; None on the webhook path
            subscription_ref: Existing Stripe subscription, if the event carried one

        Returns:
            {'tenant': dict, 'membership': dict or None, 'owner_id': str}

        Raises:
            DuplicateRegistration: the customer already has (or is getting) a tenant
            ProvisionError: identity or tenant creation failed (compensated)
        """
        customer_ref = payment_account['customer_ref']
        key = customer_key(customer_ref)

        if not self.guard.reserve(key):
            existing = self.guard.tenant_for(key)
            if not existing:
                tenant = self.store.get_tenant_by_customer(customer_ref)
                existing = str(tenant['id']) if tenant else None
            raise DuplicateRegistration(key, existing)

        # 1. identity
        try:
            owner_id = self.directory.create_account(owner.email, password, {
                'first_name': owner.first_name,
                'last_name': owner.last_name,
                'full_name': owner.full_name,
                'company_name': tenant_info.company_name,
            })
        except Exception as e:
            print(f"[PROVISION] Identity creation failed for {owner.email}: {e}", file=sys.stderr)
            self.guard.release(key)
            raise ProvisionError('identity', str(e)) from e

        # 2. tenant
        verified = payment_account.get('verification_status') == VerificationStatus.VERIFIED
        dates = trial_dates(self.today())
        try:
            tenant = self.store.create_tenant({
                'name': tenant_info.company_name,
                'email': owner.email,
                'industry': tenant_info.industry,
                'business_type': tenant_info.business_type,
                'owner_id': owner_id,
                'subscription_status': 'trial',
                'subscription_tier': plan_id,
                'monthly_amount': get_monthly_amount(plan_id),
                'trial_end_date': dates['trial_end_date'],
                'next_billing_date': dates['next_billing_date'],
                'billing_cycle_day': dates['billing_cycle_day'],
                'processor_customer_ref': customer_ref,
                'funding_source_ref': payment_account.get('funding_source_ref'),
                'payment_method_status': 'active' if verified else 'pending',
                'billing_email': owner.email,
                'billing_name': owner.full_name,
            })
        except Exception as e:
            print(f"[PROVISION] Tenant creation failed for {customer_ref}: {e}", file=sys.stderr)
            try:
                self.directory.delete_account(owner_id)
            except Exception as cleanup_error:
                print(f"[PROVISION] Could not remove identity {owner_id}: {cleanup_error}",
                      file=sys.stderr)
            self.guard.release(key)
            raise ProvisionError('tenant', str(e)) from e

        tenant_id = str(tenant['id'])
        print(f"[PROVISION] Created tenant {tenant_id} for {owner.email}", flush=True)

        # 3. membership
        membership = None
        try:
            membership = self.store.create_membership(
                tenant_id, owner_id, OWNER_ROLE, dict(OWNER_CAPABILITIES)
            )
        except Exception as e:
            print(f"[PROVISION] Owner membership failed for tenant {tenant_id} (kept): {e}",
                  file=sys.stderr)

        self.guard.bind(key, tenant_id)
        self._link(tenant_id, owner_id, customer_ref)

        # 4. subscription
        subscription_ref = subscription_ref or self._subscribe(
            customer_ref, plan_id, dates['trial_end_date'],
            payment_account.get('funding_source_ref'), tenant_info, owner
        )
        if subscription_ref:
            try:
                tenant = self.store.update_tenant(
                    tenant_id, processor_subscription_ref=subscription_ref
                ) or dict(tenant, processor_subscription_ref=subscription_ref)
            except Exception as e:
                print(f"[PROVISION] Could not store subscription {subscription_ref} "
                      f"for tenant {tenant_id}: {e}", file=sys.stderr)

        return {'tenant': tenant, 'membership': membership, 'owner_id': owner_id}

    def _subscribe(self, customer_ref, plan_id, trial_end, funding_source_ref, tenant_info,
                   owner) -> Optional[str]:
        plan = get_plan(plan_id) or {}
        try:
            return self.processor.create_subscription(
                customer_ref, plan.get('stripe_price_id'), trial_end, funding_source_ref,
                metadata={
                    'company_name': tenant_info.company_name,
                    'owner_name': owner.full_name,
                    'subscription_tier': plan_id,
                }
            )
        except Exception as e:
            print(f"[PROVISION] Subscription failed for {customer_ref} (non-fatal): {e}",
                  file=sys.stderr)
            return None

    def _link(self, tenant_id: str, owner_id: str, customer_ref: str) -> None:
        try:
            self.store.update_payment_account(customer_ref, tenant_id=tenant_id)
        except Exception as e:
            print(f"[PROVISION] Could not link payment account {customer_ref}: {e}", file=sys.stderr)
        try:
            self.directory.link_tenant(owner_id, tenant_id)
        except Exception as e:
            print(f"[PROVISION] Could not link account {owner_id}: {e}", file=sys.stderr)
