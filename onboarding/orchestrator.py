"""
Onboarding Orchestrator
Domain: Onboarding

Runs one signup end to end:

    validate -> duplicate check -> reserve email key
             -> payment account -> tenant -> bind email key
             -> session token (best-effort) -> welcome email (best-effort)

Steps run strictly in order. Any fatal failure releases the email
reservation so the owner can simply submit the form again.
"""

import sys
from datetime import date

from billing.plans import get_plan
from onboarding.exceptions import (
    ValidationError,
    DuplicateRegistration,
    OnboardingError,
    ProvisionError,
)
from onboarding.idempotency import email_key
from onboarding.models import SignupRequest, SignupResult
from onboarding.validation import validate
from auth.directory import ONBOARDING_LINK_TTL_MINUTES


class OnboardingOrchestrator:

    def __init__(
        self,
        guard,
        payment_provisioner,
        tenant_provisioner,
        directory,
        notifier,
        validator=validate
    ):
        self.guard = guard
        self.payment_provisioner = payment_provisioner
        self.tenant_provisioner = tenant_provisioner
        self.directory = directory
        self.notifier = notifier
        self.validator = validator

    def onboard(self, request: SignupRequest) -> SignupResult:
        """
        Create payment account, tenant and owner for a signup.

        Returns:
            SignupResult on success

        Raises:
            ValidationError: request failed validation (nothing was touched)
            DuplicateRegistration: email or customer already has a tenant
            PaymentProviderError / ProvisionError: fatal step failure, compensated
        """
        result = self.validator(request)
        if not result.valid:
            raise ValidationError(result.errors)

        key = email_key(request.email)
        existing = self.guard.tenant_for(key)
        if existing:
            raise DuplicateRegistration(key, existing)
        if self.directory.account_exists(request.email):
            raise DuplicateRegistration(key)

        if not self.guard.reserve(key):
            raise DuplicateRegistration(key, self.guard.tenant_for(key))

        owner = request.owner_info()
        tenant_info = request.tenant_info()

        try:
            account = self.payment_provisioner.provision(
                owner, request.bank_info(), tenant_info, request.selected_plan
            )
            created = self.tenant_provisioner.create_tenant(
                owner, tenant_info, account, request.selected_plan,
                password=request.password
            )
        except DuplicateRegistration as e:
            # The payment webhook created the tenant first
            if e.tenant_id:
                self.guard.bind(key, e.tenant_id)
            else:
                self.guard.release(key)
            raise
        except OnboardingError as e:
            print(f"[ONBOARD] Signup failed for {request.email}: {e}", file=sys.stderr)
            self.guard.release(key)
            raise
        except Exception as e:
            print(f"[ONBOARD] Signup failed for {request.email}: {e}", file=sys.stderr)
            self.guard.release(key)
            raise ProvisionError('onboard', str(e)) from e

        tenant = created['tenant']
        tenant_id = str(tenant['id'])
        owner_id = created['owner_id']
        self.guard.bind(key, tenant_id)

        session_token = None
        try:
            session_token = self.directory.issue_session_token(request.email)
        except Exception as e:
            print(f"[ONBOARD] Session token failed for {request.email} (non-fatal): {e}",
                  file=sys.stderr)

        self._send_welcome(request, tenant, session_token)

        print(f"[ONBOARD] Onboarded {request.email}: tenant={tenant_id} owner={owner_id}", flush=True)

        return SignupResult(
            success=True,
            tenant_id=tenant_id,
            owner_id=owner_id,
            trial_end_date=_as_date(tenant['trial_end_date']),
            payment_method_status=tenant['payment_method_status'],
            session_token=session_token
        )

    def _send_welcome(self, request: SignupRequest, tenant, session_token) -> None:
        plan = get_plan(request.selected_plan) or {}
        try:
            self.notifier.send(request.email, 'welcome', {
                'first_name': request.first_name,
                'company_name': request.company_name,
                'plan_name': plan.get('name', request.selected_plan),
                'trial_end_date': _as_date(tenant['trial_end_date']).isoformat(),
                'session_token': session_token,
                'link_ttl': ONBOARDING_LINK_TTL_MINUTES,
            })
        except Exception as e:
            print(f"[ONBOARD] Welcome email failed for {request.email}: {e}", file=sys.stderr)


def _as_date(value) -> date:
    if isinstance(value, str):
        return date.fromisoformat(value[:10])
    return value
