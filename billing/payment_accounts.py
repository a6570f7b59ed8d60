"""
Payment Account Provisioning
Domain: Billing

Sets up the billing relationship for a prospective tenant:
  (a) create processor customer           - fatal on failure
  (b) attach bank account (funding source) - fatal on failure
  (c) initiate bank verification          - NON-FATAL, account left 'pending'

Nothing is written locally until (a) and (b) have both succeeded. No step
is retried here; the failure goes back to the orchestrator.
"""

import sys
from typing import Dict, Any

from onboarding.exceptions import PaymentProviderError, ProvisionError
from onboarding.models import signup_context


class VerificationStatus:
    UNVERIFIED = 'unverified'
    PENDING = 'pending'
    VERIFIED = 'verified'
    FAILED = 'failed'


class PaymentAccountProvisioner:

    def __init__(self, processor, store):
        self.processor = processor
        self.store = store

    def provision(self, owner, bank, tenant_info, plan_id: str) -> Dict[str, Any]:
        """
        Create customer + funding source and start verification.

        Args:
            owner: OwnerInfo
            bank: BankInfo
            tenant_info: TenantInfo (kept on the account for the webhook path)
            plan_id: Selected plan

        Returns:
            Stored payment account dict

        Raises:
            PaymentProviderError: customer or funding source creation failed
            ProvisionError: the payment account record could not be stored
        """
        # (a) customer
        try:
            customer_ref = self.processor.create_customer(owner)
        except Exception as e:
            print(f"[PAYMENT] Customer creation failed for {owner.email}: {e}", file=sys.stderr)
            raise PaymentProviderError('create_customer', str(e)) from e

        # (b) funding source
        try:
            funding_source_ref = self.processor.attach_bank_account(
                customer_ref,
                bank.routing_number,
                bank.account_number,
                bank.account_type,
                bank.account_holder_name
            )
        except Exception as e:
            print(f"[PAYMENT] Bank account attach failed for {customer_ref}: {e}", file=sys.stderr)
            raise PaymentProviderError('attach_bank_account', str(e)) from e

        try:
            account = self.store.save_payment_account(
                customer_ref=customer_ref,
                funding_source_ref=funding_source_ref,
                email=owner.email,
                plan_id=plan_id,
                signup_context=signup_context(owner, tenant_info, plan_id),
                verification_status=VerificationStatus.UNVERIFIED
            )
        except Exception as e:
            print(f"[PAYMENT] Could not store payment account {customer_ref}: {e}", file=sys.stderr)
            raise ProvisionError('payment_account', str(e)) from e

        # (c) verification - non-fatal
        status = VerificationStatus.PENDING
        verification_ref = None
        try:
            result = self.processor.initiate_verification(customer_ref, funding_source_ref)
            verification_ref = result.get('verification_ref')
            if result.get('status') == VerificationStatus.VERIFIED:
                status = VerificationStatus.VERIFIED
        except Exception as e:
            print(f"[PAYMENT] Verification initiation failed (non-fatal) for {customer_ref}: {e}",
                  file=sys.stderr)

        try:
            updated = self.store.update_payment_account(
                customer_ref,
                verification_status=status,
                verification_ref=verification_ref
            )
            if updated:
                account = updated
        except Exception as e:
            # Account exists; verification state can be reconciled from webhooks
            print(f"[PAYMENT] Could not record verification state for {customer_ref}: {e}",
                  file=sys.stderr)
            account = dict(account, verification_status=status, verification_ref=verification_ref)

        print(f"[PAYMENT] Payment account ready: customer={customer_ref} "
              f"verification={account['verification_status']}", flush=True)
        return account
