"""
Stripe Payment Processor Adapter
Domain: Billing

The three outbound calls the onboarding saga makes against Stripe, plus
inbound webhook signature verification:
- create_customer: Stripe Customer for the prospective tenant
- attach_bank_account: ACH us_bank_account PaymentMethod attached to the customer
- initiate_verification: SetupIntent with micro-deposit verification
- create_subscription: trialing subscription on the plan price, billed by ACH
- verify_signature: Stripe-Signature header check over the raw body

Each call is a single request with a bounded timeout and no automatic
retries; the caller decides what a failure means.
"""

import os
import sys
from datetime import datetime, time, timezone

import stripe

from onboarding.exceptions import WebhookAuthenticityError

STRIPE_TIMEOUT_SECONDS = int(os.environ.get('STRIPE_TIMEOUT_SECONDS', 10))
STRIPE_WEBHOOK_TOLERANCE = int(os.environ.get('STRIPE_WEBHOOK_TOLERANCE', 300))

# Initialize Stripe with secret key
stripe.api_key = os.environ.get('STRIPE_SECRET_KEY')
stripe.max_network_retries = 0
stripe.default_http_client = stripe.RequestsClient(timeout=STRIPE_TIMEOUT_SECONDS)
WEBHOOK_SECRET = os.environ.get('STRIPE_WEBHOOK_SECRET')


class StripePaymentProcessor:

    def __init__(self, webhook_secret=None, tolerance: int = STRIPE_WEBHOOK_TOLERANCE):
        self.webhook_secret = webhook_secret if webhook_secret is not None else WEBHOOK_SECRET
        self.tolerance = tolerance

    @property
    def configured(self) -> bool:
        return bool(stripe.api_key)

    def create_customer(self, owner) -> str:
        """
        Create the Stripe customer for a signup.

        Company and owner names go into metadata so a webhook can rebuild
        the tenant later without the original request.

        Returns:
            Stripe customer ID (cus_xxx)
        """
        customer = stripe.Customer.create(
            email=owner.email,
            name=owner.full_name,
            description=owner.company_name,
            metadata={
                'company_name': owner.company_name,
                'owner_name': owner.full_name,
                'business_type': owner.business_type or '',
                'industry': owner.industry or '',
            }
        )
        print(f"[STRIPE] Created customer {customer.id} for {owner.email}", flush=True)
        return customer.id

    def attach_bank_account(
        self,
        customer_ref: str,
        routing_number: str,
        account_number: str,
        account_type: str,
        account_holder_name: str
    ) -> str:
        """
        Add the bank account as the customer's ACH funding source.

        Returns:
            Stripe payment method ID (pm_xxx)
        """
        payment_method = stripe.PaymentMethod.create(
            type='us_bank_account',
            us_bank_account={
                'account_holder_type': 'company',
                'routing_number': routing_number,
                'account_number': account_number,
                'account_type': account_type,
            },
            billing_details={'name': account_holder_name}
        )
        stripe.PaymentMethod.attach(payment_method.id, customer=customer_ref)
        print(f"[STRIPE] Attached bank account {payment_method.id} to {customer_ref}", flush=True)
        return payment_method.id

    def initiate_verification(self, customer_ref: str, funding_source_ref: str) -> dict:
        """
        Start verifying the bank account.

        Stripe sends micro-deposits unless it can verify instantly.

        Returns:
            {'verification_ref': seti_xxx, 'status': 'verified' | 'pending'}
        """
        setup_intent = stripe.SetupIntent.create(
            customer=customer_ref,
            payment_method=funding_source_ref,
            payment_method_types=['us_bank_account'],
            payment_method_options={
                'us_bank_account': {'verification_method': 'microdeposits'}
            },
            mandate_data={'customer_acceptance': {'type': 'offline'}},
            confirm=True,
            usage='off_session'
        )
        status = 'verified' if setup_intent.status == 'succeeded' else 'pending'
        print(f"[STRIPE] Verification {setup_intent.id} for {funding_source_ref}: {setup_intent.status}", flush=True)
        return {'verification_ref': setup_intent.id, 'status': status}

    def create_subscription(
        self,
        customer_ref: str,
        price_id: str,
        trial_end,
        payment_method: str,
        metadata: dict = None
    ) -> str:
        """
        Start the subscription that bills the tenant after its trial.

        Payment stays incomplete until the bank account is verified; the
        verified account becomes the subscription's default payment method.

        Args:
            trial_end: Last trial day (date); billing starts at the next midnight UTC

        Returns:
            Stripe subscription ID (sub_xxx)
        """
        trial_end_ts = int(datetime.combine(trial_end, time.min, tzinfo=timezone.utc).timestamp()) + 86400
        subscription = stripe.Subscription.create(
            customer=customer_ref,
            items=[{'price': price_id}],
            trial_end=trial_end_ts,
            default_payment_method=payment_method,
            payment_behavior='default_incomplete',
            payment_settings={
                'payment_method_types': ['us_bank_account'],
                'save_default_payment_method': 'on_subscription',
            },
            metadata=metadata or {},
            idempotency_key=f'subscription:{customer_ref}'
        )
        print(f"[STRIPE] Created subscription {subscription.id} for {customer_ref} "
              f"(status: {subscription.status})", flush=True)
        return subscription.id

    def verify_signature(self, payload: bytes, sig_header) -> None:
        """
        Check the Stripe-Signature header against the raw request body.

        Raises:
            WebhookAuthenticityError: missing header, bad signature or stale timestamp
        """
        if not self.webhook_secret:
            raise WebhookAuthenticityError('webhook secret not configured')
        if not sig_header:
            raise WebhookAuthenticityError('missing Stripe-Signature header')

        if isinstance(payload, bytes):
            payload = payload.decode('utf-8', errors='replace')

        try:
            stripe.WebhookSignature.verify_header(
                payload, sig_header, self.webhook_secret, self.tolerance
            )
        except stripe.SignatureVerificationError as e:
            print(f"[STRIPE] Invalid signature: {e}", file=sys.stderr)
            raise WebhookAuthenticityError(str(e)) from e
