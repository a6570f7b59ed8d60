"""
TradeSphere Plan Definitions
Domain: Billing

Plan tiers offered at signup. Every tier starts with a 30-day trial and is
billed monthly by ACH debit once the trial ends:
- Standard: core business management
- Pro: adds advanced pricing and reporting
- Enterprise: adds multi-location and dedicated support
"""

import os
from decimal import Decimal
from typing import Optional, Dict, Any

# Stripe Price IDs from environment
# These are created in Stripe Dashboard (test mode first, then live)
STRIPE_PRICE_STANDARD = os.environ.get('STRIPE_PRICE_STANDARD', 'price_test_standard')
STRIPE_PRICE_PRO = os.environ.get('STRIPE_PRICE_PRO', 'price_test_pro')
STRIPE_PRICE_ENTERPRISE = os.environ.get('STRIPE_PRICE_ENTERPRISE', 'price_test_enterprise')

TRIAL_DAYS = 30


PLANS: Dict[str, Dict[str, Any]] = {
    'standard': {
        'id': 'standard',
        'name': 'Standard',
        'description': 'Everything a growing trade business needs',
        'price': 200000,  # $2,000/month in cents
        'interval': 'month',
        'features': [
            'Job scheduling and dispatch',
            'Quotes and invoicing',
            'Customer records',
            'Email support'
        ],
        'stripe_price_id': STRIPE_PRICE_STANDARD
    },
    'pro': {
        'id': 'pro',
        'name': 'Pro',
        'description': 'Advanced pricing and reporting',
        'price': 350000,  # $3,500/month in cents
        'interval': 'month',
        'features': [
            'Everything in Standard',
            'AI pricing tools',
            'Profitability reporting',
            'Priority support'
        ],
        'stripe_price_id': STRIPE_PRICE_PRO
    },
    'enterprise': {
        'id': 'enterprise',
        'name': 'Enterprise',
        'description': 'For multi-location operators',
        'price': 500000,  # $5,000/month in cents
        'interval': 'month',
        'features': [
            'Everything in Pro',
            'Multi-location management',
            'Custom integrations',
            'Dedicated support'
        ],
        'stripe_price_id': STRIPE_PRICE_ENTERPRISE
    }
}


def get_plan(plan_id: str) -> Optional[Dict[str, Any]]:
    """
    Get a plan by ID.

    Args:
        plan_id: The plan identifier ('standard', 'pro', 'enterprise')

    Returns:
        Plan dictionary or None if not found
    """
    return PLANS.get(plan_id)


def is_valid_plan(plan_id) -> bool:
    """True if plan_id names one of the configured tiers."""
    return isinstance(plan_id, str) and plan_id in PLANS


def get_monthly_amount(plan_id: str) -> Decimal:
    """
    Monthly price of a plan in dollars.

    Args:
        plan_id: The plan identifier

    Returns:
        Decimal amount with two places (e.g. Decimal('2000.00'))

    Raises:
        KeyError: if the plan does not exist
    """
    cents = PLANS[plan_id]['price']
    return (Decimal(cents) / 100).quantize(Decimal('0.01'))


def get_plan_by_stripe_price(stripe_price_id: str) -> Optional[Dict[str, Any]]:
    """
    Look up a plan by its Stripe price ID.

    Args:
        stripe_price_id: The Stripe price ID

    Returns:
        Plan dictionary or None if not found
    """
    for plan in PLANS.values():
        if plan.get('stripe_price_id') == stripe_price_id:
            return plan
    return None
