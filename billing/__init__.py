"""
TradeSphere Billing Module

This module handles:
- Plan definitions and pricing
- Stripe ACH customer / bank account setup
- Tenant provisioning for new signups
- Stripe webhook reconciliation
"""

from billing.plans import PLANS, TRIAL_DAYS, get_plan, get_monthly_amount, get_plan_by_stripe_price

__all__ = [
    'PLANS', 'TRIAL_DAYS', 'get_plan', 'get_monthly_amount', 'get_plan_by_stripe_price'
]
