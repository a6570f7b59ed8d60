"""
Signup Request Validation
Domain: Onboarding

Pure checks against a SignupRequest. No I/O, no ordering between rules:
every violated rule is reported so the form can show all errors at once.
"""

import os
import re
from dataclasses import dataclass, field
from typing import List

from billing.plans import PLANS, is_valid_plan
from onboarding.models import SignupRequest

ROUTING_CHECKSUM_ENABLED = os.environ.get('ROUTING_CHECKSUM_ENABLED', 'true').lower() == 'true'

EMAIL_PATTERN = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')
ROUTING_NUMBER_PATTERN = re.compile(r'^\d{9}$')
ACCOUNT_NUMBER_PATTERN = re.compile(r'^\d{4,17}$')

MIN_PASSWORD_LENGTH = 8
ACCOUNT_TYPES = ('checking', 'savings')
BUSINESS_TYPES = ('llc', 'corporation', 'soleProprietorship', 'partnership')

REQUIRED_FIELDS = (
    ('first_name', 'First name is required'),
    ('last_name', 'Last name is required'),
    ('email', 'Email is required'),
    ('password', 'Password is required'),
    ('company_name', 'Company name is required'),
    ('industry', 'Industry is required'),
    ('business_type', 'Business type is required'),
    ('routing_number', 'Routing number is required'),
    ('account_number', 'Account number is required'),
    ('bank_account_type', 'Bank account type is required'),
    ('selected_plan', 'Plan selection is required'),
)


@dataclass
class ValidationResult:
    valid: bool
    errors: List[dict] = field(default_factory=list)


def _issue(field_name: str, rule: str, message: str) -> dict:
    return {'field': field_name, 'rule': rule, 'message': message}


def aba_checksum_ok(routing_number: str) -> bool:
    """
    ABA routing number checksum.

    3*(d1+d4+d7) + 7*(d2+d5+d8) + (d3+d6+d9) must be a multiple of 10.
    """
    if not ROUTING_NUMBER_PATTERN.match(routing_number):
        return False
    d = [int(c) for c in routing_number]
    total = (3 * (d[0] + d[3] + d[6])
             + 7 * (d[1] + d[4] + d[7])
             + (d[2] + d[5] + d[8]))
    return total % 10 == 0


def validate(request: SignupRequest) -> ValidationResult:
    """
    Check a signup request against every structural and business rule.

    Args:
        request: Parsed SignupRequest

    Returns:
        ValidationResult with valid=False and the complete list of violations
        (each {'field', 'rule', 'message'}) when anything is wrong
    """
    errors = []

    for field_name, message in REQUIRED_FIELDS:
        if not getattr(request, field_name):
            errors.append(_issue(field_name, 'required', message))

    if request.email and not EMAIL_PATTERN.match(request.email):
        errors.append(_issue('email', 'email_format', 'Invalid email format'))

    if request.password and len(request.password) < MIN_PASSWORD_LENGTH:
        errors.append(_issue(
            'password', 'password_length',
            f'Password must be at least {MIN_PASSWORD_LENGTH} characters long'
        ))

    if request.routing_number:
        if not ROUTING_NUMBER_PATTERN.match(request.routing_number):
            errors.append(_issue(
                'routing_number', 'routing_number_format',
                'Routing number must be exactly 9 digits'
            ))
        elif ROUTING_CHECKSUM_ENABLED and not aba_checksum_ok(request.routing_number):
            errors.append(_issue(
                'routing_number', 'routing_number_checksum',
                'Routing number is not a valid ABA routing number'
            ))

    if request.account_number and not ACCOUNT_NUMBER_PATTERN.match(request.account_number):
        errors.append(_issue(
            'account_number', 'account_number_format',
            'Account number must be between 4 and 17 digits'
        ))

    if request.business_type and request.business_type not in BUSINESS_TYPES:
        errors.append(_issue(
            'business_type', 'business_type_choice',
            'Business type must be one of: ' + ', '.join(BUSINESS_TYPES)
        ))

    if request.bank_account_type and request.bank_account_type not in ACCOUNT_TYPES:
        errors.append(_issue(
            'bank_account_type', 'account_type_choice',
            'Bank account type must be checking or savings'
        ))

    if request.selected_plan and not is_valid_plan(request.selected_plan):
        errors.append(_issue(
            'selected_plan', 'plan_choice',
            'Invalid plan selection (choose ' + ', '.join(PLANS) + ')'
        ))

    if not request.agree_to_terms:
        errors.append(_issue(
            'agree_to_terms', 'consent_terms',
            'You must agree to the terms and conditions'
        ))
    if not request.authorize_payments:
        errors.append(_issue(
            'authorize_payments', 'consent_payments',
            'You must authorize payment processing'
        ))

    return ValidationResult(valid=not errors, errors=errors)
