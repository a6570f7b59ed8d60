"""
Signup request and result types.

SignupRequest is built per HTTP call from the camelCase JSON the registration
form posts, validated, then split into the pieces each provisioner needs.
Nothing here is persisted as-is.
"""

from dataclasses import dataclass, asdict
from datetime import date
from typing import Optional, Dict, Any


def _text(value) -> str:
    """Coerce a JSON field to a stripped string ('' for missing/None)."""
    if value is None:
        return ''
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, bool):
        return ''
    return str(value).strip()


@dataclass
class OwnerInfo:
    first_name: str
    last_name: str
    email: str
    company_name: str
    business_type: Optional[str] = None
    industry: Optional[str] = None

    @property
    def full_name(self) -> str:
        return f'{self.first_name} {self.last_name}'.strip()


@dataclass
class TenantInfo:
    company_name: str
    industry: Optional[str] = None
    business_type: Optional[str] = None


@dataclass
class BankInfo:
    routing_number: str
    account_number: str
    account_type: str
    account_holder_name: str

    def __repr__(self) -> str:
        # Never let account numbers reach a log line
        return (f'BankInfo(routing_number=***{self.routing_number[-4:]}, '
                f'account_number=***{self.account_number[-4:]}, '
                f'account_type={self.account_type!r})')


@dataclass
class SignupRequest:
    first_name: str = ''
    last_name: str = ''
    email: str = ''
    password: str = ''
    company_name: str = ''
    industry: str = ''
    business_type: str = ''
    routing_number: str = ''
    account_number: str = ''
    bank_account_type: str = ''
    bank_account_name: str = ''
    selected_plan: str = ''
    agree_to_terms: bool = False
    authorize_payments: bool = False

    @classmethod
    def from_json(cls, data: Optional[Dict[str, Any]]) -> 'SignupRequest':
        """
        Build a request from the registration form body.

        Missing or wrongly typed fields become empty values so the validator
        can report them; nothing here raises.
        """
        if not isinstance(data, dict):
            data = {}
        password = data.get('password')
        return cls(
            first_name=_text(data.get('firstName')),
            last_name=_text(data.get('lastName')),
            email=_text(data.get('email')).lower(),
            password=password if isinstance(password, str) else '',
            company_name=_text(data.get('companyName')),
            industry=_text(data.get('industry')),
            business_type=_text(data.get('businessType')),
            routing_number=_text(data.get('routingNumber')),
            account_number=_text(data.get('accountNumber')),
            bank_account_type=_text(data.get('bankAccountType')).lower(),
            bank_account_name=_text(data.get('bankAccountName')),
            selected_plan=_text(data.get('selectedPlan')).lower(),
            agree_to_terms=data.get('agreeToTerms') is True,
            authorize_payments=data.get('authorizePayments') is True,
        )

    def owner_info(self) -> OwnerInfo:
        return OwnerInfo(
            first_name=self.first_name,
            last_name=self.last_name,
            email=self.email,
            company_name=self.company_name,
            business_type=self.business_type or None,
            industry=self.industry or None,
        )

    def tenant_info(self) -> TenantInfo:
        return TenantInfo(
            company_name=self.company_name,
            industry=self.industry or None,
            business_type=self.business_type or None,
        )

    def bank_info(self) -> BankInfo:
        return BankInfo(
            routing_number=self.routing_number,
            account_number=self.account_number,
            account_type=self.bank_account_type,
            account_holder_name=self.bank_account_name or f'{self.company_name} Bank Account',
        )

    def __repr__(self) -> str:
        return (f'SignupRequest(email={self.email!r}, company_name={self.company_name!r}, '
                f'selected_plan={self.selected_plan!r})')


@dataclass
class SignupResult:
    success: bool
    tenant_id: Optional[str] = None
    owner_id: Optional[str] = None
    trial_end_date: Optional[date] = None
    payment_method_status: Optional[str] = None
    session_token: Optional[str] = None

    def to_json(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'tenantId': self.tenant_id,
            'ownerId': self.owner_id,
            'trialEndDate': self.trial_end_date.isoformat() if self.trial_end_date else None,
            'paymentMethodStatus': self.payment_method_status,
            'sessionToken': self.session_token,
        }


def signup_context(owner: OwnerInfo, tenant: TenantInfo, plan_id: str) -> Dict[str, Any]:
    """
    Fields stored with a PaymentAccount so the webhook path can create the
    tenant later. Bank numbers and passwords are never included.
    """
    context = asdict(owner)
    context.update({
        'company_name': tenant.company_name,
        'industry': tenant.industry,
        'business_type': tenant.business_type,
        'plan': plan_id,
    })
    return context
