"""
Onboarding error taxonomy.

Route handlers map these to status codes; nothing below the route layer
formats HTTP responses.
"""

from typing import List, Optional


class OnboardingError(Exception):
    """Base class for every error raised by the onboarding saga."""


class ValidationError(OnboardingError):
    """Client-fixable input problems. Carries every violated rule."""

    def __init__(self, errors: List[dict]):
        self.errors = list(errors)
        super().__init__(f'{len(self.errors)} validation error(s)')

    @property
    def messages(self) -> List[str]:
        return [e['message'] for e in self.errors]


class DuplicateRegistration(OnboardingError):
    """Email or processor customer reference already bound to a tenant."""

    def __init__(self, key: str, tenant_id: Optional[str] = None):
        self.key = key
        self.tenant_id = tenant_id
        super().__init__(f'already registered: {key}')


class PaymentProviderError(OnboardingError):
    """A payment processor call failed.

    fatal=True for customer / funding source creation (aborts the saga),
    fatal=False for verification initiation (logged and swallowed).
    """

    def __init__(self, step: str, message: str, fatal: bool = True):
        self.step = step
        self.fatal = fatal
        super().__init__(f'{step}: {message}')


class ProvisionError(OnboardingError):
    """Identity, tenant or payment account record creation failed."""

    def __init__(self, step: str, message: str):
        self.step = step
        super().__init__(f'{step}: {message}')


class WebhookAuthenticityError(OnboardingError):
    """Inbound webhook failed signature verification. Never processed."""


class ReconciliationError(OnboardingError):
    """A webhook handler could not apply an authentic event."""
