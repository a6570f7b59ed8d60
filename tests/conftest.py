"""Shared fixtures for the onboarding test suite."""

from datetime import date

import pytest

from billing.payment_accounts import PaymentAccountProvisioner
from billing.provisioning import TenantProvisioner
from billing.reconciliation import ReconciliationEngine
from onboarding.idempotency import IdempotencyGuard
from onboarding.orchestrator import OnboardingOrchestrator

from fakes import InMemoryStore, InMemoryDirectory, FakeProcessor, RecordingNotifier

TODAY = date(2025, 1, 15)


@pytest.fixture()
def store():
    return InMemoryStore()


@pytest.fixture()
def directory():
    return InMemoryDirectory()


@pytest.fixture()
def processor():
    return FakeProcessor()


@pytest.fixture()
def notifier():
    return RecordingNotifier()


@pytest.fixture()
def guard(store):
    return IdempotencyGuard(store, reservation_ttl=900)


@pytest.fixture()
def payment_provisioner(processor, store):
    return PaymentAccountProvisioner(processor, store)


@pytest.fixture()
def tenant_provisioner(directory, store, guard, processor):
    return TenantProvisioner(directory, store, guard, processor, today=lambda: TODAY)


@pytest.fixture()
def orchestrator(guard, payment_provisioner, tenant_provisioner, directory, notifier):
    return OnboardingOrchestrator(guard, payment_provisioner, tenant_provisioner, directory, notifier)


@pytest.fixture()
def engine(processor, store, guard, tenant_provisioner, directory, notifier):
    return ReconciliationEngine(processor, store, guard, tenant_provisioner, directory, notifier)


@pytest.fixture()
def signup_payload():
    """A valid registration form body."""
    return {
        'firstName': 'Dana',
        'lastName': 'Reyes',
        'email': 'Dana@ReyesPlumbing.com',
        'password': 'pipes-and-valves',
        'companyName': 'Reyes Plumbing',
        'industry': 'plumbing',
        'businessType': 'llc',
        'routingNumber': '011000015',
        'accountNumber': '000123456789',
        'bankAccountType': 'checking',
        'bankAccountName': 'Reyes Plumbing Operating',
        'selectedPlan': 'pro',
        'agreeToTerms': True,
        'authorizePayments': True,
    }
