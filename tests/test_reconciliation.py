"""Tests for Stripe webhook reconciliation."""

import json
from datetime import date

import pytest

from onboarding.exceptions import WebhookAuthenticityError
from onboarding.idempotency import email_key
from onboarding.models import SignupRequest


def _event(event_id, event_type, obj):
    return json.dumps({
        'id': event_id,
        'type': event_type,
        'data': {'object': obj},
    }).encode()


@pytest.fixture()
def pending_account(payment_provisioner, signup_payload):
    """A payment account whose signup never reached tenant creation."""
    request = SignupRequest.from_json(signup_payload)
    return payment_provisioner.provision(
        request.owner_info(), request.bank_info(), request.tenant_info(), 'pro'
    )


@pytest.fixture()
def onboarded(orchestrator, store, signup_payload):
    result = orchestrator.onboard(SignupRequest.from_json(signup_payload))
    tenant = store.get_tenant(result.tenant_id)
    return tenant


def test_invalid_signature_is_rejected_and_not_processed(engine, store, onboarded):
    payload = _event('evt_bad', 'setup_intent.succeeded',
                     {'customer': onboarded['processor_customer_ref']})

    with pytest.raises(WebhookAuthenticityError):
        engine.receive(payload, 't=1,v1=forged')

    event = store.get_webhook_event('evt_bad')
    assert event['outcome'] == 'unprocessed'
    assert 'signature' in event['error']
    assert store.get_tenant(str(onboarded['id']))['payment_method_status'] == 'pending'


def test_verification_succeeded(engine, store, onboarded):
    ref = onboarded['processor_customer_ref']
    outcome = engine.receive(_event('evt_1', 'setup_intent.succeeded', {'customer': ref}), 'valid')

    assert outcome['status'] == 'processed'
    assert outcome['category'] == 'verification_succeeded'
    assert store.get_payment_account(ref)['verification_status'] == 'verified'
    assert store.get_tenant(str(onboarded['id']))['payment_method_status'] == 'active'

    event = store.get_webhook_event('evt_1')
    assert event['outcome'] == 'processed'
    assert event['tenant_id'] == str(onboarded['id'])
    assert event['customer_ref'] == ref


def test_verification_failed_notifies_owner(engine, store, notifier, onboarded):
    ref = onboarded['processor_customer_ref']
    engine.receive(_event('evt_2', 'setup_intent.setup_failed', {'customer': ref}), 'valid')

    assert store.get_payment_account(ref)['verification_status'] == 'failed'
    assert store.get_tenant(str(onboarded['id']))['payment_method_status'] == 'inactive'
    assert 'verification_failed' in notifier.templates_for('dana@reyesplumbing.com')


def test_funds_failed_then_cleared(engine, store, notifier, onboarded):
    ref = onboarded['processor_customer_ref']
    tenant_id = str(onboarded['id'])

    engine.receive(_event('evt_f1', 'invoice.payment_failed',
                          {'customer': ref, 'amount_due': 350000}), 'valid')
    engine.receive(_event('evt_f2', 'invoice.payment_failed',
                          {'customer': ref, 'amount_due': 350000}), 'valid')

    tenant = store.get_tenant(tenant_id)
    assert tenant['payment_failure_count'] == 2
    assert tenant['subscription_status'] == 'past_due'
    assert tenant['last_payment_failed_at'] is not None
    _, _, variables = [s for s in notifier.sent if s[1] == 'payment_failed'][-1]
    assert variables['amount'] == '$3,500.00'
    assert variables['failure_count'] == 2

    period_end = 1742169600  # 2025-03-17 00:00 UTC
    engine.receive(_event('evt_c1', 'invoice.paid', {
        'customer': ref,
        'lines': {'data': [{'period': {'end': period_end}}]},
    }), 'valid')

    tenant = store.get_tenant(tenant_id)
    assert tenant['payment_failure_count'] == 0
    assert tenant['subscription_status'] == 'active'
    assert tenant['payment_method_status'] == 'active'
    assert tenant['next_billing_date'] == date(2025, 3, 17)


def test_replay_changes_nothing(engine, store, onboarded):
    ref = onboarded['processor_customer_ref']
    tenant_id = str(onboarded['id'])
    payload = _event('evt_r', 'invoice.payment_failed', {'customer': ref, 'amount_due': 100})

    first = engine.receive(payload, 'valid')
    snapshot = store.get_tenant(tenant_id)
    second = engine.receive(payload, 'valid')

    assert first['status'] == 'processed'
    assert second['status'] == 'duplicate'
    assert store.get_tenant(tenant_id) == snapshot
    assert store.get_webhook_event('evt_r')['retry_count'] == 1


def test_mail_outage_does_not_reapply_payment_failure(engine, store, notifier, onboarded):
    ref = onboarded['processor_customer_ref']
    tenant_id = str(onboarded['id'])
    notifier.fail = True
    payload = _event('evt_m', 'invoice.payment_failed', {'customer': ref, 'amount_due': 100})

    assert engine.receive(payload, 'valid')['status'] == 'processed'
    assert engine.receive(payload, 'valid')['status'] == 'duplicate'

    assert store.get_tenant(tenant_id)['payment_failure_count'] == 1
    event = store.get_webhook_event('evt_m')
    assert event['outcome'] == 'processed'
    assert event['error'] is None


def test_mail_outage_on_verification_failure_still_applies(engine, store, notifier, onboarded):
    ref = onboarded['processor_customer_ref']
    notifier.fail = True

    outcome = engine.receive(_event('evt_vf', 'setup_intent.setup_failed', {'customer': ref}),
                             'valid')

    assert outcome['status'] == 'processed'
    assert store.get_tenant(str(onboarded['id']))['payment_method_status'] == 'inactive'


def test_deferred_tenant_created_when_welcome_mail_fails(engine, store, notifier,
                                                         pending_account):
    ref = pending_account['customer_ref']
    notifier.fail = True

    outcome = engine.receive(_event('evt_dm', 'invoice.paid', {'customer': ref}), 'valid')

    assert outcome['status'] == 'processed'
    assert store.get_tenant_by_customer(ref) is not None
    assert store.get_webhook_event('evt_dm')['outcome'] == 'processed'


def test_forged_redelivery_leaves_processed_event_untouched(engine, store, onboarded):
    ref = onboarded['processor_customer_ref']
    payload = _event('evt_ok', 'setup_intent.succeeded', {'customer': ref})
    engine.receive(payload, 'valid')

    with pytest.raises(WebhookAuthenticityError):
        engine.receive(payload, 't=1,v1=forged')

    event = store.get_webhook_event('evt_ok')
    assert event['outcome'] == 'processed'
    assert event['error'] is None


def test_funds_cleared_creates_deferred_tenant_once(engine, store, directory, guard, notifier,
                                                    pending_account):
    ref = pending_account['customer_ref']

    outcome = engine.receive(_event('evt_d1', 'invoice.payment_succeeded', {'customer': ref}),
                             'valid')
    assert outcome['status'] == 'processed'
    assert len(store.tenants) == 1

    tenant = store.get_tenant_by_customer(ref)
    assert tenant['name'] == 'Reyes Plumbing'
    assert tenant['subscription_tier'] == 'pro'
    assert tenant['subscription_status'] == 'active'
    assert guard.tenant_for(email_key('dana@reyesplumbing.com')) == str(tenant['id'])

    owner = directory.find_account('dana@reyesplumbing.com')
    assert directory.accounts[owner['id']]['temporary_password'] is True
    welcome = [v for e, t, v in notifier.sent if t == 'welcome']
    assert len(welcome) == 1
    assert directory.redeem_session_token(welcome[0]['session_token'])['id'] == owner['id']

    # provider redelivers under a new event id
    engine.receive(_event('evt_d2', 'invoice.payment_succeeded', {'customer': ref}), 'valid')
    assert len(store.tenants) == 1
    assert len(store.memberships) == 1


def test_deferred_tenant_reuses_invoice_subscription(engine, store, processor, pending_account):
    ref = pending_account['customer_ref']

    engine.receive(_event('evt_sub', 'invoice.paid', {'customer': ref, 'subscription': 'sub_inv'}),
                   'valid')

    assert store.get_tenant_by_customer(ref)['processor_subscription_ref'] == 'sub_inv'
    assert 'create_subscription' not in [c[0] for c in processor.calls]


def test_deferred_tenant_blocks_later_signup(engine, orchestrator, store, pending_account,
                                             signup_payload):
    engine.receive(_event('evt_d', 'invoice.paid', {'customer': pending_account['customer_ref']}),
                   'valid')

    from onboarding.exceptions import DuplicateRegistration
    with pytest.raises(DuplicateRegistration):
        orchestrator.onboard(SignupRequest.from_json(signup_payload))
    assert len(store.tenants) == 1


def test_funds_cleared_for_unknown_customer_is_noop(engine, store):
    outcome = engine.receive(_event('evt_u', 'payment_intent.succeeded', {'customer': 'cus_ghost'}),
                             'valid')
    assert outcome['status'] == 'processed'
    assert store.tenants == {}


def test_subscription_changes(engine, store, onboarded, monkeypatch):
    ref = onboarded['processor_customer_ref']
    tenant_id = str(onboarded['id'])

    engine.receive(_event('evt_s1', 'customer.subscription.updated', {
        'id': 'sub_1', 'customer': ref, 'status': 'past_due',
        'current_period_end': 1742169600,
    }), 'valid')
    tenant = store.get_tenant(tenant_id)
    assert tenant['subscription_status'] == 'past_due'
    assert tenant['processor_subscription_ref'] == 'sub_1'
    assert tenant['next_billing_date'] == date(2025, 3, 17)

    engine.receive(_event('evt_s2', 'customer.subscription.deleted', {
        'id': 'sub_1', 'customer': ref, 'status': 'canceled', 'canceled_at': 1742169600,
    }), 'valid')
    tenant = store.get_tenant(tenant_id)
    assert tenant['subscription_status'] == 'cancelled'
    assert tenant['cancelled_at'].date() == date(2025, 3, 17)


def test_subscription_price_maps_to_plan(engine, store, onboarded):
    from billing.plans import PLANS
    ref = onboarded['processor_customer_ref']

    engine.receive(_event('evt_p', 'customer.subscription.updated', {
        'id': 'sub_1', 'customer': ref, 'status': 'active',
        'items': {'data': [{'price': {'id': PLANS['enterprise']['stripe_price_id']}}]},
    }), 'valid')

    tenant = store.get_tenant(str(onboarded['id']))
    assert tenant['subscription_tier'] == 'enterprise'
    assert str(tenant['monthly_amount']) == '5000.00'


def test_unknown_event_type_is_processed_without_effect(engine, store, onboarded):
    before = store.get_tenant(str(onboarded['id']))
    outcome = engine.receive(_event('evt_x', 'customer.created', {'id': 'cus_x'}), 'valid')

    assert outcome['status'] == 'ignored'
    assert store.get_webhook_event('evt_x')['outcome'] == 'processed'
    assert store.get_tenant(str(onboarded['id'])) == before


def test_unparseable_payload_is_marked_error(engine, store):
    outcome = engine.receive(b'not json at all', 'valid')

    assert outcome['status'] == 'error'
    rows = list(store.webhook_events.values())
    assert rows[0]['outcome'] == 'error'
    assert rows[0]['payload'] == 'not json at all'


def test_handler_failure_is_recorded_and_retryable(engine, store, onboarded):
    ref = onboarded['processor_customer_ref']
    store.failures.arm('update_tenant')
    payload = _event('evt_h', 'setup_intent.succeeded', {'customer': ref})

    outcome = engine.receive(payload, 'valid')

    assert outcome['status'] == 'failed'
    event = store.get_webhook_event('evt_h')
    assert event['outcome'] == 'unprocessed'
    assert 'verification_succeeded' in event['error']
    assert event['claimed_at'] is None

    store.failures = type(store.failures)()
    assert engine.receive(payload, 'valid')['status'] == 'processed'
    assert store.get_tenant(str(onboarded['id']))['payment_method_status'] == 'active'


def test_concurrent_delivery_in_progress(engine, store, onboarded):
    ref = onboarded['processor_customer_ref']
    payload = _event('evt_c', 'setup_intent.succeeded', {'customer': ref})

    row = store.record_webhook_event('evt_c', 'setup_intent.succeeded', payload.decode())
    assert store.claim_webhook_event(row['id'], 300)

    assert engine.receive(payload, 'valid')['status'] == 'in_progress'
    assert store.get_tenant(str(onboarded['id']))['payment_method_status'] == 'pending'
