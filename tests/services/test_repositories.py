from __future__ import annotations

from functools import partial

import pytest

from shipfree.models.effects import EmailTemplate, GrantAccess, RecordPayment, SendEmail
from shipfree.models.events import (
    EventKind,
    OrderStatus,
    Provider,
    SubjectType,
    SubscriptionStatus,
)
from shipfree.services.billing import engine
from shipfree.services.billing.errors import PersistenceError
from shipfree.services.billing.repositories import (
    DatabaseBillingRepository,
    InMemoryBillingRepository,
    build_billing_repository,
)
from tests.helpers.billing import at, make_event


@pytest.fixture(params=["memory", "sqlite"])
def repository(request, sqlite_engine):
    if request.param == "memory":
        return InMemoryBillingRepository()
    return DatabaseBillingRepository(sqlite_engine)


def _reconcile(repository, event):
    return repository.reconcile(event, partial(engine.apply, event))


def test_reconcile_persists_state_and_outbox(repository):
    event = make_event(EventKind.SUBSCRIPTION_CREATED, status_after="active", plan_id="price_pro")

    result = _reconcile(repository, event)

    stored = repository.get_subscription(Provider.STRIPE, "sub_1")
    assert stored.status is SubscriptionStatus.ACTIVE
    assert stored.plan_id == "price_pro"
    assert stored.last_event_at == event.occurred_at
    outbox = repository.get_outbox(event.provider_event_id)
    assert outbox.dispatched is False
    assert outbox.effects == list(result.effects)


def test_reconcile_reads_back_previous_state(repository):
    _reconcile(repository, make_event(EventKind.SUBSCRIPTION_CREATED, status_after="active"))

    result = _reconcile(
        repository, make_event(EventKind.PAYMENT_FAILED, attempt_count=4, occurred_at=at(10))
    )

    assert result.outcome is engine.Outcome.APPLIED
    assert repository.get_subscription(Provider.STRIPE, "sub_1").status is SubscriptionStatus.UNPAID
    assert repository.get_subscription(Provider.STRIPE, "sub_1").last_attempt_count == 4


def test_stale_event_keeps_state_and_writes_outbox(repository):
    _reconcile(repository, make_event(EventKind.SUBSCRIPTION_CANCELED, occurred_at=at(10)))
    stale = make_event(EventKind.PAYMENT_SUCCEEDED, amount=2900, occurred_at=at(1))

    result = _reconcile(repository, stale)

    assert result.outcome is engine.Outcome.STALE
    assert repository.get_subscription(Provider.STRIPE, "sub_1").status is SubscriptionStatus.CANCELED
    assert [type(effect) for effect in repository.get_outbox(stale.provider_event_id).effects] == [
        RecordPayment
    ]


def test_stateless_event_writes_only_outbox(repository):
    dispute = make_event(
        EventKind.DISPUTE, subject_type=SubjectType.CHARGE, subject_id="ch_1", amount=100
    )

    _reconcile(repository, dispute)

    assert repository.get_outbox(dispute.provider_event_id).effects[0].reason == "dispute_opened"


def test_orders_and_user_listing(repository):
    _reconcile(
        repository,
        make_event(EventKind.ORDER_PAID, subject_type=SubjectType.ORDER, subject_id="pi_1",
                   amount=4900, currency="usd"),
    )
    _reconcile(repository, make_event(EventKind.SUBSCRIPTION_CREATED, status_after="active"))
    _reconcile(
        repository,
        make_event(EventKind.SUBSCRIPTION_CREATED, status_after="active", subject_id="sub_2",
                   user_id="user_2"),
    )

    order = repository.get_order(Provider.STRIPE, "pi_1")
    assert order.status is OrderStatus.PAID
    assert order.amount == 4900
    assert [state.provider_subscription_id for state in repository.list_subscriptions("user_1")] == [
        "sub_1"
    ]
    assert repository.get_subscription(Provider.LEMONSQUEEZY, "sub_1") is None


def test_mark_dispatched(repository):
    event = make_event(EventKind.SUBSCRIPTION_CREATED, status_after="active")
    _reconcile(repository, event)

    repository.mark_dispatched(event.provider_event_id)

    assert repository.get_outbox(event.provider_event_id).dispatched is True
    assert repository.get_outbox("evt_unknown") is None


def test_access_grants_are_idempotent(repository):
    grant = GrantAccess(Provider.STRIPE, SubjectType.SUBSCRIPTION, "sub_1", "user_1")

    assert repository.set_access(grant, event_id="evt_1") is True
    assert repository.set_access(grant, event_id="evt_2") is False
    stored = repository.get_access(Provider.STRIPE, SubjectType.SUBSCRIPTION, "sub_1")
    assert stored.active is True
    assert stored.source_event_id == "evt_1"


def test_payments_are_recorded_once_per_event(repository):
    payment = RecordPayment(
        provider=Provider.STRIPE,
        subject_type=SubjectType.SUBSCRIPTION,
        subject_id="sub_1",
        kind="payment",
        amount=2900,
        currency="usd",
    )

    assert repository.record_payment(payment, event_id="evt_1") is True
    assert repository.record_payment(payment, event_id="evt_1") is False
    assert repository.record_payment(payment, event_id="evt_2") is True
    assert len(repository.list_payments("sub_1")) == 2
    assert repository.list_payments("sub_other") == []


def test_email_dedupe_log(repository):
    assert repository.email_sent("evt_1", "welcome") is False

    repository.mark_email_sent("evt_1", "welcome", "buyer@example.com")
    repository.mark_email_sent("evt_1", "welcome", "buyer@example.com")

    assert repository.email_sent("evt_1", "welcome") is True
    assert repository.email_sent("evt_1", "payment_receipt") is False


def test_dead_letter_lifecycle(repository):
    failed = [SendEmail(EmailTemplate.WELCOME, "buyer@example.com", "user_1")]
    entry = repository.add_dead_letter(
        provider="stripe",
        event_id="evt_1",
        reason="effects_failed",
        error="smtp timeout",
        payload={"id": "evt_1"},
        failed_effects=failed,
    )

    assert [item.id for item in repository.list_dead_letters()] == [entry.id]
    fetched = repository.get_dead_letter(entry.id)
    assert fetched.failed_effects[0]["template"] == "welcome"

    retried = repository.update_dead_letter(entry.id, resolved=False, error="still down")
    assert retried.attempts == 2
    assert retried.error == "still down"

    resolved = repository.update_dead_letter(entry.id, resolved=True)
    assert resolved.resolved_at is not None
    assert resolved.failed_effects == []
    assert repository.list_dead_letters() == []
    assert len(repository.list_dead_letters(include_resolved=True)) == 1


def test_update_unknown_dead_letter_raises(repository):
    with pytest.raises(PersistenceError):
        repository.update_dead_letter("missing", resolved=True)


def test_build_billing_repository_picks_backend(sqlite_engine):
    assert isinstance(build_billing_repository(), InMemoryBillingRepository)
    assert isinstance(build_billing_repository(sqlite_engine), DatabaseBillingRepository)
