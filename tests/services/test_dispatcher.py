from __future__ import annotations

from random import Random

import pytest

from shipfree.models.effects import (
    EmailTemplate,
    GrantAccess,
    NotifyOperator,
    RecordPayment,
    RevokeAccess,
    SendEmail,
)
from shipfree.models.events import Provider, SubjectType
from shipfree.services.billing.dispatcher import EffectStatus, StaticUserDirectory
from shipfree.services.billing.errors import PersistenceError, TransientEffectFailure
from shipfree.services.billing.repositories import InMemoryBillingRepository
from shipfree.services.billing.retry import RetryPolicy
from tests.helpers.billing import FakeEmailSender

GRANT = GrantAccess(Provider.STRIPE, SubjectType.SUBSCRIPTION, "sub_1", "user_1")
REVOKE = RevokeAccess(Provider.STRIPE, SubjectType.SUBSCRIPTION, "sub_1", "user_1")
RECEIPT = SendEmail(EmailTemplate.PAYMENT_RECEIPT, "buyer@example.com", "user_1", {"amount": 2900})
PAYMENT = RecordPayment(
    provider=Provider.STRIPE,
    subject_type=SubjectType.SUBSCRIPTION,
    subject_id="sub_1",
    kind="payment",
    amount=2900,
    currency="usd",
    user_id="user_1",
)


def test_effects_apply_in_order_and_update_access(dispatcher_factory, memory_repository):
    sender = FakeEmailSender()
    dispatcher = dispatcher_factory(memory_repository, sender)

    results = dispatcher.dispatch("evt_1", [GRANT, PAYMENT, RECEIPT])

    assert [result.status for result in results] == [EffectStatus.APPLIED] * 3
    grant = memory_repository.get_access(Provider.STRIPE, SubjectType.SUBSCRIPTION, "sub_1")
    assert grant.active is True
    assert grant.source_event_id == "evt_1"
    assert sender.templates() == ["payment_receipt"]
    assert [record.amount for record in memory_repository.list_payments("sub_1")] == [2900]


def test_redispatch_is_idempotent(dispatcher_factory, memory_repository):
    sender = FakeEmailSender()
    dispatcher = dispatcher_factory(memory_repository, sender)

    dispatcher.dispatch("evt_1", [GRANT, PAYMENT, RECEIPT])
    again = dispatcher.dispatch("evt_1", [GRANT, PAYMENT, RECEIPT])

    assert [result.status for result in again] == [EffectStatus.DUPLICATE] * 3
    assert len(sender.sent) == 1
    assert len(memory_repository.list_payments()) == 1


def test_revoke_after_grant_flips_access(dispatcher_factory, memory_repository):
    dispatcher = dispatcher_factory(memory_repository, FakeEmailSender())

    dispatcher.dispatch("evt_1", [GRANT])
    results = dispatcher.dispatch("evt_2", [REVOKE])

    assert results[0].status is EffectStatus.APPLIED
    grant = memory_repository.get_access(Provider.STRIPE, SubjectType.SUBSCRIPTION, "sub_1")
    assert grant.active is False
    assert grant.source_event_id == "evt_2"


def test_transient_email_failure_is_retried(dispatcher_factory, memory_repository):
    sender = FakeEmailSender(transient_failures=2)
    sleeps: list[float] = []
    dispatcher = dispatcher_factory(memory_repository, sender, sleep=sleeps.append)

    (result,) = dispatcher.dispatch("evt_1", [RECEIPT])

    assert result.status is EffectStatus.APPLIED
    assert result.attempts == 3
    assert sender.attempts == 3
    assert len(sleeps) == 2


def test_exhausted_retries_fail_without_blocking_later_effects(
    dispatcher_factory, memory_repository
):
    sender = FakeEmailSender(transient_failures=10)
    dispatcher = dispatcher_factory(memory_repository, sender)

    results = dispatcher.dispatch("evt_1", [RECEIPT, GRANT])

    assert results[0].status is EffectStatus.FAILED
    assert results[0].attempts == 3
    assert results[0].error == "smtp timeout"
    assert results[1].status is EffectStatus.APPLIED
    assert memory_repository.email_sent("evt_1", "payment_receipt") is False


def test_rejected_email_fails_immediately(dispatcher_factory, memory_repository, stub_metrics):
    sender = FakeEmailSender(reject=True)
    dispatcher = dispatcher_factory(memory_repository, sender)

    results = dispatcher.dispatch("evt_1", [RECEIPT, PAYMENT])

    assert results[0].status is EffectStatus.FAILED
    assert results[0].attempts == 1
    assert sender.attempts == 1
    assert results[1].status is EffectStatus.APPLIED
    failed = [
        call for call in stub_metrics.increment_calls
        if call["metric"] == "effect.result" and call["tags"]["status"] == "failed"
    ]
    assert len(failed) == 1


def test_email_without_recipient_uses_directory_or_skips(dispatcher_factory, memory_repository):
    sender = FakeEmailSender()
    anonymous = SendEmail(EmailTemplate.WELCOME, None, "user_1")
    orphan = SendEmail(EmailTemplate.WELCOME, None, "user_2")
    dispatcher = dispatcher_factory(
        memory_repository,
        sender,
        user_directory=StaticUserDirectory({"user_1": "known@example.com"}),
    )

    first = dispatcher.dispatch("evt_1", [anonymous])
    second = dispatcher.dispatch("evt_2", [orphan])

    assert first[0].status is EffectStatus.APPLIED
    assert sender.sent[0][1] == "known@example.com"
    assert second[0].status is EffectStatus.SKIPPED


def test_operator_notice_raises_alert_and_emails_once(
    dispatcher_factory, memory_repository, stub_metrics
):
    sender = FakeEmailSender()
    dispatcher = dispatcher_factory(
        memory_repository, sender, operator_recipients=["ops@example.com"]
    )
    notice = NotifyOperator("unresolved_subject", {"subject_id": "sub_9"})

    first = dispatcher.dispatch("evt_1", [notice])
    second = dispatcher.dispatch("evt_1", [notice])

    assert first[0].status is EffectStatus.APPLIED
    assert second[0].status is EffectStatus.DUPLICATE
    assert sender.templates() == ["operator_alert"]
    alerts = stub_metrics.alerts("operator.unresolved_subject")
    assert alerts and alerts[0]["tags"]["subject_id"] == "sub_9"



class _UnmarkableRepository(InMemoryBillingRepository):
    def __init__(self, failures: int = 1) -> None:
        super().__init__()
        self.failures = failures

    def mark_email_sent(self, event_id: str, template: str, recipient: str) -> None:
        if self.failures > 0:
            self.failures -= 1
            raise PersistenceError("sent_emails insert failed")
        super().mark_email_sent(event_id, template, recipient)


class _RecipientOutage(FakeEmailSender):
    def __init__(self, recipient: str) -> None:
        super().__init__()
        self.down = {recipient}

    def send(self, template, recipient, params) -> None:
        if recipient in self.down:
            self.down.discard(recipient)
            raise TransientEffectFailure("smtp timeout")
        super().send(template, recipient, params)


def test_failed_dedupe_write_after_send_does_not_resend(dispatcher_factory, stub_metrics):
    sender = FakeEmailSender()
    dispatcher = dispatcher_factory(_UnmarkableRepository(), sender)

    results = dispatcher.dispatch("evt_1", [RECEIPT])

    assert results[0].status is EffectStatus.APPLIED
    assert results[0].attempts == 1
    assert sender.templates() == ["payment_receipt"]
    assert stub_metrics.count("effect.email.mark_failed") == 1


def test_operator_retry_only_resends_to_recipients_that_failed(
    dispatcher_factory, memory_repository
):
    sender = _RecipientOutage("oncall@example.com")
    dispatcher = dispatcher_factory(
        memory_repository, sender, operator_recipients=["ops@example.com", "oncall@example.com"]
    )

    results = dispatcher.dispatch("evt_1", [NotifyOperator("dispute", {"subject_id": "dp_1"})])

    assert results[0].status is EffectStatus.APPLIED
    assert results[0].attempts == 2
    assert [recipient for _, recipient, _ in sender.sent] == [
        "ops@example.com",
        "oncall@example.com",
    ]


def test_retry_schedule_is_bounded_and_exponential():
    policy = RetryPolicy(max_attempts=4, base_delay=1.0, factor=2.0, max_delay=3.0, jitter=0.0)

    assert list(policy.schedule(Random(0))) == [(1, 1.0), (2, 2.0), (3, 3.0), (4, 3.0)]


def test_retry_policy_rejects_invalid_bounds():
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)
    with pytest.raises(ValueError):
        RetryPolicy(base_delay=2.0, max_delay=1.0)
