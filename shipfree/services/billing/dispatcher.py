"""Apply reconciliation effects with per-effect retry and failure isolation."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from shipfree.models.effects import (
    Effect,
    EmailTemplate,
    GrantAccess,
    NotifyOperator,
    RecordPayment,
    RevokeAccess,
    SendEmail,
)
from shipfree.observability.metrics import MetricsReporter, metrics
from shipfree.services.billing.email import EmailSender
from shipfree.services.billing.errors import PersistenceError, TransientEffectFailure
from shipfree.services.billing.repositories import BillingRepository
from shipfree.services.billing.retry import RetryPolicy

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS = (TransientEffectFailure, PersistenceError)


class EffectStatus(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class EffectResult:
    effect: Effect
    status: EffectStatus
    attempts: int = 1
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.status is EffectStatus.FAILED


class UserDirectory(Protocol):
    """Resolves a user's email address when the event did not carry one."""

    def email_for(self, user_id: str) -> str | None:
        ...


class StaticUserDirectory:
    def __init__(self, emails: dict[str, str] | None = None) -> None:
        self._emails = dict(emails or {})

    def email_for(self, user_id: str) -> str | None:
        return self._emails.get(user_id)


class EffectDispatcher:
    """Runs effects in order; one failing effect never blocks the others."""

    def __init__(
        self,
        repository: BillingRepository,
        email_sender: EmailSender,
        *,
        retry_policy: RetryPolicy | None = None,
        user_directory: UserDirectory | None = None,
        operator_recipients: Sequence[str] = (),
        reporter: MetricsReporter | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._repository = repository
        self._email_sender = email_sender
        self._retry_policy = retry_policy or RetryPolicy()
        self._user_directory = user_directory
        self._operator_recipients = list(operator_recipients)
        self._metrics = reporter or metrics
        self._sleep = sleep

    def dispatch(self, event_id: str, effects: Iterable[Effect]) -> list[EffectResult]:
        results = [self._run(event_id, effect) for effect in effects]
        failed = sum(1 for result in results if result.failed)
        logger.info(
            "billing.effects.dispatched",
            extra={
                "event_id": event_id,
                "total": len(results),
                "failed": failed,
                "statuses": [result.status.value for result in results],
            },
        )
        return results

    def _run(self, event_id: str, effect: Effect) -> EffectResult:
        last_error: Exception | None = None
        attempt = 0
        for attempt, delay in self._retry_policy.schedule():
            try:
                status = self._apply(event_id, effect)
            except RETRYABLE_ERRORS as exc:
                last_error = exc
                logger.warning(
                    "billing.effect.retryable_failure",
                    extra={
                        "event_id": event_id,
                        "effect": effect.type,
                        "attempt": attempt,
                        "error": str(exc),
                    },
                )
                if attempt < self._retry_policy.max_attempts:
                    self._sleep(delay)
                continue
            except Exception as exc:
                # Permanent failure: isolated so the remaining effects still run.
                logger.exception(
                    "billing.effect.failed",
                    extra={"event_id": event_id, "effect": effect.type, "attempt": attempt},
                )
                return self._result(effect, EffectStatus.FAILED, attempt, str(exc))
            return self._result(effect, status, attempt)

        logger.error(
            "billing.effect.retries_exhausted",
            extra={"event_id": event_id, "effect": effect.type, "attempts": attempt},
        )
        return self._result(
            effect, EffectStatus.FAILED, attempt, str(last_error) if last_error else None
        )

    def _result(
        self, effect: Effect, status: EffectStatus, attempts: int, error: str | None = None
    ) -> EffectResult:
        self._metrics.increment(
            "effect.result", tags={"effect": effect.type, "status": status.value}
        )
        return EffectResult(effect=effect, status=status, attempts=attempts, error=error)

    def _apply(self, event_id: str, effect: Effect) -> EffectStatus:
        if isinstance(effect, (GrantAccess, RevokeAccess)):
            changed = self._repository.set_access(effect, event_id=event_id)
            return EffectStatus.APPLIED if changed else EffectStatus.DUPLICATE
        if isinstance(effect, RecordPayment):
            inserted = self._repository.record_payment(effect, event_id=event_id)
            return EffectStatus.APPLIED if inserted else EffectStatus.DUPLICATE
        if isinstance(effect, SendEmail):
            return self._send_email(event_id, effect)
        if isinstance(effect, NotifyOperator):
            return self._notify_operator(event_id, effect)
        raise TypeError(f"Unsupported effect: {effect!r}")

    def _send_email(self, event_id: str, effect: SendEmail) -> EffectStatus:
        template = EmailTemplate(effect.template).value
        if self._repository.email_sent(event_id, template):
            return EffectStatus.DUPLICATE
        recipient = effect.recipient
        if not recipient and effect.user_id and self._user_directory is not None:
            recipient = self._user_directory.email_for(effect.user_id)
        if not recipient:
            logger.warning(
                "billing.email.no_recipient",
                extra={"event_id": event_id, "template": template, "user_id": effect.user_id},
            )
            return EffectStatus.SKIPPED
        self._email_sender.send(effect.template, recipient, effect.params)
        self._mark_sent(event_id, template, recipient)
        return EffectStatus.APPLIED

    def _mark_sent(self, event_id: str, template: str, recipient: str) -> None:
        # The message is already out; retrying the effect would send it again.
        try:
            self._repository.mark_email_sent(event_id, template, recipient)
        except PersistenceError:
            logger.exception(
                "billing.email.mark_failed",
                extra={"event_id": event_id, "template": template},
            )
            self._metrics.increment("effect.email.mark_failed", tags={"template": template})

    def _notify_operator(self, event_id: str, effect: NotifyOperator) -> EffectStatus:
        self._metrics.alert(
            f"operator.{effect.reason}",
            value=1,
            threshold=1,
            severity="warning",
            tags={"event_id": event_id, **effect.details},
        )
        if not self._operator_recipients:
            return EffectStatus.APPLIED
        params = {
            "reason": effect.reason,
            "details": json.dumps(effect.details, sort_keys=True, default=str),
        }
        status = EffectStatus.DUPLICATE
        # One dedupe row per recipient so a retry resumes where the last attempt stopped.
        for index, recipient in enumerate(self._operator_recipients):
            template = f"{EmailTemplate.OPERATOR_ALERT.value}:{effect.reason}#{index}"
            if self._repository.email_sent(event_id, template):
                continue
            self._email_sender.send(EmailTemplate.OPERATOR_ALERT, recipient, params)
            self._mark_sent(event_id, template, recipient)
            status = EffectStatus.APPLIED
        return status
