"""Reconciliation state machine.

`apply` is a pure function: given a normalized event and the subject's
current state it returns the next state and the effects to dispatch. It
performs no I/O, so every transition can be exercised without a database.

Ordering policy: subscription status is last-writer-wins keyed by the
provider's `occurred_at`. An event older than the subject's
`last_event_at` does not move the state and emits only ledger effects;
per-event idempotency for effects is enforced by the caller.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any
from uuid import NAMESPACE_URL, uuid5

from shipfree.models.effects import (
    Effect,
    EmailTemplate,
    GrantAccess,
    NotifyOperator,
    RecordPayment,
    RevokeAccess,
    SendEmail,
)
from shipfree.models.events import (
    EventKind,
    OrderState,
    OrderStatus,
    PaymentEvent,
    SubjectState,
    SubjectType,
    SubscriptionState,
    SubscriptionStatus,
)

DEFAULT_FINAL_ATTEMPT = 4
FIRST_INVOICE_REASONS = frozenset({"subscription_create", "initial"})

S = SubscriptionStatus

SUBSCRIPTION_EDGES: dict[SubscriptionStatus, frozenset[SubscriptionStatus]] = {
    S.TRIALING: frozenset({S.ACTIVE, S.PAST_DUE, S.UNPAID, S.PAUSED, S.CANCELED, S.EXPIRED}),
    S.ACTIVE: frozenset({S.PAST_DUE, S.UNPAID, S.PAUSED, S.CANCELED, S.EXPIRED}),
    S.PAST_DUE: frozenset({S.ACTIVE, S.UNPAID, S.PAUSED, S.CANCELED, S.EXPIRED}),
    S.UNPAID: frozenset({S.ACTIVE, S.PAUSED, S.CANCELED, S.EXPIRED}),
    S.PAUSED: frozenset({S.ACTIVE, S.TRIALING, S.PAST_DUE, S.CANCELED, S.EXPIRED}),
    S.CANCELED: frozenset(),
    S.EXPIRED: frozenset(),
}

# Email sent for a specific (from, to) edge; checked before arrival templates.
EDGE_TEMPLATES: dict[tuple[SubscriptionStatus, SubscriptionStatus], EmailTemplate] = {
    (S.ACTIVE, S.PAST_DUE): EmailTemplate.PAYMENT_FAILED,
    (S.TRIALING, S.PAST_DUE): EmailTemplate.PAYMENT_FAILED,
    (S.PAST_DUE, S.ACTIVE): EmailTemplate.PAYMENT_RECOVERED,
    (S.UNPAID, S.ACTIVE): EmailTemplate.PAYMENT_RECOVERED,
    (S.PAUSED, S.ACTIVE): EmailTemplate.SUBSCRIPTION_RESUMED,
}

# Email sent whenever a subscription arrives in a status, whatever the origin.
ARRIVAL_TEMPLATES: dict[SubscriptionStatus, EmailTemplate] = {
    S.UNPAID: EmailTemplate.FINAL_NOTICE,
    S.CANCELED: EmailTemplate.CANCELLATION_CONFIRMED,
    S.EXPIRED: EmailTemplate.CANCELLATION_CONFIRMED,
    S.PAUSED: EmailTemplate.SUBSCRIPTION_PAUSED,
}

# Informational kinds that never move status on their own.
NOTICE_TEMPLATES: dict[EventKind, EmailTemplate] = {
    EventKind.PAYMENT_ACTION_REQUIRED: EmailTemplate.PAYMENT_ACTION_REQUIRED,
    EventKind.PAYMENT_REMINDER: EmailTemplate.PAYMENT_REMINDER,
    EventKind.REFUND: EmailTemplate.REFUND_CONFIRMATION,
}

PAYMENT_KINDS = frozenset({EventKind.PAYMENT_SUCCEEDED, EventKind.PAYMENT_RECOVERED})

# Charge outcomes a provider may still report after the subscription ended.
CHARGE_KINDS = PAYMENT_KINDS | {EventKind.PAYMENT_FAILED}


class Outcome(str, Enum):
    CREATED = "created"
    APPLIED = "applied"
    PLACEHOLDER = "placeholder"
    STALE = "stale"
    REJECTED = "rejected"
    REPLAYED = "replayed"
    STATELESS = "stateless"
    CLOSED = "closed"


@dataclass(frozen=True)
class EnginePolicy:
    final_attempt_threshold: int = DEFAULT_FINAL_ATTEMPT


@dataclass(frozen=True)
class Reconciliation:
    """Result of applying one event; `next_state` is None when nothing is written."""

    next_state: SubjectState | None
    effects: tuple[Effect, ...] = ()
    outcome: Outcome = Outcome.APPLIED
    reason: str | None = None


DEFAULT_POLICY = EnginePolicy()


def subject_key(event: PaymentEvent) -> str:
    """Stable internal id for a provider subject."""
    name = f"{event.provider.value}:{event.subject_type.value}:{event.subject_id}"
    return uuid5(NAMESPACE_URL, name).hex


def apply(
    event: PaymentEvent,
    current: SubjectState | None,
    policy: EnginePolicy = DEFAULT_POLICY,
) -> Reconciliation:
    if event.subject_type is SubjectType.SUBSCRIPTION:
        if current is not None and not isinstance(current, SubscriptionState):
            raise TypeError("Subscription events require a SubscriptionState.")
        return _apply_subscription(event, current, policy)
    if event.subject_type is SubjectType.ORDER:
        if current is not None and not isinstance(current, OrderState):
            raise TypeError("Order events require an OrderState.")
        return _apply_order(event, current)
    return _apply_stateless(event)


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------


def parse_subscription_status(value: str | None) -> SubscriptionStatus | None:
    if not value:
        return None
    try:
        return SubscriptionStatus(value)
    except ValueError:
        return None


def is_final_attempt(event: PaymentEvent, policy: EnginePolicy) -> bool:
    if event.status_after == SubscriptionStatus.UNPAID.value:
        return True
    return event.attempt_count is not None and event.attempt_count >= policy.final_attempt_threshold


def _in_trial(event: PaymentEvent) -> bool:
    return event.trial_end is not None and event.trial_end > event.occurred_at


def _target_status(
    event: PaymentEvent, current: SubscriptionStatus | None, policy: EnginePolicy
) -> SubscriptionStatus | None:
    """Status the event asks for, or None when it leaves status alone."""
    reported = parse_subscription_status(event.status_after)
    kind = event.kind
    if kind is EventKind.SUBSCRIPTION_CREATED:
        return reported or (S.TRIALING if _in_trial(event) else S.ACTIVE)
    if kind is EventKind.SUBSCRIPTION_UPDATED:
        return reported
    if kind is EventKind.SUBSCRIPTION_CANCELED:
        return S.CANCELED
    if kind is EventKind.SUBSCRIPTION_EXPIRED:
        return S.EXPIRED
    if kind is EventKind.SUBSCRIPTION_PAUSED:
        return S.PAUSED
    if kind is EventKind.SUBSCRIPTION_RESUMED:
        return reported if reported not in (None, S.PAUSED) else S.ACTIVE
    if kind is EventKind.PAYMENT_FAILED:
        if current is S.UNPAID or is_final_attempt(event, policy):
            return S.UNPAID
        return S.PAST_DUE
    if kind in PAYMENT_KINDS:
        if current in (None, S.PAST_DUE, S.UNPAID):
            return S.ACTIVE
        return None
    return None


def _placeholder_status(
    event: PaymentEvent, target: SubscriptionStatus | None
) -> SubscriptionStatus:
    if target is not None:
        return target
    reported = parse_subscription_status(event.status_after)
    if reported is not None:
        return reported
    if event.kind is EventKind.TRIAL_ENDING:
        return S.TRIALING
    return S.ACTIVE


def _access_effects(
    event: PaymentEvent,
    before: bool,
    after: bool,
    user_id: str | None,
) -> list[Effect]:
    if after and not before:
        return [GrantAccess(event.provider, event.subject_type, event.subject_id, user_id)]
    if before and not after:
        return [RevokeAccess(event.provider, event.subject_type, event.subject_id, user_id)]
    return []


def _ledger_effects(event: PaymentEvent, user_id: str | None) -> list[Effect]:
    """Payment history is recorded regardless of ordering."""
    if event.kind in PAYMENT_KINDS:
        ledger_kind = "payment"
    elif event.kind is EventKind.REFUND:
        ledger_kind = "refund"
    else:
        return []
    if event.amount is None:
        return []
    return [
        RecordPayment(
            provider=event.provider,
            subject_type=event.subject_type,
            subject_id=event.subject_id,
            kind=ledger_kind,
            amount=event.amount,
            currency=event.currency,
            user_id=user_id,
        )
    ]


def _email(template: EmailTemplate, event: PaymentEvent, state: SubjectState | None) -> SendEmail:
    params: dict[str, Any] = {
        "provider": event.provider.value,
        "subject_id": event.subject_id,
        "amount": event.amount,
        "currency": event.currency,
        "attempt_count": event.attempt_count,
    }
    recipient = event.customer_email
    user_id = event.user_id
    if isinstance(state, SubscriptionState):
        params["plan_id"] = state.plan_id
        params["status"] = state.status.value
        if state.current_period_end is not None:
            params["current_period_end"] = state.current_period_end.isoformat()
    elif isinstance(state, OrderState):
        params["amount"] = event.amount if event.amount is not None else state.amount
        params["currency"] = event.currency or state.currency
    if event.trial_end is not None:
        params["trial_end"] = event.trial_end.isoformat()
    if state is not None:
        recipient = recipient or state.customer_email
        user_id = state.user_id or user_id
    return SendEmail(
        template=template,
        recipient=recipient,
        user_id=user_id,
        params={key: value for key, value in params.items() if value is not None},
    )


def _unresolved_user(
    event: PaymentEvent, state: SubjectState, previously_flagged: bool
) -> tuple[SubjectState, list[Effect]]:
    """Flag subjects without a user and alert once."""
    if state.user_id is not None:
        return state, []
    flagged = state.model_copy(update={"needs_reconciliation": True})
    if previously_flagged:
        return flagged, []
    notice = NotifyOperator(
        reason="unresolved_user",
        details={
            "provider": event.provider.value,
            "subject_type": event.subject_type.value,
            "subject_id": event.subject_id,
            "event_id": event.provider_event_id,
        },
    )
    return flagged, [notice]


def _unresolved_subject(event: PaymentEvent) -> NotifyOperator:
    return NotifyOperator(
        reason="unresolved_subject",
        details={
            "provider": event.provider.value,
            "subject_type": event.subject_type.value,
            "subject_id": event.subject_id,
            "event_id": event.provider_event_id,
            "event_type": event.event_type,
        },
    )


def _create_subscription(event: PaymentEvent, policy: EnginePolicy) -> Reconciliation:
    status = _target_status(event, None, policy) or S.ACTIVE
    state = SubscriptionState(
        id=subject_key(event),
        provider=event.provider,
        provider_subscription_id=event.subject_id,
        status=status,
        user_id=event.user_id,
        plan_id=event.plan_id,
        current_period_end=event.current_period_end,
        cancel_at_period_end=bool(event.cancel_at_period_end),
        customer_email=event.customer_email,
        last_event_at=event.occurred_at,
        last_event_id=event.provider_event_id,
    )
    effects = _access_effects(event, False, status.grants_access, state.user_id)
    effects += _ledger_effects(event, state.user_id)
    if not status.is_terminal:
        effects.append(_email(EmailTemplate.WELCOME, event, state))
    state, notices = _unresolved_user(event, state, previously_flagged=False)
    return Reconciliation(state, tuple(effects + notices), Outcome.CREATED)


def _placeholder_subscription(event: PaymentEvent, policy: EnginePolicy) -> Reconciliation:
    status = _placeholder_status(event, _target_status(event, None, policy))
    state = SubscriptionState(
        id=subject_key(event),
        provider=event.provider,
        provider_subscription_id=event.subject_id,
        status=status,
        user_id=event.user_id,
        plan_id=event.plan_id,
        current_period_end=event.current_period_end,
        cancel_at_period_end=bool(event.cancel_at_period_end),
        customer_email=event.customer_email,
        needs_reconciliation=True,
        last_event_at=event.occurred_at,
        last_event_id=event.provider_event_id,
        last_attempt_count=event.attempt_count if status.is_delinquent else None,
    )
    # Access is synced explicitly: nothing is known about earlier grants.
    access: Effect
    if status.grants_access:
        access = GrantAccess(event.provider, event.subject_type, event.subject_id, state.user_id)
    else:
        access = RevokeAccess(event.provider, event.subject_type, event.subject_id, state.user_id)
    effects = [access, *_ledger_effects(event, state.user_id), _unresolved_subject(event)]
    return Reconciliation(state, tuple(effects), Outcome.PLACEHOLDER, reason="unknown_subject")


def _backfill(state: SubjectState, event: PaymentEvent) -> SubjectState | None:
    """Fill identity fields an earlier placeholder could not know."""
    updates: dict[str, Any] = {}
    if state.user_id is None and event.user_id:
        updates["user_id"] = event.user_id
    if state.customer_email is None and event.customer_email:
        updates["customer_email"] = event.customer_email
    if not updates:
        return None
    return state.model_copy(update=updates)


def _is_stale(event: PaymentEvent, state: SubjectState) -> bool:
    return state.last_event_at is not None and event.occurred_at < state.last_event_at


def _apply_subscription(
    event: PaymentEvent, current: SubscriptionState | None, policy: EnginePolicy
) -> Reconciliation:
    if current is None:
        if event.kind is EventKind.SUBSCRIPTION_CREATED:
            return _create_subscription(event, policy)
        return _placeholder_subscription(event, policy)

    if current.last_event_id == event.provider_event_id:
        return Reconciliation(None, (), Outcome.REPLAYED)

    user_id = current.user_id or event.user_id
    if _is_stale(event, current):
        return Reconciliation(
            _backfill(current, event),
            tuple(_ledger_effects(event, user_id)),
            Outcome.STALE,
            reason="older_than_last_event",
        )

    previous = current.status
    if previous.is_terminal and event.kind in CHARGE_KINDS:
        return Reconciliation(
            _backfill(current, event),
            tuple(_ledger_effects(event, user_id)),
            Outcome.CLOSED,
            reason=f"{event.kind.value}_after_{previous.value}",
        )
    target = _target_status(event, previous, policy)
    if target not in (None, previous) and target not in SUBSCRIPTION_EDGES[previous]:
        flagged = current.model_copy(update={"needs_reconciliation": True})
        return Reconciliation(
            flagged,
            tuple(_ledger_effects(event, user_id)),
            Outcome.REJECTED,
            reason=f"{previous.value}->{target.value}",
        )
    status = target or previous

    cancel_flag = current.cancel_at_period_end
    if event.cancel_at_period_end is not None:
        cancel_flag = event.cancel_at_period_end
    plan_changed = bool(event.plan_id and current.plan_id and event.plan_id != current.plan_id)
    next_state = current.model_copy(
        update={
            "status": status,
            "user_id": user_id,
            "plan_id": event.plan_id or current.plan_id,
            "current_period_end": event.current_period_end or current.current_period_end,
            "cancel_at_period_end": cancel_flag,
            "customer_email": event.customer_email or current.customer_email,
            "last_event_at": event.occurred_at,
            "last_event_id": event.provider_event_id,
            "last_attempt_count": _attempt_watermark(event, current, status),
        }
    )

    effects = _access_effects(event, previous.grants_access, status.grants_access, user_id)
    effects += _ledger_effects(event, user_id)
    if not previous.is_terminal:
        for template in _subscription_templates(event, current, next_state, plan_changed):
            effects.append(_email(template, event, next_state))

    next_state, notices = _unresolved_user(event, next_state, current.needs_reconciliation)
    return Reconciliation(next_state, tuple(effects + notices), Outcome.APPLIED)


def _attempt_watermark(
    event: PaymentEvent, current: SubscriptionState, status: SubscriptionStatus
) -> int | None:
    """Highest failed charge attempt seen in the current dunning cycle."""
    if not status.is_delinquent:
        return None
    if event.kind is not EventKind.PAYMENT_FAILED or event.attempt_count is None:
        return current.last_attempt_count
    if current.last_attempt_count is None:
        return event.attempt_count
    return max(current.last_attempt_count, event.attempt_count)


def _is_new_attempt(event: PaymentEvent, current: SubscriptionState) -> bool:
    if event.attempt_count is None or current.last_attempt_count is None:
        return False
    return event.attempt_count > current.last_attempt_count


def _subscription_templates(
    event: PaymentEvent,
    current: SubscriptionState,
    next_state: SubscriptionState,
    plan_changed: bool,
) -> list[EmailTemplate]:
    previous, status = current.status, next_state.status
    templates: list[EmailTemplate] = []
    if status is not previous:
        template = EDGE_TEMPLATES.get((previous, status)) or ARRIVAL_TEMPLATES.get(status)
        if template is not None:
            templates.append(template)
    elif event.kind is EventKind.PAYMENT_FAILED:
        # Retried charge that failed again but is not final yet. A status update
        # can announce the first failure before its invoice arrives.
        if status is S.PAST_DUE and _is_new_attempt(event, current):
            templates.append(EmailTemplate.PAYMENT_FAILED)
    elif event.kind is EventKind.PAYMENT_SUCCEEDED:
        if event.billing_reason not in FIRST_INVOICE_REASONS:
            templates.append(EmailTemplate.PAYMENT_RECEIPT)
    elif event.kind is EventKind.TRIAL_ENDING:
        if status is S.TRIALING:
            templates.append(EmailTemplate.TRIAL_ENDING)
    elif event.kind in NOTICE_TEMPLATES:
        templates.append(NOTICE_TEMPLATES[event.kind])
    elif event.kind is EventKind.SUBSCRIPTION_RESUMED and current.cancel_at_period_end:
        if not next_state.cancel_at_period_end:
            templates.append(EmailTemplate.SUBSCRIPTION_RESUMED)

    if status.is_terminal:
        return templates
    if next_state.cancel_at_period_end and not current.cancel_at_period_end:
        templates.append(EmailTemplate.CANCELLATION_SCHEDULED)
    if plan_changed:
        templates.append(EmailTemplate.PLAN_CHANGED)
    return templates


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------


def _order_target(event: PaymentEvent) -> OrderStatus | None:
    if event.kind is EventKind.ORDER_CREATED:
        if event.status_after in (OrderStatus.PAID.value, OrderStatus.REFUNDED.value):
            return OrderStatus(event.status_after)
        return OrderStatus.PENDING
    if event.kind is EventKind.ORDER_PAID:
        return OrderStatus.PAID
    if event.kind is EventKind.REFUND:
        if event.status_after == "partially_refunded":
            return None
        return OrderStatus.REFUNDED
    return None


def _order_transition_effects(
    event: PaymentEvent, previous: OrderStatus | None, state: OrderState
) -> list[Effect]:
    status = state.status
    if status is OrderStatus.PAID:
        return [
            GrantAccess(event.provider, event.subject_type, event.subject_id, state.user_id),
            RecordPayment(
                provider=event.provider,
                subject_type=event.subject_type,
                subject_id=event.subject_id,
                kind="payment",
                amount=state.amount,
                currency=state.currency,
                user_id=state.user_id,
            ),
            _email(EmailTemplate.PURCHASE_RECEIPT, event, state),
        ]
    if status is OrderStatus.REFUNDED:
        effects: list[Effect] = [
            RevokeAccess(event.provider, event.subject_type, event.subject_id, state.user_id),
            *_ledger_effects(event, state.user_id),
        ]
        if previous is OrderStatus.PAID:
            effects.append(_email(EmailTemplate.REFUND_CONFIRMATION, event, state))
        return effects
    return []


def _apply_order(event: PaymentEvent, current: OrderState | None) -> Reconciliation:
    target = _order_target(event)
    if current is None:
        status = target or OrderStatus.PAID
        # A refund for an order never seen as paid means its history was missed.
        placeholder = event.kind is EventKind.REFUND
        state = OrderState(
            id=subject_key(event),
            provider=event.provider,
            provider_order_id=event.subject_id,
            status=status,
            user_id=event.user_id,
            amount=None if placeholder else event.amount,
            currency=event.currency,
            customer_email=event.customer_email,
            needs_reconciliation=placeholder,
            last_event_at=event.occurred_at,
            last_event_id=event.provider_event_id,
        )
        if placeholder:
            access: Effect
            if status is OrderStatus.REFUNDED:
                access = RevokeAccess(
                    event.provider, event.subject_type, event.subject_id, state.user_id
                )
            else:
                access = GrantAccess(
                    event.provider, event.subject_type, event.subject_id, state.user_id
                )
            effects: list[Effect] = [
                access,
                *_ledger_effects(event, state.user_id),
                _unresolved_subject(event),
            ]
            return Reconciliation(
                state, tuple(effects), Outcome.PLACEHOLDER, reason="unknown_subject"
            )
        effects = _order_transition_effects(event, None, state)
        if status is OrderStatus.PAID:
            state, notices = _unresolved_user(event, state, previously_flagged=False)
            effects += notices
        return Reconciliation(state, tuple(effects), Outcome.CREATED)

    if current.last_event_id == event.provider_event_id:
        return Reconciliation(None, (), Outcome.REPLAYED)

    user_id = current.user_id or event.user_id
    last_event_at = current.last_event_at
    if last_event_at is None or event.occurred_at > last_event_at:
        last_event_at = event.occurred_at
    next_state = current.model_copy(
        update={
            "user_id": user_id,
            "amount": current.amount if current.amount is not None else event.amount,
            "currency": current.currency or event.currency,
            "customer_email": current.customer_email or event.customer_email,
            "last_event_at": last_event_at,
        }
    )

    if target is None:
        # Partial refund: history and notice only, status stays.
        effects = _ledger_effects(event, user_id)
        if current.status is OrderStatus.PAID:
            effects.append(_email(EmailTemplate.REFUND_CONFIRMATION, event, next_state))
        next_state = next_state.model_copy(update={"last_event_id": event.provider_event_id})
        return Reconciliation(next_state, tuple(effects), Outcome.APPLIED)

    # Order status only moves forward, so arrival order cannot regress it.
    if target.rank <= current.status.rank:
        return Reconciliation(
            _backfill(current, event), (), Outcome.STALE, reason="status_not_forward"
        )

    next_state = next_state.model_copy(
        update={"status": target, "last_event_id": event.provider_event_id}
    )
    effects = _order_transition_effects(event, current.status, next_state)
    if target is OrderStatus.PAID:
        next_state, notices = _unresolved_user(event, next_state, current.needs_reconciliation)
        effects += notices
    return Reconciliation(next_state, tuple(effects), Outcome.APPLIED)


# ---------------------------------------------------------------------------
# Charges and payment methods
# ---------------------------------------------------------------------------


def _apply_stateless(event: PaymentEvent) -> Reconciliation:
    if event.kind is EventKind.DISPUTE:
        notice = NotifyOperator(
            reason="dispute_opened",
            details={
                "provider": event.provider.value,
                "charge_id": event.subject_id,
                "event_id": event.provider_event_id,
                "amount": event.amount,
                "currency": event.currency,
                "reason": event.billing_reason,
                "user_id": event.user_id,
            },
        )
        return Reconciliation(None, (notice,), Outcome.STATELESS)
    if event.kind is EventKind.PAYMENT_METHOD_CHANGED and event.status_after == "attached":
        email = _email(EmailTemplate.PAYMENT_METHOD_UPDATED, event, None)
        return Reconciliation(None, (email,), Outcome.STATELESS)
    return Reconciliation(None, (), Outcome.STATELESS)
