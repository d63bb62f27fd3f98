"""Normalized payment events and subject state snapshots."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class Provider(str, Enum):
    STRIPE = "stripe"
    LEMONSQUEEZY = "lemonsqueezy"


class EventKind(str, Enum):
    ORDER_CREATED = "order_created"
    ORDER_PAID = "order_paid"
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    SUBSCRIPTION_EXPIRED = "subscription_expired"
    SUBSCRIPTION_PAUSED = "subscription_paused"
    SUBSCRIPTION_RESUMED = "subscription_resumed"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_RECOVERED = "payment_recovered"
    PAYMENT_ACTION_REQUIRED = "payment_action_required"
    PAYMENT_REMINDER = "payment_reminder"
    REFUND = "refund"
    DISPUTE = "dispute"
    TRIAL_ENDING = "trial_ending"
    PAYMENT_METHOD_CHANGED = "payment_method_changed"


class SubjectType(str, Enum):
    ORDER = "order"
    SUBSCRIPTION = "subscription"
    CHARGE = "charge"
    PAYMENT_METHOD = "payment_method"


class SubscriptionStatus(str, Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    CANCELED = "canceled"
    EXPIRED = "expired"
    PAUSED = "paused"

    @property
    def is_terminal(self) -> bool:
        return self in (SubscriptionStatus.CANCELED, SubscriptionStatus.EXPIRED)

    @property
    def is_delinquent(self) -> bool:
        return self in (SubscriptionStatus.PAST_DUE, SubscriptionStatus.UNPAID)

    @property
    def grants_access(self) -> bool:
        return self in (
            SubscriptionStatus.TRIALING,
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.PAST_DUE,
        )


class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    REFUNDED = "refunded"

    @property
    def rank(self) -> int:
        return _ORDER_RANK[self]


_ORDER_RANK = {OrderStatus.PENDING: 0, OrderStatus.PAID: 1, OrderStatus.REFUNDED: 2}


class PaymentEvent(BaseModel):
    """One provider webhook delivery mapped onto the internal vocabulary."""

    model_config = ConfigDict(frozen=True)

    provider_event_id: str
    provider: Provider
    event_type: str
    kind: EventKind
    subject_type: SubjectType
    subject_id: str
    occurred_at: datetime
    user_id: str | None = None
    customer_email: str | None = None
    amount: int | None = None
    currency: str | None = None
    status_before: str | None = None
    status_after: str | None = None
    plan_id: str | None = None
    current_period_end: datetime | None = None
    trial_end: datetime | None = None
    cancel_at_period_end: bool | None = None
    attempt_count: int | None = None
    billing_reason: str | None = None
    raw: dict[str, Any] = Field(default_factory=dict, repr=False)


class Unrecognized(BaseModel):
    """Verified payload whose event type is intentionally not handled."""

    model_config = ConfigDict(frozen=True)

    provider: Provider
    event_type: str
    reason: str = "unmapped_event_type"
    provider_event_id: str | None = None


class SubscriptionState(BaseModel):
    """Current subscription state as owned by the reconciliation engine."""

    id: str
    provider: Provider
    provider_subscription_id: str
    status: SubscriptionStatus
    user_id: str | None = None
    plan_id: str | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    customer_email: str | None = None
    needs_reconciliation: bool = False
    last_event_at: datetime | None = None
    last_event_id: str | None = None
    last_attempt_count: int | None = None


class OrderState(BaseModel):
    """Current one-time purchase state."""

    id: str
    provider: Provider
    provider_order_id: str
    status: OrderStatus
    user_id: str | None = None
    amount: int | None = None
    currency: str | None = None
    customer_email: str | None = None
    needs_reconciliation: bool = False
    last_event_at: datetime | None = None
    last_event_id: str | None = None


SubjectState = SubscriptionState | OrderState
