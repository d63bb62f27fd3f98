"""SQLModel mappings for billing state, idempotency and effect bookkeeping."""
# ruff: noqa: UP017

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

import sqlalchemy as sa
from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlmodel import Field, SQLModel

from shipfree.models.events import (
    OrderState,
    OrderStatus,
    Provider,
    SubscriptionState,
    SubscriptionStatus,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid4().hex


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


JSON_BACKING_TYPE = sa.JSON().with_variant(JSONB(astext_type=sa.Text()), "postgresql")


class Subscription(SQLModel, table=True):
    """Persisted subscription state."""

    __tablename__ = "subscriptions"
    __table_args__ = (
        sa.UniqueConstraint(
            "provider", "provider_subscription_id", name="uq_subscriptions_provider_subject"
        ),
        sa.Index("ix_subscriptions_user_id", "user_id"),
    )

    id: str = Field(
        default_factory=_new_id,
        sa_column=Column(String(length=64), primary_key=True, nullable=False),
    )
    provider: str = Field(sa_column=Column(String(length=32), nullable=False))
    provider_subscription_id: str = Field(sa_column=Column(String(length=255), nullable=False))
    user_id: str | None = Field(default=None, sa_column=Column(String(length=255), nullable=True))
    status: str = Field(sa_column=Column(String(length=32), nullable=False))
    plan_id: str | None = Field(default=None, sa_column=Column(String(length=255), nullable=True))
    current_period_end: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    cancel_at_period_end: bool = Field(
        default=False, sa_column=Column(Boolean, nullable=False, server_default=sa.false())
    )
    customer_email: str | None = Field(
        default=None, sa_column=Column(String(length=255), nullable=True)
    )
    needs_reconciliation: bool = Field(
        default=False, sa_column=Column(Boolean, nullable=False, server_default=sa.false())
    )
    last_event_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    last_event_id: str | None = Field(
        default=None, sa_column=Column(String(length=255), nullable=True)
    )
    last_attempt_count: int | None = Field(default=None, sa_column=Column(Integer, nullable=True))
    created_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    updated_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(
            DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
            onupdate=sa.func.now(),
        ),
    )

    def to_state(self) -> SubscriptionState:
        return SubscriptionState(
            id=self.id,
            provider=Provider(self.provider),
            provider_subscription_id=self.provider_subscription_id,
            status=SubscriptionStatus(self.status),
            user_id=self.user_id,
            plan_id=self.plan_id,
            current_period_end=as_utc(self.current_period_end),
            cancel_at_period_end=self.cancel_at_period_end,
            customer_email=self.customer_email,
            needs_reconciliation=self.needs_reconciliation,
            last_event_at=as_utc(self.last_event_at),
            last_event_id=self.last_event_id,
            last_attempt_count=self.last_attempt_count,
        )

    def apply_state(self, state: SubscriptionState) -> None:
        self.user_id = state.user_id
        self.status = state.status.value
        self.plan_id = state.plan_id
        self.current_period_end = state.current_period_end
        self.cancel_at_period_end = state.cancel_at_period_end
        self.customer_email = state.customer_email
        self.needs_reconciliation = state.needs_reconciliation
        self.last_event_at = state.last_event_at
        self.last_event_id = state.last_event_id
        self.last_attempt_count = state.last_attempt_count
        self.updated_at = _utcnow()

    @classmethod
    def from_state(cls, state: SubscriptionState) -> Subscription:
        record = cls(
            id=state.id,
            provider=state.provider.value,
            provider_subscription_id=state.provider_subscription_id,
            status=state.status.value,
        )
        record.apply_state(state)
        return record


class Order(SQLModel, table=True):
    """Persisted one-time purchase state."""

    __tablename__ = "orders"
    __table_args__ = (
        sa.UniqueConstraint("provider", "provider_order_id", name="uq_orders_provider_subject"),
        sa.Index("ix_orders_user_id", "user_id"),
    )

    id: str = Field(
        default_factory=_new_id,
        sa_column=Column(String(length=64), primary_key=True, nullable=False),
    )
    provider: str = Field(sa_column=Column(String(length=32), nullable=False))
    provider_order_id: str = Field(sa_column=Column(String(length=255), nullable=False))
    user_id: str | None = Field(default=None, sa_column=Column(String(length=255), nullable=True))
    status: str = Field(sa_column=Column(String(length=32), nullable=False))
    amount: int | None = Field(default=None, sa_column=Column(Integer, nullable=True))
    currency: str | None = Field(default=None, sa_column=Column(String(length=8), nullable=True))
    customer_email: str | None = Field(
        default=None, sa_column=Column(String(length=255), nullable=True)
    )
    needs_reconciliation: bool = Field(
        default=False, sa_column=Column(Boolean, nullable=False, server_default=sa.false())
    )
    last_event_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    last_event_id: str | None = Field(
        default=None, sa_column=Column(String(length=255), nullable=True)
    )
    created_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    updated_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(
            DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
            onupdate=sa.func.now(),
        ),
    )

    def to_state(self) -> OrderState:
        return OrderState(
            id=self.id,
            provider=Provider(self.provider),
            provider_order_id=self.provider_order_id,
            status=OrderStatus(self.status),
            user_id=self.user_id,
            amount=self.amount,
            currency=self.currency,
            customer_email=self.customer_email,
            needs_reconciliation=self.needs_reconciliation,
            last_event_at=as_utc(self.last_event_at),
            last_event_id=self.last_event_id,
        )

    def apply_state(self, state: OrderState) -> None:
        self.user_id = state.user_id
        self.status = state.status.value
        self.amount = state.amount
        self.currency = state.currency
        self.customer_email = state.customer_email
        self.needs_reconciliation = state.needs_reconciliation
        self.last_event_at = state.last_event_at
        self.last_event_id = state.last_event_id
        self.updated_at = _utcnow()

    @classmethod
    def from_state(cls, state: OrderState) -> Order:
        record = cls(
            id=state.id,
            provider=state.provider.value,
            provider_order_id=state.provider_order_id,
            status=state.status.value,
        )
        record.apply_state(state)
        return record


class ProcessedEvent(SQLModel, table=True):
    """Idempotency claims for provider webhook events."""

    __tablename__ = "processed_events"

    event_id: str = Field(sa_column=Column(String(length=255), primary_key=True, nullable=False))
    provider: str = Field(sa_column=Column(String(length=32), nullable=False))
    event_type: str | None = Field(
        default=None, sa_column=Column(String(length=100), nullable=True)
    )
    status: str = Field(
        default="processing", sa_column=Column(String(length=16), nullable=False)
    )
    claimed_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    applied_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )


class EffectOutbox(SQLModel, table=True):
    """Effects persisted in the same transaction as the subject state change."""

    __tablename__ = "effect_outbox"

    event_id: str = Field(sa_column=Column(String(length=255), primary_key=True, nullable=False))
    effects: list[dict[str, Any]] = Field(
        default_factory=list, sa_column=Column(JSON_BACKING_TYPE, nullable=False)
    )
    created_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    dispatched_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )


class AccessGrant(SQLModel, table=True):
    """Access entitlement per billing subject."""

    __tablename__ = "access_grants"

    provider: str = Field(sa_column=Column(String(length=32), primary_key=True, nullable=False))
    subject_type: str = Field(
        sa_column=Column(String(length=32), primary_key=True, nullable=False)
    )
    subject_id: str = Field(sa_column=Column(String(length=255), primary_key=True, nullable=False))
    user_id: str | None = Field(default=None, sa_column=Column(String(length=255), nullable=True))
    active: bool = Field(default=False, sa_column=Column(Boolean, nullable=False))
    source_event_id: str | None = Field(
        default=None, sa_column=Column(String(length=255), nullable=True)
    )
    updated_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )


class SentEmail(SQLModel, table=True):
    """Email dedupe log keyed by provider event and template."""

    __tablename__ = "sent_emails"

    event_id: str = Field(sa_column=Column(String(length=255), primary_key=True, nullable=False))
    template: str = Field(sa_column=Column(String(length=64), primary_key=True, nullable=False))
    recipient: str = Field(sa_column=Column(String(length=255), nullable=False))
    sent_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )


class PaymentRecord(SQLModel, table=True):
    """Payment and refund history, one row per provider event."""

    __tablename__ = "payments"
    __table_args__ = (sa.Index("ix_payments_subject", "provider", "subject_id"),)

    event_id: str = Field(sa_column=Column(String(length=255), primary_key=True, nullable=False))
    provider: str = Field(sa_column=Column(String(length=32), nullable=False))
    subject_type: str = Field(sa_column=Column(String(length=32), nullable=False))
    subject_id: str = Field(sa_column=Column(String(length=255), nullable=False))
    kind: str = Field(sa_column=Column(String(length=16), nullable=False))
    user_id: str | None = Field(default=None, sa_column=Column(String(length=255), nullable=True))
    amount: int | None = Field(default=None, sa_column=Column(Integer, nullable=True))
    currency: str | None = Field(default=None, sa_column=Column(String(length=8), nullable=True))
    recorded_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )


class DeadLetter(SQLModel, table=True):
    """Events that could not be fully reconciled, kept for replay."""

    __tablename__ = "dead_letters"
    __table_args__ = (sa.Index("ix_dead_letters_event_id", "event_id"),)

    id: str = Field(
        default_factory=_new_id,
        sa_column=Column(String(length=64), primary_key=True, nullable=False),
    )
    provider: str = Field(sa_column=Column(String(length=32), nullable=False))
    event_id: str = Field(sa_column=Column(String(length=255), nullable=False))
    reason: str = Field(sa_column=Column(String(length=32), nullable=False))
    error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    payload: dict[str, Any] = Field(
        default_factory=dict, sa_column=Column(JSON_BACKING_TYPE, nullable=False)
    )
    failed_effects: list[dict[str, Any]] = Field(
        default_factory=list, sa_column=Column(JSON_BACKING_TYPE, nullable=False)
    )
    attempts: int = Field(default=0, sa_column=Column(Integer, nullable=False, server_default="0"))
    created_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    resolved_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
