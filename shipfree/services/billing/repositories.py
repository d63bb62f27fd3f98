"""Persistence backends for billing state, effect bookkeeping and dead letters."""
# ruff: noqa: UP017

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Any, NoReturn, Protocol

from sqlalchemy import update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from shipfree.models.billing import (
    AccessGrant,
    DeadLetter,
    EffectOutbox,
    Order,
    PaymentRecord,
    SentEmail,
    Subscription,
)
from shipfree.models.effects import (
    Effect,
    GrantAccess,
    RecordPayment,
    RevokeAccess,
    deserialize_effects,
    serialize_effects,
)
from shipfree.models.events import (
    OrderState,
    PaymentEvent,
    Provider,
    SubjectState,
    SubjectType,
    SubscriptionState,
)
from shipfree.observability.metrics import metrics
from shipfree.services.billing.engine import Reconciliation
from shipfree.services.billing.errors import PersistenceError, SubjectConflict

logger = logging.getLogger(__name__)

Transition = Callable[[SubjectState | None], Reconciliation]
SubjectKey = tuple[str, str, str]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _subject_key(provider: Provider, subject_type: SubjectType, subject_id: str) -> SubjectKey:
    return provider.value, subject_type.value, subject_id


@dataclass(frozen=True)
class OutboxEntry:
    event_id: str
    effects: list[Effect]
    dispatched: bool


class BillingRepository(Protocol):
    """Persistence contract for the reconciliation pipeline."""

    def reconcile(self, event: PaymentEvent, transition: Transition) -> Reconciliation:
        """Atomically read the subject, apply `transition`, write state and outbox."""
        ...

    def get_outbox(self, event_id: str) -> OutboxEntry | None:
        ...

    def mark_dispatched(self, event_id: str) -> None:
        ...

    def get_subscription(
        self, provider: Provider, provider_subscription_id: str
    ) -> SubscriptionState | None:
        ...

    def get_order(self, provider: Provider, provider_order_id: str) -> OrderState | None:
        ...

    def list_subscriptions(self, user_id: str) -> list[SubscriptionState]:
        ...

    def set_access(self, effect: GrantAccess | RevokeAccess, *, event_id: str) -> bool:
        ...

    def get_access(
        self, provider: Provider, subject_type: SubjectType, subject_id: str
    ) -> AccessGrant | None:
        ...

    def email_sent(self, event_id: str, template: str) -> bool:
        ...

    def mark_email_sent(self, event_id: str, template: str, recipient: str) -> None:
        ...

    def record_payment(self, effect: RecordPayment, *, event_id: str) -> bool:
        ...

    def list_payments(self, subject_id: str | None = None) -> list[PaymentRecord]:
        ...

    def add_dead_letter(
        self,
        *,
        provider: str,
        event_id: str,
        reason: str,
        error: str | None,
        payload: dict[str, Any],
        failed_effects: list[Effect] | None = None,
    ) -> DeadLetter:
        ...

    def list_dead_letters(self, *, include_resolved: bool = False) -> list[DeadLetter]:
        ...

    def get_dead_letter(self, dead_letter_id: str) -> DeadLetter | None:
        ...

    def update_dead_letter(
        self,
        dead_letter_id: str,
        *,
        resolved: bool,
        error: str | None = None,
        failed_effects: list[Effect] | None = None,
    ) -> DeadLetter:
        ...


class InMemoryBillingRepository(BillingRepository):
    """Thread-safe repository used for local development and tests."""

    def __init__(self) -> None:
        self._states: dict[SubjectKey, SubjectState] = {}
        self._outbox: dict[str, OutboxEntry] = {}
        self._access: dict[SubjectKey, AccessGrant] = {}
        self._emails: dict[tuple[str, str], str] = {}
        self._payments: dict[str, PaymentRecord] = {}
        self._dead_letters: dict[str, DeadLetter] = {}
        self._subject_locks: dict[SubjectKey, Lock] = {}
        self._lock = Lock()

    @contextmanager
    def _subject_lock(self, key: SubjectKey) -> Iterator[None]:
        with self._lock:
            lock = self._subject_locks.setdefault(key, Lock())
        with lock:
            yield

    def reconcile(self, event: PaymentEvent, transition: Transition) -> Reconciliation:
        key = _subject_key(event.provider, event.subject_type, event.subject_id)
        with self._subject_lock(key):
            with self._lock:
                stored = self._states.get(key)
            current = stored.model_copy() if stored is not None else None
            result = transition(current)
            with self._lock:
                if result.next_state is not None:
                    self._states[key] = result.next_state.model_copy()
                self._outbox[event.provider_event_id] = OutboxEntry(
                    event_id=event.provider_event_id,
                    effects=list(result.effects),
                    dispatched=False,
                )
        _log_reconciled(event, result, "memory")
        return result

    def get_outbox(self, event_id: str) -> OutboxEntry | None:
        with self._lock:
            return self._outbox.get(event_id)

    def mark_dispatched(self, event_id: str) -> None:
        with self._lock:
            entry = self._outbox.get(event_id)
            if entry is not None:
                self._outbox[event_id] = OutboxEntry(event_id, entry.effects, dispatched=True)

    def get_subscription(
        self, provider: Provider, provider_subscription_id: str
    ) -> SubscriptionState | None:
        key = _subject_key(provider, SubjectType.SUBSCRIPTION, provider_subscription_id)
        with self._lock:
            state = self._states.get(key)
        return state.model_copy() if isinstance(state, SubscriptionState) else None

    def get_order(self, provider: Provider, provider_order_id: str) -> OrderState | None:
        key = _subject_key(provider, SubjectType.ORDER, provider_order_id)
        with self._lock:
            state = self._states.get(key)
        return state.model_copy() if isinstance(state, OrderState) else None

    def list_subscriptions(self, user_id: str) -> list[SubscriptionState]:
        with self._lock:
            return [
                state.model_copy()
                for state in self._states.values()
                if isinstance(state, SubscriptionState) and state.user_id == user_id
            ]

    def set_access(self, effect: GrantAccess | RevokeAccess, *, event_id: str) -> bool:
        key = _subject_key(effect.provider, effect.subject_type, effect.subject_id)
        active = isinstance(effect, GrantAccess)
        with self._lock:
            existing = self._access.get(key)
            user_id = effect.user_id or (existing.user_id if existing else None)
            if existing is not None and existing.active == active and existing.user_id == user_id:
                return False
            self._access[key] = AccessGrant(
                provider=key[0],
                subject_type=key[1],
                subject_id=key[2],
                user_id=user_id,
                active=active,
                source_event_id=event_id,
                updated_at=_utcnow(),
            )
        return True

    def get_access(
        self, provider: Provider, subject_type: SubjectType, subject_id: str
    ) -> AccessGrant | None:
        with self._lock:
            return self._access.get(_subject_key(provider, subject_type, subject_id))

    def email_sent(self, event_id: str, template: str) -> bool:
        with self._lock:
            return (event_id, template) in self._emails

    def mark_email_sent(self, event_id: str, template: str, recipient: str) -> None:
        with self._lock:
            self._emails.setdefault((event_id, template), recipient)

    def record_payment(self, effect: RecordPayment, *, event_id: str) -> bool:
        with self._lock:
            if event_id in self._payments:
                return False
            self._payments[event_id] = _payment_record(effect, event_id)
        return True

    def list_payments(self, subject_id: str | None = None) -> list[PaymentRecord]:
        with self._lock:
            records = list(self._payments.values())
        if subject_id is not None:
            records = [record for record in records if record.subject_id == subject_id]
        return sorted(records, key=lambda record: record.recorded_at)

    def add_dead_letter(
        self,
        *,
        provider: str,
        event_id: str,
        reason: str,
        error: str | None,
        payload: dict[str, Any],
        failed_effects: list[Effect] | None = None,
    ) -> DeadLetter:
        entry = DeadLetter(
            provider=provider,
            event_id=event_id,
            reason=reason,
            error=error,
            payload=payload,
            failed_effects=serialize_effects(failed_effects or []),
            attempts=1,
        )
        with self._lock:
            self._dead_letters[entry.id] = entry
        _log_dead_letter(entry, "memory")
        return entry

    def list_dead_letters(self, *, include_resolved: bool = False) -> list[DeadLetter]:
        with self._lock:
            entries = list(self._dead_letters.values())
        if not include_resolved:
            entries = [entry for entry in entries if entry.resolved_at is None]
        return sorted(entries, key=lambda entry: entry.created_at)

    def get_dead_letter(self, dead_letter_id: str) -> DeadLetter | None:
        with self._lock:
            return self._dead_letters.get(dead_letter_id)

    def update_dead_letter(
        self,
        dead_letter_id: str,
        *,
        resolved: bool,
        error: str | None = None,
        failed_effects: list[Effect] | None = None,
    ) -> DeadLetter:
        with self._lock:
            entry = self._dead_letters.get(dead_letter_id)
            if entry is None:
                raise PersistenceError(f"Dead letter {dead_letter_id} not found.")
            _apply_dead_letter_update(entry, resolved, error, failed_effects)
            return entry


class DatabaseBillingRepository(BillingRepository):
    """SQLModel-backed repository for Postgres (production) and SQLite (tests)."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._metrics_tags = {"repository": engine.dialect.name}

    def reconcile(self, event: PaymentEvent, transition: Transition) -> Reconciliation:
        model = _STATE_MODELS.get(event.subject_type)
        try:
            with self._session() as session:
                record = None
                if model is not None:
                    column = _subject_column(model)
                    statement = (
                        select(model)
                        .where(model.provider == event.provider.value, column == event.subject_id)
                        .with_for_update()
                    )
                    record = session.exec(statement).first()
                current = record.to_state() if record is not None else None
                result = transition(current)
                if result.next_state is not None and model is not None:
                    if record is not None:
                        record.apply_state(result.next_state)
                        session.add(record)
                    else:
                        session.add(model.from_state(result.next_state))
                session.add(
                    EffectOutbox(
                        event_id=event.provider_event_id,
                        effects=serialize_effects(result.effects),
                    )
                )
                session.commit()
        except IntegrityError as exc:
            logger.warning(
                "billing.persistence.subject_conflict",
                extra={
                    "event_id": event.provider_event_id,
                    "subject_id": event.subject_id,
                    "backend": self._metrics_tags["repository"],
                },
            )
            raise SubjectConflict(
                f"Concurrent write for subject {event.subject_id}."
            ) from exc
        except SQLAlchemyError as exc:
            self._raise("reconcile", exc, event_id=event.provider_event_id)
        _log_reconciled(event, result, self._metrics_tags["repository"])
        return result

    def get_outbox(self, event_id: str) -> OutboxEntry | None:
        try:
            with self._session() as session:
                record = session.get(EffectOutbox, event_id)
                if record is None:
                    return None
                return OutboxEntry(
                    event_id=record.event_id,
                    effects=deserialize_effects(record.effects or []),
                    dispatched=record.dispatched_at is not None,
                )
        except SQLAlchemyError as exc:
            self._raise("get_outbox", exc, event_id=event_id)

    def mark_dispatched(self, event_id: str) -> None:
        try:
            with self._session() as session:
                session.execute(
                    update(EffectOutbox)
                    .where(EffectOutbox.event_id == event_id)
                    .values(dispatched_at=_utcnow())
                )
                session.commit()
        except SQLAlchemyError as exc:
            self._raise("mark_dispatched", exc, event_id=event_id)

    def get_subscription(
        self, provider: Provider, provider_subscription_id: str
    ) -> SubscriptionState | None:
        try:
            with self._session() as session:
                record = session.exec(
                    select(Subscription).where(
                        Subscription.provider == provider.value,
                        Subscription.provider_subscription_id == provider_subscription_id,
                    )
                ).first()
                return record.to_state() if record is not None else None
        except SQLAlchemyError as exc:
            self._raise("get_subscription", exc, subject_id=provider_subscription_id)

    def get_order(self, provider: Provider, provider_order_id: str) -> OrderState | None:
        try:
            with self._session() as session:
                record = session.exec(
                    select(Order).where(
                        Order.provider == provider.value,
                        Order.provider_order_id == provider_order_id,
                    )
                ).first()
                return record.to_state() if record is not None else None
        except SQLAlchemyError as exc:
            self._raise("get_order", exc, subject_id=provider_order_id)

    def list_subscriptions(self, user_id: str) -> list[SubscriptionState]:
        try:
            with self._session() as session:
                records = session.exec(
                    select(Subscription)
                    .where(Subscription.user_id == user_id)
                    .order_by(Subscription.created_at.desc())
                ).all()
                return [record.to_state() for record in records]
        except SQLAlchemyError as exc:
            self._raise("list_subscriptions", exc, user_id=user_id)

    def set_access(self, effect: GrantAccess | RevokeAccess, *, event_id: str) -> bool:
        key = _subject_key(effect.provider, effect.subject_type, effect.subject_id)
        active = isinstance(effect, GrantAccess)
        try:
            with self._session() as session:
                record = session.get(AccessGrant, key)
                if record is None:
                    session.add(
                        AccessGrant(
                            provider=key[0],
                            subject_type=key[1],
                            subject_id=key[2],
                            user_id=effect.user_id,
                            active=active,
                            source_event_id=event_id,
                        )
                    )
                else:
                    user_id = effect.user_id or record.user_id
                    if record.active == active and record.user_id == user_id:
                        return False
                    record.active = active
                    record.user_id = user_id
                    record.source_event_id = event_id
                    record.updated_at = _utcnow()
                    session.add(record)
                session.commit()
                return True
        except SQLAlchemyError as exc:
            self._raise("set_access", exc, event_id=event_id, subject_id=effect.subject_id)

    def get_access(
        self, provider: Provider, subject_type: SubjectType, subject_id: str
    ) -> AccessGrant | None:
        try:
            with self._session() as session:
                return session.get(
                    AccessGrant, _subject_key(provider, subject_type, subject_id)
                )
        except SQLAlchemyError as exc:
            self._raise("get_access", exc, subject_id=subject_id)

    def email_sent(self, event_id: str, template: str) -> bool:
        try:
            with self._session() as session:
                return session.get(SentEmail, (event_id, template)) is not None
        except SQLAlchemyError as exc:
            self._raise("email_sent", exc, event_id=event_id)

    def mark_email_sent(self, event_id: str, template: str, recipient: str) -> None:
        try:
            with self._session() as session:
                session.add(SentEmail(event_id=event_id, template=template, recipient=recipient))
                session.commit()
        except IntegrityError:
            logger.info(
                "billing.persistence.email_already_marked",
                extra={"event_id": event_id, "template": template},
            )
        except SQLAlchemyError as exc:
            self._raise("mark_email_sent", exc, event_id=event_id)

    def record_payment(self, effect: RecordPayment, *, event_id: str) -> bool:
        try:
            with self._session() as session:
                session.add(_payment_record(effect, event_id))
                session.commit()
                return True
        except IntegrityError:
            return False
        except SQLAlchemyError as exc:
            self._raise("record_payment", exc, event_id=event_id)

    def list_payments(self, subject_id: str | None = None) -> list[PaymentRecord]:
        try:
            with self._session() as session:
                statement = select(PaymentRecord).order_by(PaymentRecord.recorded_at)
                if subject_id is not None:
                    statement = statement.where(PaymentRecord.subject_id == subject_id)
                return list(session.exec(statement).all())
        except SQLAlchemyError as exc:
            self._raise("list_payments", exc, subject_id=subject_id)

    def add_dead_letter(
        self,
        *,
        provider: str,
        event_id: str,
        reason: str,
        error: str | None,
        payload: dict[str, Any],
        failed_effects: list[Effect] | None = None,
    ) -> DeadLetter:
        entry = DeadLetter(
            provider=provider,
            event_id=event_id,
            reason=reason,
            error=error,
            payload=payload,
            failed_effects=serialize_effects(failed_effects or []),
            attempts=1,
        )
        try:
            with self._session() as session:
                session.add(entry)
                session.commit()
        except SQLAlchemyError as exc:
            self._raise("add_dead_letter", exc, event_id=event_id)
        _log_dead_letter(entry, self._metrics_tags["repository"])
        return entry

    def list_dead_letters(self, *, include_resolved: bool = False) -> list[DeadLetter]:
        try:
            with self._session() as session:
                statement = select(DeadLetter).order_by(DeadLetter.created_at)
                if not include_resolved:
                    statement = statement.where(DeadLetter.resolved_at.is_(None))
                return list(session.exec(statement).all())
        except SQLAlchemyError as exc:
            self._raise("list_dead_letters", exc)

    def get_dead_letter(self, dead_letter_id: str) -> DeadLetter | None:
        try:
            with self._session() as session:
                return session.get(DeadLetter, dead_letter_id)
        except SQLAlchemyError as exc:
            self._raise("get_dead_letter", exc, dead_letter_id=dead_letter_id)

    def update_dead_letter(
        self,
        dead_letter_id: str,
        *,
        resolved: bool,
        error: str | None = None,
        failed_effects: list[Effect] | None = None,
    ) -> DeadLetter:
        try:
            with self._session() as session:
                entry = session.get(DeadLetter, dead_letter_id)
                if entry is None:
                    raise PersistenceError(f"Dead letter {dead_letter_id} not found.")
                _apply_dead_letter_update(entry, resolved, error, failed_effects)
                session.add(entry)
                session.commit()
                return entry
        except SQLAlchemyError as exc:
            self._raise("update_dead_letter", exc, dead_letter_id=dead_letter_id)

    def dispose(self) -> None:
        """Close the underlying SQLAlchemy engine."""
        self._engine.dispose()

    @contextmanager
    def _session(self) -> Iterator[Session]:
        with Session(self._engine, expire_on_commit=False) as session:
            yield session

    def _raise(self, operation: str, exc: SQLAlchemyError, **context: Any) -> NoReturn:
        logger.exception(
            "billing.persistence.error",
            extra={"operation": operation, "backend": self._metrics_tags["repository"], **context},
        )
        metrics.increment(
            "persistence.error", tags={"operation": operation, **self._metrics_tags}
        )
        raise PersistenceError(f"Billing store failed during {operation}.") from exc


_STATE_MODELS: dict[SubjectType, type[Subscription] | type[Order]] = {
    SubjectType.SUBSCRIPTION: Subscription,
    SubjectType.ORDER: Order,
}


def _subject_column(model: type[Subscription] | type[Order]) -> Any:
    if model is Subscription:
        return Subscription.provider_subscription_id
    return Order.provider_order_id


def _payment_record(effect: RecordPayment, event_id: str) -> PaymentRecord:
    return PaymentRecord(
        event_id=event_id,
        provider=effect.provider.value,
        subject_type=effect.subject_type.value,
        subject_id=effect.subject_id,
        kind=effect.kind,
        user_id=effect.user_id,
        amount=effect.amount,
        currency=effect.currency,
    )


def _apply_dead_letter_update(
    entry: DeadLetter,
    resolved: bool,
    error: str | None,
    failed_effects: list[Effect] | None,
) -> None:
    entry.attempts = (entry.attempts or 0) + 1
    if resolved:
        entry.resolved_at = _utcnow()
        entry.failed_effects = []
        entry.error = None
        return
    if error is not None:
        entry.error = error
    if failed_effects is not None:
        entry.failed_effects = serialize_effects(failed_effects)


def _log_reconciled(event: PaymentEvent, result: Reconciliation, backend: str) -> None:
    metrics.increment(
        "reconcile.outcome",
        tags={"provider": event.provider.value, "outcome": result.outcome.value},
    )
    logger.info(
        "billing.reconcile.persisted",
        extra={
            "event_id": event.provider_event_id,
            "subject_type": event.subject_type.value,
            "subject_id": event.subject_id,
            "outcome": result.outcome.value,
            "reason": result.reason,
            "effects": [effect.type for effect in result.effects],
            "backend": backend,
        },
    )


def _log_dead_letter(entry: DeadLetter, backend: str) -> None:
    metrics.increment("dead_letter.recorded", tags={"reason": entry.reason, "backend": backend})
    logger.warning(
        "billing.dead_letter.recorded",
        extra={
            "dead_letter_id": entry.id,
            "event_id": entry.event_id,
            "reason": entry.reason,
            "backend": backend,
        },
    )


def build_billing_repository(engine: Engine | None = None) -> BillingRepository:
    """Instantiate the database repository when an engine is configured."""
    if engine is None:
        logger.info("billing.repository.initialized", extra={"backend": "memory"})
        return InMemoryBillingRepository()
    repository = DatabaseBillingRepository(engine)
    logger.info("billing.repository.initialized", extra={"backend": engine.dialect.name})
    return repository
