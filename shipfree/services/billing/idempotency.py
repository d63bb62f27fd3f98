"""Idempotency claims for provider event ids."""
# ruff: noqa: UP017

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from threading import Lock
from typing import NoReturn, Protocol

from sqlalchemy import update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from shipfree.models.billing import ProcessedEvent
from shipfree.observability.metrics import metrics
from shipfree.services.billing.errors import PersistenceError

logger = logging.getLogger(__name__)

CLAIM_PROCESSING = "processing"
CLAIM_APPLIED = "applied"
DEFAULT_CLAIM_TTL_SECONDS = 300


class ClaimResult(str, Enum):
    FRESH = "fresh"
    DUPLICATE = "duplicate"


@dataclass
class _Claim:
    provider: str
    event_type: str | None
    status: str
    claimed_at: datetime
    applied_at: datetime | None = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IdempotencyStore(Protocol):
    """Exactly one concurrent caller may begin a given provider event id."""

    def try_begin(
        self, event_id: str, *, provider: str, event_type: str | None = None
    ) -> ClaimResult:
        ...

    def commit(self, event_id: str) -> None:
        ...

    def release(self, event_id: str) -> None:
        ...

    def is_applied(self, event_id: str) -> bool:
        ...


class InMemoryIdempotencyStore(IdempotencyStore):
    """Thread-safe claim table used when no database is configured."""

    def __init__(
        self,
        *,
        claim_ttl_seconds: int = DEFAULT_CLAIM_TTL_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._claims: dict[str, _Claim] = {}
        self._ttl = timedelta(seconds=claim_ttl_seconds)
        self._clock = clock
        self._lock = Lock()

    def try_begin(
        self, event_id: str, *, provider: str, event_type: str | None = None
    ) -> ClaimResult:
        now = self._clock()
        with self._lock:
            existing = self._claims.get(event_id)
            if existing is not None:
                expired = existing.claimed_at <= now - self._ttl
                if existing.status != CLAIM_PROCESSING or not expired:
                    _log_duplicate(event_id, provider, existing.status, "memory")
                    return ClaimResult.DUPLICATE
                _log_takeover(event_id, provider, "memory")
            self._claims[event_id] = _Claim(
                provider=provider,
                event_type=event_type,
                status=CLAIM_PROCESSING,
                claimed_at=now,
            )
        return ClaimResult.FRESH

    def commit(self, event_id: str) -> None:
        with self._lock:
            claim = self._claims.get(event_id)
            if claim is None:
                raise PersistenceError(f"No claim to commit for event {event_id}.")
            claim.status = CLAIM_APPLIED
            claim.applied_at = self._clock()

    def release(self, event_id: str) -> None:
        with self._lock:
            claim = self._claims.get(event_id)
            if claim is not None and claim.status == CLAIM_PROCESSING:
                del self._claims[event_id]

    def is_applied(self, event_id: str) -> bool:
        with self._lock:
            claim = self._claims.get(event_id)
            return claim is not None and claim.status == CLAIM_APPLIED


class DatabaseIdempotencyStore(IdempotencyStore):
    """Claim table on `processed_events`; the primary key insert is the atomic guard."""

    def __init__(
        self,
        engine: Engine,
        *,
        claim_ttl_seconds: int = DEFAULT_CLAIM_TTL_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._engine = engine
        self._ttl = timedelta(seconds=claim_ttl_seconds)
        self._clock = clock

    def try_begin(
        self, event_id: str, *, provider: str, event_type: str | None = None
    ) -> ClaimResult:
        now = self._clock()
        try:
            with self._session() as session:
                session.add(
                    ProcessedEvent(
                        event_id=event_id,
                        provider=provider,
                        event_type=event_type,
                        status=CLAIM_PROCESSING,
                        claimed_at=now,
                    )
                )
                session.commit()
            return ClaimResult.FRESH
        except IntegrityError:
            pass
        except SQLAlchemyError as exc:
            _raise_persistence("try_begin", event_id, exc)

        # The row exists: it is either applied, in flight, or abandoned.
        try:
            with self._session() as session:
                result = session.execute(
                    update(ProcessedEvent)
                    .where(
                        ProcessedEvent.event_id == event_id,
                        ProcessedEvent.status == CLAIM_PROCESSING,
                        ProcessedEvent.claimed_at <= now - self._ttl,
                    )
                    .values(claimed_at=now, event_type=event_type)
                )
                session.commit()
                if result.rowcount == 1:
                    _log_takeover(event_id, provider, "database")
                    return ClaimResult.FRESH
                record = session.get(ProcessedEvent, event_id)
                status = record.status if record else "unknown"
        except SQLAlchemyError as exc:
            _raise_persistence("try_begin", event_id, exc)
        _log_duplicate(event_id, provider, status, "database")
        return ClaimResult.DUPLICATE

    def commit(self, event_id: str) -> None:
        try:
            with self._session() as session:
                result = session.execute(
                    update(ProcessedEvent)
                    .where(ProcessedEvent.event_id == event_id)
                    .values(status=CLAIM_APPLIED, applied_at=self._clock())
                )
                session.commit()
        except SQLAlchemyError as exc:
            _raise_persistence("commit", event_id, exc)
        if result.rowcount != 1:
            raise PersistenceError(f"No claim to commit for event {event_id}.")

    def release(self, event_id: str) -> None:
        try:
            with self._session() as session:
                record = session.exec(
                    select(ProcessedEvent).where(
                        ProcessedEvent.event_id == event_id,
                        ProcessedEvent.status == CLAIM_PROCESSING,
                    )
                ).first()
                if record is not None:
                    session.delete(record)
                    session.commit()
        except SQLAlchemyError as exc:
            _raise_persistence("release", event_id, exc)

    def is_applied(self, event_id: str) -> bool:
        try:
            with self._session() as session:
                record = session.get(ProcessedEvent, event_id)
                return record is not None and record.status == CLAIM_APPLIED
        except SQLAlchemyError as exc:
            _raise_persistence("is_applied", event_id, exc)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        with Session(self._engine, expire_on_commit=False) as session:
            yield session


def _log_duplicate(event_id: str, provider: str, status: str, backend: str) -> None:
    metrics.increment(
        "idempotency.duplicate", tags={"provider": provider, "status": status, "backend": backend}
    )
    logger.info(
        "billing.idempotency.duplicate",
        extra={"event_id": event_id, "provider": provider, "status": status, "backend": backend},
    )


def _log_takeover(event_id: str, provider: str, backend: str) -> None:
    metrics.increment("idempotency.takeover", tags={"provider": provider, "backend": backend})
    logger.warning(
        "billing.idempotency.stale_claim_taken_over",
        extra={"event_id": event_id, "provider": provider, "backend": backend},
    )


def _raise_persistence(operation: str, event_id: str, exc: SQLAlchemyError) -> NoReturn:
    logger.exception(
        "billing.idempotency.error",
        extra={"event_id": event_id, "operation": operation, "backend": "database"},
    )
    raise PersistenceError(f"Idempotency store failed during {operation}.") from exc
