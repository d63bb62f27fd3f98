"""Webhook ingestion pipeline: verify, normalize, claim, reconcile, dispatch."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import Any

from sqlalchemy.engine import Engine

from shipfree.config import Settings
from shipfree.core.database import create_database_engine
from shipfree.models.effects import Effect, deserialize_effects
from shipfree.models.events import PaymentEvent, Provider, Unrecognized
from shipfree.observability.metrics import MetricsReporter, metrics
from shipfree.services.billing import engine as reconciliation
from shipfree.services.billing.checkout import CheckoutClient, build_checkout_clients
from shipfree.services.billing.dispatcher import (
    EffectDispatcher,
    EffectResult,
    UserDirectory,
)
from shipfree.services.billing.email import EmailSender, build_email_sender
from shipfree.services.billing.engine import EnginePolicy, Outcome, Reconciliation
from shipfree.services.billing.errors import (
    ConfigurationError,
    InvalidSignature,
    MalformedPayload,
    PersistenceError,
    SubjectConflict,
)
from shipfree.services.billing.idempotency import (
    ClaimResult,
    DatabaseIdempotencyStore,
    IdempotencyStore,
    InMemoryIdempotencyStore,
)
from shipfree.services.billing.normalizer import NormalizerRegistry, default_registry
from shipfree.services.billing.repositories import BillingRepository, build_billing_repository
from shipfree.services.billing.retry import RetryPolicy
from shipfree.services.billing.signatures import (
    LemonSqueezySignatureVerifier,
    SignatureVerifier,
    StripeSignatureVerifier,
)

logger = logging.getLogger(__name__)

DEAD_LETTER_RECONCILE_FAILED = "reconcile_failed"
DEAD_LETTER_EFFECTS_FAILED = "effects_failed"
MAX_SUBJECT_CONFLICT_RETRIES = 3


class ProcessingStatus(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    DEAD_LETTERED = "dead_lettered"


@dataclass(frozen=True)
class ProviderConfig:
    provider: Provider
    verifier: SignatureVerifier
    webhook_secret: str | None


@dataclass(frozen=True)
class WebhookOutcome:
    status: ProcessingStatus
    provider: Provider
    event_id: str | None = None
    event_type: str | None = None
    reconcile_outcome: Outcome | None = None
    results: tuple[EffectResult, ...] = ()
    dead_letter_id: str | None = None


class WebhookProcessor:
    """Runs one webhook delivery through the reconciliation pipeline.

    The idempotency claim is committed only once effects were dispatched or
    durably dead-lettered. Storage failures release the claim and propagate
    so the provider retries the delivery.
    """

    def __init__(
        self,
        providers: Mapping[Provider, ProviderConfig],
        normalizers: NormalizerRegistry,
        idempotency: IdempotencyStore,
        repository: BillingRepository,
        dispatcher: EffectDispatcher,
        *,
        policy: EnginePolicy | None = None,
        reporter: MetricsReporter | None = None,
        max_conflict_retries: int = MAX_SUBJECT_CONFLICT_RETRIES,
    ) -> None:
        self._providers = dict(providers)
        self._normalizers = normalizers
        self._idempotency = idempotency
        self._repository = repository
        self._dispatcher = dispatcher
        self._policy = policy or EnginePolicy()
        self._metrics = reporter or metrics
        self._max_conflict_retries = max(max_conflict_retries, 1)

    def handle(self, provider: Provider, payload: bytes, signature: str | None) -> WebhookOutcome:
        start = time.perf_counter()
        config = self._providers.get(provider)
        if config is None:
            raise ConfigurationError(f"Provider {provider.value} is not configured.")
        tags = {"provider": provider.value}
        if not config.webhook_secret:
            logger.error("billing.webhook.secret_missing", extra=tags)
            self._metrics.alert(
                "webhook.secret_missing", value=1, threshold=1, severity="critical", tags=tags
            )
            raise ConfigurationError(f"{provider.value} webhook secret is not configured.")
        try:
            config.verifier.verify(payload, signature, config.webhook_secret)
        except InvalidSignature as exc:
            logger.warning(
                "billing.webhook.signature_invalid",
                extra={**tags, "has_signature": bool(signature), "error": str(exc)},
            )
            self._metrics.increment("webhook.signature_invalid", tags=tags)
            raise

        normalized = self._normalizers.normalize(provider, _parse_payload(payload))
        if isinstance(normalized, Unrecognized):
            logger.info(
                "billing.webhook.ignored",
                extra={
                    **tags,
                    "event_type": normalized.event_type,
                    "event_id": normalized.provider_event_id,
                    "reason": normalized.reason,
                },
            )
            self._metrics.increment(
                "webhook.ignored", tags={**tags, "event_type": normalized.event_type}
            )
            return WebhookOutcome(
                status=ProcessingStatus.IGNORED,
                provider=provider,
                event_id=normalized.provider_event_id,
                event_type=normalized.event_type,
            )

        logger.info(
            "billing.webhook.received",
            extra={
                **tags,
                "event_id": normalized.provider_event_id,
                "event_type": normalized.event_type,
                "kind": normalized.kind.value,
            },
        )
        self._metrics.increment(
            "webhook.received", tags={**tags, "kind": normalized.kind.value}
        )
        outcome = self.process_event(normalized)
        self._metrics.timing(
            "webhook.duration_ms",
            (time.perf_counter() - start) * 1000,
            tags={**tags, "status": outcome.status.value},
        )
        return outcome

    def process_event(self, event: PaymentEvent) -> WebhookOutcome:
        """Claim, reconcile and dispatch an already verified event."""
        claim = self._idempotency.try_begin(
            event.provider_event_id, provider=event.provider.value, event_type=event.event_type
        )
        if claim is ClaimResult.DUPLICATE:
            self._metrics.increment("webhook.duplicate", tags={"provider": event.provider.value})
            return WebhookOutcome(
                status=ProcessingStatus.DUPLICATE,
                provider=event.provider,
                event_id=event.provider_event_id,
                event_type=event.event_type,
            )
        try:
            outcome = self._execute(event)
            self._idempotency.commit(event.provider_event_id)
        except PersistenceError:
            logger.exception(
                "billing.webhook.persistence_failed",
                extra={"event_id": event.provider_event_id, "provider": event.provider.value},
            )
            self._idempotency.release(event.provider_event_id)
            raise
        logger.info(
            "billing.webhook.processed",
            extra={
                "event_id": event.provider_event_id,
                "provider": event.provider.value,
                "status": outcome.status.value,
                "outcome": outcome.reconcile_outcome.value if outcome.reconcile_outcome else None,
            },
        )
        return outcome

    def replay_dead_letter(self, dead_letter_id: str) -> WebhookOutcome:
        """Retry a dead-lettered event; dedupe keys keep effects from repeating."""
        entry = self._repository.get_dead_letter(dead_letter_id)
        if entry is None:
            raise LookupError(f"Dead letter {dead_letter_id} not found.")
        provider = Provider(entry.provider)
        if entry.resolved_at is not None:
            return WebhookOutcome(
                status=ProcessingStatus.DUPLICATE, provider=provider, event_id=entry.event_id
            )

        reconcile_outcome: Outcome | None = None
        if entry.reason == DEAD_LETTER_EFFECTS_FAILED:
            effects = deserialize_effects(entry.failed_effects or [])
        else:
            event = self._normalizers.normalize(provider, entry.payload)
            if isinstance(event, Unrecognized):
                self._repository.update_dead_letter(dead_letter_id, resolved=True)
                return WebhookOutcome(
                    status=ProcessingStatus.IGNORED, provider=provider, event_id=entry.event_id
                )
            pending = self._repository.get_outbox(event.provider_event_id)
            if pending is not None:
                effects = [] if pending.dispatched else pending.effects
            else:
                try:
                    result = self._reconcile(event)
                except PersistenceError:
                    raise
                except Exception as exc:
                    logger.exception(
                        "billing.replay.reconcile_failed",
                        extra={"dead_letter_id": dead_letter_id, "event_id": entry.event_id},
                    )
                    self._repository.update_dead_letter(
                        dead_letter_id, resolved=False, error=str(exc)
                    )
                    return WebhookOutcome(
                        status=ProcessingStatus.DEAD_LETTERED,
                        provider=provider,
                        event_id=entry.event_id,
                        dead_letter_id=dead_letter_id,
                    )
                effects = list(result.effects)
                reconcile_outcome = result.outcome

        results = self._dispatcher.dispatch(entry.event_id, effects)
        failed = [result for result in results if result.failed]
        self._repository.mark_dispatched(entry.event_id)
        self._repository.update_dead_letter(
            dead_letter_id,
            resolved=not failed,
            error=_describe_failures(failed) if failed else None,
            failed_effects=[result.effect for result in failed],
        )
        logger.info(
            "billing.replay.completed",
            extra={
                "dead_letter_id": dead_letter_id,
                "event_id": entry.event_id,
                "failed": len(failed),
            },
        )
        return WebhookOutcome(
            status=ProcessingStatus.DEAD_LETTERED if failed else ProcessingStatus.PROCESSED,
            provider=provider,
            event_id=entry.event_id,
            reconcile_outcome=reconcile_outcome,
            results=tuple(results),
            dead_letter_id=dead_letter_id,
        )

    def _execute(self, event: PaymentEvent) -> WebhookOutcome:
        pending = self._repository.get_outbox(event.provider_event_id)
        if pending is not None and pending.dispatched:
            # Effects went out but the claim was never committed.
            return self._outcome(event, ProcessingStatus.PROCESSED, Outcome.REPLAYED)
        if pending is not None:
            logger.warning(
                "billing.outbox.resumed",
                extra={"event_id": event.provider_event_id, "effects": len(pending.effects)},
            )
            return self._dispatch(event, pending.effects, Outcome.REPLAYED)

        try:
            result = self._reconcile(event)
        except PersistenceError:
            raise
        except Exception as exc:
            logger.exception(
                "billing.reconcile.failed",
                extra={"event_id": event.provider_event_id, "provider": event.provider.value},
            )
            entry = self._repository.add_dead_letter(
                provider=event.provider.value,
                event_id=event.provider_event_id,
                reason=DEAD_LETTER_RECONCILE_FAILED,
                error=str(exc),
                payload=event.raw,
            )
            self._alert_dead_letter(event, DEAD_LETTER_RECONCILE_FAILED)
            return self._outcome(
                event, ProcessingStatus.DEAD_LETTERED, None, dead_letter_id=entry.id
            )
        if result.outcome in (Outcome.REJECTED, Outcome.STALE):
            logger.warning(
                "billing.reconcile.not_applied",
                extra={
                    "event_id": event.provider_event_id,
                    "outcome": result.outcome.value,
                    "reason": result.reason,
                },
            )
        elif result.outcome is Outcome.CLOSED:
            logger.info(
                "billing.reconcile.subject_closed",
                extra={"event_id": event.provider_event_id, "reason": result.reason},
            )
        return self._dispatch(event, list(result.effects), result.outcome)

    def _reconcile(self, event: PaymentEvent) -> Reconciliation:
        transition = partial(reconciliation.apply, event, policy=self._policy)
        for attempt in range(1, self._max_conflict_retries + 1):
            try:
                return self._repository.reconcile(event, transition)
            except SubjectConflict:
                if attempt >= self._max_conflict_retries:
                    raise
                logger.info(
                    "billing.reconcile.conflict_retry",
                    extra={"event_id": event.provider_event_id, "attempt": attempt},
                )
        raise SubjectConflict(f"Subject {event.subject_id} stayed contended.")

    def _dispatch(
        self, event: PaymentEvent, effects: Sequence[Effect], outcome: Outcome
    ) -> WebhookOutcome:
        results = self._dispatcher.dispatch(event.provider_event_id, effects)
        failed = [result for result in results if result.failed]
        dead_letter_id = None
        if failed:
            entry = self._repository.add_dead_letter(
                provider=event.provider.value,
                event_id=event.provider_event_id,
                reason=DEAD_LETTER_EFFECTS_FAILED,
                error=_describe_failures(failed),
                payload=event.raw,
                failed_effects=[result.effect for result in failed],
            )
            dead_letter_id = entry.id
            self._alert_dead_letter(event, DEAD_LETTER_EFFECTS_FAILED)
        self._repository.mark_dispatched(event.provider_event_id)
        status = ProcessingStatus.DEAD_LETTERED if failed else ProcessingStatus.PROCESSED
        return self._outcome(
            event, status, outcome, results=tuple(results), dead_letter_id=dead_letter_id
        )

    def _alert_dead_letter(self, event: PaymentEvent, reason: str) -> None:
        self._metrics.alert(
            "webhook.dead_lettered",
            value=1,
            threshold=1,
            severity="error",
            tags={
                "provider": event.provider.value,
                "event_id": event.provider_event_id,
                "reason": reason,
            },
        )

    @staticmethod
    def _outcome(
        event: PaymentEvent,
        status: ProcessingStatus,
        outcome: Outcome | None,
        *,
        results: tuple[EffectResult, ...] = (),
        dead_letter_id: str | None = None,
    ) -> WebhookOutcome:
        return WebhookOutcome(
            status=status,
            provider=event.provider,
            event_id=event.provider_event_id,
            event_type=event.event_type,
            reconcile_outcome=outcome,
            results=results,
            dead_letter_id=dead_letter_id,
        )


def _parse_payload(payload: bytes) -> dict[str, Any]:
    try:
        body = json.loads(payload)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedPayload("Webhook body is not valid JSON") from exc
    if not isinstance(body, dict):
        raise MalformedPayload("Webhook body must be a JSON object")
    return body


def _describe_failures(failed: Sequence[EffectResult]) -> str:
    return "; ".join(f"{result.effect.type}: {result.error}" for result in failed)


@dataclass
class BillingService:
    """Process-wide billing collaborators, built once at startup."""

    processor: WebhookProcessor
    repository: BillingRepository
    idempotency: IdempotencyStore
    dispatcher: EffectDispatcher
    checkout: dict[Provider, CheckoutClient] = field(default_factory=dict)
    engine: Engine | None = None

    def close(self) -> None:
        for client in self.checkout.values():
            client.close()
        if self.engine is not None:
            self.engine.dispose()


def build_provider_configs(config: Settings) -> dict[Provider, ProviderConfig]:
    return {
        Provider.STRIPE: ProviderConfig(
            provider=Provider.STRIPE,
            verifier=StripeSignatureVerifier(config.stripe_signature_tolerance_seconds),
            webhook_secret=config.stripe_webhook_secret,
        ),
        Provider.LEMONSQUEEZY: ProviderConfig(
            provider=Provider.LEMONSQUEEZY,
            verifier=LemonSqueezySignatureVerifier(),
            webhook_secret=config.lemonsqueezy_webhook_secret,
        ),
    }


def build_billing_service(
    config: Settings,
    *,
    engine: Engine | None = None,
    email_sender: EmailSender | None = None,
    user_directory: UserDirectory | None = None,
    checkout: dict[Provider, CheckoutClient] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> BillingService:
    """Construct the billing pipeline from settings."""
    if engine is None and config.database_url:
        engine = create_database_engine(
            config.database_url,
            pool_min_size=config.db_pool_min_size,
            pool_max_size=config.db_pool_max_size,
            echo=config.debug,
            auto_create_schema=config.database_auto_create_schema,
        )
    repository = build_billing_repository(engine)
    idempotency: IdempotencyStore
    if engine is None:
        idempotency = InMemoryIdempotencyStore(
            claim_ttl_seconds=config.idempotency_claim_ttl_seconds
        )
    else:
        idempotency = DatabaseIdempotencyStore(
            engine, claim_ttl_seconds=config.idempotency_claim_ttl_seconds
        )
    dispatcher = EffectDispatcher(
        repository,
        email_sender or build_email_sender(config),
        retry_policy=RetryPolicy.from_settings(config),
        user_directory=user_directory,
        operator_recipients=config.operator_recipients,
        sleep=sleep,
    )
    processor = WebhookProcessor(
        build_provider_configs(config),
        default_registry(),
        idempotency,
        repository,
        dispatcher,
        policy=EnginePolicy(final_attempt_threshold=config.payment_failed_final_attempt),
    )
    logger.info(
        "billing.service.initialized",
        extra={
            "backend": engine.dialect.name if engine is not None else "memory",
            "stripe_webhook": bool(config.stripe_webhook_secret),
            "lemonsqueezy_webhook": bool(config.lemonsqueezy_webhook_secret),
        },
    )
    return BillingService(
        processor=processor,
        repository=repository,
        idempotency=idempotency,
        dispatcher=dispatcher,
        checkout=checkout if checkout is not None else build_checkout_clients(config),
        engine=engine,
    )
