"""Map provider webhook payloads onto `PaymentEvent`."""
# ruff: noqa: UP017

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, Protocol

from shipfree.models.events import (
    EventKind,
    PaymentEvent,
    Provider,
    SubjectType,
    Unrecognized,
)
from shipfree.services.billing.errors import ConfigurationError, MalformedPayload


class EventNormalizer(Protocol):
    provider: Provider

    def normalize(self, payload: dict[str, Any]) -> PaymentEvent | Unrecognized:
        ...


def _as_mapping(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _first_text(*values: Any) -> str | None:
    for value in values:
        if value is None:
            continue
        text = str(value).strip()
        if text:
            return text
    return None


def _as_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _currency(value: Any) -> str | None:
    text = _first_text(value)
    return text.lower() if text else None


def _from_epoch(value: Any) -> datetime | None:
    seconds = _as_int(value)
    if seconds is None:
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def _from_iso(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Stripe
# ---------------------------------------------------------------------------

_STRIPE_KINDS: dict[str, tuple[EventKind, SubjectType]] = {
    "checkout.session.completed": (EventKind.ORDER_PAID, SubjectType.ORDER),
    "checkout.session.async_payment_succeeded": (EventKind.ORDER_PAID, SubjectType.ORDER),
    "customer.subscription.created": (EventKind.SUBSCRIPTION_CREATED, SubjectType.SUBSCRIPTION),
    "customer.subscription.updated": (EventKind.SUBSCRIPTION_UPDATED, SubjectType.SUBSCRIPTION),
    "customer.subscription.deleted": (EventKind.SUBSCRIPTION_CANCELED, SubjectType.SUBSCRIPTION),
    "customer.subscription.paused": (EventKind.SUBSCRIPTION_PAUSED, SubjectType.SUBSCRIPTION),
    "customer.subscription.resumed": (EventKind.SUBSCRIPTION_RESUMED, SubjectType.SUBSCRIPTION),
    "customer.subscription.trial_will_end": (EventKind.TRIAL_ENDING, SubjectType.SUBSCRIPTION),
    "customer.subscription.payment_failed": (EventKind.PAYMENT_FAILED, SubjectType.SUBSCRIPTION),
    "invoice.payment_succeeded": (EventKind.PAYMENT_SUCCEEDED, SubjectType.SUBSCRIPTION),
    "invoice.paid": (EventKind.PAYMENT_SUCCEEDED, SubjectType.SUBSCRIPTION),
    "invoice.payment_failed": (EventKind.PAYMENT_FAILED, SubjectType.SUBSCRIPTION),
    "invoice.payment_action_required": (
        EventKind.PAYMENT_ACTION_REQUIRED,
        SubjectType.SUBSCRIPTION,
    ),
    "charge.refunded": (EventKind.REFUND, SubjectType.ORDER),
    "charge.dispute.created": (EventKind.DISPUTE, SubjectType.CHARGE),
    "payment_method.attached": (EventKind.PAYMENT_METHOD_CHANGED, SubjectType.PAYMENT_METHOD),
    "payment_method.detached": (EventKind.PAYMENT_METHOD_CHANGED, SubjectType.PAYMENT_METHOD),
}

# Stripe statuses without a counterpart collapse to "unknown" and the engine
# falls back to its own default for the kind.
_STRIPE_STATUSES = {
    "incomplete": None,
    "incomplete_expired": "expired",
}


def _stripe_status(value: Any) -> str | None:
    text = _first_text(value)
    if text is None:
        return None
    return _STRIPE_STATUSES.get(text, text)


def _stripe_user_id(*sources: Mapping[str, Any]) -> str | None:
    for source in sources:
        user_id = _first_text(_as_mapping(source.get("metadata")).get("user_id"))
        if user_id:
            return user_id
    return None


def _stripe_price_id(subscription: Mapping[str, Any]) -> str | None:
    items = _as_mapping(subscription.get("items")).get("data") or []
    if items and isinstance(items[0], dict):
        price = _as_mapping(items[0].get("price"))
        return _first_text(price.get("id"), _as_mapping(items[0].get("plan")).get("id"))
    return _first_text(_as_mapping(subscription.get("plan")).get("id"))


def _stripe_period_end(subscription: Mapping[str, Any]) -> datetime | None:
    period_end = _from_epoch(subscription.get("current_period_end"))
    if period_end is not None:
        return period_end
    items = _as_mapping(subscription.get("items")).get("data") or []
    if items and isinstance(items[0], dict):
        return _from_epoch(items[0].get("current_period_end"))
    return None


def _stripe_invoice_subscription(invoice: Mapping[str, Any]) -> tuple[str | None, dict[str, Any]]:
    """Return the subscription id and metadata an invoice belongs to."""
    subscription = invoice.get("subscription")
    details = _as_mapping(invoice.get("subscription_details"))
    parent = _as_mapping(_as_mapping(invoice.get("parent")).get("subscription_details"))
    if isinstance(subscription, dict):
        return _first_text(subscription.get("id")), _as_mapping(subscription.get("metadata"))
    subscription_id = _first_text(subscription, parent.get("subscription"))
    metadata = _as_mapping(details.get("metadata")) or _as_mapping(parent.get("metadata"))
    return subscription_id, metadata


class StripeNormalizer:
    """Normalizes Stripe `Event` objects."""

    provider = Provider.STRIPE

    def normalize(self, payload: dict[str, Any]) -> PaymentEvent | Unrecognized:
        event_id = _first_text(payload.get("id"))
        event_type = _first_text(payload.get("type"))
        if not event_id or not event_type:
            raise MalformedPayload("Stripe event is missing id or type")
        mapping = _STRIPE_KINDS.get(event_type)
        if mapping is None:
            return Unrecognized(
                provider=self.provider, event_type=event_type, provider_event_id=event_id
            )
        obj = _as_mapping(_as_mapping(payload.get("data")).get("object"))
        if not obj:
            raise MalformedPayload("Stripe event is missing data.object")
        occurred_at = _from_epoch(payload.get("created"))
        if occurred_at is None:
            raise MalformedPayload("Stripe event is missing its created timestamp")

        kind, subject_type = mapping
        base: dict[str, Any] = {
            "provider_event_id": event_id,
            "provider": self.provider,
            "event_type": event_type,
            "kind": kind,
            "subject_type": subject_type,
            "occurred_at": occurred_at,
            "raw": payload,
        }
        if event_type.startswith("checkout.session."):
            fields = self._checkout_session(obj)
            if fields is None:
                return Unrecognized(
                    provider=self.provider,
                    event_type=event_type,
                    reason="subscription_checkout",
                    provider_event_id=event_id,
                )
        elif event_type.startswith("customer.subscription."):
            previous = _as_mapping(_as_mapping(payload.get("data")).get("previous_attributes"))
            fields = self._subscription(obj, previous)
        elif event_type.startswith("invoice."):
            fields = self._invoice(obj)
            if fields is None:
                return Unrecognized(
                    provider=self.provider,
                    event_type=event_type,
                    reason="invoice_without_subscription",
                    provider_event_id=event_id,
                )
        elif event_type == "charge.refunded":
            fields = self._refund(obj)
        elif event_type == "charge.dispute.created":
            fields = self._dispute(obj)
        else:
            fields = self._payment_method(obj, event_type)

        if fields.get("kind") is not None:
            base["kind"] = fields.pop("kind")
        if not fields.get("subject_id"):
            raise MalformedPayload(f"Stripe {event_type} carries no subject id")
        return PaymentEvent(**base, **fields)

    def _checkout_session(self, session: dict[str, Any]) -> dict[str, Any] | None:
        if session.get("mode") == "subscription":
            return None
        details = _as_mapping(session.get("customer_details"))
        payment_status = session.get("payment_status")
        paid = payment_status in (None, "paid", "no_payment_required")
        return {
            "kind": EventKind.ORDER_PAID if paid else EventKind.ORDER_CREATED,
            "subject_id": _first_text(session.get("payment_intent"), session.get("id")),
            "user_id": _stripe_user_id(session) or _first_text(session.get("client_reference_id")),
            "customer_email": _first_text(details.get("email"), session.get("customer_email")),
            "amount": _as_int(session.get("amount_total")),
            "currency": _currency(session.get("currency")),
            "status_after": "paid" if paid else "pending",
        }

    def _subscription(
        self, subscription: dict[str, Any], previous: dict[str, Any]
    ) -> dict[str, Any]:
        return {
            "subject_id": _first_text(subscription.get("id")),
            "user_id": _stripe_user_id(subscription),
            "customer_email": _first_text(subscription.get("customer_email")),
            "status_before": _stripe_status(previous.get("status")),
            "status_after": _stripe_status(subscription.get("status")),
            "plan_id": _stripe_price_id(subscription),
            "current_period_end": _stripe_period_end(subscription),
            "trial_end": _from_epoch(subscription.get("trial_end")),
            "cancel_at_period_end": bool(subscription.get("cancel_at_period_end")),
        }

    def _invoice(self, invoice: dict[str, Any]) -> dict[str, Any] | None:
        subscription_id, metadata = _stripe_invoice_subscription(invoice)
        if not subscription_id:
            return None
        lines = _as_mapping(invoice.get("lines")).get("data") or []
        line_metadata = _as_mapping(lines[0].get("metadata")) if lines else {}
        paid = invoice.get("amount_paid")
        return {
            "subject_id": subscription_id,
            "user_id": _first_text(metadata.get("user_id"), line_metadata.get("user_id"))
            or _stripe_user_id(invoice),
            "customer_email": _first_text(invoice.get("customer_email")),
            "amount": _as_int(paid if paid else invoice.get("amount_due")),
            "currency": _currency(invoice.get("currency")),
            "attempt_count": _as_int(invoice.get("attempt_count")),
            "billing_reason": _first_text(invoice.get("billing_reason")),
        }

    def _refund(self, charge: dict[str, Any]) -> dict[str, Any]:
        billing = _as_mapping(charge.get("billing_details"))
        return {
            "subject_id": _first_text(charge.get("payment_intent"), charge.get("id")),
            "user_id": _stripe_user_id(charge),
            "customer_email": _first_text(billing.get("email"), charge.get("receipt_email")),
            "amount": _as_int(charge.get("amount_refunded")),
            "currency": _currency(charge.get("currency")),
            "status_after": "refunded" if charge.get("refunded") else "partially_refunded",
        }

    def _dispute(self, dispute: dict[str, Any]) -> dict[str, Any]:
        return {
            "subject_id": _first_text(dispute.get("charge"), dispute.get("id")),
            "user_id": _stripe_user_id(dispute),
            "amount": _as_int(dispute.get("amount")),
            "currency": _currency(dispute.get("currency")),
            "status_after": _first_text(dispute.get("status")),
            "billing_reason": _first_text(dispute.get("reason")),
        }

    def _payment_method(self, method: dict[str, Any], event_type: str) -> dict[str, Any]:
        billing = _as_mapping(method.get("billing_details"))
        return {
            "subject_id": _first_text(method.get("id")),
            "user_id": _stripe_user_id(method),
            "customer_email": _first_text(billing.get("email")),
            "status_after": event_type.rsplit(".", 1)[-1],
        }


# ---------------------------------------------------------------------------
# LemonSqueezy
# ---------------------------------------------------------------------------

_LEMONSQUEEZY_KINDS: dict[str, tuple[EventKind, SubjectType]] = {
    "order_created": (EventKind.ORDER_CREATED, SubjectType.ORDER),
    "order_paid": (EventKind.ORDER_PAID, SubjectType.ORDER),
    "order_refunded": (EventKind.REFUND, SubjectType.ORDER),
    "subscription_created": (EventKind.SUBSCRIPTION_CREATED, SubjectType.SUBSCRIPTION),
    "subscription_updated": (EventKind.SUBSCRIPTION_UPDATED, SubjectType.SUBSCRIPTION),
    "subscription_cancelled": (EventKind.SUBSCRIPTION_UPDATED, SubjectType.SUBSCRIPTION),
    "subscription_resumed": (EventKind.SUBSCRIPTION_RESUMED, SubjectType.SUBSCRIPTION),
    "subscription_unpaused": (EventKind.SUBSCRIPTION_RESUMED, SubjectType.SUBSCRIPTION),
    "subscription_paused": (EventKind.SUBSCRIPTION_PAUSED, SubjectType.SUBSCRIPTION),
    "subscription_expired": (EventKind.SUBSCRIPTION_EXPIRED, SubjectType.SUBSCRIPTION),
    "subscription_payment_success": (EventKind.PAYMENT_SUCCEEDED, SubjectType.SUBSCRIPTION),
    "subscription_payment_failed": (EventKind.PAYMENT_FAILED, SubjectType.SUBSCRIPTION),
    "subscription_payment_recovered": (EventKind.PAYMENT_RECOVERED, SubjectType.SUBSCRIPTION),
    "subscription_payment_refunded": (EventKind.REFUND, SubjectType.SUBSCRIPTION),
    "subscription_payment_reminder": (EventKind.PAYMENT_REMINDER, SubjectType.SUBSCRIPTION),
}

# "cancelled" keeps the current status: the subscription stays usable until
# the period ends and only the cancel flag changes.
_LEMONSQUEEZY_SUBSCRIPTION_STATUSES: dict[str, str | None] = {
    "on_trial": "trialing",
    "active": "active",
    "paused": "paused",
    "past_due": "past_due",
    "unpaid": "unpaid",
    "cancelled": None,
    "expired": "expired",
}

_LEMONSQUEEZY_ORDER_STATUSES: dict[str, str] = {
    "pending": "pending",
    "paid": "paid",
    "refunded": "refunded",
    "partial_refund": "partially_refunded",
}


class LemonSqueezyNormalizer:
    """Normalizes LemonSqueezy webhook bodies (`meta` + JSON:API `data`)."""

    provider = Provider.LEMONSQUEEZY

    def normalize(self, payload: dict[str, Any]) -> PaymentEvent | Unrecognized:
        meta = _as_mapping(payload.get("meta"))
        event_name = _first_text(meta.get("event_name"))
        if not event_name:
            raise MalformedPayload("LemonSqueezy event is missing meta.event_name")
        data = _as_mapping(payload.get("data"))
        resource_type = _first_text(data.get("type"))
        resource_id = _first_text(data.get("id"))
        attributes = _as_mapping(data.get("attributes"))
        mapping = _LEMONSQUEEZY_KINDS.get(event_name)
        if mapping is None:
            return Unrecognized(provider=self.provider, event_type=event_name)
        if not resource_type or not resource_id or not attributes:
            raise MalformedPayload(f"LemonSqueezy {event_name} is missing its data resource")
        occurred_at = _from_iso(attributes.get("updated_at")) or _from_iso(
            attributes.get("created_at")
        )
        if occurred_at is None:
            raise MalformedPayload(f"LemonSqueezy {event_name} has no usable timestamp")

        kind, subject_type = mapping
        custom = _as_mapping(meta.get("custom_data")) or _as_mapping(
            attributes.get("custom_data")
        )
        fields: dict[str, Any] = {
            "provider_event_id": lemonsqueezy_event_id(
                event_name, resource_type, resource_id, occurred_at
            ),
            "provider": self.provider,
            "event_type": event_name,
            "kind": kind,
            "subject_type": subject_type,
            "occurred_at": occurred_at,
            "user_id": _first_text(custom.get("user_id")),
            "customer_email": _first_text(attributes.get("user_email")),
            "raw": payload,
        }
        if resource_type == "orders":
            fields.update(self._order(resource_id, attributes))
        elif resource_type == "subscriptions":
            fields.update(self._subscription(resource_id, attributes, event_name))
        elif resource_type == "subscription-invoices":
            fields.update(self._invoice(attributes))
        else:
            return Unrecognized(
                provider=self.provider,
                event_type=event_name,
                reason="unmapped_resource_type",
                provider_event_id=fields["provider_event_id"],
            )
        if not fields.get("subject_id"):
            raise MalformedPayload(f"LemonSqueezy {event_name} carries no subject id")
        return PaymentEvent(**fields)

    def _order(self, order_id: str, attributes: dict[str, Any]) -> dict[str, Any]:
        raw_status = _first_text(attributes.get("status")) or ""
        first_item = _as_mapping(attributes.get("first_order_item"))
        return {
            "subject_id": order_id,
            "amount": _as_int(attributes.get("total")),
            "currency": _currency(attributes.get("currency")),
            "status_after": _LEMONSQUEEZY_ORDER_STATUSES.get(raw_status, raw_status or None),
            "plan_id": _first_text(first_item.get("variant_id")),
        }

    def _subscription(
        self, subscription_id: str, attributes: dict[str, Any], event_name: str
    ) -> dict[str, Any]:
        raw_status = _first_text(attributes.get("status")) or ""
        cancelled = bool(attributes.get("cancelled")) or event_name == "subscription_cancelled"
        ends_at = _from_iso(attributes.get("ends_at"))
        renews_at = _from_iso(attributes.get("renews_at"))
        return {
            "subject_id": subscription_id,
            "status_after": _LEMONSQUEEZY_SUBSCRIPTION_STATUSES.get(raw_status, raw_status or None),
            "plan_id": _first_text(attributes.get("variant_id")),
            "current_period_end": ends_at if cancelled and ends_at else renews_at,
            "trial_end": _from_iso(attributes.get("trial_ends_at")),
            "cancel_at_period_end": cancelled,
        }

    def _invoice(self, attributes: dict[str, Any]) -> dict[str, Any]:
        return {
            "subject_id": _first_text(attributes.get("subscription_id")),
            "amount": _as_int(attributes.get("total")),
            "currency": _currency(attributes.get("currency")),
            "billing_reason": _first_text(attributes.get("billing_reason")),
        }


def lemonsqueezy_event_id(
    event_name: str, resource_type: str, resource_id: str, occurred_at: datetime
) -> str:
    """LemonSqueezy sends no delivery id; derive a stable one from the resource version."""
    return f"{event_name}:{resource_type}:{resource_id}:{occurred_at.isoformat()}"


class NormalizerRegistry:
    """Provider → normalizer lookup."""

    def __init__(self, normalizers: Mapping[Provider, EventNormalizer] | None = None) -> None:
        self._normalizers: dict[Provider, EventNormalizer] = dict(normalizers or {})

    def register(self, normalizer: EventNormalizer) -> None:
        self._normalizers[normalizer.provider] = normalizer

    def get(self, provider: Provider) -> EventNormalizer:
        normalizer = self._normalizers.get(provider)
        if normalizer is None:
            raise ConfigurationError(f"No normalizer registered for provider {provider.value}.")
        return normalizer

    def normalize(self, provider: Provider, payload: dict[str, Any]) -> PaymentEvent | Unrecognized:
        if not isinstance(payload, dict):
            raise MalformedPayload("Webhook payload must be a JSON object")
        return self.get(provider).normalize(payload)


def default_registry() -> NormalizerRegistry:
    registry = NormalizerRegistry()
    registry.register(StripeNormalizer())
    registry.register(LemonSqueezyNormalizer())
    return registry
