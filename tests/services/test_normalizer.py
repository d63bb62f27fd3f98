from __future__ import annotations

from datetime import timedelta

import pytest

from shipfree.models.events import EventKind, PaymentEvent, Provider, SubjectType, Unrecognized
from shipfree.services.billing.errors import ConfigurationError, MalformedPayload
from shipfree.services.billing.normalizer import (
    LemonSqueezyNormalizer,
    NormalizerRegistry,
    StripeNormalizer,
    default_registry,
    lemonsqueezy_event_id,
)
from tests.helpers.billing import (
    T0,
    lemonsqueezy_event,
    stripe_checkout_session,
    stripe_event,
    stripe_invoice,
    stripe_subscription,
)


def test_stripe_subscription_created_maps_identity_and_plan():
    payload = stripe_event(
        "customer.subscription.created",
        stripe_subscription(status="trialing"),
        event_id="evt_created",
    )

    event = StripeNormalizer().normalize(payload)

    assert isinstance(event, PaymentEvent)
    assert event.provider_event_id == "evt_created"
    assert event.kind is EventKind.SUBSCRIPTION_CREATED
    assert event.subject_type is SubjectType.SUBSCRIPTION
    assert event.subject_id == "sub_1"
    assert event.user_id == "user_1"
    assert event.status_after == "trialing"
    assert event.plan_id == "price_pro"
    assert event.occurred_at == T0
    assert event.current_period_end == T0 + timedelta(days=30)
    assert event.raw == payload


def test_stripe_subscription_updated_carries_previous_status():
    payload = stripe_event(
        "customer.subscription.updated",
        stripe_subscription(status="past_due"),
        event_id="evt_updated",
        previous_attributes={"status": "active"},
    )

    event = StripeNormalizer().normalize(payload)

    assert event.status_before == "active"
    assert event.status_after == "past_due"


def test_stripe_incomplete_statuses_collapse():
    incomplete = StripeNormalizer().normalize(
        stripe_event(
            "customer.subscription.updated",
            stripe_subscription(status="incomplete"),
            event_id="evt_incomplete",
        )
    )
    expired = StripeNormalizer().normalize(
        stripe_event(
            "customer.subscription.updated",
            stripe_subscription(status="incomplete_expired"),
            event_id="evt_incomplete_expired",
        )
    )

    assert incomplete.status_after is None
    assert expired.status_after == "expired"


def test_stripe_invoice_payment_failed_reads_attempt_count_and_metadata():
    payload = stripe_event(
        "invoice.payment_failed", stripe_invoice(attempt_count=2), event_id="evt_failed"
    )

    event = StripeNormalizer().normalize(payload)

    assert event.kind is EventKind.PAYMENT_FAILED
    assert event.subject_id == "sub_1"
    assert event.attempt_count == 2
    assert event.user_id == "user_1"
    assert event.amount == 2900
    assert event.currency == "usd"


def test_stripe_invoice_without_subscription_is_unrecognized():
    invoice = stripe_invoice()
    invoice.pop("subscription")
    invoice.pop("subscription_details")

    result = StripeNormalizer().normalize(
        stripe_event("invoice.paid", invoice, event_id="evt_one_off")
    )

    assert isinstance(result, Unrecognized)
    assert result.reason == "invoice_without_subscription"
    assert result.provider_event_id == "evt_one_off"


def test_stripe_checkout_payment_mode_is_order_paid():
    event = StripeNormalizer().normalize(
        stripe_event("checkout.session.completed", stripe_checkout_session(), event_id="evt_cs")
    )

    assert event.kind is EventKind.ORDER_PAID
    assert event.subject_type is SubjectType.ORDER
    assert event.subject_id == "pi_1"
    assert event.amount == 4900
    assert event.customer_email == "buyer@example.com"


def test_stripe_checkout_unpaid_session_is_order_created():
    event = StripeNormalizer().normalize(
        stripe_event(
            "checkout.session.completed",
            stripe_checkout_session(payment_status="unpaid"),
            event_id="evt_cs_unpaid",
        )
    )

    assert event.kind is EventKind.ORDER_CREATED
    assert event.status_after == "pending"


def test_stripe_subscription_checkout_is_left_to_subscription_events():
    session = stripe_checkout_session()
    session["mode"] = "subscription"

    result = StripeNormalizer().normalize(
        stripe_event("checkout.session.completed", session, event_id="evt_cs_sub")
    )

    assert isinstance(result, Unrecognized)
    assert result.reason == "subscription_checkout"


def test_stripe_charge_refunded_reports_partial_refund():
    charge = {
        "id": "ch_1",
        "payment_intent": "pi_1",
        "amount_refunded": 1000,
        "currency": "usd",
        "refunded": False,
        "metadata": {},
    }

    event = StripeNormalizer().normalize(stripe_event("charge.refunded", charge, event_id="evt_r"))

    assert event.kind is EventKind.REFUND
    assert event.subject_id == "pi_1"
    assert event.status_after == "partially_refunded"


def test_stripe_unknown_type_is_unrecognized():
    result = StripeNormalizer().normalize(
        stripe_event("customer.created", {"id": "cus_1"}, event_id="evt_cus")
    )

    assert isinstance(result, Unrecognized)
    assert result.event_type == "customer.created"
    assert result.reason == "unmapped_event_type"


@pytest.mark.parametrize(
    "payload",
    [
        {"type": "customer.subscription.created", "data": {"object": {"id": "sub_1"}}},
        {"id": "evt_1", "type": "customer.subscription.created", "created": 1},
        {"id": "evt_1", "type": "customer.subscription.created", "data": {"object": {"id": "x"}}},
        {
            "id": "evt_1",
            "type": "customer.subscription.created",
            "created": 1,
            "data": {"object": {"status": "active"}},
        },
    ],
)
def test_stripe_malformed_payloads_raise(payload):
    with pytest.raises(MalformedPayload):
        StripeNormalizer().normalize(payload)


def test_lemonsqueezy_subscription_created_maps_statuses_and_custom_data():
    payload = lemonsqueezy_event(
        "subscription_created",
        "subscriptions",
        "77",
        {
            "status": "on_trial",
            "variant_id": 501,
            "user_email": "buyer@example.com",
            "renews_at": "2026-04-01T12:00:00.000000Z",
        },
    )

    event = LemonSqueezyNormalizer().normalize(payload)

    assert event.provider is Provider.LEMONSQUEEZY
    assert event.kind is EventKind.SUBSCRIPTION_CREATED
    assert event.subject_id == "77"
    assert event.status_after == "trialing"
    assert event.plan_id == "501"
    assert event.user_id == "user_1"
    assert event.customer_email == "buyer@example.com"
    assert event.provider_event_id == lemonsqueezy_event_id(
        "subscription_created", "subscriptions", "77", T0
    )


def test_lemonsqueezy_cancelled_keeps_status_and_sets_cancel_flag():
    payload = lemonsqueezy_event(
        "subscription_cancelled",
        "subscriptions",
        "77",
        {"status": "cancelled", "cancelled": True, "ends_at": "2026-04-01T12:00:00Z"},
    )

    event = LemonSqueezyNormalizer().normalize(payload)

    assert event.kind is EventKind.SUBSCRIPTION_UPDATED
    assert event.status_after is None
    assert event.cancel_at_period_end is True
    assert event.current_period_end is not None


def test_lemonsqueezy_invoice_targets_parent_subscription():
    payload = lemonsqueezy_event(
        "subscription_payment_success",
        "subscription-invoices",
        "9001",
        {"subscription_id": 77, "total": 2900, "currency": "USD", "billing_reason": "renewal"},
    )

    event = LemonSqueezyNormalizer().normalize(payload)

    assert event.kind is EventKind.PAYMENT_SUCCEEDED
    assert event.subject_id == "77"
    assert event.amount == 2900
    assert event.currency == "usd"


def test_lemonsqueezy_partial_refund_status():
    payload = lemonsqueezy_event(
        "order_refunded", "orders", "5", {"status": "partial_refund", "total": 4900}
    )

    event = LemonSqueezyNormalizer().normalize(payload)

    assert event.kind is EventKind.REFUND
    assert event.status_after == "partially_refunded"


def test_lemonsqueezy_redelivery_keeps_event_id_and_new_version_changes_it():
    first = LemonSqueezyNormalizer().normalize(
        lemonsqueezy_event("order_paid", "orders", "5", {"status": "paid"})
    )
    again = LemonSqueezyNormalizer().normalize(
        lemonsqueezy_event("order_paid", "orders", "5", {"status": "paid"})
    )
    later = LemonSqueezyNormalizer().normalize(
        lemonsqueezy_event(
            "order_paid", "orders", "5", {"status": "paid"}, updated_at=T0 + timedelta(seconds=1)
        )
    )

    assert first.provider_event_id == again.provider_event_id
    assert later.provider_event_id != first.provider_event_id


def test_lemonsqueezy_unknown_event_and_resource_are_unrecognized():
    unknown = LemonSqueezyNormalizer().normalize(
        lemonsqueezy_event("license_key_created", "license-keys", "1", {"status": "active"})
    )
    odd_resource = LemonSqueezyNormalizer().normalize(
        lemonsqueezy_event("order_paid", "license-keys", "1", {"status": "paid"})
    )

    assert isinstance(unknown, Unrecognized)
    assert isinstance(odd_resource, Unrecognized)
    assert odd_resource.reason == "unmapped_resource_type"


def test_lemonsqueezy_missing_meta_raises():
    with pytest.raises(MalformedPayload):
        LemonSqueezyNormalizer().normalize({"data": {"type": "orders", "id": "1"}})


def test_registry_routes_by_provider_and_rejects_unknown():
    registry = default_registry()
    event = registry.normalize(
        Provider.STRIPE,
        stripe_event("customer.subscription.deleted", stripe_subscription(), event_id="evt_d"),
    )

    assert event.kind is EventKind.SUBSCRIPTION_CANCELED
    with pytest.raises(ConfigurationError):
        NormalizerRegistry().get(Provider.STRIPE)
    with pytest.raises(MalformedPayload):
        registry.normalize(Provider.STRIPE, ["not", "an", "object"])  # type: ignore[arg-type]
