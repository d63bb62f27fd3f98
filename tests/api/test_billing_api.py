from __future__ import annotations

from shipfree.api.routes import health as health_routes
from shipfree.api.routes.billing import CHECKOUT_RETRY_MESSAGE
from shipfree.models.events import Provider
from shipfree.services.billing.errors import CheckoutError
from tests.helpers.billing import encode, stripe_event, stripe_signature, stripe_subscription

USER = {"X-User-Id": "user_1"}


class FakeCheckout:
    def __init__(self, provider: Provider, *, fail: bool = False) -> None:
        self.provider = provider
        self.fail = fail
        self.calls: list[dict] = []

    def create_checkout(self, *, user_id, product_id, email=None, mode="subscription"):
        self.calls.append(
            {"user_id": user_id, "product_id": product_id, "email": email, "mode": mode}
        )
        if self.fail:
            raise CheckoutError("provider down")
        return f"https://checkout.example.com/{self.provider.value}/{product_id}"

    def close(self) -> None:
        return None


def test_health_endpoints(client):
    health = client.get("/health")
    ready = client.get("/health/ready")

    assert health.status_code == 200
    assert health.json()["status"] == "healthy"
    assert ready.status_code == 200
    assert ready.json()["database"] == "not configured"



def test_readiness_reports_unreachable_database(client, billing_service, monkeypatch):
    probed = []

    def unreachable(engine):
        probed.append(engine)
        return False

    monkeypatch.setattr(health_routes, "check_database_health", unreachable)

    response = client.get("/health/ready")

    assert response.status_code == 503
    assert response.json()["detail"] == "Database is not available"
    assert probed == [billing_service.engine]


def test_stripe_checkout_returns_redirect_url(client, billing_service):
    fake = FakeCheckout(Provider.STRIPE)
    billing_service.checkout[Provider.STRIPE] = fake

    response = client.post(
        "/api/stripe/checkout", json={"price_id": "price_pro", "mode": "payment"}, headers=USER
    )

    assert response.status_code == 200
    assert response.json() == {"url": "https://checkout.example.com/stripe/price_pro"}
    assert fake.calls == [
        {"user_id": "user_1", "product_id": "price_pro", "email": None, "mode": "payment"}
    ]


def test_lemonsqueezy_checkout_returns_redirect_url(client, billing_service):
    billing_service.checkout[Provider.LEMONSQUEEZY] = FakeCheckout(Provider.LEMONSQUEEZY)

    response = client.post(
        "/api/lemonsqueezy/checkout",
        json={"variant_id": "501", "email": "a@example.com"},
        headers=USER,
    )

    assert response.status_code == 200
    assert response.json()["url"].endswith("/lemonsqueezy/501")


def test_checkout_failure_returns_retry_message(client, billing_service):
    billing_service.checkout[Provider.STRIPE] = FakeCheckout(Provider.STRIPE, fail=True)

    failed = client.post("/api/stripe/checkout", json={"price_id": "price_pro"}, headers=USER)
    unconfigured = client.post(
        "/api/lemonsqueezy/checkout", json={"variant_id": "501"}, headers=USER
    )

    assert failed.status_code == 502
    assert failed.json()["detail"] == CHECKOUT_RETRY_MESSAGE
    assert unconfigured.status_code == 502


def test_checkout_requires_user_and_valid_body(client, billing_service):
    billing_service.checkout[Provider.STRIPE] = FakeCheckout(Provider.STRIPE)

    anonymous = client.post("/api/stripe/checkout", json={"price_id": "price_pro"})
    bad_mode = client.post(
        "/api/stripe/checkout", json={"price_id": "price_pro", "mode": "setup"}, headers=USER
    )

    assert anonymous.status_code == 401
    assert bad_mode.status_code == 422


def test_subscriptions_list_reflects_reconciled_state(client):
    body = encode(
        stripe_event(
            "customer.subscription.created",
            stripe_subscription(cancel_at_period_end=True),
            event_id="evt_created",
        )
    )
    client.post(
        "/api/stripe/webhook",
        content=body,
        headers={"Stripe-Signature": stripe_signature(body)},
    )

    mine = client.get("/api/billing/subscriptions", headers=USER)
    others = client.get("/api/billing/subscriptions", headers={"X-User-Id": "user_2"})

    assert mine.status_code == 200
    (view,) = mine.json()
    assert view["subscription_id"] == "sub_1"
    assert view["status"] == "active"
    assert view["plan_id"] == "price_pro"
    assert view["cancel_at_period_end"] is True
    assert others.json() == []
    assert client.get("/api/billing/subscriptions").status_code == 401
