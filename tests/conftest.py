from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from shipfree.config import Settings
from shipfree.core.database import create_database_engine
from shipfree.main import create_app
from shipfree.services.billing.dispatcher import EffectDispatcher
from shipfree.services.billing.processor import BillingService, build_billing_service
from shipfree.services.billing.repositories import InMemoryBillingRepository
from shipfree.services.billing.retry import RetryPolicy
from tests.helpers.billing import LEMONSQUEEZY_SECRET, STRIPE_SECRET, FakeEmailSender
from tests.helpers.metrics_stub import StubMetrics


@pytest.fixture
def billing_settings() -> Settings:
    return Settings(
        _env_file=None,
        database_url=None,
        stripe_webhook_secret=STRIPE_SECRET,
        lemonsqueezy_webhook_secret=LEMONSQUEEZY_SECRET,
        effect_max_attempts=3,
        effect_base_delay_seconds=0.0,
        effect_max_delay_seconds=0.0,
        metrics_disable=True,
    )


@pytest.fixture
def stub_metrics() -> StubMetrics:
    return StubMetrics()


@pytest.fixture
def email_sender() -> FakeEmailSender:
    return FakeEmailSender()


@pytest.fixture
def sqlite_engine():
    engine = create_database_engine("sqlite://", auto_create_schema=True)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture
def memory_repository() -> InMemoryBillingRepository:
    return InMemoryBillingRepository()


@pytest.fixture
def dispatcher_factory(stub_metrics):
    def factory(repository, sender, **kwargs) -> EffectDispatcher:
        kwargs.setdefault(
            "retry_policy", RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0, jitter=0.0)
        )
        kwargs.setdefault("reporter", stub_metrics)
        kwargs.setdefault("sleep", lambda _: None)
        return EffectDispatcher(repository, sender, **kwargs)

    return factory


@pytest.fixture
def billing_service(billing_settings, email_sender) -> BillingService:
    service = build_billing_service(
        billing_settings, email_sender=email_sender, checkout={}, sleep=lambda _: None
    )
    yield service
    service.close()


@pytest.fixture
def client(billing_settings, billing_service):
    app = create_app(billing_settings, service=billing_service)
    with TestClient(app) as test_client:
        yield test_client
