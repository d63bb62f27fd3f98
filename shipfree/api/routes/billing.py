"""Checkout creation and subscription lookup for signed-in users."""

from __future__ import annotations

import logging
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from shipfree.api.dependencies import get_billing_service, require_user_id
from shipfree.models.events import Provider, SubscriptionState
from shipfree.observability.metrics import metrics
from shipfree.services.billing.errors import BillingError
from shipfree.services.billing.processor import BillingService

router = APIRouter()
logger = logging.getLogger(__name__)

CHECKOUT_RETRY_MESSAGE = "We couldn't start checkout. Please try again."


class StripeCheckoutRequest(BaseModel):
    price_id: str = Field(min_length=1)
    mode: str = Field(default="subscription", pattern="^(subscription|payment)$")
    email: str | None = None


class LemonSqueezyCheckoutRequest(BaseModel):
    variant_id: str = Field(min_length=1)
    email: str | None = None


class CheckoutResponse(BaseModel):
    url: str


class SubscriptionView(BaseModel):
    provider: Provider
    subscription_id: str
    status: str
    plan_id: str | None
    cancel_at_period_end: bool
    current_period_end: datetime | None
    needs_reconciliation: bool

    @classmethod
    def from_state(cls, state: SubscriptionState) -> SubscriptionView:
        return cls(
            provider=state.provider,
            subscription_id=state.provider_subscription_id,
            status=state.status.value,
            plan_id=state.plan_id,
            cancel_at_period_end=state.cancel_at_period_end,
            current_period_end=state.current_period_end,
            needs_reconciliation=state.needs_reconciliation,
        )


@router.post("/stripe/checkout", response_model=CheckoutResponse)
async def stripe_checkout(
    payload: StripeCheckoutRequest,
    user_id: str = Depends(require_user_id),
    service: BillingService = Depends(get_billing_service),
) -> CheckoutResponse:
    """Start a Stripe Checkout Session for the caller."""
    return await _create_checkout(
        service,
        Provider.STRIPE,
        user_id=user_id,
        product_id=payload.price_id,
        email=payload.email,
        mode=payload.mode,
    )


@router.post("/lemonsqueezy/checkout", response_model=CheckoutResponse)
async def lemonsqueezy_checkout(
    payload: LemonSqueezyCheckoutRequest,
    user_id: str = Depends(require_user_id),
    service: BillingService = Depends(get_billing_service),
) -> CheckoutResponse:
    """Start a LemonSqueezy hosted checkout for the caller."""
    return await _create_checkout(
        service,
        Provider.LEMONSQUEEZY,
        user_id=user_id,
        product_id=payload.variant_id,
        email=payload.email,
    )


@router.get("/billing/subscriptions", response_model=list[SubscriptionView])
async def list_subscriptions(
    user_id: str = Depends(require_user_id),
    service: BillingService = Depends(get_billing_service),
) -> list[SubscriptionView]:
    try:
        states = await run_in_threadpool(service.repository.list_subscriptions, user_id)
    except BillingError as exc:
        logger.error("billing.subscriptions.lookup_failed", extra={"code": exc.code})
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Subscriptions are temporarily unavailable",
        ) from exc
    return [SubscriptionView.from_state(state) for state in states]


async def _create_checkout(
    service: BillingService,
    provider: Provider,
    *,
    user_id: str,
    product_id: str,
    email: str | None,
    mode: str = "subscription",
) -> CheckoutResponse:
    client = service.checkout.get(provider)
    if client is None:
        logger.warning("billing.checkout.not_configured", extra={"provider": provider.value})
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=CHECKOUT_RETRY_MESSAGE)
    try:
        url = await run_in_threadpool(
            lambda: client.create_checkout(
                user_id=user_id, product_id=product_id, email=email, mode=mode
            )
        )
    except BillingError as exc:
        logger.warning(
            "billing.checkout.failed",
            extra={"provider": provider.value, "user_id": user_id, "code": exc.code},
        )
        metrics.increment("checkout.failed", tags={"provider": provider.value})
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY, detail=CHECKOUT_RETRY_MESSAGE
        ) from exc
    metrics.increment("checkout.created", tags={"provider": provider.value})
    return CheckoutResponse(url=url)
