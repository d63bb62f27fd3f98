"""Provider webhook endpoints."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from starlette.concurrency import run_in_threadpool

from shipfree.api.dependencies import get_billing_service
from shipfree.models.events import Provider
from shipfree.services.billing.errors import (
    BillingError,
    InvalidSignature,
    MalformedPayload,
)
from shipfree.services.billing.processor import BillingService, WebhookOutcome

router = APIRouter()
logger = logging.getLogger(__name__)

SIGNATURE_HEADERS = {
    Provider.STRIPE: "Stripe-Signature",
    Provider.LEMONSQUEEZY: "X-Signature",
}


@router.post("/stripe/webhook")
async def stripe_webhook(
    request: Request, service: BillingService = Depends(get_billing_service)
) -> dict:
    """Receive Stripe events; 2xx only once the event is durably handled."""
    return await _handle(Provider.STRIPE, request, service)


@router.post("/lemonsqueezy/webhook")
async def lemonsqueezy_webhook(
    request: Request, service: BillingService = Depends(get_billing_service)
) -> dict:
    """Receive LemonSqueezy events."""
    return await _handle(Provider.LEMONSQUEEZY, request, service)


async def _handle(provider: Provider, request: Request, service: BillingService) -> dict:
    payload = await request.body()
    signature = request.headers.get(SIGNATURE_HEADERS[provider])
    try:
        outcome = await run_in_threadpool(
            service.processor.handle, provider, payload, signature
        )
    except BillingError as exc:
        code = _status_for(exc)
        logger.log(
            logging.ERROR if code >= 500 else logging.WARNING,
            "billing.webhook.rejected",
            extra={"provider": provider.value, "code": exc.code, "status_code": code},
        )
        raise HTTPException(status_code=code, detail=_detail_for(code)) from exc
    return _response(outcome)


def _response(outcome: WebhookOutcome) -> dict:
    return {
        "received": True,
        "status": outcome.status.value,
        "event_id": outcome.event_id,
    }


def _status_for(exc: BillingError) -> int:
    if isinstance(exc, InvalidSignature):
        return status.HTTP_401_UNAUTHORIZED
    if isinstance(exc, MalformedPayload):
        return status.HTTP_400_BAD_REQUEST
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def _detail_for(code: int) -> str:
    if code == status.HTTP_401_UNAUTHORIZED:
        return "Invalid signature"
    if code == status.HTTP_400_BAD_REQUEST:
        return "Malformed payload"
    return "Webhook processing failed"
