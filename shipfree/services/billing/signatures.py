"""Webhook signature verification for the supported payment providers."""

from __future__ import annotations

import hmac
from hashlib import sha256
from typing import Protocol

import stripe

from shipfree.services.billing.errors import ConfigurationError, InvalidSignature

DEFAULT_STRIPE_TOLERANCE_SECONDS = 300


class SignatureVerifier(Protocol):
    """Verifies that a raw webhook body was produced by the claimed provider."""

    def verify(self, payload: bytes, signature_header: str | None, secret: str | None) -> None:
        ...


def _require_secret(secret: str | None, provider: str) -> str:
    if not secret:
        raise ConfigurationError(f"{provider} webhook secret is not configured.")
    return secret


class StripeSignatureVerifier:
    """Validates `Stripe-Signature` headers (`t=<ts>,v1=<hmac>`) via the Stripe SDK."""

    def __init__(self, tolerance_seconds: int = DEFAULT_STRIPE_TOLERANCE_SECONDS) -> None:
        self.tolerance_seconds = tolerance_seconds

    def verify(self, payload: bytes, signature_header: str | None, secret: str | None) -> None:
        resolved_secret = _require_secret(secret, "Stripe")
        if not signature_header:
            raise InvalidSignature("Missing Stripe-Signature header")
        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"),
                signature_header,
                resolved_secret,
                tolerance=self.tolerance_seconds,
            )
        except UnicodeDecodeError as exc:
            raise InvalidSignature("Payload is not valid UTF-8") from exc
        except stripe.SignatureVerificationError as exc:
            raise InvalidSignature(str(exc) or "Invalid signature") from exc


class LemonSqueezySignatureVerifier:
    """Validates the hex HMAC-SHA256 carried in the `X-Signature` header."""

    def verify(self, payload: bytes, signature_header: str | None, secret: str | None) -> None:
        resolved_secret = _require_secret(secret, "LemonSqueezy")
        if not signature_header:
            raise InvalidSignature("Missing X-Signature header")
        expected = compute_lemonsqueezy_signature(payload, resolved_secret)
        if not hmac.compare_digest(expected.encode("ascii"), signature_header.encode("utf-8")):
            raise InvalidSignature()


def compute_lemonsqueezy_signature(payload: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), payload, sha256).hexdigest()
