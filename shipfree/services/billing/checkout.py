"""Checkout session creation for Stripe and LemonSqueezy."""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx
import stripe

from shipfree.config import Settings
from shipfree.models.events import Provider
from shipfree.services.billing.errors import CheckoutError, ConfigurationError

logger = logging.getLogger(__name__)

CHECKOUT_TIMEOUT_SECONDS = 30.0
CHECKOUT_MODES = {"subscription", "payment"}


class CheckoutClient(Protocol):
    """Creates a hosted checkout and returns the redirect URL."""

    provider: Provider

    def create_checkout(
        self, *, user_id: str, product_id: str, email: str | None = None, mode: str = "subscription"
    ) -> str:
        ...

    def close(self) -> None:
        ...


class StripeCheckoutClient:
    """Creates Stripe Checkout Sessions tagged with the caller's user id."""

    provider = Provider.STRIPE

    def __init__(self, api_key: str, *, site_url: str) -> None:
        if not api_key:
            raise ConfigurationError("STRIPE_SECRET_KEY is required to create checkouts.")
        self._api_key = api_key
        self._site_url = site_url.rstrip("/")

    def create_checkout(
        self, *, user_id: str, product_id: str, email: str | None = None, mode: str = "subscription"
    ) -> str:
        if mode not in CHECKOUT_MODES:
            raise CheckoutError(f"Unsupported checkout mode: {mode}", code="E_CHECKOUT_MODE")
        params: dict[str, Any] = {
            "mode": mode,
            "line_items": [{"price": product_id, "quantity": 1}],
            "metadata": {"user_id": user_id},
            "client_reference_id": user_id,
            "success_url": f"{self._site_url}/dashboard?checkout=success",
            "cancel_url": f"{self._site_url}/pricing?checkout=cancelled",
        }
        if mode == "subscription":
            params["subscription_data"] = {"metadata": {"user_id": user_id}}
        else:
            params["payment_intent_data"] = {"metadata": {"user_id": user_id}}
        if email:
            params["customer_email"] = email
        try:
            session = stripe.checkout.Session.create(api_key=self._api_key, **params)
        except stripe.StripeError as exc:
            logger.warning(
                "stripe.checkout.failed",
                extra={"user_id": user_id, "price_id": product_id, "error": str(exc)},
            )
            raise CheckoutError("Stripe refused to create a checkout session.") from exc
        url = session.get("url") if isinstance(session, dict) else getattr(session, "url", None)
        if not url:
            raise CheckoutError("Stripe checkout session has no redirect URL.")
        logger.info(
            "stripe.checkout.created",
            extra={"user_id": user_id, "price_id": product_id, "mode": mode},
        )
        return url

    def close(self) -> None:
        return None


class LemonSqueezyCheckoutClient:
    """Minimal LemonSqueezy checkouts API client."""

    provider = Provider.LEMONSQUEEZY

    def __init__(
        self,
        api_key: str,
        store_id: str,
        *,
        site_url: str,
        base_url: str = "https://api.lemonsqueezy.com/v1",
        timeout: float = CHECKOUT_TIMEOUT_SECONDS,
        http_client: httpx.Client | None = None,
    ) -> None:
        if not api_key or not store_id:
            raise ConfigurationError(
                "LEMONSQUEEZY_API_KEY and LEMONSQUEEZY_STORE_ID are required to create checkouts."
            )
        self._api_key = api_key
        self._store_id = store_id
        self._site_url = site_url.rstrip("/")
        self._owns_http_client = http_client is None
        self._http = http_client or httpx.Client(base_url=base_url.rstrip("/"), timeout=timeout)

    def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._owns_http_client:
            self._http.close()

    def create_checkout(
        self, *, user_id: str, product_id: str, email: str | None = None, mode: str = "subscription"
    ) -> str:
        checkout_data: dict[str, Any] = {"custom": {"user_id": user_id}}
        if email:
            checkout_data["email"] = email
        payload = {
            "data": {
                "type": "checkouts",
                "attributes": {
                    "checkout_data": checkout_data,
                    "product_options": {"redirect_url": f"{self._site_url}/dashboard"},
                },
                "relationships": {
                    "store": {"data": {"type": "stores", "id": str(self._store_id)}},
                    "variant": {"data": {"type": "variants", "id": str(product_id)}},
                },
            }
        }
        headers = {
            "Accept": "application/vnd.api+json",
            "Content-Type": "application/vnd.api+json",
            "Authorization": f"Bearer {self._api_key}",
        }
        try:
            response = self._http.post("/checkouts", json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            raise CheckoutError(
                "LemonSqueezy checkout request timed out.", code="E_CHECKOUT_TIMEOUT"
            ) from exc
        except httpx.HTTPError as exc:
            raise CheckoutError(f"HTTP error calling LemonSqueezy: {exc}") from exc

        if response.status_code >= 400:
            logger.warning(
                "lemonsqueezy.checkout.failed",
                extra={
                    "user_id": user_id,
                    "variant_id": product_id,
                    "status_code": response.status_code,
                    "detail": response.text[:200],
                },
            )
            raise CheckoutError(f"LemonSqueezy checkout failed: {response.status_code}")

        try:
            url = response.json()["data"]["attributes"]["url"]
        except (ValueError, KeyError, TypeError) as exc:
            raise CheckoutError("Unexpected LemonSqueezy checkout response.") from exc
        if not url:
            raise CheckoutError("LemonSqueezy checkout has no redirect URL.")
        logger.info(
            "lemonsqueezy.checkout.created", extra={"user_id": user_id, "variant_id": product_id}
        )
        return url

    def __enter__(self) -> LemonSqueezyCheckoutClient:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def build_checkout_clients(config: Settings) -> dict[Provider, CheckoutClient]:
    """Build a checkout client for every provider with credentials configured."""
    clients: dict[Provider, CheckoutClient] = {}
    if config.stripe_secret_key:
        clients[Provider.STRIPE] = StripeCheckoutClient(
            config.stripe_secret_key, site_url=config.site_url
        )
    if config.lemonsqueezy_api_key and config.lemonsqueezy_store_id:
        clients[Provider.LEMONSQUEEZY] = LemonSqueezyCheckoutClient(
            config.lemonsqueezy_api_key,
            config.lemonsqueezy_store_id,
            site_url=config.site_url,
            base_url=config.lemonsqueezy_api_base,
        )
    logger.info(
        "billing.checkout.initialized",
        extra={"providers": sorted(provider.value for provider in clients)},
    )
    return clients
