"""Request dependencies resolving the billing service built at startup."""

from __future__ import annotations

import logging

from fastapi import HTTPException, Request

from shipfree.config import settings
from shipfree.services.billing.processor import BillingService

logger = logging.getLogger(__name__)


def get_billing_service(request: Request) -> BillingService:
    service = getattr(request.app.state, "billing", None)
    if service is None:
        logger.error("billing.service.unavailable")
        raise HTTPException(status_code=503, detail="Billing is not available")
    return service


def require_user_id(request: Request) -> str:
    """Return the user id asserted by the trusted upstream auth layer."""
    user_id = (request.headers.get(settings.auth_user_header) or "").strip()
    if not user_id:
        logger.warning("auth.user.missing_header", extra={"header": settings.auth_user_header})
        raise HTTPException(status_code=401, detail="Authentication required")
    return user_id
