from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException
from starlette.concurrency import run_in_threadpool

from shipfree.api.dependencies import get_billing_service
from shipfree.config import settings
from shipfree.core.database import check_database_health
from shipfree.services.billing.processor import BillingService

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("")
async def health_check():
    """Basic health check endpoint."""
    return {
        "status": "healthy",
        "version": settings.app_version,
        "environment": settings.environment,
    }


@router.get("/ready")
async def readiness_check(service: BillingService = Depends(get_billing_service)):
    """Readiness check endpoint that includes database connectivity."""
    db_status = await run_in_threadpool(check_database_health, service.engine)

    if not db_status:
        raise HTTPException(status_code=503, detail="Database is not available")

    return {
        "status": "ready",
        "version": settings.app_version,
        "environment": settings.environment,
        "database": "connected" if service.engine is not None else "not configured",
    }
