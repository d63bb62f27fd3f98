import logging
from contextlib import asynccontextmanager

import sentry_sdk
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

from shipfree.api.routes import billing, health, webhooks
from shipfree.config import Settings, settings
from shipfree.services.billing.processor import BillingService, build_billing_service

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def _init_sentry(config: Settings) -> None:
    if not config.sentry_dsn:
        return
    sentry_sdk.init(
        dsn=config.sentry_dsn,
        integrations=[
            FastApiIntegration(),
            LoggingIntegration(level=logging.INFO),
        ],
        traces_sample_rate=0.1,
        environment=config.environment,
    )
    logger.info("Sentry initialized")


def create_app(config: Settings | None = None, *, service: BillingService | None = None) -> FastAPI:
    """Build the API; a prebuilt billing service is used as-is and not closed."""
    config = config or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Starting {config.app_name} v{config.app_version}")
        _init_sentry(config)

        owned = service is None
        app.state.billing = service or build_billing_service(config)
        logger.info("Application startup complete")

        yield

        logger.info("Shutting down application")
        if owned:
            app.state.billing.close()
        app.state.billing = None

    app = FastAPI(
        title=config.app_name,
        version=config.app_version,
        description="Payment webhook reconciliation for Stripe and LemonSqueezy",
        lifespan=lifespan,
        debug=config.debug,
    )

    if config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.add_middleware(TrustedHostMiddleware, allowed_hosts=config.trusted_hosts)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all requests."""
        logger.info(f"{request.method} {request.url.path}")
        response = await call_next(request)
        logger.info(f"Response status: {response.status_code}")
        return response

    app.include_router(health.router, prefix="/health", tags=["health"])
    app.include_router(webhooks.router, prefix="/api", tags=["webhooks"])
    app.include_router(billing.router, prefix="/api", tags=["billing"])

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "message": f"Welcome to {config.app_name}",
            "version": config.app_version,
            "environment": config.environment,
        }

    return app


app = create_app()
