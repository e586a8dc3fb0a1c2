"""
IAP Reconciliation API - Main Application
=========================================

FastAPI application entry point with middleware configuration
and route registration.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import newrelic.agent

# Configure logging for the application (root logger defaults to WARNING)
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import settings
from app.db.session import init_db, close_db
from app.services.cache import init_redis, close_redis
from app.core.errors import setup_exception_handlers


# =============================================================================
# New Relic Transaction Enrichment Middleware (Raw ASGI)
# =============================================================================

class NewRelicTransactionMiddleware:
    """
    Raw ASGI middleware that enriches every New Relic transaction with
    custom attributes for better filtering, alerting, and dashboarding.

    Uses raw ASGI instead of BaseHTTPMiddleware to preserve the async
    context chain.  BaseHTTPMiddleware's ``call_next()`` spawns the
    route handler in a separate task, which breaks New Relic's
    contextvars-based span propagation, causing Redis, DB, and other
    child spans to disappear from traces.

    Captures: response status, latency, HTTP method, route pattern, and
    the calling app id (when an API key was resolved).
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        start = time.perf_counter()
        status_code = 500  # default until we capture the real one

        async def send_wrapper(message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            duration_ms = (time.perf_counter() - start) * 1000

            txn = newrelic.agent.current_transaction()
            if txn:
                # Route pattern (e.g. "/api/v1/subscribers/{app_user_id}") for grouping
                route = scope.get("route")
                route_path = route.path if route else scope.get("path", "unknown")

                client = scope.get("client")
                client_ip = client[0] if client else "unknown"

                newrelic.agent.add_custom_attributes([
                    ("http.method", scope.get("method", "")),
                    ("http.route", route_path),
                    ("http.status_code", status_code),
                    ("http.duration_ms", round(duration_ms, 2)),
                    ("http.client_ip", client_ip),
                    ("environment", settings.ENVIRONMENT),
                ])

                # Set by the API key dependency
                app_id = (scope.get("state") or {}).get("app_id")
                if app_id:
                    newrelic.agent.add_custom_attribute("iap.app_id", app_id)


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Handles startup and shutdown events for:
    - Database connection
    - Redis connection (snapshot cache and rate limits)
    """
    # Startup
    logger.info("Starting IAP Reconciliation API...")

    if settings.allow_unverified_jws:
        logger.warning("INSECURE: Apple JWS chain verification may be bypassed")

    # Initialize database
    try:
        await init_db()
    except Exception as e:
        logger.error("Database connection failed: %s", e)
        # Continue startup even if DB fails (for health checks)

    # Initialize Redis
    try:
        await init_redis()
    except Exception as e:
        logger.warning("Redis connection failed, running without cache: %s", e)

    yield

    # Shutdown
    logger.info("Shutting down IAP Reconciliation API...")
    await close_db()
    await close_redis()


# Create FastAPI application
app = FastAPI(
    title="IAP Reconciliation API",
    description="""
## In-App Purchase Subscription Backend

Validates Apple StoreKit 2 and Google Play Billing purchases, reconciles
store notifications into one subscription state machine and serves the
resulting entitlements.

### Authentication
- `Authorization: Bearer pk_...` public key (client apps)
- `Authorization: Bearer sk_...` secret key (servers; required for manual entitlements)

### Rate Limits
- Public keys: 100 requests/minute
- Secret keys: 1000 requests/minute

### Store Webhooks
- `POST /api/v1/webhooks/apple`: App Store Server Notifications V2
- `POST /api/v1/webhooks/google`: Google Play RTDN via Pub/Sub push
    """,
    version="1.0.0",
    docs_url="/docs" if settings.is_development else None,
    redoc_url="/redoc" if settings.is_development else None,
    openapi_url="/openapi.json" if settings.is_development else None,
    lifespan=lifespan,
    responses={
        400: {"description": "Invalid receipt or request"},
        401: {"description": "Missing or invalid API key"},
        403: {"description": "Secret API key required"},
        404: {"description": "Resource not found"},
        422: {"description": "Validation error"},
        429: {"description": "Rate limit exceeded"},
        500: {"description": "Internal server error"},
        503: {"description": "Store temporarily unavailable"},
    },
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# New Relic transaction enrichment (adds custom attrs to every transaction)
app.add_middleware(NewRelicTransactionMiddleware)

# Setup exception handlers
setup_exception_handlers(app)


# =============================================================================
# Health Check Endpoints
# =============================================================================

@app.get("/health", tags=["Health"])
async def health_check() -> dict:
    """
    Health check endpoint.

    Returns the current status of the API and its dependencies.
    """
    return {
        "status": "healthy",
        "version": "1.0.0",
        "environment": settings.ENVIRONMENT,
    }


@app.get("/", tags=["Health"])
async def root() -> dict:
    """Root endpoint with API information."""
    return {
        "name": "IAP Reconciliation API",
        "version": "1.0.0",
        "docs": "/docs" if settings.is_development else "Disabled in production",
    }


# =============================================================================
# API Routes
# =============================================================================

from app.api.v1 import entitlements, receipts, subscribers, webhooks

app.include_router(receipts.router, prefix="/api/v1/receipts", tags=["Receipts"])
app.include_router(subscribers.router, prefix="/api/v1/subscribers", tags=["Subscribers"])
app.include_router(entitlements.router, prefix="/api/v1/entitlements", tags=["Entitlements"])
app.include_router(webhooks.router, prefix="/api/v1/webhooks", tags=["Webhooks"])
