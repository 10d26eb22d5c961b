from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from referral_ledger.config import settings
from referral_ledger.api.v1.router import api_router
from referral_ledger.core.exceptions import LedgerError
from referral_ledger.database import init_db, async_session_factory
from referral_ledger.services.notification_service import build_notification_publisher


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Startup:
    - Configure logging
    - Create tables when AUTO_CREATE_TABLES is set (local development)
    - Build the payout status publisher (Redis when REDIS_URL is set)
    """
    # Startup
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")

    if settings.AUTO_CREATE_TABLES:
        await init_db()

    app.state.notifier = build_notification_publisher(settings.REDIS_URL)

    yield

    # Shutdown
    await app.state.notifier.close()
    logger.info("Shutting down...")


OPENAPI_TAGS = [
    {"name": "Referral Partners", "description": "Partner organizations and their cafes"},
    {"name": "Referral Links", "description": "Short links, redirects and click tracking"},
    {"name": "Conversions", "description": "First-touch attribution and conversion trends"},
    {"name": "Payouts", "description": "Payout calculation, approval workflow and adjustments"},
    {"name": "Audit Logs", "description": "Append-only record of every state change"},
]

API_DESCRIPTION = """
## Referral Attribution & Payout Ledger

Tracks referral links handed out by partner cafes, attributes sign-ups to
the first link a user came through, and settles partner commissions through
an auditable payout ledger.

### Payout lifecycle

`DRAFT → APPROVED → PROCESSING → PAID`, then `ADJUSTED` once a correction
(ADJUSTMENT or CLAWBACK) is booked against it.

### Error Codes

| Code | Description |
|------|-------------|
| 400 | Bad Request - Validation failed |
| 404 | Not Found - Resource doesn't exist |
| 409 | Conflict - Duplicate resource or state mismatch |
| 410 | Gone - Link expired or revoked |
| 422 | Unprocessable Entity - Snapshot integrity violation |
"""

# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description=API_DESCRIPTION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=OPENAPI_TAGS,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API router
app.include_router(api_router)


@app.exception_handler(LedgerError)
async def ledger_exception_handler(request: Request, exc: LedgerError):
    """Map domain errors to their HTTP status with a stable error body."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Health check endpoint
@app.get("/health", tags=["Health"])
async def health_check():
    """Health check endpoint with database validation."""
    from sqlalchemy import text
    from datetime import datetime, timezone

    health_status = {
        "status": "healthy",
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": {
            "database": "unknown"
        }
    }

    # Check database connectivity
    try:
        async with async_session_factory() as session:
            result = await session.execute(text("SELECT 1"))
            result.scalar()
            health_status["checks"]["database"] = "connected"
    except Exception as e:
        logger.error(f"Health check database error: {e}")
        health_status["status"] = "unhealthy"
        health_status["checks"]["database"] = f"error: {str(e)}"

    # Return 503 if unhealthy
    if health_status["status"] == "unhealthy":
        return JSONResponse(status_code=503, content=health_status)

    return health_status
