"""
Cydex Core - Main FastAPI Application
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.core.config import settings
from app.core.logging import setup_logging, get_logger
from app.core.middleware import setup_middleware, setup_exception_handlers
from app.api.routes import router as api_router
from app.db.database import engine, Base
from app.db import models  # noqa: F401  (registers tables on Base.metadata)

# Setup logging before anything else
setup_logging(
    level="DEBUG" if settings.DEBUG else "INFO",
    json_format=not settings.DEBUG,
    app_name=settings.APP_NAME
)

logger = get_logger(__name__)


def _parse_allowed_origins(raw: str) -> list[str]:
    """Parse comma-separated CORS origins string into a clean list."""
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


_OPENAPI_TAGS = [
    {"name": "Orders", "description": "Order creation, status transitions and refunds."},
    {"name": "Deliveries", "description": "Delivery dispatch: publish, accept, advance and cancel."},
    {"name": "Wallets", "description": "Balances, ledger history, withdrawals, bank accounts, carbon credits."},
    {"name": "Webhooks", "description": "Signed callbacks from the payment and payout processors."},
    {"name": "Health", "description": "Liveness check."},
]


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description=(
        "Transactional core of the marketplace: orders, delivery dispatch, "
        "wallets and the double-entry ledger."
    ),
    openapi_tags=_OPENAPI_TAGS,
    openapi_url="/openapi.json",
)

# Setup middleware (correlation ID, request logging)
setup_middleware(app)
setup_exception_handlers(app)

allowed_origins = _parse_allowed_origins(settings.ALLOWED_ORIGINS)

# Safe dev default to support local frontend development without opening CORS in production.
if not allowed_origins and settings.DEBUG:
    allowed_origins = [
        "http://localhost",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

if allowed_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Correlation-ID", "X-Webhook-Signature"],
    )

app.include_router(api_router, prefix="/api")


@app.on_event("startup")
async def startup() -> None:
    """Initialize database tables on startup"""
    logger.info("Starting application", extra_data={"app_name": settings.APP_NAME})
    for name in ("PAYMENT_WEBHOOK_SECRET", "PAYOUT_WEBHOOK_SECRET"):
        if not getattr(settings, name):
            logger.warning(
                "Webhook secret not configured - signature check disabled",
                extra_data={"setting": name},
            )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialized")


@app.on_event("shutdown")
async def shutdown() -> None:
    """Cleanup on shutdown"""
    logger.info("Shutting down application")
    from app.core.redis_client import close_redis
    await close_redis()
    # סגירת חיבורי מסד הנתונים למניעת connection pool exhaustion
    await engine.dispose()
    logger.info("Database connections disposed")


@app.get(
    "/health",
    summary="Liveness check",
    description="Lightweight check that the process is up. Does not touch the database or Redis.",
    tags=["Health"],
)
async def health_check() -> dict[str, str]:
    return {"status": "healthy"}
