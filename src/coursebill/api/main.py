"""Main FastAPI application."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from coursebill.core import CourseBillException, get_logger, settings, setup_logging
from coursebill.db import close_db
from coursebill.utils.timestamps import utcnow

# Setup logging
setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Log configuration gaps at startup; dispose the engine on shutdown."""
    logger.info(
        "Starting CourseBill API",
        version=settings.app_version,
        environment=settings.environment,
    )
    if not settings.stripe_webhook_secret:
        logger.warning("Stripe webhook secret not configured; webhook deliveries will be rejected")

    yield

    logger.info("Shutting down CourseBill API")
    await close_db()


app = FastAPI(
    title="CourseBill API",
    description="Billing reconciliation for course subscriptions and one-time purchases",
    version=settings.app_version,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

from .routes import access, admin, checkout, webhooks  # noqa: E402

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(CourseBillException)
async def coursebill_exception_handler(request, exc: CourseBillException):
    """Answer domain errors with their own status code."""
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "CourseBill exception",
        error_code=exc.code,
        error_message=exc.message,
        details=exc.details,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def general_exception_handler(request, exc: Exception):
    """Handle general exceptions."""
    logger.exception("Unhandled exception", error=str(exc))
    return JSONResponse(
        status_code=500,
        content={
            "error": "INTERNAL_ERROR",
            "message": "An internal error occurred",
            "details": {} if settings.is_production else {"error": str(exc)},
        },
    )


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "CourseBill API",
        "version": settings.app_version,
        "status": "running",
        "docs": "/docs",
    }


@app.get("/health")
@app.get("/api/v1/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": settings.app_version,
        "environment": settings.environment,
        "timestamp": utcnow().isoformat(),
        "stripe_configured": bool(settings.stripe_secret_key and settings.stripe_webhook_secret),
    }


# Everything billing-related lives under /api/v1
app.include_router(webhooks.router, prefix="/api/v1")
app.include_router(checkout.router, prefix="/api/v1")
app.include_router(access.router, prefix="/api/v1")
app.include_router(admin.router, prefix="/api/v1")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "coursebill.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.api_reload,
        log_level=settings.log_level.lower(),
    )
