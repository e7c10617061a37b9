"""
FastAPI Server for Meridian Fee Billing
Serves the billing, admin and webhook endpoints and runs the billing scheduler
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, HTTPException
from fastapi.responses import JSONResponse
from loguru import logger

from config.config import validate_config, ENVIRONMENT
from config.logging import setup_logging
from config.sentry import init_sentry
from src.database.engine import dispose_engine, get_session_maker
from src.api.router import router as api_router
from src.services.brokerage_client import TradierClient
from src.services.brokerage_reconciler import BrokerageReconciler
from src.services.charge_orchestrator import ChargeOrchestrator
from src.services.payment_gateway import StripeGateway
from src.services.payment_method_service import PaymentMethodService
from src.services.period_calculator import billing_timezone
from src.services.webhook_reconciler import WebhookReconciler
from src.tasks.scheduler import BillingScheduler

# Setup logging at module level (must run before app creation)
# This ensures logging works when uvicorn imports the module
setup_logging()
init_sentry()


def configure_services(app: FastAPI, session_maker, gateway: StripeGateway, brokerage: TradierClient) -> None:
    """
    Build the services once and hang them on app.state
    """
    billing_tz = billing_timezone()
    app.state.session_maker = session_maker
    app.state.gateway = gateway
    app.state.orchestrator = ChargeOrchestrator(session_maker, gateway, billing_tz=billing_tz)
    app.state.webhook_reconciler = WebhookReconciler(session_maker, gateway)
    app.state.payment_method_service = PaymentMethodService(session_maker, gateway)
    app.state.brokerage_reconciler = BrokerageReconciler(session_maker, brokerage)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup/shutdown events
    """
    # Startup
    logger.info("Starting Meridian Billing API Server...")

    # NOTE: Database tables managed by Alembic migrations
    # Run: alembic upgrade head
    configure_services(app, get_session_maker(), StripeGateway(), TradierClient())

    # Start Billing Scheduler (weekly billing / brokerage sync / auto-retry)
    billing_scheduler = BillingScheduler(
        app.state.orchestrator,
        app.state.brokerage_reconciler,
        app.state.session_maker,
    )
    billing_scheduler.start()
    app.state.scheduler = billing_scheduler

    yield

    # Shutdown
    logger.info("Shutting down Meridian Billing API Server...")

    billing_scheduler.stop()

    await dispose_engine()
    logger.info("Database connections closed")


# Create FastAPI application
app = FastAPI(
    title="Meridian Fee Billing API",
    description="Weekly performance-fee billing",
    version="1.0.0",
    lifespan=lifespan,
)


# Security headers on every response
@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)

    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "no-referrer"

    # Strict-Transport-Security (HSTS): production over HTTPS only
    if ENVIRONMENT == "production" and request.url.scheme == "https":
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

    return response


# Include API router (already includes all sub-routers)
# Prefix /api for all API endpoints
app.include_router(api_router, prefix="/api")


# Root endpoint
@app.get("/")
async def root():
    """
    Root endpoint
    """
    return {
        "service": "Meridian Fee Billing API",
        "version": "1.0.0",
        "status": "running",
        "docs": "/docs",
    }


# Error handler for HTTPException (must be before generic Exception handler)
@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """
    Handle HTTPException properly - return correct status code and detail
    """
    # Log 4xx as warning, 5xx as error
    if exc.status_code >= 500:
        logger.error(f"HTTP {exc.status_code}: {exc.detail}")
    elif exc.status_code >= 400:
        logger.warning(f"HTTP {exc.status_code}: {exc.detail}")

    content = exc.detail if isinstance(exc.detail, dict) else {"detail": exc.detail}
    return JSONResponse(
        status_code=exc.status_code,
        content=content
    )


# Error handler for unexpected exceptions
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """
    Global exception handler for unexpected errors
    """
    if isinstance(exc, HTTPException):
        raise exc

    logger.exception(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "Internal server error",
            "detail": str(exc) if getattr(app, 'debug', False) else "An error occurred"
        }
    )


if __name__ == "__main__":
    import uvicorn

    # Validate configuration (raises ValueError listing what is missing)
    try:
        validate_config()
    except ValueError as e:
        logger.error(str(e))
        raise SystemExit(1)

    logger.info("Configuration validated successfully")

    # Listen on localhost only, exposed through the reverse proxy
    uvicorn.run(
        "api_server:app",
        host="127.0.0.1",
        port=8003,
        reload=ENVIRONMENT == "development",
        log_level="info",
    )
