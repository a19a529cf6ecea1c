"""
FastAPI application entry point.
Sets up the API with lifespan events for database, payment gateway and
usage reporter initialization.
"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from emailkit.config import settings
from emailkit.database import init_db
from emailkit.api.router import api_router
from emailkit.auth.firebase import initialize_firebase
from emailkit.exceptions import InsufficientCredits
from emailkit.middleware.credit_check import insufficient_credits_handler
from emailkit.middleware.metrics_middleware import MetricsMiddleware
from emailkit.services.payment_gateway import initialize_payment_gateway
from emailkit.services.usage_reporting import usage_reporter
from emailkit.utils.logging import configure_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup/shutdown events.
    - Startup: database, Firebase Admin SDK, payment gateway, usage reporter
    - Shutdown: stop the usage reporter
    """
    configure_logging('emailkit-api', settings.log_level)

    await init_db()

    # Skip if Firebase config not provided (for local dev without Firebase)
    if settings.firebase_project_id:
        try:
            initialize_firebase()
        except (ValueError, OSError) as e:
            if settings.environment == "production":
                raise
            logger.warning(f"Firebase initialization failed: {e}")

    # Never raises; falls back to the disabled gateway
    await initialize_payment_gateway(settings)

    if settings.usage_reporter_in_api:
        usage_reporter.start()

    yield

    await usage_reporter.stop()


# Create FastAPI app
app = FastAPI(
    title="Email Kit Billing API",
    description="Usage metering and credit billing for Email Kit",
    version="0.1.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Metrics middleware (must be after CORS to track all requests)
app.add_middleware(MetricsMiddleware)

app.add_exception_handler(InsufficientCredits, insufficient_credits_handler)

app.include_router(api_router, prefix="/api")


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "Email Kit Billing API",
        "version": "0.1.0",
        "environment": settings.environment
    }


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )
