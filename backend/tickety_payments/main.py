"""FastAPI application entry point"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from fastapi.exceptions import RequestValidationError
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.exceptions import HTTPException as StarletteHTTPException

from tickety_payments.core.config import settings
from tickety_payments.core.errors import PaymentError
from tickety_payments.core.logging import setup_logging
from tickety_payments.core.middleware import (
    global_exception_handler, http_exception_handler, payment_error_handler,
    security_middleware, setup_cors_middleware, validation_exception_handler
)
from tickety_payments.core.otel import (
    initialize_otel, instrument_fastapi, instrument_sqlalchemy, setup_otel_logging
)
from tickety_payments.db.redis import get_redis_client
from tickety_payments.db.session import engine, init_db
from tickety_payments.services.stripe_service import configure_stripe

# Import routers
from tickety_payments.api import auth, payments, sellers, subscriptions, tickets, webhooks

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown"""
    # Startup
    otel_initialized = initialize_otel()
    if otel_initialized:
        if setup_otel_logging():
            logger.info(f"OpenTelemetry fully initialized, exporting to {settings.OTEL_EXPORTER_OTLP_ENDPOINT}")
        else:
            logger.warning("OpenTelemetry metrics/traces initialized but logging setup failed")
    else:
        logger.info("OpenTelemetry not configured - running without distributed tracing")

    configure_stripe()

    logger.info("Initializing database...")
    try:
        init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    logger.info("Testing Redis connection...")
    try:
        get_redis_client().ping()
        logger.info("Redis connection successful")
    except Exception as e:
        logger.error(f"Redis connection failed: {e}")
        raise

    instrument_sqlalchemy(engine)

    yield

    # Shutdown
    logger.info("Shutting down...")


# Create FastAPI app
app = FastAPI(
    title="Tickety Payments",
    description="Payments, fees and ticket reconciliation for the Tickety platform",
    version="1.0.0",
    lifespan=lifespan
)

# Instrument FastAPI with OpenTelemetry
instrument_fastapi(app)

setup_cors_middleware(app)
app.middleware("http")(security_middleware)

app.add_exception_handler(PaymentError, payment_error_handler)
app.add_exception_handler(StarletteHTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, global_exception_handler)

# Include routers
app.include_router(auth.router)
app.include_router(payments.router)
app.include_router(tickets.router)
app.include_router(sellers.router)
app.include_router(subscriptions.router)
app.include_router(webhooks.router)


# Prometheus metrics endpoint
@app.get("/metrics")
def metrics_endpoint():
    """Prometheus metrics endpoint"""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# Health check endpoint
@app.get("/health")
def health_check():
    """Health check endpoint"""
    return {"status": "healthy"}
