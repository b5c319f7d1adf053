"""Middleware and exception handlers for the FastAPI application"""
import logging
from fastapi import Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from tickety_payments.core.config import settings
from tickety_payments.core.errors import PaymentError, UpstreamFailure
from tickety_payments.core.security import get_bearer_token, get_client_identifier, log_api_access
from tickety_payments.db.redis import check_rate_limit

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("security")

# Stripe retries webhooks on its own schedule; never throttle it
RATE_LIMIT_EXEMPT_PATHS = (
    "/api/stripe-webhook",
    "/api/webhooks/stripe-connect",
    "/metrics",
    "/health",
)


def get_allowed_origins():
    """Get list of allowed CORS origins"""
    allowed_origins = [settings.FRONTEND_URL]
    if settings.ENVIRONMENT == "development":
        allowed_origins.extend([
            "http://localhost:3000",
            "http://localhost:8000",
            "http://127.0.0.1:3000",
            "http://127.0.0.1:8000"
        ])
    return allowed_origins


def setup_cors_middleware(app):
    """Setup CORS middleware for FastAPI app"""
    app.add_middleware(
        CORSMiddleware,
        allow_origins=get_allowed_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


async def security_middleware(request: Request, call_next):
    """Rate limiting and API access logging"""
    session_id = get_bearer_token(request)
    status_code = 500
    error = None

    try:
        path = request.url.path
        if path not in RATE_LIMIT_EXEMPT_PATHS and request.method != "OPTIONS":
            identifier = get_client_identifier(request, session_id)
            is_state_changing = request.method in ["POST", "PATCH", "DELETE", "PUT"]
            if not check_rate_limit(identifier, strict=is_state_changing):
                error = "Rate limit exceeded"
                status_code = 429
                security_logger.warning(f"Rate limit exceeded - Identifier: {identifier}, Path: {path}")
                response = Response(
                    content='{"error": "Rate limit exceeded. Please try again later."}',
                    status_code=429,
                    media_type="application/json"
                )
                origin = request.headers.get("Origin")
                if origin and origin in get_allowed_origins():
                    response.headers["Access-Control-Allow-Origin"] = origin
                    response.headers["Access-Control-Allow-Credentials"] = "true"
                return response

        response = await call_next(request)
        status_code = response.status_code
        return response

    except Exception as e:
        error = str(e)
        security_logger.error(f"Security middleware error: {error}", exc_info=True)
        raise
    finally:
        log_api_access(request, session_id, status_code, error)


async def payment_error_handler(request: Request, exc: PaymentError):
    """Render domain errors as ``{"error": message}`` with their HTTP status"""
    if isinstance(exc, UpstreamFailure):
        logger.error(f"Upstream failure on {request.method} {request.url.path}: {exc.message}")
    elif exc.status_code in (401, 403):
        security_logger.warning(f"{exc.__class__.__name__} on {request.method} {request.url.path}: {exc.message}")
    content = {"error": exc.message}
    if isinstance(exc, UpstreamFailure) and exc.retryable:
        content["retryable"] = True
    return JSONResponse(status_code=exc.status_code, content=content)


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Keep the ``{"error": message}`` body shape for framework-raised errors too"""
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=getattr(exc, "headers", None))


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Malformed request bodies are a 400, like any other validation failure"""
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"{field}: {first.get('msg')}" if field else first.get("msg", "Invalid request")
    return JSONResponse(status_code=400, content={"error": message})


async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"}
    )
