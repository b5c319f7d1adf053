"""Security dependencies and API access logging"""
import json
import logging
from datetime import datetime, timezone
from typing import Optional
from fastapi import Request

from tickety_payments.core.errors import Unauthenticated
from tickety_payments.db.redis import get_session

security_logger = logging.getLogger("security")
api_access_logger = logging.getLogger("api_access")


def get_bearer_token(request: Request) -> Optional[str]:
    """Extract the token from an ``Authorization: Bearer <token>`` header"""
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def require_auth(request: Request) -> int:
    """Dependency: Require authentication, return user_id"""
    token = get_bearer_token(request)
    if not token:
        raise Unauthenticated("Not authenticated. Please log in.")

    user_id = get_session(token)
    if not user_id:
        raise Unauthenticated("Session expired. Please log in again.")
    return user_id


def get_client_identifier(request: Request, session_id: Optional[str] = None) -> str:
    """Get a unique identifier for rate limiting"""
    if session_id:
        return f"session:{session_id}"

    # Fallback to IP address
    client_ip = request.headers.get("X-Forwarded-For", "").split(",")[0].strip()
    if not client_ip:
        client_ip = request.client.host if request.client else "unknown"
    return f"ip:{client_ip}"


def log_api_access(
    request: Request,
    session_id: Optional[str] = None,
    status_code: int = 200,
    error: Optional[str] = None
):
    """Log detailed API access information"""
    client_ip = request.headers.get("X-Forwarded-For", "").split(",")[0].strip()
    if not client_ip:
        client_ip = request.client.host if request.client else "unknown"

    log_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "method": request.method,
        "path": request.url.path,
        "query": str(request.url.query) if request.url.query else None,
        "session_id": session_id[:8] + "..." if session_id else None,
        "client_ip": client_ip,
        "user_agent": request.headers.get("User-Agent", "unknown"),
        "status_code": status_code,
        "error": error
    }

    if error or status_code >= 400:
        api_access_logger.warning(f"API Access: {json.dumps(log_data)}")
    else:
        api_access_logger.info(f"API Access: {json.dumps(log_data)}")
