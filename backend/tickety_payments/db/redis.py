"""Redis client for session management and rate limiting"""
import redis
import logging
from typing import Optional
from tickety_payments.core.config import settings

logger = logging.getLogger(__name__)

# Lazy initialization - no connection at import time
_client = None

def get_redis_client():
    """Get or create Redis client (lazy initialization)

    This prevents connection attempts during import, allowing mocks to be applied first.
    """
    global _client
    if _client is None:
        _client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _client

# Rate limiting configuration
if settings.ENVIRONMENT == "development":
    RATE_LIMIT_WINDOW = 60  # seconds
    RATE_LIMIT_REQUESTS = 1000  # requests per window (very lenient for dev)
    RATE_LIMIT_STRICT_WINDOW = 60  # seconds
    RATE_LIMIT_STRICT_REQUESTS = 1000
else:
    RATE_LIMIT_WINDOW = 60  # seconds
    RATE_LIMIT_REQUESTS = 600
    RATE_LIMIT_STRICT_WINDOW = 60  # seconds
    RATE_LIMIT_STRICT_REQUESTS = 120  # state-changing requests (payments, claims)


def set_session(session_id: str, user_id: int) -> None:
    """Store session in Redis"""
    key = f"session:{session_id}"
    get_redis_client().setex(key, settings.SESSION_TTL, user_id)


def get_session(session_id: str) -> Optional[int]:
    """Get user_id from session"""
    key = f"session:{session_id}"
    user_id = get_redis_client().get(key)
    return int(user_id) if user_id else None


def delete_session(session_id: str) -> None:
    """Delete session from Redis"""
    key = f"session:{session_id}"
    get_redis_client().delete(key)


def increment_rate_limit(identifier: str, window: int) -> int:
    """Increment the request counter for a fixed window and return the new count"""
    key = f"rate_limit:{identifier}"
    client = get_redis_client()
    count = client.incr(key)
    if count == 1:
        # First hit opens the window
        client.expire(key, window)
    return int(count)


def check_rate_limit(identifier: str, strict: bool = False) -> bool:
    """Return True if the identifier is still within its rate limit"""
    window = RATE_LIMIT_STRICT_WINDOW if strict else RATE_LIMIT_WINDOW
    limit = RATE_LIMIT_STRICT_REQUESTS if strict else RATE_LIMIT_REQUESTS
    identifier = f"{identifier}:strict" if strict else identifier

    current_count = increment_rate_limit(identifier, window)
    if current_count > limit:
        logger.warning(f"Rate limit exceeded for {identifier}: {current_count}/{limit}")
        return False
    return True
