"""
Rate limiting using slowapi.

The matching cycle and weight optimisation endpoints get the strict limit,
everything else the default.
"""
import os
import logging

from slowapi import Limiter
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from fastapi import Request
from fastapi.responses import JSONResponse

from peerlink.middleware.error_handling import ErrorCode

logger = logging.getLogger(__name__)

RATE_LIMIT_ENABLED = os.getenv('RATE_LIMIT_ENABLED', 'true').lower() == 'true'
RATE_LIMIT_DEFAULT = os.getenv('RATE_LIMIT_DEFAULT', '100/minute')
RATE_LIMIT_STRICT = os.getenv('RATE_LIMIT_STRICT', '30/minute')  # cycle / optimise

REDIS_URL = os.getenv('RATE_LIMIT_STORAGE_URL', os.getenv('REDIS_URL'))


def get_rate_limit_key(request: Request) -> str:
    """Per caller when the gateway forwarded one, else per API key, else per IP."""
    user_id = request.headers.get('X-User-ID')
    if user_id:
        return f"user:{user_id}"
    api_key = request.headers.get('X-API-KEY')
    if api_key:
        return f"apikey:{api_key[:16]}"
    return get_remote_address(request)


def create_limiter() -> Limiter:
    """Redis-backed limiter when REDIS_URL is set, in-memory otherwise."""
    if REDIS_URL and RATE_LIMIT_ENABLED:
        return Limiter(
            key_func=get_rate_limit_key,
            default_limits=[RATE_LIMIT_DEFAULT],
            storage_uri=REDIS_URL,
            strategy="fixed-window",
            enabled=True
        )

    return Limiter(
        key_func=get_rate_limit_key,
        default_limits=[RATE_LIMIT_DEFAULT],
        strategy="fixed-window",
        enabled=RATE_LIMIT_ENABLED
    )


limiter = create_limiter()


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    logger.warning(f"Rate limit exceeded for {get_rate_limit_key(request)}: {exc.detail}")
    retry_after = getattr(exc, 'retry_after', 60)

    return JSONResponse(
        status_code=429,
        content={
            "error": {
                "code": ErrorCode.RATE_LIMITED.value,
                "message": "Rate limit exceeded. Please slow down your requests.",
                "details": {"limit": str(exc.detail), "retry_after_seconds": retry_after}
            }
        },
        headers={"Retry-After": str(retry_after)}
    )


def limit_strict(func):
    """Apply the strict limit for expensive operations."""
    return limiter.limit(RATE_LIMIT_STRICT)(func)
