"""
API key middleware and caller identity resolution.

Every /api/v1 route requires X-API-KEY. End users are authenticated by the
upstream gateway, which forwards the resolved identity in X-User-ID.
"""
import os
import hmac
import logging
from typing import Optional

from fastapi import Header, Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from peerlink.middleware.error_handling import AppException, ErrorCode

logger = logging.getLogger(__name__)

DEFAULT_EXCLUDE_PATHS = ["/health", "/docs", "/redoc", "/openapi.json"]


def _auth_error(status_code: int, code: ErrorCode, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"code": code.value, "message": message}}
    )


class APIKeyMiddleware(BaseHTTPMiddleware):
    """Validates the X-API-KEY header for incoming requests."""

    def __init__(self, app, exclude_paths: Optional[list] = None):
        super().__init__(app)
        self.api_key = os.getenv('API_KEY')
        self.environment = os.getenv('ENVIRONMENT', 'development').lower()
        self.exclude_paths = exclude_paths or DEFAULT_EXCLUDE_PATHS

        if self.environment == 'production' and not self.api_key:
            raise ValueError("API_KEY environment variable is REQUIRED in production")

    def _should_bypass_auth(self) -> bool:
        bypass = os.getenv("AUTH_BYPASS", "").lower() == "true"
        if not bypass:
            return False
        # Never honoured in production
        return self.environment != "production"

    def _is_excluded(self, path: str) -> bool:
        return any(path == p or path.startswith(p + "/") for p in self.exclude_paths)

    async def dispatch(self, request: Request, call_next):
        if self._is_excluded(request.url.path) or self._should_bypass_auth():
            return await call_next(request)

        if not self.api_key:
            if self.environment == 'production':
                logger.error("API_KEY not configured in production - blocking request")
                return _auth_error(500, ErrorCode.INTERNAL_ERROR, "Authentication not configured")
            logger.warning("No API_KEY configured - allowing request (development mode only)")
            return await call_next(request)

        api_key = request.headers.get("X-API-KEY")
        if not api_key:
            return _auth_error(401, ErrorCode.UNAUTHORIZED, "X-API-KEY header is required")

        if not hmac.compare_digest(api_key, self.api_key):
            return _auth_error(403, ErrorCode.FORBIDDEN, "Invalid API key")

        return await call_next(request)


def get_caller_id(x_user_id: Optional[str] = Header(None, alias="X-User-ID")) -> str:
    """FastAPI dependency returning the caller identity forwarded by the gateway."""
    if not x_user_id or not x_user_id.strip():
        raise AppException(
            code=ErrorCode.UNAUTHORIZED,
            message="X-User-ID header is required",
            suggestion="Route the request through the authentication gateway"
        )
    return x_user_id.strip()


def get_optional_caller_id(x_user_id: Optional[str] = Header(None, alias="X-User-ID")) -> Optional[str]:
    return x_user_id.strip() if x_user_id and x_user_id.strip() else None
