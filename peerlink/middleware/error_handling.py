"""
Unified Error Handling.

Provides consistent error handling across the matching service with
custom exceptions, error codes, and formatted responses.

Key features:
1. Custom exception hierarchy for queue, scoring, and analytics errors
2. Error code system mapped to HTTP status codes
3. Consistent JSON error envelope
4. Error tracking for the health endpoint
"""
import os
import traceback
import logging
from typing import Dict, Any, Optional, List
from datetime import datetime
from enum import Enum
from dataclasses import dataclass
from uuid import uuid4

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class ErrorCode(str, Enum):
    """Application error codes."""
    # General errors (1xxx)
    INTERNAL_ERROR = "E1000"
    VALIDATION_ERROR = "E1001"
    NOT_FOUND = "E1002"
    UNAUTHORIZED = "E1003"
    FORBIDDEN = "E1004"
    RATE_LIMITED = "E1005"

    # Queue errors (2xxx)
    INVALID_AVAILABILITY_WINDOW = "E2001"
    DUPLICATE_QUEUE_ENTRY = "E2002"
    INVALID_STATE_TRANSITION = "E2003"
    QUEUE_ENTRY_NOT_FOUND = "E2004"

    # Matching errors (3xxx)
    USER_DATA_NOT_FOUND = "E3001"
    COMMIT_CONFLICT = "E3002"
    INVALID_CYCLE_PARAMETERS = "E3003"
    UNKNOWN_WEIGHTS_VERSION = "E3004"

    # Analytics errors (4xxx)
    INVALID_RATING = "E4001"
    MATCH_RECORD_NOT_FOUND = "E4002"
    INSUFFICIENT_SAMPLES = "E4003"

    # External service errors (6xxx)
    DATABASE_ERROR = "E6001"
    EXTERNAL_API_ERROR = "E6004"


# Error code to HTTP status mapping
ERROR_STATUS_MAP = {
    ErrorCode.INTERNAL_ERROR: 500,
    ErrorCode.VALIDATION_ERROR: 422,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.UNAUTHORIZED: 401,
    ErrorCode.FORBIDDEN: 403,
    ErrorCode.RATE_LIMITED: 429,
    ErrorCode.INVALID_AVAILABILITY_WINDOW: 422,
    ErrorCode.DUPLICATE_QUEUE_ENTRY: 409,
    ErrorCode.INVALID_STATE_TRANSITION: 409,
    ErrorCode.QUEUE_ENTRY_NOT_FOUND: 404,
    ErrorCode.USER_DATA_NOT_FOUND: 404,
    ErrorCode.COMMIT_CONFLICT: 409,
    ErrorCode.INVALID_CYCLE_PARAMETERS: 422,
    ErrorCode.UNKNOWN_WEIGHTS_VERSION: 422,
    ErrorCode.INVALID_RATING: 422,
    ErrorCode.MATCH_RECORD_NOT_FOUND: 404,
    ErrorCode.INSUFFICIENT_SAMPLES: 422,
    ErrorCode.DATABASE_ERROR: 503,
    ErrorCode.EXTERNAL_API_ERROR: 502,
}


@dataclass
class ErrorResponse:
    """Standardized error response."""
    error_id: str
    code: str
    message: str
    status_code: int
    timestamp: str
    path: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    suggestion: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON response."""
        result = {
            "error": {
                "id": self.error_id,
                "code": self.code,
                "message": self.message,
                "timestamp": self.timestamp
            }
        }
        if self.path:
            result["error"]["path"] = self.path
        if self.details:
            result["error"]["details"] = self.details
        if self.suggestion:
            result["error"]["suggestion"] = self.suggestion
        return result


class AppException(Exception):
    """Base exception for application errors."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        suggestion: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        self.code = code
        self.message = message
        self.details = details
        self.suggestion = suggestion
        self.original_error = original_error
        self.status_code = ERROR_STATUS_MAP.get(code, 500)
        super().__init__(message)


class ValidationException(AppException):
    """Validation error exception."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        code: ErrorCode = ErrorCode.VALIDATION_ERROR
    ):
        details = details or {}
        if field:
            details["field"] = field
        super().__init__(
            code=code,
            message=message,
            details=details,
            suggestion="Please check your input and try again"
        )


class InvalidAvailabilityWindow(ValidationException):
    """Availability window starts in the past or ends before it starts."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message, field=field, code=ErrorCode.INVALID_AVAILABILITY_WINDOW)


class InvalidRating(ValidationException):
    """Feedback rating outside the 1-5 integer scale."""

    def __init__(self, rating: Any):
        super().__init__(
            f"Rating must be an integer between 1 and 5, got {rating!r}",
            field="rating",
            code=ErrorCode.INVALID_RATING
        )


class NotFoundException(AppException):
    """Resource not found exception."""

    def __init__(
        self,
        resource_type: str,
        resource_id: Optional[str] = None,
        code: ErrorCode = ErrorCode.NOT_FOUND
    ):
        message = f"{resource_type} not found"
        if resource_id:
            message = f"{resource_type} with ID '{resource_id}' not found"
        super().__init__(
            code=code,
            message=message,
            details={"resource_type": resource_type, "resource_id": resource_id}
        )


class ForbiddenException(AppException):
    """Caller is acting on a resource owned by someone else."""

    def __init__(self, message: str = "Access denied", details: Optional[Dict[str, Any]] = None):
        super().__init__(code=ErrorCode.FORBIDDEN, message=message, details=details)


class DuplicateQueueEntry(AppException):
    """User already has a waiting queue entry."""

    def __init__(self, user_id: str, existing_entry_id: Optional[str] = None):
        super().__init__(
            code=ErrorCode.DUPLICATE_QUEUE_ENTRY,
            message=f"User {user_id} is already in the matching queue",
            details={"user_id": user_id, "queue_id": existing_entry_id},
            suggestion="Cancel the existing queue entry before entering again"
        )


class InvalidStateTransition(AppException):
    """Queue entry is not in the state required by the operation."""

    def __init__(self, entry_id: str, current_status: str, target_status: str):
        super().__init__(
            code=ErrorCode.INVALID_STATE_TRANSITION,
            message=(
                f"Queue entry '{entry_id}' cannot move from '{current_status}' to '{target_status}'"
            ),
            details={
                "queue_id": entry_id,
                "current_status": current_status,
                "target_status": target_status
            }
        )


class UserDataNotFound(AppException):
    """Profile or interest data for a user could not be resolved."""

    def __init__(self, user_id: str, original_error: Optional[Exception] = None):
        self.user_id = user_id
        super().__init__(
            code=ErrorCode.USER_DATA_NOT_FOUND,
            message=f"User data not found for scoring: {user_id}",
            details={"user_id": user_id},
            original_error=original_error
        )


class CommitConflict(AppException):
    """A queue entry left 'waiting' between pair selection and commit."""

    def __init__(self, entry_ids: List[str], stale_entry_ids: Optional[List[str]] = None):
        self.entry_ids = list(entry_ids)
        self.stale_entry_ids = list(stale_entry_ids or [])
        super().__init__(
            code=ErrorCode.COMMIT_CONFLICT,
            message=f"Commit conflict on queue entries {', '.join(self.entry_ids)}",
            details={"entry_ids": self.entry_ids, "stale_entry_ids": self.stale_entry_ids}
        )


class ExternalServiceException(AppException):
    """External service exception."""

    def __init__(
        self,
        service_name: str,
        message: str,
        code: ErrorCode = ErrorCode.EXTERNAL_API_ERROR,
        original_error: Optional[Exception] = None
    ):
        super().__init__(
            code=code,
            message=f"{service_name}: {message}",
            details={"service": service_name},
            suggestion="Please try again later",
            original_error=original_error
        )


class QueueStorageError(ExternalServiceException):
    """The matching queue store could not be read or written."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(
            service_name="queue-store",
            message=message,
            code=ErrorCode.DATABASE_ERROR,
            original_error=original_error
        )


class ErrorTracker:
    """Tracks errors for monitoring and alerting."""

    def __init__(self):
        self._errors: Dict[str, list] = {}
        self._error_counts: Dict[str, int] = {}
        self.max_stored_errors = int(os.getenv("MAX_STORED_ERRORS", "1000"))

    def track(
        self,
        error_id: str,
        error_code: ErrorCode,
        message: str,
        request_path: Optional[str] = None,
        user_id: Optional[str] = None,
        stack_trace: Optional[str] = None
    ) -> None:
        """Track an error occurrence."""
        error_record = {
            "error_id": error_id,
            "code": error_code.value,
            "message": message,
            "path": request_path,
            "user_id": user_id,
            "timestamp": datetime.utcnow().isoformat(),
            "stack_trace": stack_trace
        }

        code_key = error_code.value
        self._errors.setdefault(code_key, []).append(error_record)
        if len(self._errors[code_key]) > self.max_stored_errors:
            self._errors[code_key] = self._errors[code_key][-self.max_stored_errors:]

        self._error_counts[code_key] = self._error_counts.get(code_key, 0) + 1

        log = logger.error if ERROR_STATUS_MAP.get(error_code, 500) >= 500 else logger.info
        log(
            f"Error tracked: {error_id} - {error_code.value}: {message}",
            extra={"error_id": error_id, "error_code": error_code.value}
        )

    def get_stats(self) -> Dict[str, Any]:
        """Get error statistics."""
        return {
            "total_errors": sum(self._error_counts.values()),
            "by_code": dict(self._error_counts),
            "recent_errors": self._get_recent_errors(10)
        }

    def _get_recent_errors(self, limit: int) -> list:
        """Get most recent errors across all codes."""
        all_errors = []
        for errors in self._errors.values():
            all_errors.extend(errors)
        all_errors.sort(key=lambda e: e["timestamp"], reverse=True)
        return [
            {k: v for k, v in e.items() if k != "stack_trace"}
            for e in all_errors[:limit]
        ]


# Global error tracker
error_tracker = ErrorTracker()


def create_error_response(
    error: AppException,
    request: Optional[Request] = None
) -> ErrorResponse:
    """Create a standardized error response."""
    error_id = str(uuid4())

    error_tracker.track(
        error_id=error_id,
        error_code=error.code,
        message=error.message,
        request_path=str(request.url) if request else None,
        user_id=request.headers.get("X-User-ID") if request else None,
        stack_trace="".join(traceback.format_exception(
            type(error.original_error), error.original_error, error.original_error.__traceback__
        )) if error.original_error else None
    )

    return ErrorResponse(
        error_id=error_id,
        code=error.code.value,
        message=error.message,
        status_code=error.status_code,
        timestamp=datetime.utcnow().isoformat(),
        path=str(request.url.path) if request else None,
        details=error.details,
        suggestion=error.suggestion
    )


def setup_error_handling(app):
    """Setup error handling for FastAPI app."""

    @app.exception_handler(AppException)
    async def app_exception_handler(request: Request, exc: AppException):
        error_response = create_error_response(exc, request)
        return JSONResponse(
            status_code=error_response.status_code,
            content=error_response.to_dict()
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": [str(part) for part in e.get("loc", ())], "msg": e.get("msg"), "type": e.get("type")}
            for e in exc.errors()
        ]
        error = ValidationException("Request validation failed", details={"errors": errors})
        error_response = create_error_response(error, request)
        return JSONResponse(
            status_code=error_response.status_code,
            content=error_response.to_dict()
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        error_id = str(uuid4())
        logger.exception(f"Unhandled exception {error_id}")

        error_tracker.track(
            error_id=error_id,
            error_code=ErrorCode.INTERNAL_ERROR,
            message=str(exc),
            request_path=str(request.url),
            stack_trace=traceback.format_exc()
        )

        # Don't expose internal details in production
        is_debug = os.getenv("DEBUG", "false").lower() == "true"

        return JSONResponse(
            status_code=500,
            content={
                "error": {
                    "id": error_id,
                    "code": ErrorCode.INTERNAL_ERROR.value,
                    "message": str(exc) if is_debug else "Internal server error",
                    "timestamp": datetime.utcnow().isoformat()
                }
            }
        )

    logger.info("Error handling configured")
