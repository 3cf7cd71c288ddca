"""
Unit tests for error handling, logging context, auth and rate-limit keys.
"""
import pytest
import json
import logging
import sys
import os
from unittest.mock import MagicMock, Mock

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from peerlink.middleware.auth import APIKeyMiddleware, get_caller_id, get_optional_caller_id
from peerlink.middleware.error_handling import (
    AppException,
    CommitConflict,
    DuplicateQueueEntry,
    ErrorCode,
    ErrorTracker,
    QueueStorageError,
    create_error_response,
)
from peerlink.middleware.rate_limit import get_rate_limit_key
from peerlink.utils.logging_config import LogContext, StructuredFormatter, get_log_context, log_performance


def fake_request(headers=None, path="/api/v1/queue"):
    request = MagicMock()
    request.headers = headers or {}
    request.url.path = path
    request.url.__str__.return_value = f"http://testserver{path}"
    request.client.host = "10.0.0.1"
    return request


class TestErrorHandling:
    """Tests for application exceptions and the error envelope."""

    def test_status_codes(self):
        assert DuplicateQueueEntry("alice").status_code == 409
        assert QueueStorageError("down").status_code == 503
        assert CommitConflict(["e1", "e2"], ["e2"]).status_code == 409

    def test_error_envelope(self):
        error = DuplicateQueueEntry("alice", "entry-1")
        body = create_error_response(error, fake_request()).to_dict()["error"]
        assert body["code"] == "E2002"
        assert body["path"] == "/api/v1/queue"
        assert body["details"] == {"user_id": "alice", "queue_id": "entry-1"}
        assert body["suggestion"]

    def test_storage_error_wraps_original(self):
        original = RuntimeError("connection refused")
        error = QueueStorageError("commit pair failed", original_error=original)
        assert error.original_error is original
        assert error.code == ErrorCode.DATABASE_ERROR

    def test_error_tracker_counts_by_code(self):
        tracker = ErrorTracker()
        tracker.track(error_id="1", error_code=ErrorCode.NOT_FOUND, message="missing")
        tracker.track(error_id="2", error_code=ErrorCode.NOT_FOUND, message="missing")
        stats = tracker.get_stats()
        assert stats["total_errors"] == 2
        assert len(stats["recent_errors"]) == 2


class TestLogging:
    """Tests for scoped log context and the JSON formatter."""

    def test_log_context_nests_and_resets(self):
        assert get_log_context() == {}
        with LogContext(cycle_id="c1"):
            with LogContext(shard=2):
                assert get_log_context() == {"cycle_id": "c1", "shard": 2}
            assert get_log_context() == {"cycle_id": "c1"}
        assert get_log_context() == {}

    def test_structured_formatter_includes_context(self):
        record = logging.LogRecord("peerlink.test", logging.INFO, __file__, 1, "hello", None, None)
        with LogContext(cycle_id="c1"):
            entry = json.loads(StructuredFormatter().format(record))
        assert entry["message"] == "hello"
        assert entry["context"] == {"cycle_id": "c1"}
        assert entry["service"] == "peerlink-matching"

    def test_log_performance_reraises(self):
        @log_performance("explode")
        def explode():
            raise ValueError("boom")

        with pytest.raises(ValueError):
            explode()

    def test_log_performance_returns_result(self):
        @log_performance()
        def add(a, b):
            return a + b

        assert add(1, 2) == 3


class TestAuth:
    """Tests for API key middleware configuration and caller identity."""

    def test_production_requires_api_key(self, monkeypatch):
        monkeypatch.setenv('ENVIRONMENT', 'production')
        monkeypatch.delenv('API_KEY', raising=False)
        with pytest.raises(ValueError):
            APIKeyMiddleware(Mock())

    def test_bypass_ignored_in_production(self, monkeypatch):
        monkeypatch.setenv('ENVIRONMENT', 'production')
        monkeypatch.setenv('AUTH_BYPASS', 'true')
        assert APIKeyMiddleware(Mock())._should_bypass_auth() is False

    def test_excluded_paths_match_whole_segments(self):
        middleware = APIKeyMiddleware(Mock())
        assert middleware._is_excluded("/health")
        assert middleware._is_excluded("/docs/oauth2-redirect")
        assert not middleware._is_excluded("/healthz")
        assert not middleware._is_excluded("/api/v1/queue")

    def test_caller_id(self):
        assert get_caller_id(" alice ") == "alice"
        with pytest.raises(AppException) as exc_info:
            get_caller_id(None)
        assert exc_info.value.code == ErrorCode.UNAUTHORIZED

    def test_optional_caller_id(self):
        assert get_optional_caller_id("  ") is None
        assert get_optional_caller_id("bob") == "bob"


class TestRateLimitKey:
    def test_prefers_user_then_api_key(self):
        assert get_rate_limit_key(fake_request({"X-User-ID": "alice", "X-API-KEY": "k"})) == "user:alice"
        assert get_rate_limit_key(fake_request({"X-API-KEY": "secret-key"})) == "apikey:secret-key"
