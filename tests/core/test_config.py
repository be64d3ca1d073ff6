# tests/core/test_config.py
"""
Tests for settings validation, logging setup and error types.
"""
import logging
from logging.handlers import RotatingFileHandler

import pytest

from secure_client.core.config import Settings, validate_settings
from secure_client.core.exceptions import (
    AuthExpired,
    ClientError,
    ErrorKind,
    RateLimitExceeded,
    TransientNetworkError,
    auth_expired,
    config_error,
    get_safe_error_message,
    service_error,
)
from secure_client.core.logging_config import RequestIdFilter, request_id_var, setup_logging
from secure_client.services.request_pipeline import RetryPolicy


class TestValidateSettings:

    def test_defaults_are_valid(self):
        assert validate_settings(Settings()) == []

    def test_relative_base_url(self):
        problems = validate_settings(Settings(API_BASE_URL="/api/v1"))
        assert any("API_BASE_URL" in p for p in problems)

    def test_bad_rate_limit_override(self):
        problems = validate_settings(Settings(RATE_LIMITS={"login": "lots"}))
        assert any("'login'" in p for p in problems)

    def test_rate_limit_override_applies(self):
        config = Settings(RATE_LIMITS={"login": "1/second", "uploads": {"limit": 2, "window_ms": 1000}})
        table = config.rate_limit_table()

        assert table["login"] == "1/second"
        assert table["uploads"] == {"limit": 2, "window_ms": 1000}
        assert "global" in table

    def test_development_tier(self):
        assert Settings(RATE_LIMIT_TIER="development").rate_limit_table()["login"] == "50/minute"

    def test_unknown_sanitizer_kind(self):
        problems = validate_settings(Settings(SANITIZER_RULES={"^bio$": "markdown"}))
        assert any("markdown" in p for p in problems)

    def test_invalid_sanitizer_pattern(self):
        problems = validate_settings(Settings(SANITIZER_RULES={"(unclosed": "text"}))
        assert any("(unclosed" in p for p in problems)

    def test_non_positive_csrf_ttl(self):
        assert validate_settings(Settings(CSRF_TTL_SECONDS=0))

    def test_shrinking_backoff(self):
        assert validate_settings(Settings(RETRY_MULTIPLIER=0.5))

    def test_retry_count_excludes_first_attempt(self):
        policy = RetryPolicy.from_settings(Settings(RETRY_MAX_RETRIES=2))

        assert policy.max_retries == 2
        assert validate_settings(Settings(RETRY_MAX_RETRIES=-1))


class TestLogging:

    @pytest.fixture
    def clean_root_logger(self):
        root = logging.getLogger()
        before = list(root.handlers)
        level = root.level
        yield root
        for handler in root.handlers:
            if handler not in before:
                root.removeHandler(handler)
                handler.close()
        root.setLevel(level)

    def test_setup_logging_creates_rotating_file(self, tmp_path, monkeypatch, clean_root_logger):
        monkeypatch.setenv("LOG_DIR", str(tmp_path / "logs"))
        monkeypatch.setenv("LOG_LEVEL", "debug")

        root = setup_logging()

        file_handlers = [h for h in root.handlers if isinstance(h, RotatingFileHandler)]
        assert any(h.baseFilename.endswith("secure_client.log") for h in file_handlers)
        assert (tmp_path / "logs" / "secure_client.log").exists()
        assert root.level == logging.DEBUG
        assert logging.getLogger("httpx").level == logging.WARNING

    def test_setup_logging_is_idempotent(self, tmp_path, monkeypatch, clean_root_logger):
        monkeypatch.setenv("LOG_DIR", str(tmp_path))
        setup_logging()
        count = len(clean_root_logger.handlers)
        setup_logging()
        assert len(clean_root_logger.handlers) == count

    def test_request_id_filter(self):
        record = logging.LogRecord("t", logging.INFO, __file__, 1, "msg", None, None)
        request_filter = RequestIdFilter()

        assert request_filter.filter(record)
        assert record.request_id == "-"

        token = request_id_var.set("abc-123")
        try:
            request_filter.filter(record)
        finally:
            request_id_var.reset(token)
        assert record.request_id == "abc-123"


class TestExceptions:

    def test_rate_limit_wire_shape(self):
        error = RateLimitExceeded("slow down", "login", reset_at=1_700_000_060_000, retry_after=42)

        assert error.to_dict() == {
            "code": "RATE_LIMIT_EXCEEDED",
            "remaining": 0,
            "resetAt": 1_700_000_060_000,
            "retryAfter": 42,
        }
        assert error.details["endpoint_key"] == "login"

    def test_base_to_dict(self):
        error = ClientError("not found", status_code=404, request_id="r-1")
        data = error.to_dict()

        assert data["code"] == ErrorKind.CLIENT_ERROR.value
        assert data["details"] == {"request_id": "r-1", "status_code": 404}
        assert "Details" in str(error)

    def test_factories(self):
        assert auth_expired("gone", "r-2").details == {"request_id": "r-2", "reason": "gone"}
        assert config_error("bad", "settings").component == "settings"
        assert service_error("down", "RequestPipeline", "initialize").details == {
            "service": "RequestPipeline",
            "operation": "initialize",
        }

    def test_safe_messages_hide_internals(self):
        internal = TransientNetworkError("ConnectError to 10.0.0.3:5432", attempts=4)

        assert "10.0.0.3" not in get_safe_error_message(internal)
        assert "sign in" in get_safe_error_message(AuthExpired("x"))
        assert "42 seconds" in get_safe_error_message(RateLimitExceeded("x", "login", 0, 42))
        assert get_safe_error_message(KeyError("secret")) == "Something went wrong. Please try again later."
