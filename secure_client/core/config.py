# secure_client/core/config.py
import logging
import re
from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit

from pydantic import Field
from pydantic_settings import BaseSettings

from secure_client.core.rate_limit_config import (
    GLOBAL_KEY,
    get_rate_limit_tier,
    parse_rate_limit,
)
from secure_client.core.security.sanitizer import DEFAULT_FIELD_PATTERNS, SanitizerKind

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Static configuration of the request pipeline"""
    APP_NAME: str = "secure-client"
    DEBUG: bool = False

    # API-Einstellungen
    API_BASE_URL: str = "http://localhost:3000/api/v1"
    API_VERSION: str = "v1"
    REQUEST_TIMEOUT: float = 30.0
    REFRESH_PATH: str = "/auth/refresh"
    HEALTH_PATH: str = "/health"

    # Session storage
    TOKEN_STORAGE_KEY: str = "__auth_tokens"
    CSRF_STORAGE_KEY: str = "__csrf_token"

    # Token lifecycle
    CSRF_TTL_SECONDS: int = 3600
    TOKEN_EXPIRY_SKEW_SECONDS: int = 30

    # Rate limiting: tier table, overridden per key by RATE_LIMITS
    RATE_LIMIT_TIER: str = "default"
    RATE_LIMITS: Dict[str, Any] = Field(default_factory=dict)

    # Sanitization: ordered field pattern -> kind
    SANITIZER_RULES: Dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_FIELD_PATTERNS))
    SANITIZE_SKIP_PATHS: List[str] = Field(default_factory=lambda: ["/auth/login", "/auth/register"])

    # Retry policy (retries after the first attempt: 1s, 2s, 4s)
    RETRY_MAX_RETRIES: int = 3
    RETRY_BASE_DELAY_MS: int = 1000
    RETRY_MULTIPLIER: float = 2.0
    RETRY_MAX_DELAY_MS: int = 10000
    RETRY_JITTER_MS: int = 250
    RETRYABLE_STATUS_CODES: List[int] = Field(default_factory=lambda: [408, 429, 500, 502, 503, 504])

    # Telemetry
    SLOW_REQUEST_MS: int = 1000
    RATE_LIMIT_VIOLATION_THRESHOLD: int = 10

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore"
    }

    def rate_limit_table(self) -> Dict[str, Any]:
        """Tier table with per-key overrides applied"""
        table = get_rate_limit_tier(self.RATE_LIMIT_TIER)
        table.update(self.RATE_LIMITS)
        return table


# Konfiguration als Singleton verfügbar machen
settings = Settings()


def validate_settings(config: Optional[Settings] = None) -> List[str]:
    """Checks the configuration and returns a list of problems (empty if valid)"""
    config = config or settings
    problems = []

    parsed = urlsplit(config.API_BASE_URL)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        problems.append(f"API_BASE_URL must be an absolute http(s) URL: {config.API_BASE_URL!r}")

    table = config.rate_limit_table()
    if GLOBAL_KEY not in table:
        problems.append(f"Rate limit table needs a '{GLOBAL_KEY}' fallback window")
    for key, value in table.items():
        try:
            parse_rate_limit(value)
        except ValueError as e:
            problems.append(f"Invalid rate limit for '{key}': {e}")

    known_kinds = {kind.value for kind in SanitizerKind}
    for pattern, kind in config.SANITIZER_RULES.items():
        if kind not in known_kinds:
            problems.append(f"Unknown sanitizer kind '{kind}' for pattern '{pattern}'")
        try:
            re.compile(pattern)
        except re.error as e:
            problems.append(f"Invalid sanitizer pattern '{pattern}': {e}")

    if config.CSRF_TTL_SECONDS <= 0:
        problems.append("CSRF_TTL_SECONDS must be positive")
    if config.RETRY_MAX_RETRIES < 0:
        problems.append("RETRY_MAX_RETRIES must not be negative")
    if config.RETRY_BASE_DELAY_MS < 0 or config.RETRY_MULTIPLIER < 1:
        problems.append("Retry delays must grow: RETRY_BASE_DELAY_MS >= 0, RETRY_MULTIPLIER >= 1")

    if problems:
        logger.warning(f"Configuration problems: {'; '.join(problems)}")
    return problems
