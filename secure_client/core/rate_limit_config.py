"""
Rate limiting configuration for outbound API calls.

Limits use the slowapi/limits notation ("10/minute", "3 per 5 minutes").
"""

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Union

from limits import parse

GLOBAL_KEY = "global"


@dataclass(frozen=True)
class RateWindowConfig:
    """Admission budget of one endpoint class"""
    limit: int
    window_ms: int


RateLimitValue = Union[str, Mapping[str, Any], RateWindowConfig]


def parse_rate_limit(value: RateLimitValue) -> RateWindowConfig:
    """
    Turn a configured limit into a RateWindowConfig.

    Accepts limits notation ("5/minute"), a mapping with ``limit`` and
    ``window_ms`` (or ``windowMs``), or an existing RateWindowConfig.

    Raises:
        ValueError: If the value cannot be parsed or is not positive
    """
    if isinstance(value, RateWindowConfig):
        config = value
    elif isinstance(value, str):
        item = parse(value)
        config = RateWindowConfig(limit=item.amount, window_ms=item.get_expiry() * 1000)
    elif isinstance(value, Mapping):
        window_ms = value.get("window_ms", value.get("windowMs"))
        if "limit" not in value or window_ms is None:
            raise ValueError(f"Rate limit mapping needs 'limit' and 'window_ms': {dict(value)}")
        config = RateWindowConfig(limit=int(value["limit"]), window_ms=int(window_ms))
    else:
        raise ValueError(f"Unsupported rate limit value: {value!r}")

    if config.limit <= 0 or config.window_ms <= 0:
        raise ValueError(f"Rate limit must be positive: {config}")
    return config


# Rate limit tables per deployment tier. Keys beginning with "/" match as
# URL path prefixes, all other keys match a single path segment.
RATE_LIMIT_TIERS: Dict[str, Dict[str, str]] = {
    "default": {
        # Authentication - strict, brute force protection
        "login": "5/minute",
        "register": "3/minute",
        "password-reset": "3 per 5 minutes",
        "verify-email": "5/minute",
        # Bookings
        "bookings": "100/minute",
        # Messages
        "messages": "50/minute",
        # Directory endpoints
        "customers": "100/minute",
        "staff": "100/minute",
        "services": "100/minute",
        # Read-only analytics
        "analytics": "200/minute",
        GLOBAL_KEY: "300/minute",
    },
    "development": {  # Relaxed auth limits for local testing
        "login": "50/minute",
        "register": "50/minute",
        "password-reset": "20 per 5 minutes",
        "verify-email": "50/minute",
        "bookings": "100/minute",
        "messages": "50/minute",
        "customers": "100/minute",
        "staff": "100/minute",
        "services": "100/minute",
        "analytics": "200/minute",
        GLOBAL_KEY: "300/minute",
    },
}

# Custom error messages
RATE_LIMIT_MESSAGES = {
    "default": "Rate limit exceeded. Please try again later.",
    "login": "Too many login attempts. Please wait a minute.",
    "register": "Too many registration attempts. Please wait a minute.",
    "password-reset": "Too many password reset requests. Please wait a few minutes.",
}


def get_rate_limit_tier(tier: str) -> Dict[str, str]:
    """Get a copy of the named tier, falling back to the default tier"""
    return dict(RATE_LIMIT_TIERS.get(tier, RATE_LIMIT_TIERS["default"]))


def get_rate_limit_message(endpoint_key: str) -> str:
    """Get custom error message for a rate limited endpoint class"""
    return RATE_LIMIT_MESSAGES.get(endpoint_key, RATE_LIMIT_MESSAGES["default"])
