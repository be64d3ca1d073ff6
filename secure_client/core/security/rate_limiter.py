"""
Client-side sliding-window rate limiting per endpoint class.

Windows are private to this process. The server stays the authoritative
enforcement point; this only keeps a misbehaving client from hammering it.
"""

import logging
import math
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, Mapping, Optional
from urllib.parse import urlsplit

from secure_client.core.rate_limit_config import (
    GLOBAL_KEY,
    RateLimitValue,
    RateWindowConfig,
    parse_rate_limit,
)

logger = logging.getLogger(__name__)

DEFAULT_GLOBAL_WINDOW = RateWindowConfig(limit=300, window_ms=60_000)


@dataclass(frozen=True)
class RateLimitStatus:
    """Outcome of one admission check"""
    allowed: bool
    remaining: int
    reset_at: int  # epoch ms
    retry_after: int = 0  # seconds, only set when disallowed


@dataclass
class RateWindow:
    endpoint_key: str
    limit: int
    window_ms: int
    timestamps: Deque[int] = field(default_factory=deque)

    def expire(self, now_ms: int) -> None:
        """Drop timestamps that left the trailing window"""
        while self.timestamps and now_ms - self.timestamps[0] >= self.window_ms:
            self.timestamps.popleft()


class RateLimiter:
    """
    Sliding-window admission control, one window per endpoint key.

    Only admitted checks record a timestamp, so rejected attempts cannot
    push the reset time further out.
    """

    def __init__(
        self,
        limits: Optional[Mapping[str, RateLimitValue]] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            limits: endpoint key -> limit ("5/minute" or {limit, window_ms}).
                The "global" entry is the fallback for unknown keys.
            clock: Returns epoch seconds
        """
        self._clock = clock
        self._windows: Dict[str, RateWindow] = {}

        for key, value in (limits or {}).items():
            config = parse_rate_limit(value)
            self._windows[key] = RateWindow(key, config.limit, config.window_ms)

        if GLOBAL_KEY not in self._windows:
            self._windows[GLOBAL_KEY] = RateWindow(
                GLOBAL_KEY, DEFAULT_GLOBAL_WINDOW.limit, DEFAULT_GLOBAL_WINDOW.window_ms
            )

    def _now_ms(self) -> int:
        return round(self._clock() * 1000)

    def _window(self, endpoint_key: str) -> RateWindow:
        return self._windows.get(endpoint_key) or self._windows[GLOBAL_KEY]

    @property
    def endpoint_keys(self):
        return list(self._windows)

    def resolve_key(self, url: str) -> str:
        """
        Map a request URL to its endpoint class.

        Keys starting with "/" match as path prefixes, other keys must equal
        one path segment. First configured key wins; otherwise "global".
        """
        try:
            path = urlsplit(url).path or url
        except ValueError:
            path = url
        segments = [s for s in path.split("/") if s]

        for key in self._windows:
            if key == GLOBAL_KEY:
                continue
            if key.startswith("/"):
                if path.startswith(key):
                    return key
            elif key in segments:
                return key
        return GLOBAL_KEY

    def check(self, endpoint_key: str) -> RateLimitStatus:
        """Admit or reject one call for ``endpoint_key``"""
        window = self._window(endpoint_key)
        now = self._now_ms()
        window.expire(now)

        if len(window.timestamps) >= window.limit:
            reset_at = window.timestamps[0] + window.window_ms
            retry_after = max(1, math.ceil((reset_at - now) / 1000))
            logger.debug(f"Rate window '{window.endpoint_key}' full, retry in {retry_after}s")
            return RateLimitStatus(
                allowed=False,
                remaining=0,
                reset_at=reset_at,
                retry_after=retry_after,
            )

        window.timestamps.append(now)
        return RateLimitStatus(
            allowed=True,
            remaining=window.limit - len(window.timestamps),
            reset_at=window.timestamps[0] + window.window_ms,
        )

    def status(self, endpoint_key: str) -> Dict[str, int]:
        """Current state of a window without recording anything"""
        window = self._window(endpoint_key)
        now = self._now_ms()
        window.expire(now)

        current = len(window.timestamps)
        reset_at = window.timestamps[0] + window.window_ms if current else now + window.window_ms
        remaining = max(0, window.limit - current)
        return {
            "current": current,
            "limit": window.limit,
            "remaining": remaining,
            "reset_at": reset_at,
            "is_limited": remaining == 0,
        }

    def statuses(self) -> Dict[str, Dict[str, int]]:
        return {key: self.status(key) for key in self._windows}

    def reset(self, endpoint_key: Optional[str] = None) -> None:
        """Clear one window, or all of them"""
        if endpoint_key is None:
            for window in self._windows.values():
                window.timestamps.clear()
            return
        self._window(endpoint_key).timestamps.clear()
