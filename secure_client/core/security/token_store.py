"""
Session token storage.

Holds the access/refresh token pair of the current session and persists it
as one JSON blob in an injected key-value storage. The refresh coordinator
and the login/logout operations are the only writers.
"""

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping, Optional

from pydantic import BaseModel, ValidationError

from secure_client.core.security.storage import KeyValueStorage, MemoryStorage

logger = logging.getLogger(__name__)


class TokenPair(BaseModel):
    """Access/refresh token pair with the access token's expiry"""
    access_token: str
    refresh_token: str
    expires_at: datetime

    @classmethod
    def from_refresh_response(cls, data: Mapping[str, Any], now: datetime) -> "TokenPair":
        """
        Build a pair from ``{access_token, refresh_token, expires_in}``.

        Raises:
            ValueError: If a field is missing or malformed
        """
        try:
            access_token = data["access_token"]
            refresh_token = data["refresh_token"]
            expires_in = float(data["expires_in"])
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"Malformed token response: {e}") from e

        if not access_token or not refresh_token:
            raise ValueError("Malformed token response: empty token")
        return cls(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=now + timedelta(seconds=expires_in),
        )

    def is_expired(self, now: datetime, skew_seconds: float = 0) -> bool:
        return now + timedelta(seconds=skew_seconds) >= self.expires_at


class TokenStore:
    """Current token pair of one session"""

    def __init__(
        self,
        storage: Optional[KeyValueStorage] = None,
        storage_key: str = "__auth_tokens",
        clock: Callable[[], float] = time.time,
    ):
        self._storage = storage if storage is not None else MemoryStorage()
        self._storage_key = storage_key
        self._clock = clock
        self._pair: Optional[TokenPair] = self._load()

    def now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    def _load(self) -> Optional[TokenPair]:
        raw = self._storage.get(self._storage_key)
        if not raw:
            return None
        try:
            return TokenPair.model_validate_json(raw)
        except ValidationError:
            logger.warning("⚠️ Stored tokens are unreadable, discarding them")
            self._storage.remove(self._storage_key)
            return None

    @property
    def pair(self) -> Optional[TokenPair]:
        return self._pair

    @property
    def access_token(self) -> Optional[str]:
        return self._pair.access_token if self._pair else None

    @property
    def refresh_token(self) -> Optional[str]:
        return self._pair.refresh_token if self._pair else None

    def has_token(self) -> bool:
        return self._pair is not None

    def is_access_token_expired(self, skew_seconds: float = 0) -> bool:
        """True when there is a pair whose access token is (about to be) expired"""
        if self._pair is None:
            return False
        return self._pair.is_expired(self.now(), skew_seconds)

    def replace(self, pair: TokenPair) -> None:
        """Swap in a new pair; memory and storage change together"""
        self._storage.set(self._storage_key, pair.model_dump_json())
        self._pair = pair
        logger.debug(f"🔑 Token pair replaced, expires {pair.expires_at.isoformat()}")

    def clear(self) -> None:
        self._pair = None
        self._storage.remove(self._storage_key)
        logger.debug("🔑 Token pair cleared")
