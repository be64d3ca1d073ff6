"""
CSRF token issuance and attachment.

Tokens are 256-bit random values persisted as one JSON blob in session
storage. Reading a token never fails: a missing or expired token is
re-minted on the spot.
"""

import logging
import re
import secrets
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel, ValidationError

from secure_client.core.security.storage import KeyValueStorage, MemoryStorage

logger = logging.getLogger(__name__)

CSRF_HEADER = "X-CSRF-Token"
STATE_CHANGING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
TOKEN_BYTES = 32  # 256 bit

_TOKEN_PATTERN = re.compile(r"^[0-9a-f]{64,}$")


class CsrfToken(BaseModel):
    value: str
    issued_at: datetime
    ttl_seconds: int

    @property
    def expires_at(self) -> datetime:
        return self.issued_at + timedelta(seconds=self.ttl_seconds)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class CsrfManager:
    """Mints, rotates and attaches anti-forgery tokens"""

    def __init__(
        self,
        storage: Optional[KeyValueStorage] = None,
        ttl_seconds: int = 3600,
        storage_key: str = "__csrf_token",
        clock: Callable[[], float] = time.time,
    ):
        self._storage = storage if storage is not None else MemoryStorage()
        self._ttl_seconds = ttl_seconds
        self._storage_key = storage_key
        self._clock = clock
        self._token: Optional[CsrfToken] = None

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    def mint(self) -> str:
        """Generate and store a fresh token"""
        token = CsrfToken(
            value=secrets.token_hex(TOKEN_BYTES),
            issued_at=self._now(),
            ttl_seconds=self._ttl_seconds,
        )
        self._token = token
        self._storage.set(self._storage_key, token.model_dump_json())
        logger.debug("🔐 Minted new CSRF token")
        return token.value

    def get(self) -> str:
        """Current token; re-minted transparently when absent or expired"""
        now = self._now()
        if self._token and not self._token.is_expired(now):
            return self._token.value

        stored = self._load()
        if stored and not stored.is_expired(now):
            self._token = stored
            return stored.value

        if self._token or stored:
            logger.info("⏰ CSRF token expired, rotating")
        return self.mint()

    def _load(self) -> Optional[CsrfToken]:
        raw = self._storage.get(self._storage_key)
        if not raw:
            return None
        try:
            return CsrfToken.model_validate_json(raw)
        except ValidationError:
            logger.warning("Discarding unreadable CSRF token from storage")
            self._storage.remove(self._storage_key)
            return None

    def attach(self, request):
        """
        Set the CSRF header on state-changing requests.

        ``request`` needs ``method`` and a mutable ``headers`` mapping.
        Safe methods are returned untouched.
        """
        method = (request.method or "").upper()
        if method not in STATE_CHANGING_METHODS:
            return request
        request.headers[CSRF_HEADER] = self.get()
        return request

    @staticmethod
    def validate(token: Optional[str]) -> bool:
        """Structural check only - the server does the real validation"""
        if not token or not isinstance(token, str):
            return False
        return bool(_TOKEN_PATTERN.match(token))

    def clear(self) -> None:
        self._token = None
        self._storage.remove(self._storage_key)

    def rotate(self) -> str:
        """Force a new token"""
        self.clear()
        return self.mint()

    def metadata(self) -> Dict[str, Any]:
        """Token information for debugging (the value itself is not exposed)"""
        now = self._now()
        token = self._token
        is_valid = bool(token and not token.is_expired(now))
        return {
            "has_token": token is not None,
            "is_valid": is_valid,
            "expires_in": (token.expires_at - now).total_seconds() if is_valid else None,
            "expires_at": token.expires_at.isoformat() if token else None,
        }
