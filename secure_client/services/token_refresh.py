# secure_client/services/token_refresh.py
"""
Single-flight token refresh with ordered replay.

The first request that finds the access token expired (a 401, or the
proactive expiry check) starts one refresh call. Every request that runs
into the same condition while that call is in flight is parked in a FIFO
queue. When the refresh resolves the queue is drained in order: replayed
with the new token on success, rejected with AuthExpired on failure.
"""
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from secure_client.core.exceptions import AuthExpired, auth_expired
from secure_client.core.security.token_store import TokenPair, TokenStore
from secure_client.models.request_models import RequestDescriptor

logger = logging.getLogger(__name__)

RefreshFn = Callable[[str], Awaitable[TokenPair]]
ReplayFn = Callable[[RequestDescriptor], Awaitable[Any]]


class RefreshState(str, Enum):
    IDLE = "idle"
    REFRESHING = "refreshing"


@dataclass
class PendingRequest:
    descriptor: RequestDescriptor
    future: asyncio.Future
    replay: ReplayFn


class TokenRefreshCoordinator:
    """
    Owns the write side of the TokenStore for the refresh cycle.

    Exactly one refresh call can be in flight. The cycle runs in its own
    task, so cancelling one waiting caller never strands the others.
    """

    def __init__(
        self,
        token_store: TokenStore,
        refresh_fn: RefreshFn,
        skew_seconds: float = 0,
    ):
        """
        Args:
            token_store: Session token store
            refresh_fn: Exchanges a refresh token for a new pair; raises on rejection
            skew_seconds: Treat access tokens as expired this early
        """
        self._token_store = token_store
        self._refresh_fn = refresh_fn
        self._skew_seconds = skew_seconds

        self._state = RefreshState.IDLE
        self._queue: List[PendingRequest] = []
        self._cycle_task: Optional[asyncio.Task] = None

        # Metrics
        self._refresh_count = 0
        self._refresh_failures = 0
        self._replayed_count = 0
        self._rejected_count = 0

    @property
    def state(self) -> RefreshState:
        return self._state

    @property
    def is_refreshing(self) -> bool:
        return self._state is RefreshState.REFRESHING

    @property
    def queue_length(self) -> int:
        return len(self._queue)

    def is_expired(self) -> bool:
        """Stored access token is expired (skew included)"""
        return self._token_store.is_access_token_expired(self._skew_seconds)

    def establish(self, pair: TokenPair) -> None:
        """Login: install a fresh token pair"""
        self._token_store.replace(pair)
        logger.info("🔐 Session established")

    def logout(self) -> None:
        self._token_store.clear()
        logger.info("👋 Session logged out")

    async def submit(self, descriptor: RequestDescriptor, replay: ReplayFn) -> Any:
        """
        Hand over a request that needs a valid token.

        Returns whatever ``replay`` returns for the descriptor once a valid
        token is in place.

        Raises:
            AuthExpired: No refresh possible, the refresh was rejected, or the
                request was already replayed once
        """
        if descriptor.replayed:
            # A replayed request got 401 with the fresh token: no second refresh
            self._token_store.clear()
            self._rejected_count += 1
            logger.warning(f"🚫 Replayed request {descriptor.request_id[:8]} rejected, logging out")
            raise auth_expired("rejected after refresh", descriptor.request_id)

        if self._state is RefreshState.IDLE:
            if not self._token_store.refresh_token:
                self._token_store.clear()
                self._rejected_count += 1
                raise auth_expired("no refresh token", descriptor.request_id)

            current = self._token_store.access_token
            if (
                descriptor.sent_token is not None
                and descriptor.sent_token != current
                and not self.is_expired()
            ):
                # Token was replaced since this request went out
                logger.debug(f"Request {descriptor.request_id[:8]} replays with the current token")
                descriptor.replayed = True
                self._replayed_count += 1
                return await replay(descriptor)

        future = asyncio.get_running_loop().create_future()
        self._queue.append(PendingRequest(descriptor, future, replay))

        if self._state is RefreshState.IDLE:
            self._state = RefreshState.REFRESHING
            self._cycle_task = asyncio.create_task(self._run_cycle())
            logger.info("🔄 Access token expired, refreshing")
        else:
            logger.debug(f"Request {descriptor.request_id[:8]} queued behind refresh ({len(self._queue)})")

        return await future

    async def _run_cycle(self) -> None:
        self._refresh_count += 1
        pending: List[PendingRequest] = []
        try:
            try:
                pair = await self._refresh_fn(self._token_store.refresh_token)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._refresh_failures += 1
                logger.warning(f"❌ Token refresh failed: {type(e).__name__}: {e}")
                self._state = RefreshState.IDLE
                self._token_store.clear()
                pending, self._queue = self._queue, []
                for item in pending:
                    self._reject(item, "refresh rejected", cause=e)
                return

            self._token_store.replace(pair)
            self._state = RefreshState.IDLE
            pending, self._queue = self._queue, []
            logger.info(f"✅ Token refreshed, replaying {len(pending)} request(s)")

            # Strict FIFO: each replay completes before the next starts
            for item in pending:
                if item.future.done():
                    continue  # caller withdrew
                item.descriptor.replayed = True
                self._replayed_count += 1
                try:
                    result = await item.replay(item.descriptor)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    if not item.future.done():
                        item.future.set_exception(e)
                else:
                    if not item.future.done():
                        item.future.set_result(result)
        finally:
            if self._state is RefreshState.REFRESHING:
                # Cancelled before the refresh call resolved
                self._state = RefreshState.IDLE
                pending, self._queue = pending + self._queue, []
            for item in pending:
                self._reject(item, "refresh cycle aborted")
            if self._cycle_task is asyncio.current_task():
                self._cycle_task = None

    def _reject(self, item: PendingRequest, reason: str, cause: Optional[BaseException] = None) -> None:
        if item.future.done():
            return
        error = auth_expired(reason, item.descriptor.request_id)
        error.__cause__ = cause
        item.future.set_exception(error)
        self._rejected_count += 1

    async def close(self) -> None:
        """Abort a running cycle; anything still queued gets AuthExpired"""
        task = self._cycle_task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        for item in self._queue:
            self._reject(item, "session closed")
        self._queue = []
        self._state = RefreshState.IDLE

    def get_stats(self) -> Dict[str, Any]:
        return {
            "state": self._state.value,
            "queued": len(self._queue),
            "refreshes": self._refresh_count,
            "refresh_failures": self._refresh_failures,
            "replayed": self._replayed_count,
            "rejected": self._rejected_count,
        }
