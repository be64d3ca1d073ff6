# secure_client/services/request_pipeline.py
"""
Request pipeline - the single path every outbound API call takes.

Per call:
1. Identical in-flight GETs are coalesced
2. Client-side rate limit per endpoint class
3. CSRF token for state-changing verbs
4. Payload sanitization
5. Access token (with proactive refresh when it already expired)
6. Dispatch with retry/backoff; 401 goes to the refresh coordinator
"""
import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Optional, Tuple
from urllib.parse import urlsplit

import httpx

from secure_client.core.config import Settings, settings, validate_settings
from secure_client.core.exceptions import (
    ClientError,
    ConfigurationError,
    PipelineError,
    RateLimitExceeded,
    TransientNetworkError,
    auth_expired,
)
from secure_client.core.logging_config import request_id_var
from secure_client.core.rate_limit_config import get_rate_limit_message
from secure_client.core.security.csrf import CsrfManager
from secure_client.core.security.rate_limiter import RateLimiter
from secure_client.core.security.sanitizer import Sanitizer
from secure_client.core.security.storage import MemoryStorage
from secure_client.core.security.token_store import TokenPair, TokenStore
from secure_client.core.service_base import BaseService
from secure_client.middleware.security_monitor import (
    RateLimitMonitor,
    RequestLogger,
    SecurityMonitor,
)
from secure_client.models.request_models import ApiResponse, RequestDescriptor
from secure_client.services.token_refresh import TokenRefreshCoordinator

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-Id"
API_VERSION_HEADER = "X-API-Version"

# Failures that happen before the server could have seen the request
CONNECT_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout)


@dataclass
class RetryPolicy:
    """Exponential backoff for transient failures"""
    max_retries: int = 3
    base_delay_ms: int = 1000
    multiplier: float = 2.0
    max_delay_ms: int = 10000
    jitter_ms: int = 250
    retryable_status_codes: FrozenSet[int] = field(
        default_factory=lambda: frozenset({408, 429, 500, 502, 503, 504})
    )

    @classmethod
    def from_settings(cls, config: Settings) -> "RetryPolicy":
        return cls(
            max_retries=config.RETRY_MAX_RETRIES,
            base_delay_ms=config.RETRY_BASE_DELAY_MS,
            multiplier=config.RETRY_MULTIPLIER,
            max_delay_ms=config.RETRY_MAX_DELAY_MS,
            jitter_ms=config.RETRY_JITTER_MS,
            retryable_status_codes=frozenset(config.RETRYABLE_STATUS_CODES),
        )

    def delay(self, retry: int, rng: random.Random) -> float:
        """Seconds to wait before retry number ``retry`` (1-based)"""
        backoff = min(self.base_delay_ms * self.multiplier ** (retry - 1), self.max_delay_ms)
        jitter = rng.uniform(0, self.jitter_ms) if self.jitter_ms > 0 else 0
        return (backoff + jitter) / 1000


def _retry_after_seconds(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        # HTTP-date form is not used by the API; fall back to backoff
        return None


def _decode_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


@dataclass
class _SharedCall:
    """One in-flight GET and the callers waiting on it"""
    task: asyncio.Task
    subscribers: int = 0


class RequestPipeline(BaseService[Settings]):
    """
    Guarded HTTP client for one session.

    Token store and CSRF token are session objects: pass your own (e.g. backed
    by persistent storage) or let the pipeline create in-memory ones.
    """

    def __init__(
        self,
        config: Optional[Settings] = None,
        *,
        token_store: Optional[TokenStore] = None,
        csrf_manager: Optional[CsrfManager] = None,
        rate_limiter: Optional[RateLimiter] = None,
        sanitizer: Optional[Sanitizer] = None,
        retry_policy: Optional[RetryPolicy] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Any] = asyncio.sleep,
        rng: Optional[random.Random] = None,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Args:
            config: Pipeline settings, the module-level ``settings`` by default
            token_store: Session token store
            csrf_manager: Session CSRF manager
            rate_limiter: Limiter; built from the settings' rate table if omitted
            sanitizer: Payload sanitizer; built from SANITIZER_RULES if omitted
            retry_policy: Backoff policy; built from the RETRY_* settings if omitted
            transport: httpx transport (tests mount a stub app here)
            clock: Epoch seconds, shared by limiter and token stores
            sleep: Awaitable sleep used for backoff
            rng: Jitter source
        """
        super().__init__(config or settings, logger)
        config = self.config
        storage = MemoryStorage()

        self.token_store = token_store or TokenStore(storage, config.TOKEN_STORAGE_KEY, clock)
        self.csrf_manager = csrf_manager or CsrfManager(
            storage, config.CSRF_TTL_SECONDS, config.CSRF_STORAGE_KEY, clock
        )
        # Built in _initialize_client once the configuration is validated
        self._rate_limiter = rate_limiter
        self._sanitizer = sanitizer
        self.retry_policy = retry_policy or RetryPolicy.from_settings(config)

        self.coordinator = TokenRefreshCoordinator(
            self.token_store,
            self._call_refresh_endpoint,
            skew_seconds=config.TOKEN_EXPIRY_SKEW_SECONDS,
        )
        self.security_monitor = SecurityMonitor()
        self.rate_limit_monitor = RateLimitMonitor(config.RATE_LIMIT_VIOLATION_THRESHOLD)
        self.request_logger = RequestLogger(config.SLOW_REQUEST_MS)

        self._transport = transport
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()

        self._inflight: Dict[Tuple, _SharedCall] = {}
        self._dedup_hits = 0
        self._retry_count = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _validate_config(self) -> None:
        problems = validate_settings(self.config)
        if problems:
            raise ConfigurationError(
                "Invalid request pipeline configuration",
                component="settings",
                details={"problems": problems},
            )

    async def _initialize_client(self) -> httpx.AsyncClient:
        if self._rate_limiter is None:
            self._rate_limiter = RateLimiter(self.config.rate_limit_table(), self._clock)
        if self._sanitizer is None:
            self._sanitizer = Sanitizer(self.config.SANITIZER_RULES)

        return httpx.AsyncClient(
            base_url=self.config.API_BASE_URL,
            timeout=self.config.REQUEST_TIMEOUT,
            transport=self._transport,
            headers={"Accept": "application/json"},
        )

    async def _cleanup(self) -> None:
        for shared in list(self._inflight.values()):
            shared.task.cancel()
        self._inflight.clear()
        await self.coordinator.close()
        if self._client is not None:
            await self._client.aclose()

    @property
    def rate_limiter(self) -> RateLimiter:
        if self._rate_limiter is None:
            self._rate_limiter = RateLimiter(self.config.rate_limit_table(), self._clock)
        return self._rate_limiter

    @property
    def sanitizer(self) -> Sanitizer:
        if self._sanitizer is None:
            self._sanitizer = Sanitizer(self.config.SANITIZER_RULES)
        return self._sanitizer

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    def login(self, access_token: str, refresh_token: str, expires_in: float) -> TokenPair:
        """Install the tokens returned by the login endpoint"""
        pair = TokenPair.from_refresh_response(
            {"access_token": access_token, "refresh_token": refresh_token, "expires_in": expires_in},
            self.token_store.now(),
        )
        self.coordinator.establish(pair)
        self.csrf_manager.rotate()
        return pair

    def logout(self) -> None:
        self.coordinator.logout()
        self.csrf_manager.clear()

    @property
    def is_authenticated(self) -> bool:
        return self.token_store.has_token()

    # ------------------------------------------------------------------
    # Public request API
    # ------------------------------------------------------------------

    async def request(
        self,
        method: str,
        url: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
        skip_auth: bool = False,
        skip_sanitize: bool = False,
    ) -> ApiResponse:
        """
        Send one API call through the pipeline.

        Raises:
            RateLimitExceeded: Client-side window full, nothing was sent
            AuthExpired: Session could not be refreshed; tokens are cleared
            TransientNetworkError: Network/5xx failure after all retries
            ClientError: Any other 4xx response
        """
        await self.ensure_initialized()

        descriptor = RequestDescriptor(
            method=method,
            url=url,
            params=dict(params) if params else None,
            body=json,
            headers=dict(headers or {}),
            skip_auth=skip_auth,
            skip_sanitize=skip_sanitize or self._is_sanitize_exempt(url),
        )

        if descriptor.method != "GET":
            return await self._execute(descriptor)

        key = self._dedup_key(descriptor)
        shared = self._inflight.get(key)
        if shared is not None:
            self._dedup_hits += 1
            logger.debug(f"♻️ Joining in-flight GET {url}")
        else:
            shared = _SharedCall(asyncio.create_task(self._execute(descriptor)))
            self._inflight[key] = shared

            def _forget(done: asyncio.Task) -> None:
                if self._inflight.get(key) is shared:
                    del self._inflight[key]
                if not done.cancelled():
                    # Mark retrieved even when every subscriber went away
                    done.exception()

            shared.task.add_done_callback(_forget)

        shared.subscribers += 1
        try:
            # Shielded so one cancelled subscriber doesn't cancel the others
            return await asyncio.shield(shared.task)
        finally:
            shared.subscribers -= 1
            if shared.subscribers == 0 and not shared.task.done():
                # Last subscriber withdrew: drop it from backoff and the refresh queue
                if self._inflight.get(key) is shared:
                    del self._inflight[key]
                shared.task.cancel()

    async def get(self, url: str, params: Optional[Dict[str, Any]] = None, **kwargs) -> ApiResponse:
        return await self.request("GET", url, params=params, **kwargs)

    async def post(self, url: str, json: Any = None, **kwargs) -> ApiResponse:
        return await self.request("POST", url, json=json, **kwargs)

    async def put(self, url: str, json: Any = None, **kwargs) -> ApiResponse:
        return await self.request("PUT", url, json=json, **kwargs)

    async def patch(self, url: str, json: Any = None, **kwargs) -> ApiResponse:
        return await self.request("PATCH", url, json=json, **kwargs)

    async def delete(self, url: str, **kwargs) -> ApiResponse:
        return await self.request("DELETE", url, **kwargs)

    # ------------------------------------------------------------------
    # Pipeline stages
    # ------------------------------------------------------------------

    @staticmethod
    def _dedup_key(descriptor: RequestDescriptor) -> Tuple:
        params = tuple(sorted((str(k), str(v)) for k, v in (descriptor.params or {}).items()))
        headers = tuple(sorted((k.lower(), v) for k, v in descriptor.headers.items()))
        return descriptor.method, descriptor.url, params, descriptor.skip_auth, headers

    def _is_sanitize_exempt(self, url: str) -> bool:
        path = urlsplit(url).path.rstrip("/")
        return any(path.endswith(exempt.rstrip("/")) for exempt in self.config.SANITIZE_SKIP_PATHS)

    async def _execute(self, descriptor: RequestDescriptor) -> ApiResponse:
        descriptor.endpoint_key = self.rate_limiter.resolve_key(descriptor.url)
        status = self.rate_limiter.check(descriptor.endpoint_key)
        if not status.allowed:
            self.rate_limit_monitor.record_violation(descriptor.endpoint_key)
            raise RateLimitExceeded(
                get_rate_limit_message(descriptor.endpoint_key),
                endpoint_key=descriptor.endpoint_key,
                reset_at=status.reset_at,
                retry_after=status.retry_after,
                request_id=descriptor.request_id,
            )

        self.request_logger.log_request(descriptor)
        self.security_monitor.inspect_payload(descriptor)
        if descriptor.body is not None and not descriptor.skip_sanitize:
            descriptor.body = self.sanitizer.sanitize(descriptor.body)

        started = time.monotonic()
        try:
            if not descriptor.skip_auth and (self.coordinator.is_refreshing or self.coordinator.is_expired()):
                descriptor.sent_token = self.token_store.access_token
                response = await self.coordinator.submit(descriptor, self._send)
            else:
                response = await self._send(descriptor)
        except PipelineError as e:
            duration_ms = (time.monotonic() - started) * 1000
            self.request_logger.log_response(descriptor, getattr(e, "status_code", None), duration_ms)
            logger.warning(f"❌ {descriptor.method} {descriptor.url} failed: {e.kind.value} - {e.message}")
            raise

        response.duration_ms = (time.monotonic() - started) * 1000
        self.request_logger.log_response(descriptor, response.status_code, response.duration_ms, response.attempts)
        return response

    async def _send(self, descriptor: RequestDescriptor) -> ApiResponse:
        """Dispatch (with retries) and map the final response"""
        response, attempts = await self._dispatch_with_retry(descriptor)
        status_code = response.status_code

        if status_code == 401 and not descriptor.skip_auth:
            return await self.coordinator.submit(descriptor, self._send)

        if status_code >= 400:
            raise ClientError(
                f"{status_code} {response.reason_phrase} for {descriptor.method} {descriptor.url}",
                status_code=status_code,
                response_body=_decode_body(response),
                request_id=descriptor.request_id,
            )

        return ApiResponse(
            status_code=status_code,
            headers=dict(response.headers),
            data=_decode_body(response),
            request_id=descriptor.request_id,
            attempts=attempts,
        )

    async def _dispatch_with_retry(self, descriptor: RequestDescriptor) -> Tuple[httpx.Response, int]:
        policy = self.retry_policy
        attempt = 0

        while True:
            attempt += 1
            try:
                response = await self._dispatch_once(descriptor)
            except httpx.TransportError as e:
                # Non-idempotent verbs only retry when the request never left
                retryable = descriptor.is_idempotent or isinstance(e, CONNECT_ERRORS)
                if not retryable or attempt > policy.max_retries:
                    raise TransientNetworkError(
                        f"Network error on {descriptor.method} {descriptor.url}: {type(e).__name__}",
                        attempts=attempt,
                        request_id=descriptor.request_id,
                    ) from e
                delay = policy.delay(attempt, self._rng)
                reason = type(e).__name__
            except httpx.RequestError as e:
                raise TransientNetworkError(
                    f"Request failed on {descriptor.method} {descriptor.url}: {type(e).__name__}",
                    attempts=attempt,
                    request_id=descriptor.request_id,
                ) from e
            else:
                status_code = response.status_code
                if status_code < 500 and status_code not in policy.retryable_status_codes:
                    return response, attempt

                # A server 429 means the request was refused, not processed
                retryable = descriptor.is_idempotent or status_code == 429
                if not retryable or attempt > policy.max_retries:
                    raise TransientNetworkError(
                        f"Server returned {status_code} for {descriptor.method} {descriptor.url}",
                        attempts=attempt,
                        status_code=status_code,
                        request_id=descriptor.request_id,
                        details={"response_body": _decode_body(response)},
                    )
                delay = policy.delay(attempt, self._rng)
                retry_after = _retry_after_seconds(response)
                if retry_after is not None:
                    delay = max(delay, retry_after)
                reason = f"HTTP {status_code}"

            self._retry_count += 1
            logger.info(
                f"🔁 Retry {attempt}/{policy.max_retries} for {descriptor.method} {descriptor.url} "
                f"in {delay:.2f}s ({reason})"
            )
            await self._sleep(delay)

    async def _dispatch_once(self, descriptor: RequestDescriptor) -> httpx.Response:
        """One HTTP exchange; CSRF and access token are read fresh every time"""
        if descriptor.is_state_changing:
            self.csrf_manager.attach(descriptor)

        headers = dict(descriptor.headers)
        headers[REQUEST_ID_HEADER] = descriptor.request_id
        headers[API_VERSION_HEADER] = self.config.API_VERSION

        token = None if descriptor.skip_auth else self.token_store.access_token
        descriptor.sent_token = token
        if token:
            headers["Authorization"] = f"Bearer {token}"

        context_token = request_id_var.set(descriptor.request_id)
        try:
            return await self.client.request(
                descriptor.method,
                descriptor.url,
                params=descriptor.params,
                json=descriptor.body,
                headers=headers,
            )
        finally:
            request_id_var.reset(context_token)

    async def _call_refresh_endpoint(self, refresh_token: str) -> TokenPair:
        """
        Exchange the refresh token. Bypasses rate limiting, sanitization and
        retries; any failure ends the session.
        """
        descriptor = RequestDescriptor(
            method="POST",
            url=self.config.REFRESH_PATH,
            body={"refresh_token": refresh_token},
            skip_auth=True,
            skip_sanitize=True,
        )
        response = await self._dispatch_once(descriptor)
        if not response.is_success:
            raise auth_expired(f"refresh endpoint returned {response.status_code}", descriptor.request_id)
        return TokenPair.from_refresh_response(response.json(), self.token_store.now())

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    async def health_check(self) -> Dict[str, Any]:
        """Probe the API health endpoint (outside rate limiting and auth)"""
        try:
            await self.ensure_initialized()
            start = time.monotonic()
            response = await self.client.get(
                self.config.HEALTH_PATH,
                headers={API_VERSION_HEADER: self.config.API_VERSION},
            )
            response_time_ms = (time.monotonic() - start) * 1000
            healthy = response.is_success
            return {
                "healthy": healthy,
                "status": "connected" if healthy else f"unhealthy ({response.status_code})",
                "details": {
                    "status_code": response.status_code,
                    "response_time_ms": round(response_time_ms, 2),
                    "refresh_state": self.coordinator.state.value,
                },
            }
        except (httpx.HTTPError, PipelineError) as e:
            logger.error(f"Health check failed: {e}")
            return {
                "healthy": False,
                "status": "error",
                "details": {"error": str(e), "error_type": type(e).__name__},
            }

    def get_metrics(self) -> Dict[str, Any]:
        metrics = super().get_metrics()
        metrics.update({
            "authenticated": self.is_authenticated,
            "rate_limits": self.rate_limiter.statuses(),
            "requests": self.request_logger.get_stats(),
            "rate_limit_violations": self.rate_limit_monitor.get_violation_stats(),
            "token_refresh": self.coordinator.get_stats(),
            "csrf": self.csrf_manager.metadata(),
            "retries": self._retry_count,
            "deduplicated": self._dedup_hits,
            "inflight_gets": len(self._inflight),
            "sanitizer_downgrades": self.sanitizer.downgrades,
            "suspicious_requests": self.security_monitor.suspicious_requests,
        })
        return metrics
