"""
Security telemetry for outbound requests.
Flags suspicious payloads, counts rate limit violations and logs request timing.
"""

import logging
import time
from typing import Any, Dict, Iterator, Mapping, Optional

from secure_client.core.security.xss import detect
from secure_client.models.request_models import RequestDescriptor

logger = logging.getLogger(__name__)


class SecurityMonitor:
    """Looks for injection patterns in payloads before they are sanitized"""

    def __init__(self):
        self.suspicious_patterns = [
            "../",  # Path traversal
            "${",  # Template injection
            "{{",  # Template injection
        ]
        self.suspicious_requests = 0

    def inspect_payload(self, descriptor: RequestDescriptor) -> bool:
        """Log (don't block) a request whose url or body looks like an attack"""
        findings = []
        if self._is_suspicious(descriptor.url):
            findings.append("url")
        for path, value in _string_leaves(descriptor.body):
            if self._is_suspicious(value):
                findings.append(path or "body")

        if not findings:
            return False

        self.suspicious_requests += 1
        logger.warning(
            f"⚠️ Suspicious content in {descriptor.method} {descriptor.url} "
            f"[{descriptor.request_id[:8]}]: {', '.join(findings[:5])}"
        )
        return True

    def _is_suspicious(self, value: str) -> bool:
        if detect(value):
            return True
        return any(pattern in value for pattern in self.suspicious_patterns)


def _string_leaves(value: Any, path: str = "") -> Iterator:
    if isinstance(value, str):
        yield path, value
    elif isinstance(value, Mapping):
        for key, item in value.items():
            yield from _string_leaves(item, f"{path}.{key}" if path else str(key))
    elif isinstance(value, (list, tuple)):
        for index, item in enumerate(value):
            yield from _string_leaves(item, f"{path}[{index}]")


class RateLimitMonitor:
    """Monitor and log client-side rate limit violations"""

    def __init__(self, violation_threshold: int = 10):
        self.violations: Dict[str, int] = {}  # endpoint key -> violation count
        self.violation_threshold = violation_threshold

    def record_violation(self, endpoint_key: str) -> bool:
        """Record a violation; True once the endpoint crossed the threshold"""
        self.violations[endpoint_key] = self.violations.get(endpoint_key, 0) + 1

        logger.warning(f"🚦 Rate limit violation #{self.violations[endpoint_key]} on '{endpoint_key}'")

        if self.violations[endpoint_key] >= self.violation_threshold:
            logger.error(f"🚫 '{endpoint_key}' exceeded violation threshold - caller is looping?")
            return True
        return False

    def get_violation_stats(self) -> dict:
        return {
            "total_endpoints": len(self.violations),
            "total_violations": sum(self.violations.values()),
            "top_endpoints": sorted(
                self.violations.items(),
                key=lambda x: x[1],
                reverse=True
            )[:10]
        }


class RequestLogger:
    """Request counting and slow-request logging per endpoint key"""

    def __init__(self, slow_request_ms: float = 1000, clock=time.monotonic):
        self.request_counts: Dict[str, int] = {}
        self.failure_counts: Dict[str, int] = {}
        self.slow_request_ms = slow_request_ms
        self._clock = clock
        self.start_time = clock()

    def log_request(self, descriptor: RequestDescriptor) -> None:
        key = descriptor.endpoint_key or "global"
        self.request_counts[key] = self.request_counts.get(key, 0) + 1

        if descriptor.skip_auth:
            logger.info(f"🔓 Unauthenticated {descriptor.method} {descriptor.url} [{descriptor.request_id[:8]}]")
        else:
            logger.debug(f"➡️ {descriptor.method} {descriptor.url} [{descriptor.request_id[:8]}]")

    def log_response(
        self,
        descriptor: RequestDescriptor,
        status_code: Optional[int],
        duration_ms: float,
        attempts: int = 1,
    ) -> None:
        key = descriptor.endpoint_key or "global"
        if status_code is None or status_code >= 400:
            self.failure_counts[key] = self.failure_counts.get(key, 0) + 1

        if duration_ms > self.slow_request_ms:
            logger.warning(
                f"⏱️ Slow request: {descriptor.method} {descriptor.url} took {duration_ms:.0f}ms "
                f"({attempts} attempt(s))"
            )
        else:
            logger.debug(f"⬅️ {status_code} {descriptor.url} in {duration_ms:.0f}ms")

    def get_stats(self) -> dict:
        uptime = self._clock() - self.start_time
        total_requests = sum(self.request_counts.values())

        return {
            "uptime_seconds": uptime,
            "total_requests": total_requests,
            "failed_requests": sum(self.failure_counts.values()),
            "requests_per_second": total_requests / uptime if uptime > 0 else 0,
            "top_endpoints": sorted(
                self.request_counts.items(),
                key=lambda x: x[1],
                reverse=True
            )[:10]
        }
