# secure_client/models/request_models.py
"""
In-process records that travel through the request pipeline.
"""
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

STATE_CHANGING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
IDEMPOTENT_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "PUT", "DELETE"})


@dataclass
class RequestDescriptor:
    """One logical API call; reused unchanged across retries and replay"""
    method: str
    url: str
    params: Optional[Dict[str, Any]] = None
    body: Any = None
    headers: Dict[str, str] = field(default_factory=dict)
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    endpoint_key: Optional[str] = None
    skip_auth: bool = False
    skip_sanitize: bool = False
    replayed: bool = False
    # Access token the request was last sent with
    sent_token: Optional[str] = None

    def __post_init__(self):
        self.method = self.method.upper()

    @property
    def is_state_changing(self) -> bool:
        return self.method in STATE_CHANGING_METHODS

    @property
    def is_idempotent(self) -> bool:
        return self.method in IDEMPOTENT_METHODS


@dataclass
class ApiResponse:
    """Successful (2xx/3xx) outcome of a pipeline call"""
    status_code: int
    headers: Dict[str, str]
    data: Any
    request_id: str
    attempts: int = 1
    duration_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 400
