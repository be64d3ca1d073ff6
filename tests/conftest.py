# tests/conftest.py
"""
Shared fixtures for pipeline tests.

Time is faked (clock + recording sleep) and the backend is either an
httpx.MockTransport handler or a small FastAPI app mounted through
httpx.ASGITransport.
"""

import asyncio
import json
import random
from typing import Dict, List, Optional

import httpx
import pytest
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from secure_client.core.config import Settings
from secure_client.core.security.storage import MemoryStorage
from secure_client.services.request_pipeline import RequestPipeline

BASE_URL = "http://testserver/api/v1"


class FakeClock:
    """Epoch-seconds clock that only moves when told to"""

    def __init__(self, start_ms: int = 1_700_000_000_000):
        self._ms = start_ms

    def __call__(self) -> float:
        return self._ms / 1000

    @property
    def ms(self) -> int:
        return self._ms

    def advance(self, seconds: float) -> None:
        self._ms += round(seconds * 1000)


class RecordingSleep:
    """Stand-in for asyncio.sleep that remembers requested delays"""

    def __init__(self):
        self.delays: List[float] = []
        # When set, every sleep blocks until the event fires
        self.gate: Optional[asyncio.Event] = None

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self.gate is not None:
            await self.gate.wait()
        else:
            await asyncio.sleep(0)


def make_settings(**overrides) -> Settings:
    values = {
        "API_BASE_URL": BASE_URL,
        "RETRY_JITTER_MS": 0,
    }
    values.update(overrides)
    return Settings(**values)


class StubState:
    """Server-side auth state of the stub API"""

    def __init__(self):
        self.valid_tokens = {"access-1"}
        self.refresh_tokens = {"refresh-1"}
        self.refresh_status = 200
        self.refresh_calls = 0
        self.issued = 1
        self.seen: List[Dict[str, Optional[str]]] = []


def create_stub_api(state: StubState) -> FastAPI:
    app = FastAPI()

    def bearer(request: Request) -> Optional[str]:
        auth = request.headers.get("authorization", "")
        return auth[len("Bearer "):] if auth.startswith("Bearer ") else None

    @app.post("/api/v1/auth/refresh")
    async def refresh(request: Request):
        state.refresh_calls += 1
        if not request.headers.get("x-csrf-token"):
            return JSONResponse({"detail": "CSRF token missing"}, status_code=403)
        if state.refresh_status != 200:
            return JSONResponse({"detail": "refresh rejected"}, status_code=state.refresh_status)

        body = await request.json()
        if body.get("refresh_token") not in state.refresh_tokens:
            return JSONResponse({"detail": "unknown refresh token"}, status_code=401)

        state.issued += 1
        access_token = f"access-{state.issued}"
        refresh_token = f"refresh-{state.issued}"
        state.valid_tokens = {access_token}
        state.refresh_tokens = {refresh_token}
        return {"access_token": access_token, "refresh_token": refresh_token, "expires_in": 3600}

    @app.get("/api/v1/health")
    async def health():
        return {"status": "ok"}

    @app.api_route("/api/v1/{path:path}", methods=["GET", "POST", "PUT", "PATCH", "DELETE"])
    async def resource(path: str, request: Request):
        token = bearer(request)
        state.seen.append({"method": request.method, "path": f"/{path}", "token": token})

        if path.startswith("private") or token not in state.valid_tokens:
            return JSONResponse({"detail": "Not authenticated"}, status_code=401)

        raw = await request.body()
        return {
            "path": f"/{path}",
            "token": token,
            "request_id": request.headers.get("x-request-id"),
            "csrf": request.headers.get("x-csrf-token"),
            "body": json.loads(raw) if raw else None,
        }

    return app


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def stub_state():
    return StubState()


@pytest.fixture
async def make_pipeline(clock, recording_sleep):
    """Factory for pipelines on a MockTransport handler or an ASGI app"""
    created = []

    def _make(handler=None, app=None, **overrides) -> RequestPipeline:
        if app is not None:
            transport = httpx.ASGITransport(app=app)
        else:
            transport = httpx.MockTransport(handler)
        pipeline = RequestPipeline(
            make_settings(**overrides),
            transport=transport,
            clock=clock,
            sleep=recording_sleep,
            rng=random.Random(0),
        )
        created.append(pipeline)
        return pipeline

    yield _make

    for pipeline in created:
        await pipeline.shutdown()


@pytest.fixture
def settings_factory():
    return make_settings


@pytest.fixture
def stub_api(stub_state):
    return create_stub_api(stub_state)
