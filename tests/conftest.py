"""Root test configuration for authproxy.

Shared fixtures:
  - clock          — FixedClock pinned to 2024-05-01T12:00:00Z, advanced manually
  - config         — Config for the "test" environment with a tmp_path database
  - db             — initialized Database in tmp_path
  - upstream       — MockUpstream recording every forwarded request
  - notifier       — RecordingNotifier capturing delivered codes
  - app / client   — app with state wired by init_state() and ready=True, driven
                     in-process through httpx.ASGITransport (no lifespan)
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, Optional

import httpx
import pytest
from fastapi import FastAPI

from authproxy.audit.sqlite_backend import SQLiteAuditBackend
from authproxy.auth.limiter import limiter
from authproxy.auth.users import get_or_create_user
from authproxy.config import Config
from authproxy.db import Database
from authproxy.main import create_app, init_state
from authproxy.notify.mailer import Delivery

START = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


# ─── Helpers ──────────────────────────────────────────────────────────────────


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


async def _chunks(body: bytes, size: int = 8) -> AsyncIterator[bytes]:
    for start in range(0, len(body), size):
        yield body[start : start + size]


class MockUpstream:
    """In-process upstream using httpx.MockTransport.

    Records every request and returns a configurable response whose body is
    streamed in small chunks, the way a socket delivers it.  Set ``error`` to
    raise a transport error instead, or ``delay`` to stall before answering.
    """

    def __init__(
        self,
        *,
        status_code: int = 200,
        body: bytes = b'{"result": "ok"}',
        headers: Optional[dict[str, str]] = None,
    ) -> None:
        self.requests: list[httpx.Request] = []
        self.status_code = status_code
        self.body = body
        self.headers = headers or {"content-type": "application/json"}
        self.error: Optional[Exception] = None
        self.delay: float = 0.0

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        headers = {**self.headers, "content-length": str(len(self.body))}
        return httpx.Response(self.status_code, content=_chunks(self.body), headers=headers)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


class RecordingNotifier:
    """Notifier that records codes instead of sending email.

    ``debug`` makes deliveries report debug mode (code echoed to the caller);
    ``error`` is raised from send_code instead of delivering.
    """

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []
        self.debug = False
        self.error: Optional[Exception] = None

    async def send_code(self, to_email: str, code: str) -> Delivery:
        if self.error is not None:
            raise self.error
        self.sent.append((to_email, code))
        return Delivery(debug=self.debug, code=code if self.debug else None)

    async def aclose(self) -> None:
        pass

    def last_code(self) -> str:
        return self.sent[-1][1]


def make_config(tmp_path: Path) -> Config:
    config = Config.defaults()
    config.environment = "test"
    config.database.path = str(tmp_path / "authproxy.db")
    config.upstream.base_url = "http://upstream.internal"
    return config


async def create_user_with_key(app: FastAPI, email: str = "dev@example.com") -> tuple[int, str]:
    """Create a user and one active key; returns (user_id, full_key)."""
    state = app.state
    user = await get_or_create_user(state.db, email, state.clock())
    created = await state.keys.create(user.id, "test", state.clock())
    return user.id, created.key


# ─── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def reset_rate_limiter() -> None:
    """Reset the in-memory rate limiter storage between tests.

    Without this, login and key-management tests that share a client address
    would run into each other's 20/minute windows.
    """
    limiter._storage.reset()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def config(tmp_path: Path) -> Config:
    return make_config(tmp_path)


@pytest.fixture
async def db(config: Config) -> Database:
    database = Database(config.database.path)
    await database.initialize()
    return database


@pytest.fixture
def upstream() -> MockUpstream:
    return MockUpstream()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def build_app(
    config: Config,
    db: Database,
    upstream: MockUpstream,
    notifier: RecordingNotifier,
    clock: FixedClock,
) -> Callable[[], FastAPI]:
    """Factory: a ready app wired to the mock upstream (lifespan skipped).

    Tests that need a non-default config mutate ``config`` before calling it.
    """

    def _build() -> FastAPI:
        application = create_app()
        init_state(
            application,
            config,
            db,
            audit_backend=SQLiteAuditBackend(db),
            notifier=notifier,
            http_client=upstream.client(),
            clock=clock,
        )
        application.state.ready = True
        return application

    return _build


@pytest.fixture
def app(build_app: Callable[[], FastAPI]) -> FastAPI:
    return build_app()


@pytest.fixture
async def client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as http:
        yield http


@pytest.fixture
def make_key(app: FastAPI) -> Callable[..., Awaitable[tuple[int, str]]]:
    """Async factory: ``user_id, key = await make_key("dev@example.com")``."""

    async def _make(email: str = "dev@example.com") -> tuple[int, str]:
        return await create_user_with_key(app, email)

    return _make


@pytest.fixture
def login(client: httpx.AsyncClient, notifier: RecordingNotifier) -> Callable[..., Awaitable[dict]]:
    """Async factory: run /auth/login + /auth/verify; the client keeps the session cookie.

    Returns the verify response body (user_id, email, csrf_token).
    """

    async def _login(email: str = "dev@example.com") -> dict:
        sent = await client.post("/auth/login", json={"email": email})
        assert sent.status_code == 200, sent.text
        verified = await client.post("/auth/verify", json={"email": email, "code": notifier.last_code()})
        assert verified.status_code == 200, verified.text
        return verified.json()

    return _login
