# devradar/conftest.py
import asyncio
import json
import os
from types import SimpleNamespace

# Must be set before devradar.core.config builds its settings.
os.environ.setdefault("ENV", "test")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("SKIP_ENV_VALIDATION", "1")
os.environ.pop("REDIS_URL", None)
os.environ.pop("DATABASE_URL", None)

import pytest
from fastapi.testclient import TestClient

from devradar.core.auth import CredentialVerifier
from devradar.core.config import Settings
from devradar.core.metrics import METRICS
from devradar.features.social.graph import InMemorySocialGraph
from devradar.features.stats.achievements import InMemoryAchievementLedger
from devradar.models.leaderboard import UserProfile


class FakeClock:
    """Settable wall clock. Starts on a Tuesday so week math has room both ways."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSocket:
    """Server-side stand-in for a Starlette WebSocket, driven from the test."""

    def __init__(self, token=None, host="127.0.0.1"):
        self.query_params = {"token": token} if token else {}
        self.client = SimpleNamespace(host=host)
        self.accepted = False
        self.sent = []
        self.close_code = None
        self.close_reason = None
        self._inbox = asyncio.Queue()

    async def accept(self):
        self.accepted = True

    async def send_text(self, text):
        if self.close_code is not None:
            raise RuntimeError("socket closed")
        self.sent.append(json.loads(text))

    async def close(self, code=1000, reason=""):
        if self.close_code is None:
            self.close_code = code
            self.close_reason = reason
            # The peer answers our close.
            self._inbox.put_nowait({"type": "websocket.disconnect", "code": code})

    async def receive(self):
        return await self._inbox.get()

    def push_text(self, text):
        self._inbox.put_nowait({"type": "websocket.receive", "text": text})

    def push_bytes(self, data):
        self._inbox.put_nowait({"type": "websocket.receive", "bytes": data})

    def disconnect(self, code=1000):
        self._inbox.put_nowait({"type": "websocket.disconnect", "code": code})

    def of_type(self, message_type):
        return [m for m in self.sent if m["type"] == message_type]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings_obj():
    return Settings(
        ENV="test",
        JWT_SECRET="test-secret",
        STORE_BACKEND="memory",
        REDIS_URL=None,
        DATABASE_URL=None,
        PRESENCE_GRACE_SECONDS=0.05,
        WS_WATCHDOG_INTERVAL_SECONDS=3600,
    )


@pytest.fixture
def verifier(clock):
    return CredentialVerifier("test-secret", time_fn=clock)


@pytest.fixture
def social_graph():
    graph = InMemorySocialGraph()
    for user_id in ("alice", "bob", "carol", "dave"):
        graph.add_profile(UserProfile(user_id=user_id, username=user_id, display_name=user_id.title()))
    graph.befriend("alice", "bob")
    graph.befriend("alice", "carol")
    return graph


@pytest.fixture
def ledger():
    return InMemoryAchievementLedger()


@pytest.fixture(autouse=True)
def reset_metrics():
    METRICS.reset()
    yield


@pytest.fixture
def make_app(settings_obj, social_graph, ledger):
    """App factory wired to in-memory collaborators."""
    from devradar.main import create_app
    from devradar.runtime import build_runtime

    def _make(**overrides):
        cfg = settings_obj.model_copy(update=overrides) if overrides else settings_obj

        async def factory():
            return await build_runtime(cfg, graph=social_graph, ledger=ledger)

        return create_app(cfg, runtime_factory=factory)

    return _make


@pytest.fixture
def client(make_app):
    with TestClient(make_app()) as test_client:
        yield test_client


@pytest.fixture
def token_for(client):
    verifier = client.app.state.runtime.verifier

    def _issue(user_id, **kwargs):
        return verifier.issue(user_id, **kwargs)

    return _issue


@pytest.fixture
def auth_headers(token_for):
    def _headers(user_id):
        return {"Authorization": f"Bearer {token_for(user_id)}"}

    return _headers


@pytest.fixture
def fake_socket():
    """Factory for FakeSocket; call it inside the running test loop."""
    return FakeSocket
