import pytest

from parley.auth import issue_token
from parley.calls import CallCoordinator
from parley.config import Settings
from parley.conversation_keys import InMemoryConversationDirectory
from parley.server import create_app

SECRET = "test-secret"


class FakeClock:
    """Manually advanced clock for expiry tests."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ── Fixtures ────────────────────────────────────────────────────────


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(secret_key=SECRET, home=tmp_path, ring_timeout=60.0, poll_interval=0.01)


@pytest.fixture
def directory():
    d = InMemoryConversationDirectory()
    d.add("conv1", ["alice", "bob"])
    d.add("group1", ["alice", "bob", "carol"])
    return d


@pytest.fixture
def headers():
    """headers("alice") -> Authorization header dict for that user."""
    def _make(user_id):
        return {"Authorization": f"Bearer {issue_token(user_id, SECRET)}"}
    return _make


@pytest.fixture
def app(settings, directory, clock):
    return create_app(settings, directory=directory, clock=clock)


@pytest.fixture
async def client(aiohttp_client, app):
    return await aiohttp_client(app)


@pytest.fixture
async def coordinator(clock):
    c = CallCoordinator(ring_timeout=60.0, clock=clock)
    yield c
    await c.close()
