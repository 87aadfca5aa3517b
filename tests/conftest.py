"""
Shared pytest fixtures for the RaiseVoice test suite.

Every test gets a fresh in-memory store, an engine wired to it, a couple of
provisioned users and (for API tests) an httpx AsyncClient with bearer headers.
"""

import os

# The API module refuses to import without a strong signing secret
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-raisevoice-suite-0123456789")

import httpx
import pytest
import pytest_asyncio

from raisevoice.api import app, create_access_token, get_engine, limiter
from raisevoice.classifier import PriorityClassifier
from raisevoice.engine import GrievanceEngine
from raisevoice.errors import PersistenceError
from raisevoice.gateway import MemoryGateway
from raisevoice.models import Identity

VOCABULARY = [
    ("urgent", "emergency"),
    ("urgent", "fire"),
    ("urgent", "gas leak"),
    ("high", "broken"),
    ("high", "no water"),
    ("high", "sewage"),
]

CITIZEN = Identity(id="citizen-1", name="Rajesh Swain", email="rajesh@example.com")
OTHER_CITIZEN = Identity(id="citizen-2", name="Anita Behera", email="anita@example.com")
ADMIN = Identity(id="admin-1", name="Priya Pattnaik", email="priya@example.com", is_admin=True)
OTHER_ADMIN = Identity(id="admin-2", name="Anil Panigrahi", email="anil@example.com", is_admin=True)


class FlakyNotificationGateway(MemoryGateway):
    """Memory store whose notification writes fail while ``broken`` is set."""

    def __init__(self):
        super().__init__()
        self.broken = False

    def write(self, path, value):
        if self.broken and path.startswith("notifications/"):
            raise PersistenceError(f"write {path}: store unavailable")
        super().write(path, value)


@pytest.fixture
def gateway():
    return MemoryGateway()


@pytest.fixture
def classifier():
    return PriorityClassifier(VOCABULARY)


@pytest.fixture
def engine(gateway, classifier):
    return GrievanceEngine(gateway, classifier)


@pytest.fixture
def citizen(engine):
    return engine.users.ensure(CITIZEN)


@pytest.fixture
def other_citizen(engine):
    return engine.users.ensure(OTHER_CITIZEN)


@pytest.fixture
def admin(engine):
    return engine.users.ensure(ADMIN)


@pytest.fixture
def other_admin(engine):
    return engine.users.ensure(OTHER_ADMIN)


@pytest.fixture
def grievance(engine, citizen):
    """A pending, normal-priority grievance submitted by ``citizen``."""
    return engine.submit(citizen, "Streetlight out", "The lamp on 5th street is dark")


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------
@pytest_asyncio.fixture
async def client(engine):
    """In-process httpx AsyncClient bound to the per-test engine."""
    # Disable rate limiting so repeated submissions aren't throttled
    limiter.enabled = False

    async def _engine():
        return engine

    app.dependency_overrides[get_engine] = _engine
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c
    app.dependency_overrides.clear()


def _headers(identity: Identity) -> dict:
    return {"Authorization": f"Bearer {create_access_token(identity)}"}


@pytest.fixture
def citizen_headers():
    return _headers(CITIZEN)


@pytest.fixture
def other_citizen_headers():
    return _headers(OTHER_CITIZEN)


@pytest.fixture
def admin_headers():
    return _headers(ADMIN)
