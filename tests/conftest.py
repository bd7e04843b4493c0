"""
Shared fixtures: in-memory metadata, a bucket on tmp_path, a controllable
clock, and an app wired to all three.
"""

import base64
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from promptstudio.api.app import create_app
from promptstudio.config import Settings
from promptstudio.core.models import Role
from promptstudio.services.container import build_services
from promptstudio.storage.local import create_local_storage

KIB = 1024
MIB = 1024 * 1024

ADMIN_PASSWORD = "admin-pass"
GUEST_PASSCODE = "guest-pass"


class FakeClock:
    """
    Starts at the current whole second and ticks 1ms per reading.

    Starting near real time keeps cookie expiry dates sensible for the
    test client's cookie jar.
    """

    def __init__(self, start: datetime | None = None, step: timedelta = timedelta(milliseconds=1)):
        self.now = start or datetime.now(timezone.utc).replace(microsecond=0)
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + self.step
        return current

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


def png_payload(nbytes: int) -> bytes:
    """A PNG signature padded to exactly nbytes."""
    header = b"\x89PNG\r\n\x1a\n"
    return header + b"\x00" * (nbytes - len(header))


def data_uri(nbytes: int, ext: str = "png") -> str:
    return f"data:image/{ext};base64," + base64.b64encode(png_payload(nbytes)).decode()


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        environment="test",
        admin_password=ADMIN_PASSWORD,
        guest_passcode=GUEST_PASSCODE,
        content_dir=str(tmp_path / "content"),
        database_url=f"sqlite:///{tmp_path / 'promptstudio.db'}",
        storage_quota_bytes=300 * MIB,
        sentry_dsn="",
    )


@pytest.fixture
def storage(tmp_path):
    return create_local_storage(data_dir=str(tmp_path))


@pytest.fixture
def services(settings, storage, clock):
    return build_services(settings, storage, clock=clock)


@pytest_asyncio.fixture
async def alice(services):
    return await services.credentials.create_user("alice", "alice-pass")


@pytest_asyncio.fixture
async def bob(services):
    return await services.credentials.create_user("bob", "bob-pass")


@pytest_asyncio.fixture
async def admin(services):
    return await services.credentials.create_user("root", "root-pass", Role.ADMIN)


@pytest_asyncio.fixture
async def guest(services):
    return await services.credentials.create_user("visitor", "visitor-pass", Role.GUEST)


@pytest.fixture
def make_client(settings, services):
    """Factory for clients that share one app (each keeps its own cookies)."""
    app = create_app(settings, services)
    clients = []

    def _make() -> TestClient:
        client = TestClient(app)
        client.__enter__()
        clients.append(client)
        return client

    yield _make
    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture
def client(make_client):
    return make_client()


def login(client: TestClient, username: str, password: str) -> dict:
    resp = client.post("/api/auth/login", json={"username": username, "password": password})
    assert resp.status_code == 200, resp.text
    return resp.json()["user"]
