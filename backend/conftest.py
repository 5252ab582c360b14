"""Pytest configuration: set test env before any timecapsule imports so the store and settings use test values."""

import os
import tempfile

import pytest
import pytest_asyncio

# Set before timecapsule.db.session or timecapsule.config are used so engine and settings use test paths
_tmp = tempfile.mkdtemp(prefix="timecapsule_test_")
_db_path = os.path.join(_tmp, "test.db")
os.environ.setdefault("TIMECAPSULE_DB_PATH", _db_path)
os.environ.setdefault("TIMECAPSULE_ENCRYPTION_KEY", "0123456789abcdef" * 4)
os.environ.setdefault("TIMECAPSULE_GITHUB_CLIENT_ID", "gh-client-id")
os.environ.setdefault("TIMECAPSULE_GITHUB_CLIENT_SECRET", "gh-client-secret")
os.environ.setdefault("TIMECAPSULE_GMAIL_CLIENT_ID", "gmail-client-id")
os.environ.setdefault("TIMECAPSULE_GMAIL_CLIENT_SECRET", "gmail-client-secret")
os.environ.setdefault("TIMECAPSULE_FRONTEND_URL", "http://frontend.test")
os.environ.setdefault("TIMECAPSULE_WORKER_URL", "http://api.test")
os.environ.setdefault("TIMECAPSULE_REPO_READY_DELAY_SECONDS", "0")
# Per-IP limits would trip on the many requests a test module makes from one client
os.environ.setdefault("TIMECAPSULE_RATE_LIMIT_ENABLED", "false")


@pytest_asyncio.fixture
async def db_session():
    """Async session on the test database; committed on exit like get_db."""
    from timecapsule.db.session import get_session, init_db

    await init_db()
    async with get_session() as session:
        yield session


@pytest.fixture
def fake_apis():
    """In-memory GitHub and Google APIs behind an httpx.MockTransport."""
    from fakes import FakeApis

    return FakeApis()


async def _clear_store() -> None:
    """Empty the key-value table so each app test starts from nothing."""
    from sqlalchemy import delete

    from timecapsule.db.session import get_session
    from timecapsule.kv.model import KVEntry

    async with get_session() as session:
        await session.execute(delete(KVEntry))


@pytest.fixture
def client(fake_apis):
    """TestClient with upstream calls routed to fake_apis. Used as context manager so lifespan runs."""
    from fastapi.testclient import TestClient

    from timecapsule.http import get_transport
    from timecapsule.main import app

    app.dependency_overrides[get_transport] = lambda: fake_apis.transport
    with TestClient(app) as c:
        c.portal.call(_clear_store)
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def run_db(client):
    """Run fn(session) on the app's event loop and commit, for checking or seeding the store."""
    from timecapsule.db.session import get_session

    async def _run(fn):
        async with get_session() as session:
            return await fn(session)

    return lambda fn: client.portal.call(_run, fn)


@pytest.fixture
def connected_user(client, fake_apis) -> str:
    """Complete GitHub and Gmail OAuth for the fake user; returns the user id."""
    from fakes import github_login

    r = github_login(client)
    assert r.status_code == 302, r.text
    user_id = str(fake_apis.user["id"])
    r = client.get(
        "/api/auth/gmail/callback",
        params={"code": "google-code", "state": user_id},
        follow_redirects=False,
    )
    assert "gmailSuccess=true" in r.headers["location"]
    return user_id
