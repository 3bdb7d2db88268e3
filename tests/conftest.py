import asyncio
import os
import secrets
import sys
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

# Ensure project root on sys.path so 'app' package resolves when running via poetry
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

# Must be set before app.config is imported.
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("CATALOG_PREFETCH_ON_STARTUP", "false")
os.environ.setdefault("LOG_FILE", "")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from app.main import app  # type: ignore
from app.database import Base  # type: ignore
from app.api import deps  # type: ignore
"""Pytest fixtures and factories.

All model modules are imported through app.models.db before
Base.metadata.create_all() so every table exists.
"""
from app.config import AUTH_SETTINGS, BACKGROUND_REFILL, CAMPAIGN_REPORTS
from app.integrations.base import ReportSource, UpstreamAPIError
from app.jobs.refill_worker import RefillRegistry
from app.models.db import User, CachedReport, ReportCacheDocument, RateLimitEntry  # noqa: F401
from app.models.db.enums import ReportKind
from app.models.domain import ReportRecord, counter_keys
from app.services.rate_limit_ledger import RateLimitLedger
from app.services.report_cache import PartialCacheStore

# File-based SQLite: the refill worker writes from the TestClient event loop thread
# while assertions read from the test thread.
SQLALCHEMY_TEST_URL = "sqlite+pysqlite:///./test_dashboard.db"
engine = create_engine(
    SQLALCHEMY_TEST_URL,
    connect_args={"check_same_thread": False},
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# The cache store, ledger, lifespan and health check resolve these through the
# app.database module at call time.
import app.database as _app_database  # noqa: E402
_app_database.SessionLocal = TestingSessionLocal  # type: ignore
_app_database.engine = engine  # type: ignore

TEST_TOKEN = "test-token"
TEST_USER = "test-user"


class FakeReportSource(ReportSource):
    """In-memory stand-in for the Ortto client.

    ``failures`` maps an item id to the exception its fetch raises. ``gate``
    (an asyncio.Event) holds every fetch until it is set.
    """

    def __init__(self):
        self.calls: list[tuple[str, str]] = []
        self.failures: dict[str, Exception] = {}
        self.counter_value = 10
        self.catalog = {"campaigns": [], "journeys": [], "all": []}
        self.catalog_error: Exception | None = None
        self.gate: asyncio.Event | None = None
        self.closed = False

    def set_catalog(self, campaigns=(), journeys=()):
        campaigns = [{"id": cid, "name": f"Campaign {cid}", "type": "campaign"} for cid in campaigns]
        journeys = [{"id": jid, "name": f"Journey {jid}", "type": "journey"} for jid in journeys]
        self.catalog = {"campaigns": campaigns, "journeys": journeys, "all": campaigns + journeys}

    async def fetch_report(self, item, timeframe):
        self.calls.append((item.id, timeframe))
        if self.gate is not None:
            await self.gate.wait()
        exc = self.failures.get(item.id)
        if exc is not None:
            raise exc
        return ReportRecord(
            id=item.id,
            kind=item.kind,
            name=f"Report {item.id}",
            counters={key: self.counter_value for key in counter_keys(item.kind)},
        )

    async def get_categorized_assets(self, refresh=False):
        if self.catalog_error is not None:
            raise self.catalog_error
        return self.catalog

    async def list_campaigns(self, year=None):
        if self.catalog_error is not None:
            raise self.catalog_error
        return {"assets": list(self.catalog["all"])}

    async def prefetch_catalog(self):
        return len((await self.list_campaigns())["assets"])

    async def close(self):
        self.closed = True

    def snapshot(self):
        return {"configured": True, "calls": len(self.calls)}


class FrozenClock:
    """Callable UTC clock that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def _wipe_tables():
    with TestingSessionLocal() as session:
        for table in reversed(Base.metadata.sorted_tables):
            session.execute(table.delete())
        session.commit()


@pytest.fixture(scope="session", autouse=True)
def create_test_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()
    try:
        os.remove("test_dashboard.db")
    except OSError:
        pass


@pytest.fixture(autouse=True)
def _isolate_test_state(create_test_db):  # type: ignore[unused-argument]
    """Empty every table around each test."""
    _wipe_tables()
    yield
    _wipe_tables()


@pytest.fixture(autouse=True)
def fast_refill(monkeypatch):
    """No real sleeping in the refill worker or campaign batching."""
    monkeypatch.setitem(BACKGROUND_REFILL, "base_delay_seconds", 0.0)
    monkeypatch.setitem(BACKGROUND_REFILL, "max_delay_seconds", 0.0)
    monkeypatch.setitem(BACKGROUND_REFILL, "long_cooldown_seconds", 0.0)
    monkeypatch.setitem(BACKGROUND_REFILL, "batch_cooldown_seconds", 0.0)
    monkeypatch.setitem(CAMPAIGN_REPORTS, "batch_pause_seconds", 0.0)
    yield


@pytest.fixture()
def db_session():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


# Override dependency
def _override_get_db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()

app.dependency_overrides[deps.get_db] = _override_get_db


@pytest.fixture()
def fake_source():
    return FakeReportSource()


@pytest.fixture()
def clock():
    return FrozenClock()


@pytest.fixture()
def cache_store():
    return PartialCacheStore(TestingSessionLocal)


@pytest.fixture()
def ledger():
    return RateLimitLedger(TestingSessionLocal)


@pytest.fixture()
def client(fake_source):
    """TestClient with the lifespan running so refill tasks keep going between requests."""
    app.state.report_source = fake_source  # type: ignore[attr-defined]
    app.state.refill_registry = RefillRegistry()  # type: ignore[attr-defined]
    with TestClient(app) as test_client:
        yield test_client
    app.state.report_source = None  # type: ignore[attr-defined]
    app.state.refill_registry = None  # type: ignore[attr-defined]


@pytest.fixture()
def auth_headers():
    return {"Authorization": f"Bearer {TEST_TOKEN}"}


@pytest.fixture()
def auth_disabled(monkeypatch):
    monkeypatch.setitem(AUTH_SETTINGS, "enabled", False)
    yield


# ---------- Data factory helpers ----------

@pytest.fixture()
def record_factory():
    def _create(report_id: str, kind: ReportKind = ReportKind.CAMPAIGN, *, value: float = 1, **kwargs):
        return ReportRecord(
            id=report_id,
            kind=kind,
            name=kwargs.pop("name", f"Cached {report_id}"),
            counters={key: value for key in counter_keys(kind)},
            **kwargs,
        )
    return _create


@pytest.fixture()
def seed_cache(cache_store, record_factory):
    """Write cached records for the test principal."""
    def _seed(ids, *, timeframe: str = "all-time", user_id: str = TEST_USER, kind: ReportKind = ReportKind.CAMPAIGN):
        records = [record_factory(i, kind) for i in ids]
        cache_store.write(user_id, timeframe, records)
        return records
    return _seed


@pytest.fixture()
def user_factory(db_session):
    def _create(uid: str | None = None, *, is_active: bool = True):
        uid = uid or f"user-{secrets.token_hex(3)}"
        user = User(
            uid=uid,
            name=f"User {uid}",
            email=f"{uid}@example.com",
            api_key=f"dash_{secrets.token_hex(12)}",
            is_active=is_active,
        )
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user
    return _create


@pytest.fixture()
def items_payload():
    def _build(*ids: str, kind: str = "campaign"):
        return [{"id": i, "type": kind} for i in ids]
    return _build


@pytest.fixture()
def wait_for_refill(client):
    """Poll until no background refill is running for the timeframe."""
    def _wait(headers, timeframe: str = "all-time", timeout: float = 5.0):
        deadline = time.time() + timeout
        while time.time() < deadline:
            body = client.get(
                "/api/reports/poll-cached-reports",
                params={"timeframe": timeframe},
                headers=headers,
            ).json()
            if not body["refreshing"]:
                return body
            time.sleep(0.05)
        raise AssertionError("background refill did not finish in time")
    return _wait


@pytest.fixture()
def rate_limited_error():
    from app.integrations.base import UpstreamRateLimitError
    return UpstreamRateLimitError(retry_after=30)


@pytest.fixture()
def upstream_error():
    return UpstreamAPIError("Ortto API returned status 500", status_code=500)


@pytest.fixture()
def session_factory():
    return TestingSessionLocal


class LoopTicker:
    """Background task counting how often the event loop gets to schedule it."""

    def __init__(self, interval: float = 0.01):
        self.interval = interval
        self.ticks = 0
        self._task: asyncio.Task | None = None

    async def _tick(self):
        while True:
            await asyncio.sleep(self.interval)
            self.ticks += 1

    def start(self):
        self._task = asyncio.ensure_future(self._tick())

    async def stop(self) -> int:
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
        return self.ticks


@pytest.fixture()
def loop_ticker():
    return LoopTicker()


@pytest.fixture()
def slow_session_factory():
    """Session factory that blocks the calling thread before every session, like a remote database."""
    def _make(delay: float = 0.2):
        def factory():
            time.sleep(delay)
            return TestingSessionLocal()
        return factory
    return _make
