"""
Shared test fixtures — async DB, settings, FastAPI test client, row factories.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker

from api.config import Settings
from api.database import Base, get_db
from api.main import app
from api.models.site_analytics import DailySnapshot, PageView, Visitor, VisitorEvent
from api.services.snapshots import SnapshotWriter


# ── Test Database (SQLite in-memory) ────────────────────

TEST_DB_URL = "sqlite+aiosqlite:///:memory:"

SITE = "youngstown-marketing"
NOW = datetime(2026, 3, 15, 12, 0, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture()
async def db_engine():
    engine = create_async_engine(TEST_DB_URL, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture()
async def db_session(db_engine):
    session_factory = async_sessionmaker(db_engine, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture()
async def client(db_engine):
    """FastAPI test client with test DB injected."""
    session_factory = async_sessionmaker(db_engine, expire_on_commit=False)

    async def _override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _override_get_db
    app.state.snapshot_writer = SnapshotWriter()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def writer():
    return SnapshotWriter()


# ── Mock Settings ───────────────────────────────────────

@pytest.fixture(autouse=True)
def mock_settings():
    """Real Settings with network lookups off, patched at ALL import points."""
    test_settings = Settings(
        database_url=TEST_DB_URL,
        ipinfo_token="",
        geo_lookup_enabled=False,
        ip_hash_salt="test-salt",
        snapshot_mode="window",
    )
    with patch("api.config.settings", test_settings), \
         patch("api.services.report.settings", test_settings), \
         patch("api.services.ingest.settings", test_settings), \
         patch("api.services.geo.settings", test_settings), \
         patch("api.routes.analytics.settings", test_settings):
        yield test_settings


# ── Row Factories ───────────────────────────────────────

def make_visitor(session_id, first_visit, last_visit=None, site_id=SITE, **kw):
    return Visitor(
        session_id=session_id,
        site_id=site_id,
        first_visit=first_visit,
        last_visit=last_visit or first_visit,
        **kw,
    )


def make_page_view(session_id, viewed_at, page_url="https://example.com/", site_id=SITE, **kw):
    return PageView(
        session_id=session_id,
        site_id=site_id,
        page_url=page_url,
        viewed_at=viewed_at,
        **kw,
    )


def make_event(session_id, occurred_at, event_type="click", site_id=SITE, **kw):
    return VisitorEvent(
        session_id=session_id,
        site_id=site_id,
        event_type=event_type,
        event_data=kw.pop("event_data", {"eventType": event_type}),
        occurred_at=occurred_at,
        **kw,
    )


def make_snapshot(day, site_id=SITE, **values):
    fields = {
        "page_views": 0,
        "unique_visitors": 0,
        "sessions": 0,
        "avg_session_duration": 0,
        "bounce_rate": 0,
        "events_count": 0,
    }
    fields.update(values)
    return DailySnapshot(site_id=site_id, date=day, **fields)


@pytest.fixture
def seed(db_session):
    """``await seed(row, row, …)`` adds and commits."""

    async def _seed(*rows):
        db_session.add_all(rows)
        await db_session.commit()

    return _seed


def minutes_ago(n, now=NOW):
    return now - timedelta(minutes=n)


def days_ago(n, now=NOW):
    return now - timedelta(days=n)
