"""
Daily snapshots — one row per (site, day) that tomorrow's report compares
itself against.

Writes are best-effort: a failed upsert is logged and the report is still
returned.  Writers for the same (site, day) are serialised through a
per-key lock owned by a ``SnapshotWriter`` instance that the app keeps on
``app.state``.
"""

import asyncio
import logging
import uuid
from collections import Counter
from datetime import date, datetime, timezone

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from api.models.site_analytics import DailySnapshot

logger = logging.getLogger(__name__)

SNAPSHOT_FIELDS = (
    "page_views",
    "unique_visitors",
    "sessions",
    "avg_session_duration",
    "bounce_rate",
    "events_count",
)


async def get_snapshot(db: AsyncSession, site_id: str, day: date) -> DailySnapshot | None:
    """Exact-date lookup, no nearest-day fallback."""
    result = await db.execute(
        select(DailySnapshot)
        .where(
            DailySnapshot.site_id == site_id,
            DailySnapshot.date == day,
        )
        # upserts go through Core, so refresh any instance already loaded
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


def _upsert(dialect_name: str, site_id: str, day: date, values: dict):
    """INSERT … ON CONFLICT (site_id, date) DO UPDATE; last writer wins."""
    insert = pg_insert if dialect_name == "postgresql" else sqlite_insert
    row = {name: int(values[name]) for name in SNAPSHOT_FIELDS}
    row["updated_at"] = datetime.now(timezone.utc)
    stmt = insert(DailySnapshot).values(id=str(uuid.uuid4()), site_id=site_id, date=day, **row)
    return stmt.on_conflict_do_update(
        index_elements=["site_id", "date"],
        set_={name: stmt.excluded[name] for name in row},
    )


class SnapshotWriter:
    """Upserts daily snapshots, one writer at a time per (site, day)."""

    def __init__(self):
        self._locks: dict[tuple[str, date], asyncio.Lock] = {}
        self._holders: Counter = Counter()
        self._writes = 0

    @property
    def writes(self) -> int:
        """Number of successful upserts (for testing)."""
        return self._writes

    @property
    def active_keys(self) -> int:
        """(site, day) keys with a writer running or waiting."""
        return len(self._locks)

    async def write(self, db: AsyncSession, site_id: str, day: date, values: dict) -> bool:
        """
        Insert or overwrite the (site, day) row with ``values``.

        Returns True on success.  Never raises.
        """
        missing = [f for f in SNAPSHOT_FIELDS if f not in values]
        if missing:
            logger.error("Snapshot for %s/%s missing fields %s — skipped", site_id, day, missing)
            return False

        key = (site_id, day)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._holders[key] += 1
        try:
            async with lock:
                try:
                    await db.execute(_upsert(db.get_bind().dialect.name, site_id, day, values))
                    await db.commit()
                except Exception as e:
                    await db.rollback()
                    logger.error("❌ Failed to store daily snapshot for %s on %s: %s", site_id, day, e)
                    return False
        finally:
            # last one out drops the lock so the map only holds in-flight keys
            self._holders[key] -= 1
            if not self._holders[key]:
                del self._holders[key]
                del self._locks[key]

        self._writes += 1
        logger.info("✅ Stored daily snapshot for %s on %s", site_id, day)
        return True
