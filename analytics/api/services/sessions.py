"""
Session reconstruction — which sessions were active inside a window, and
when did each one start and stop.

A session counts as active when it has at least one page view or event
timestamped inside the window.  Visitor rows are then fetched by that set
of session ids, never by ``first_visit``: a session that started before
the window but kept browsing inside it must be counted, and a stale
visitor row with no in-window activity must not.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from sqlalchemy import select, union
from sqlalchemy.ext.asyncio import AsyncSession

from api.database import as_utc
from api.models.site_analytics import PageView, Visitor, VisitorEvent

logger = logging.getLogger(__name__)

MAX_SAMPLE_SESSIONS = 5


@dataclass
class SessionActivity:
    earliest: datetime
    latest: datetime

    @property
    def duration_seconds(self) -> float:
        return (self.latest - self.earliest).total_seconds()

    def include(self, ts: datetime) -> None:
        if ts < self.earliest:
            self.earliest = ts
        if ts > self.latest:
            self.latest = ts


@dataclass
class IntegrityIssue:
    type: str
    count: int
    message: str
    sessions: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "type": self.type,
            "count": self.count,
            "sessions": self.sessions,
            "message": self.message,
        }


@dataclass
class SessionData:
    site_id: str
    window_start: datetime
    page_views: list                  # newest first
    events: list                      # newest first
    visitors: list
    active_session_ids: set[str]
    activity: dict[str, SessionActivity]

    @property
    def event_only_sessions(self) -> int:
        viewed = {pv.session_id for pv in self.page_views}
        return len(self.active_session_ids - viewed)


def window_start_for(days: int, now: datetime | None = None) -> datetime:
    if days < 1:
        raise ValueError(f"days must be >= 1, got {days}")
    now = as_utc(now) if now else datetime.now(timezone.utc)
    return now - timedelta(days=days)


def collect_session_activity(page_views, events) -> dict[str, SessionActivity]:
    """Earliest / latest timestamp per session across page views AND events."""
    activity: dict[str, SessionActivity] = {}
    stamped = [(pv.session_id, pv.viewed_at) for pv in page_views]
    stamped += [(ev.session_id, ev.occurred_at) for ev in events]

    for session_id, raw_ts in stamped:
        ts = as_utc(raw_ts)
        span = activity.get(session_id)
        if span is None:
            activity[session_id] = SessionActivity(earliest=ts, latest=ts)
        else:
            span.include(ts)
    return activity


async def fetch_window_rows(
    db: AsyncSession, site_id: str, window_start: datetime,
) -> tuple[list, list]:
    """Page views and events for ``site_id`` since ``window_start``, newest first."""
    page_views = (
        await db.execute(
            select(PageView)
            .where(PageView.site_id == site_id, PageView.viewed_at >= window_start)
            .order_by(PageView.viewed_at.desc())
        )
    ).scalars().all()

    events = (
        await db.execute(
            select(VisitorEvent)
            .where(VisitorEvent.site_id == site_id, VisitorEvent.occurred_at >= window_start)
            .order_by(VisitorEvent.occurred_at.desc())
        )
    ).scalars().all()

    return list(page_views), list(events)


def active_session_ids_query(site_id: str, window_start: datetime):
    """Session ids with a page view or event since ``window_start``, as a subquery."""
    return union(
        select(PageView.session_id)
        .where(PageView.site_id == site_id, PageView.viewed_at >= window_start),
        select(VisitorEvent.session_id)
        .where(VisitorEvent.site_id == site_id, VisitorEvent.occurred_at >= window_start),
    ).subquery()


async def fetch_active_visitors(
    db: AsyncSession, site_id: str, window_start: datetime, session_ids: set[str],
) -> list:
    """
    Visitor rows for the active sessions.  Membership is filtered with a
    subquery over the window rows; the id set only short-circuits an empty
    window.
    """
    if not session_ids:
        return []
    active = active_session_ids_query(site_id, window_start)
    result = await db.execute(
        select(Visitor)
        .where(Visitor.site_id == site_id, Visitor.session_id.in_(select(active.c.session_id)))
        .order_by(Visitor.last_visit.desc())
    )
    return list(result.scalars().all())


async def reconstruct_sessions(
    db: AsyncSession,
    site_id: str,
    days: int,
    now: datetime | None = None,
) -> SessionData:
    """
    Fetch the raw rows for a trailing ``days`` window and rebuild the
    session-level picture from them.

    Query errors propagate untouched; there is no degraded result.
    """
    window_start = window_start_for(days, now)
    page_views, events = await fetch_window_rows(db, site_id, window_start)

    active = {pv.session_id for pv in page_views} | {ev.session_id for ev in events}
    visitors = await fetch_active_visitors(db, site_id, window_start, active)

    logger.info(
        "📊 %s: %d page views, %d events, %d active visitors since %s",
        site_id, len(page_views), len(events), len(visitors), window_start.isoformat(),
    )

    return SessionData(
        site_id=site_id,
        window_start=window_start,
        page_views=page_views,
        events=events,
        visitors=visitors,
        active_session_ids=active,
        activity=collect_session_activity(page_views, events),
    )


def check_integrity(data: SessionData) -> list[IntegrityIssue]:
    """
    Flag rows that don't line up.  Findings are logged, never raised, and
    never feed back into the metrics.
    """
    issues: list[IntegrityIssue] = []
    visitor_ids = {v.session_id for v in data.visitors}

    orphaned_views = sorted({pv.session_id for pv in data.page_views} - visitor_ids)
    if orphaned_views:
        issues.append(IntegrityIssue(
            type="orphaned_page_views",
            count=len(orphaned_views),
            sessions=orphaned_views[:MAX_SAMPLE_SESSIONS],
            message=f"{len(orphaned_views)} page view sessions have no visitor record",
        ))

    orphaned_events = sorted({ev.session_id for ev in data.events} - visitor_ids)
    if orphaned_events:
        issues.append(IntegrityIssue(
            type="orphaned_events",
            count=len(orphaned_events),
            sessions=orphaned_events[:MAX_SAMPLE_SESSIONS],
            message=f"{len(orphaned_events)} event sessions have no visitor record",
        ))

    # Structurally impossible with the session-id filter. If it shows up,
    # something upstream is broken.
    inactive = sorted(v.session_id for v in data.visitors if v.session_id not in data.active_session_ids)
    if inactive:
        issues.append(IntegrityIssue(
            type="inactive_sessions_included",
            count=len(inactive),
            sessions=inactive[:MAX_SAMPLE_SESSIONS],
            message=f"{len(inactive)} sessions included without activity in the window",
        ))

    for issue in issues:
        logger.warning("⚠️  Data integrity (%s): %s", data.site_id, issue.message)
    return issues
