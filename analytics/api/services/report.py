"""
Report assembly — the JSON the dashboard renders for one site and window.

Order of work: every read (window rows, visitors, yesterday's snapshot,
lifetime counts) happens first, metrics are computed in memory, and only
then is today's snapshot upserted.  The snapshot write is the sole side
effect and cannot change any value in the report it was derived from.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from api.config import settings
from api.database import as_utc
from api.models.site_analytics import PageView, Visitor, VisitorEvent
from api.services import metrics
from api.services.sessions import SessionData, check_integrity, reconstruct_sessions
from api.services.snapshots import SnapshotWriter, get_snapshot

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────────────
# row → JSON
# ─────────────────────────────────────────────────────────────────────

def _iso(value: datetime | None) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None


def page_view_to_dict(pv: PageView) -> dict:
    return {
        "id": pv.id,
        "session_id": pv.session_id,
        "site_id": pv.site_id,
        "page_url": pv.page_url,
        "page_title": pv.page_title,
        "referrer": pv.referrer,
        "utm_source": pv.utm_source,
        "utm_medium": pv.utm_medium,
        "utm_campaign": pv.utm_campaign,
        "device_type": pv.device_type,
        "browser": pv.browser,
        "viewed_at": _iso(pv.viewed_at),
    }


def event_to_dict(ev: VisitorEvent) -> dict:
    return {
        "id": ev.id,
        "session_id": ev.session_id,
        "site_id": ev.site_id,
        "event_type": ev.event_type,
        "event_data": ev.event_data or {},
        "element_selector": ev.element_selector,
        "page_url": ev.page_url,
        "occurred_at": _iso(ev.occurred_at),
    }


def visitor_to_dict(v: Visitor) -> dict:
    return {
        "id": v.id,
        "session_id": v.session_id,
        "site_id": v.site_id,
        "location_id": v.location_id,
        "ip_hash": v.ip_hash,
        "user_agent": v.user_agent,
        "referrer": v.referrer,
        "utm_source": v.utm_source,
        "utm_medium": v.utm_medium,
        "utm_campaign": v.utm_campaign,
        "device_type": v.device_type,
        "browser": v.browser,
        "country_code": v.country_code,
        "region": v.region,
        "city": v.city,
        "first_visit": _iso(v.first_visit),
        "last_visit": _iso(v.last_visit),
    }


# ─────────────────────────────────────────────────────────────────────
# pieces
# ─────────────────────────────────────────────────────────────────────

def summarize(data: SessionData) -> dict:
    """Headline numbers for one reconstructed window."""
    bounce = metrics.compute_bounce(data.page_views, data.visitors)
    duration = metrics.average_session_duration(
        data.activity, max_seconds=settings.max_session_seconds,
    )
    logger.debug(
        "%s: %d/%d bounced, %d valid session durations (%.0fs total)",
        data.site_id, bounce.bounced, bounce.eligible,
        duration.valid_sessions, duration.total_seconds,
    )
    return {
        "pageViews": len(data.page_views),
        "uniqueVisitors": metrics.count_unique_visitors(data.visitors),
        "sessions": len(data.visitors),
        "avgSessionDuration": duration.average,
        "bounceRate": bounce.rate,
        "eventsCount": len(data.events),
    }


def snapshot_values(summary: dict) -> dict:
    return {
        "page_views": summary["pageViews"],
        "unique_visitors": summary["uniqueVisitors"],
        "sessions": summary["sessions"],
        "avg_session_duration": metrics.js_round(summary["avgSessionDuration"]),
        "bounce_rate": summary["bounceRate"],
        "events_count": summary["eventsCount"],
    }


async def historical_totals(db: AsyncSession, site_id: str) -> dict:
    """Lifetime row counts, ignoring the window."""
    totals = {}
    for key, model in (
        ("pageViews", PageView),
        ("events", VisitorEvent),
        ("visitors", Visitor),
    ):
        totals[key] = (
            await db.execute(
                select(func.count()).select_from(model).where(model.site_id == site_id)
            )
        ).scalar_one()
    return totals


# ─────────────────────────────────────────────────────────────────────
# entry point
# ─────────────────────────────────────────────────────────────────────

async def build_report(
    db: AsyncSession,
    site_id: str,
    days: int,
    writer: SnapshotWriter,
    now: datetime | None = None,
) -> dict:
    """
    Compute the traffic report for ``site_id`` over the trailing ``days``.

    Store errors propagate to the caller; a failed snapshot write does not.
    """
    now = as_utc(now) if now else datetime.now(timezone.utc)
    today = now.date()

    data = await reconstruct_sessions(db, site_id, days, now=now)
    issues = check_integrity(data)
    summary = summarize(data)

    if settings.snapshot_uses_daily_window and days != 1:
        daily = summarize(await reconstruct_sessions(db, site_id, 1, now=now))
    else:
        daily = summary

    yesterday = await get_snapshot(db, site_id, today - timedelta(days=1))
    if yesterday is None:
        logger.info("No snapshot for %s on %s — percentage changes unavailable", site_id, today - timedelta(days=1))
    # same period on both sides: the snapshot holds whatever ``daily`` holds
    changes = metrics.percentage_changes(daily, yesterday)

    totals = await historical_totals(db, site_id)
    has_ever_been_tracked = any(count > 0 for count in totals.values())

    sample = settings.recent_sample_size
    report = {
        "siteId": site_id,
        "days": days,
        "pageViews": summary["pageViews"],
        "uniqueVisitors": summary["uniqueVisitors"],
        "sessions": summary["sessions"],
        "avgSessionDuration": metrics.js_round(summary["avgSessionDuration"]),
        "bounceRate": summary["bounceRate"],
        "eventsCount": summary["eventsCount"],
        "eventOnlySessions": data.event_only_sessions,
        "topPages": metrics.top_pages(data.page_views, limit=settings.top_n),
        "trafficSources": metrics.traffic_sources(data.page_views, data.visitors),
        "geographicData": metrics.geographic_breakdown(data.visitors, limit=settings.top_n),
        "percentageChanges": changes,
        "recentPageViews": [page_view_to_dict(pv) for pv in data.page_views[:sample]],
        "recentEvents": [event_to_dict(ev) for ev in data.events[:sample]],
        "visitors": [visitor_to_dict(v) for v in data.visitors[:sample]],
        "totalHistoricalPageViews": totals["pageViews"],
        "totalHistoricalEvents": totals["events"],
        "totalHistoricalVisitors": totals["visitors"],
        "hasEverBeenTracked": has_ever_been_tracked,
        "dataIntegrityIssues": [issue.as_dict() for issue in issues],
        "lastUpdated": now.isoformat(),
    }

    # Only write of the request, after every read.
    await writer.write(db, site_id, today, snapshot_values(daily))

    logger.info(
        "✅ Report %s (%dd): %d views, %d sessions, bounce %d%%, avg %ds",
        site_id, days, report["pageViews"], report["sessions"],
        report["bounceRate"], report["avgSessionDuration"],
    )
    return report
