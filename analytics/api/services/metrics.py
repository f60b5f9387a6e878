"""
Traffic metric calculators.

Pure functions over rows already fetched by the session reconstructor;
nothing in here touches the database.  Rows are duck-typed: anything with
the matching attributes (ORM instances, SimpleNamespace in tests) works.
"""

from __future__ import annotations

import logging
import math
from collections import Counter
from dataclasses import dataclass
from typing import Iterable

logger = logging.getLogger(__name__)

MAX_SESSION_SECONDS = 28800          # 8 h; anything longer is a broken session
CHANGE_KEYS = ("pageViews", "uniqueVisitors", "sessions", "avgSessionDuration", "bounceRate")


def js_round(value: float) -> int:
    """Round half toward +infinity (what the dashboard has always shown)."""
    return int(math.floor(value + 0.5))


@dataclass
class BounceStats:
    bounced: int
    eligible: int                    # sessions with at least one page view
    rate: int


@dataclass
class DurationStats:
    average: float
    valid_sessions: int
    total_seconds: float


# ─────────────────────────────────────────────────────────────────────
# sessions
# ─────────────────────────────────────────────────────────────────────

def page_counts_by_session(page_views: Iterable) -> Counter:
    return Counter(pv.session_id for pv in page_views)


def compute_bounce(page_views: Iterable, visitors: Iterable | None = None) -> BounceStats:
    """
    Bounce rate over sessions that viewed at least one page.

    Sessions that only fired events never enter the ratio; the report
    lists them separately as ``eventOnlySessions``.  When ``visitors`` is
    given, page views without a matching visitor row are left out too, so
    the rate is 0 whenever the session count is.
    """
    counts = page_counts_by_session(page_views)
    if visitors is not None:
        known = {v.session_id for v in visitors}
        counts = Counter({sid: n for sid, n in counts.items() if sid in known})
    bounced = sum(1 for n in counts.values() if n == 1)
    eligible = len(counts)
    rate = js_round(bounced / eligible * 100) if eligible else 0
    return BounceStats(bounced=bounced, eligible=eligible, rate=rate)


def average_session_duration(
    activity: dict,
    max_seconds: int = MAX_SESSION_SECONDS,
) -> DurationStats:
    """
    Mean of (latest - earliest) over sessions in ``activity``.

    ``activity`` maps session id → SessionActivity.  Durations that are NaN,
    negative or ``>= max_seconds`` are dropped from both sum and count.
    """
    total = 0.0
    valid = 0
    for session_id, span in activity.items():
        duration = span.duration_seconds
        if math.isnan(duration) or duration < 0 or duration >= max_seconds:
            logger.info(
                "⚠️  Invalid session duration for %s: %.0fs (%s → %s)",
                session_id[:8], duration, span.earliest, span.latest,
            )
            continue
        total += duration
        valid += 1

    average = total / valid if valid else 0.0
    return DurationStats(average=average, valid_sessions=valid, total_seconds=total)


def count_unique_visitors(visitors: Iterable) -> int:
    """Distinct session ids. The session stands in for the visitor."""
    return len({v.session_id for v in visitors})


# ─────────────────────────────────────────────────────────────────────
# breakdowns
# ─────────────────────────────────────────────────────────────────────

def _top(counter: Counter, limit: int) -> list[tuple[str, int]]:
    # count desc, then key asc so equal counts always come out the same way
    return sorted(counter.items(), key=lambda kv: (-kv[1], kv[0]))[:limit]


def top_pages(page_views: Iterable, limit: int = 10) -> list[dict]:
    counts = Counter(pv.page_url or "" for pv in page_views)
    return [{"page": page, "views": views} for page, views in _top(counts, limit)]


def attribute_source(utm_source: str | None, referrer: str | None) -> str:
    if utm_source:
        return utm_source
    if referrer:
        return "referrer"
    return "direct"


def traffic_sources(page_views: Iterable, visitors: Iterable) -> dict[str, int]:
    """
    Per-page-view attribution, falling back to the visitor rows when the
    page views yield nothing at all.
    """
    stats: Counter = Counter(
        attribute_source(pv.utm_source, pv.referrer) for pv in page_views
    )
    if not stats:
        stats = Counter(attribute_source(v.utm_source, v.referrer) for v in visitors)
    return dict(stats)


def geographic_breakdown(visitors: Iterable, limit: int = 10) -> list[dict]:
    counts = Counter(v.country_code for v in visitors if v.country_code)
    return [{"country": code, "visitors": n} for code, n in _top(counts, limit)]


# ─────────────────────────────────────────────────────────────────────
# day-over-day change
# ─────────────────────────────────────────────────────────────────────

def percentage_change(current: float, previous: float | None) -> int:
    previous = previous or 0
    if previous == 0:
        return 100 if current > 0 else 0
    return js_round((current - previous) / previous * 100)


def percentage_changes(current: dict, snapshot) -> dict[str, int | None]:
    """
    Compare ``current`` metrics against yesterday's snapshot row.

    Every value is ``None`` when there is no snapshot: "no data" must stay
    distinguishable from "no change".
    """
    if snapshot is None:
        return {key: None for key in CHANGE_KEYS}

    previous = {
        "pageViews": snapshot.page_views,
        "uniqueVisitors": snapshot.unique_visitors,
        "sessions": snapshot.sessions,
        "avgSessionDuration": snapshot.avg_session_duration,
        "bounceRate": snapshot.bounce_rate,
    }
    return {
        "pageViews": percentage_change(current["pageViews"], previous["pageViews"]),
        "uniqueVisitors": percentage_change(current["uniqueVisitors"], previous["uniqueVisitors"]),
        "sessions": percentage_change(current["sessions"], previous["sessions"]),
        "avgSessionDuration": percentage_change(
            js_round(current["avgSessionDuration"]), previous["avgSessionDuration"],
        ),
        "bounceRate": percentage_change(current["bounceRate"], previous["bounceRate"]),
    }
