"""
Tracking ingestion — turns one snippet call into raw rows.

``page_view`` upserts the session's Visitor row and appends a PageView.
``event`` appends a VisitorEvent and leaves the Visitor row alone.
"""

from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from api.config import settings
from api.database import as_utc
from api.models.site_analytics import PageView, Visitor, VisitorEvent
from api.schemas import CustomEventPayload, PageViewPayload

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────────────
# helpers
# ─────────────────────────────────────────────────────────────────────

def parse_client_timestamp(value, now: datetime | None = None) -> datetime:
    """
    Accept epoch milliseconds (what ``Date.now()`` sends) or ISO-8601.
    Missing → server time.  Anything else raises ValueError.
    """
    if value is None or value == "":
        return as_utc(now) if now else datetime.now(timezone.utc)
    if isinstance(value, bool):
        raise ValueError(f"Invalid timestamp: {value!r}")
    if isinstance(value, (int, float)):
        return _from_epoch_ms(value)
    if isinstance(value, str):
        text = value.strip()
        try:
            millis = float(text)
        except ValueError:
            if text.endswith("Z"):
                text = text[:-1] + "+00:00"
            return as_utc(datetime.fromisoformat(text))
        return _from_epoch_ms(millis)
    raise ValueError(f"Invalid timestamp: {value!r}")


def _from_epoch_ms(millis: float) -> datetime:
    try:
        return datetime.fromtimestamp(millis / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        raise ValueError(f"Invalid timestamp: {millis!r}")


def client_ip(headers, peer: str | None = None) -> str | None:
    """First X-Forwarded-For hop, then X-Real-IP, then the socket peer."""
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return headers.get("x-real-ip") or peer or None


def hash_ip(ip: str | None) -> str | None:
    if not ip:
        return None
    return hashlib.sha256(f"{settings.ip_hash_salt}{ip}".encode("utf-8")).hexdigest()


def _utm(payload) -> tuple[str | None, str | None, str | None]:
    utm = payload.utm_params
    if utm is None:
        return None, None, None
    return utm.source, utm.medium, utm.campaign


# ─────────────────────────────────────────────────────────────────────
# writers
# ─────────────────────────────────────────────────────────────────────

def _apply_attribution(visitor: Visitor, payload: PageViewPayload, ip_hash, geo) -> None:
    source, medium, campaign = _utm(payload)
    device = payload.device_info
    updates = {
        "ip_hash": ip_hash,
        "user_agent": payload.user_agent,
        "referrer": payload.referrer,
        "utm_source": source,
        "utm_medium": medium,
        "utm_campaign": campaign,
        "device_type": device.type if device else None,
        "browser": device.browser if device else None,
    }
    if geo:
        updates.update(
            country_code=geo.get("country_code"),
            region=geo.get("region"),
            city=geo.get("city"),
        )
    for name, value in updates.items():
        if value:
            setattr(visitor, name, value)


def _touch(visitor: Visitor, ts: datetime) -> None:
    """Widen [first_visit, last_visit] to include ``ts``; first_visit never moves forward."""
    first = as_utc(visitor.first_visit)
    last = as_utc(visitor.last_visit)
    if first is None or ts < first:
        visitor.first_visit = ts
    if last is None or ts > last:
        visitor.last_visit = ts


async def upsert_visitor(
    db: AsyncSession,
    payload: PageViewPayload,
    ts: datetime,
    ip_hash: str | None = None,
    geo: dict | None = None,
) -> Visitor:
    result = await db.execute(select(Visitor).where(Visitor.session_id == payload.session_id))
    visitor = result.scalar_one_or_none()

    if visitor is None:
        visitor = Visitor(
            session_id=payload.session_id,
            site_id=payload.site_id,
            location_id=payload.event_data.get("locationId") or "unknown",
            first_visit=ts,
            last_visit=ts,
        )
        _apply_attribution(visitor, payload, ip_hash, geo)
        db.add(visitor)
        try:
            await db.flush()
            return visitor
        except IntegrityError:
            # Another request created the session first, so update it.
            await db.rollback()
            result = await db.execute(select(Visitor).where(Visitor.session_id == payload.session_id))
            visitor = result.scalar_one()

    _apply_attribution(visitor, payload, ip_hash, geo)
    _touch(visitor, ts)
    return visitor


async def record_page_view(
    db: AsyncSession,
    payload: PageViewPayload,
    ts: datetime,
    ip_hash: str | None = None,
    geo: dict | None = None,
) -> PageView:
    await upsert_visitor(db, payload, ts, ip_hash=ip_hash, geo=geo)

    data = payload.event_data
    source, medium, campaign = _utm(payload)
    device = payload.device_info
    page_view = PageView(
        session_id=payload.session_id,
        site_id=payload.site_id,
        page_url=payload.page_url or data.get("url") or "",
        page_title=data.get("title"),
        referrer=payload.referrer or None,
        utm_source=data.get("utmSource") or source,
        utm_medium=data.get("utmMedium") or medium,
        utm_campaign=data.get("utmCampaign") or campaign,
        device_type=device.type if device else None,
        browser=device.browser if device else None,
        viewed_at=ts,
    )
    db.add(page_view)
    await db.commit()
    return page_view


async def record_event(db: AsyncSession, payload: CustomEventPayload, ts: datetime) -> VisitorEvent:
    data = payload.event_data
    event = VisitorEvent(
        session_id=payload.session_id,
        site_id=payload.site_id,
        event_type=str(data.get("eventType") or "custom")[:60],
        event_data=data,
        element_selector=data.get("selector"),
        page_url=payload.page_url,
        occurred_at=ts,
    )
    db.add(event)
    await db.commit()
    return event


async def ingest(
    db: AsyncSession,
    payload: PageViewPayload | CustomEventPayload,
    ip: str | None = None,
    now: datetime | None = None,
):
    """
    Persist one tracking call.  Raises ValueError for a bad timestamp and
    lets store errors propagate.
    """
    ts = parse_client_timestamp(payload.event_data.get("timestamp"), now=now)

    if isinstance(payload, PageViewPayload):
        from api.services.geo import lookup_ip

        geo = await lookup_ip(ip)
        row = await record_page_view(db, payload, ts, ip_hash=hash_ip(ip), geo=geo)
        logger.info("📥 page_view %s/%s %s", payload.site_id, payload.session_id[:8], row.page_url)
        return row

    row = await record_event(db, payload, ts)
    logger.info("📥 event %s/%s %s", payload.site_id, payload.session_id[:8], row.event_type)
    return row


# ─────────────────────────────────────────────────────────────────────
# maintenance
# ─────────────────────────────────────────────────────────────────────

async def fix_visitor_timestamps(db: AsyncSession, site_id: str) -> dict:
    """
    Repair visitor rows whose first_visit is missing or after last_visit by
    resetting it to the session's earliest page view.
    """
    visitors = (
        await db.execute(select(Visitor).where(Visitor.site_id == site_id))
    ).scalars().all()

    repaired: list[str] = []
    for visitor in visitors:
        first = as_utc(visitor.first_visit)
        last = as_utc(visitor.last_visit)
        if first is not None and (last is None or first <= last):
            continue

        earliest = (
            await db.execute(
                select(PageView.viewed_at)
                .where(PageView.session_id == visitor.session_id, PageView.site_id == site_id)
                .order_by(PageView.viewed_at.asc())
                .limit(1)
            )
        ).scalar_one_or_none()
        if earliest is None:
            continue

        earliest = as_utc(earliest)
        visitor.first_visit = earliest
        if last is None or earliest > last:
            visitor.last_visit = earliest
        repaired.append(visitor.session_id)

    fixed = errors = 0
    if repaired:
        try:
            await db.commit()
            fixed = len(repaired)
        except Exception as e:
            await db.rollback()
            logger.error("Failed to fix %d visitors for %s: %s", len(repaired), site_id, e)
            errors = len(repaired)

    logger.info("🔧 %s: fixed %d visitor timestamps (%d errors)", site_id, fixed, errors)
    return {"fixed": fixed, "errors": errors, "total_visitors": len(visitors)}
