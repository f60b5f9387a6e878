"""
Site Analytics — tracking ingestion, traffic report, maintenance.

All three share the ``/analytics`` path the embedded snippet and the
dashboard were built against:

- POST  ingest one page view / custom event
- GET   traffic report for a site over a trailing window
- PUT   maintenance actions (``fix_visitor_timestamps``)
"""

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from api.config import settings
from api.database import get_db
from api.schemas import (
    EVENT_TYPES,
    MaintenanceRequest,
    MaintenanceResponse,
    TrackResponse,
    tracking_payload_adapter,
)
from api.services.ingest import client_ip, fix_visitor_timestamps, ingest
from api.services.report import build_report
from api.services.snapshots import SnapshotWriter

logger = logging.getLogger(__name__)
analytics_router = APIRouter(prefix="/analytics", tags=["analytics"])

MISSING_FIELDS = "Missing required fields: siteId, sessionId, eventType"


def get_snapshot_writer(request: Request) -> SnapshotWriter:
    return request.app.state.snapshot_writer


def _parse_days(raw: str | None) -> int:
    if raw is None or raw == "":
        return settings.default_report_days
    try:
        days = int(raw)
    except ValueError:
        raise HTTPException(400, "days must be an integer")
    if days < 1 or days > settings.max_report_days:
        raise HTTPException(400, f"days must be between 1 and {settings.max_report_days}")
    return days


def _first_error(exc: ValidationError) -> str:
    err = exc.errors()[0]
    where = ".".join(str(p) for p in err.get("loc", ()))
    return f"Invalid payload: {where} {err.get('msg', '')}".strip()


# ── Ingest ──────────────────────────────────────────────

@analytics_router.post("", response_model=TrackResponse)
async def track(request: Request, db: AsyncSession = Depends(get_db)):
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise HTTPException(400, "Request body must be JSON")
    if not isinstance(body, dict):
        raise HTTPException(400, "Request body must be a JSON object")

    if not body.get("siteId") or not body.get("sessionId") or not body.get("eventType"):
        raise HTTPException(400, MISSING_FIELDS)
    if body["eventType"] not in EVENT_TYPES:
        raise HTTPException(400, "Unknown event type")

    try:
        payload = tracking_payload_adapter.validate_python(body)
    except ValidationError as e:
        raise HTTPException(400, _first_error(e))

    peer = request.client.host if request.client else None
    try:
        await ingest(db, payload, ip=client_ip(request.headers, peer))
    except ValueError as e:
        raise HTTPException(400, str(e))
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(
            "❌ Ingest failed (%s, site=%s, session=%s): %s",
            payload.event_type, payload.site_id, payload.session_id, e,
        )
        raise HTTPException(500, "Internal server error")

    return TrackResponse(success=True)


# ── Report ──────────────────────────────────────────────

@analytics_router.get("")
async def get_report(
    site_id: str | None = Query(None, alias="siteId"),
    days: str | None = Query(None),
    db: AsyncSession = Depends(get_db),
    writer: SnapshotWriter = Depends(get_snapshot_writer),
):
    if not site_id:
        raise HTTPException(400, "siteId parameter required")
    window = _parse_days(days)

    try:
        return await build_report(db, site_id, window, writer)
    except SQLAlchemyError as e:
        logger.error("❌ Report query failed (site=%s, days=%d): %s", site_id, window, e)
        raise HTTPException(500, "Failed to fetch analytics")


# ── Maintenance ─────────────────────────────────────────

@analytics_router.put("", response_model=MaintenanceResponse)
async def maintenance(req: MaintenanceRequest, db: AsyncSession = Depends(get_db)):
    if not req.site_id:
        raise HTTPException(400, "siteId required")
    if req.action != "fix_visitor_timestamps":
        raise HTTPException(400, "Unknown action")

    logger.info("🔧 Fixing visitor timestamps for %s", req.site_id)
    try:
        result = await fix_visitor_timestamps(db, req.site_id)
    except SQLAlchemyError as e:
        logger.error("❌ Maintenance failed (site=%s): %s", req.site_id, e)
        raise HTTPException(500, "Failed to process request")

    return MaintenanceResponse(
        success=True,
        message=f"Fixed {result['fixed']} visitor records, {result['errors']} errors",
        fixed=result["fixed"],
        errors=result["errors"],
        total_visitors=result["total_visitors"],
    )
