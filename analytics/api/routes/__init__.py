"""
API Routes — health.
"""

from datetime import datetime, timezone

from fastapi import APIRouter

from api.schemas import HealthResponse

VERSION = "1.0.0"

router = APIRouter()


# ── Health ──────────────────────────────────────────────

@router.get("/health", response_model=HealthResponse, tags=["system"])
async def health():
    return HealthResponse(
        status="ok",
        timestamp=datetime.now(timezone.utc).isoformat(),
        version=VERSION,
    )
