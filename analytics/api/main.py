"""
FastAPI Application — entry point.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.database import init_db, close_db
from api.routes import router, VERSION
from api.routes.analytics import analytics_router
from api.services.snapshots import SnapshotWriter

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown hook."""
    logger.info("🚀 Starting Site Analytics API v%s", VERSION)
    await init_db()
    logger.info("✅ Database ready")

    yield

    await close_db()
    logger.info("👋 Shutdown complete")


app = FastAPI(
    title="Site Analytics API",
    description=(
        "Tracking ingestion and traffic reports for client websites — "
        "page views, sessions, bounce rate, sources and day-over-day trends."
    ),
    version=VERSION,
    lifespan=lifespan,
)

# Serialises daily snapshot upserts per (site, day) for this process.
app.state.snapshot_writer = SnapshotWriter()

# CORS — the tracking snippet runs on arbitrary third-party sites
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)


@app.exception_handler(StarletteHTTPException)
async def http_error(request: Request, exc: StarletteHTTPException):
    return JSONResponse({"error": exc.detail}, status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def validation_error(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    msg = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
    return JSONResponse({"error": msg}, status_code=400)


app.include_router(router, prefix="/api/v1")
app.include_router(analytics_router, prefix="/api/v1")


@app.get("/", include_in_schema=False)
async def root():
    return {
        "service": "Site Analytics API",
        "version": VERSION,
        "docs": "/docs",
    }
