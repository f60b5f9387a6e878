"""
Site Analytics — raw tracking rows and daily snapshots.

Raw rows (page views, events) are append-only and written by the ingestion
endpoint.  Visitor rows are upserted once per session.  DailySnapshot rows
are written by the report endpoint and only ever read back as the previous
day's comparison baseline.
"""

import uuid

from sqlalchemy import Column, String, Text, DateTime, Date, Integer, JSON, func, Index

from api.database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


class Visitor(Base):
    """One row per tracked browser session."""
    __tablename__ = "website_visitors"

    id = Column(String(36), primary_key=True, default=_uuid)
    session_id = Column(String(128), nullable=False, unique=True)
    site_id = Column(String(128), nullable=False, index=True)
    location_id = Column(String(128), default="unknown")   # CRM location the site belongs to

    ip_hash = Column(String(64))                            # sha256 hex, never the raw IP
    user_agent = Column(Text)
    referrer = Column(Text)
    utm_source = Column(String(255))
    utm_medium = Column(String(255))
    utm_campaign = Column(String(255))
    device_type = Column(String(20))                        # "desktop", "mobile", "tablet"
    browser = Column(String(100))

    country_code = Column(String(8))
    region = Column(String(120))
    city = Column(String(120))

    first_visit = Column(DateTime(timezone=True), nullable=False)
    last_visit = Column(DateTime(timezone=True), nullable=False)

    def __repr__(self):
        return f"<Visitor {self.site_id}/{self.session_id}>"


class PageView(Base):
    """One row per page load."""
    __tablename__ = "page_views"

    id = Column(String(36), primary_key=True, default=_uuid)
    session_id = Column(String(128), nullable=False, index=True)
    site_id = Column(String(128), nullable=False)
    page_url = Column(Text, nullable=False, default="")
    page_title = Column(Text)
    referrer = Column(Text)
    utm_source = Column(String(255))
    utm_medium = Column(String(255))
    utm_campaign = Column(String(255))
    device_type = Column(String(20))
    browser = Column(String(100))
    viewed_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_page_views_site_viewed", "site_id", "viewed_at"),
    )

    def __repr__(self):
        return f"<PageView {self.site_id}/{self.session_id} {self.page_url}>"


class VisitorEvent(Base):
    """One row per custom interaction (click, form start, phone click …)."""
    __tablename__ = "visitor_events"

    id = Column(String(36), primary_key=True, default=_uuid)
    session_id = Column(String(128), nullable=False, index=True)
    site_id = Column(String(128), nullable=False)
    event_type = Column(String(60), nullable=False, default="custom")
    event_data = Column(JSON, default=dict)
    element_selector = Column(Text)
    page_url = Column(Text)
    occurred_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_visitor_events_site_occurred", "site_id", "occurred_at"),
    )

    def __repr__(self):
        return f"<VisitorEvent {self.site_id}/{self.session_id} {self.event_type}>"


class DailySnapshot(Base):
    """One row per (site, calendar day): tomorrow's percentage-change baseline."""
    __tablename__ = "daily_analytics"

    id = Column(String(36), primary_key=True, default=_uuid)
    site_id = Column(String(128), nullable=False)
    date = Column(Date, nullable=False)

    page_views = Column(Integer, default=0)
    unique_visitors = Column(Integer, default=0)
    sessions = Column(Integer, default=0)
    avg_session_duration = Column(Integer, default=0)     # whole seconds
    bounce_rate = Column(Integer, default=0)              # 0-100
    events_count = Column(Integer, default=0)

    updated_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("ix_daily_analytics_site_date", "site_id", "date", unique=True),
    )

    def __repr__(self):
        return (
            f"<DailySnapshot {self.site_id}/{self.date} "
            f"({self.page_views} views, {self.sessions} sessions)>"
        )
