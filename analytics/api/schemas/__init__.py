"""
Site Analytics — Pydantic request/response schemas.
"""

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

EVENT_TYPES = ("page_view", "event")


class UtmParams(BaseModel):
    source: str | None = Field(None, max_length=255)
    medium: str | None = Field(None, max_length=255)
    campaign: str | None = Field(None, max_length=255)


class DeviceInfo(BaseModel):
    type: str | None = Field(None, max_length=20)
    browser: str | None = Field(None, max_length=100)
    os: str | None = Field(None, max_length=100)


class _TrackingPayload(BaseModel):
    """Fields every tracking-snippet call carries."""

    site_id: str = Field(..., alias="siteId", min_length=1, max_length=128)
    session_id: str = Field(..., alias="sessionId", min_length=1, max_length=128)
    page_url: str | None = Field(None, alias="pageUrl")
    user_agent: str | None = Field(None, alias="userAgent")
    referrer: str | None = None
    utm_params: UtmParams | None = Field(None, alias="utmParams")
    device_info: DeviceInfo | None = Field(None, alias="deviceInfo")
    event_data: dict[str, Any] = Field(default_factory=dict, alias="eventData")

    model_config = {"populate_by_name": True}


class PageViewPayload(_TrackingPayload):
    event_type: Literal["page_view"] = Field(..., alias="eventType")


class CustomEventPayload(_TrackingPayload):
    event_type: Literal["event"] = Field(..., alias="eventType")


TrackingPayload = Annotated[
    Union[PageViewPayload, CustomEventPayload],
    Field(discriminator="event_type"),
]

tracking_payload_adapter = TypeAdapter(TrackingPayload)


class TrackResponse(BaseModel):
    success: bool = True


class MaintenanceRequest(BaseModel):
    site_id: str | None = Field(None, alias="siteId", max_length=128)
    action: str | None = None

    model_config = {"populate_by_name": True}


class MaintenanceResponse(BaseModel):
    success: bool
    message: str
    fixed: int = 0
    errors: int = 0
    total_visitors: int = Field(0, serialization_alias="totalVisitors")


class HealthResponse(BaseModel):
    status: str
    timestamp: str
    version: str
