from api.models.site_analytics import (  # noqa: F401
    DailySnapshot,
    PageView,
    Visitor,
    VisitorEvent,
)
