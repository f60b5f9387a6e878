"""
Site Analytics — Configuration via environment variables.
"""

from typing import Literal

from pydantic_settings import BaseSettings
from pydantic import Field


class Settings(BaseSettings):
    """All settings read from env / .env file."""

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./analytics.db",
        description="Async SQLAlchemy DB URL",
    )

    # Geolocation (optional — graceful no-op without token)
    ipinfo_token: str = Field(default="", description="IPinfo.io API token")
    ipinfo_url: str = Field(default="https://ipinfo.io")
    geo_lookup_enabled: bool = Field(default=True)
    geo_timeout_secs: float = Field(default=5.0)

    # Privacy — raw IPs are never stored, only salted hashes
    ip_hash_salt: str = Field(default="", description="Salt mixed into visitor IP hashes")

    # Reports
    default_report_days: int = Field(default=30)
    max_report_days: int = Field(default=365)
    recent_sample_size: int = Field(default=50)
    top_n: int = Field(default=10)
    max_session_seconds: int = Field(
        default=28800,
        description="Sessions lasting this long or longer are treated as corrupted",
    )
    snapshot_mode: Literal["window", "daily"] = Field(
        default="window",
        description="'window' stores the requested window's totals, 'daily' a fixed 1-day window",
    )

    @property
    def snapshot_uses_daily_window(self) -> bool:
        return self.snapshot_mode == "daily"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


settings = Settings()
