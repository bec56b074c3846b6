from __future__ import annotations

from pathlib import Path
from typing import Literal, Optional
from zoneinfo import ZoneInfo

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .connectors.base import Connector

DEFAULT_API_BASE_URL = "http://127.0.0.1:8000"


class Settings(BaseSettings):
    """Client runtime configuration."""

    model_config = SettingsConfigDict(env_prefix="TIMETRACK_", case_sensitive=False)

    app_name: str = "TimeTrack Client"
    connector: Literal["local", "http"] = "local"

    api_base_url: str = DEFAULT_API_BASE_URL
    request_timeout: int = 15

    sqlite_path: Path = Path("./data/timetrack-client.db")
    timezone: str = "Europe/Berlin"

    tick_interval_seconds: float = Field(default=1.0, gt=0)

    host: str = "127.0.0.1"
    port: int = 8090
    log_level: str = "INFO"

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper()

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


def load_settings(env_path: Optional[Path] = None) -> Settings:
    """Build the settings, reading an optional ``.env`` file first."""

    env_path = env_path or Path.cwd() / ".env"
    if env_path.exists():
        load_dotenv(env_path)
    return Settings()


def build_connector(settings: Settings) -> Connector:
    """Create the single active connector selected by ``settings.connector``."""

    if settings.connector == "http":
        from .connectors.http import HttpConnector

        return HttpConnector(
            settings.api_base_url,
            timeout=settings.request_timeout,
            timezone=settings.tzinfo,
        )

    from .connectors.local import LocalConnector

    settings.sqlite_path.parent.mkdir(parents=True, exist_ok=True)
    return LocalConnector.from_path(settings.sqlite_path, timezone=settings.tzinfo)


__all__ = ["Settings", "build_connector", "load_settings"]
