"""Domain records exchanged between the connectors and the synchronization core."""

from __future__ import annotations

import datetime as dt
from typing import Any, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

UTC = dt.timezone.utc


def utcnow() -> dt.datetime:
    return dt.datetime.now(UTC)


def _ensure_aware(value: Optional[dt.datetime]) -> Optional[dt.datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class AuthCredential(BaseModel):
    model_config = ConfigDict(frozen=True)

    identifier: str = ""
    secret: str = ""
    host: str = ""

    @classmethod
    def empty(cls) -> "AuthCredential":
        return cls()

    def is_empty(self) -> bool:
        return not (self.identifier or self.secret or self.host)


class UserProfile(BaseModel):
    """Profile returned by a successful login.

    Connectors may attach additional fields; they are kept as extras.
    """

    model_config = ConfigDict(frozen=True, extra="allow")

    display_name: str = ""
    identifier: str = ""


class Activity(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    label: str

    def matches(self, query: str) -> bool:
        return query.strip().lower() in self.label.lower()


class Project(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    label: str


class Task(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    label: str
    description: str = ""
    project: Optional[str] = None
    parent_label: Optional[str] = None
    tags: Tuple[str, ...] = Field(default_factory=tuple)
    total_hours: float = 0.0
    is_running: bool = False
    last_open_timestamp: Optional[dt.datetime] = None

    @field_validator("tags", mode="before")
    @classmethod
    def _clean_tags(cls, value: Any) -> Tuple[str, ...]:
        if value is None:
            return ()
        if isinstance(value, str):
            value = value.split(",")
        cleaned = []
        for tag in value:
            tag = str(tag).strip()
            if tag:
                cleaned.append(tag)
        return tuple(cleaned)

    @field_validator("total_hours", mode="before")
    @classmethod
    def _default_hours(cls, value: Any) -> Any:
        return 0.0 if value in (None, "") else value

    @field_validator("last_open_timestamp")
    @classmethod
    def _aware_timestamp(cls, value: Optional[dt.datetime]) -> Optional[dt.datetime]:
        return _ensure_aware(value)

    @model_validator(mode="before")
    @classmethod
    def _drop_stale_timestamp(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("is_running"):
            data = {**data, "last_open_timestamp": None}
        return data

    @model_validator(mode="after")
    def _check_running(self) -> "Task":
        if self.is_running and self.last_open_timestamp is None:
            raise ValueError("running task requires last_open_timestamp")
        return self

    def elapsed(self, now: Optional[dt.datetime] = None) -> dt.timedelta:
        """Accumulated working time including the currently open interval."""

        total = dt.timedelta(hours=self.total_hours or 0.0)
        if self.is_running and self.last_open_timestamp is not None:
            current = _ensure_aware(now) or utcnow()
            total += max(current - self.last_open_timestamp, dt.timedelta(0))
        return total


class TimelineBlock(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    start: dt.datetime
    end: dt.datetime
    task: Optional[str] = None
    activity: Optional[str] = None
    label: str = ""

    @field_validator("start", "end")
    @classmethod
    def _aware(cls, value: dt.datetime) -> dt.datetime:
        return _ensure_aware(value)

    @property
    def duration(self) -> dt.timedelta:
        return max(self.end - self.start, dt.timedelta(0))


__all__ = [
    "Activity",
    "AuthCredential",
    "Project",
    "Task",
    "TimelineBlock",
    "UserProfile",
    "utcnow",
]
