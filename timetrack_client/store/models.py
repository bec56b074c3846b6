from __future__ import annotations

import datetime as dt

from sqlalchemy import Column, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.dialects.sqlite import JSON as SQLiteJSON
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

UTC = dt.timezone.utc


def utcnow() -> dt.datetime:
    return dt.datetime.now(UTC)


def as_utc(value: dt.datetime) -> dt.datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    identifier = Column(String(100), nullable=False, unique=True, index=True)
    display_name = Column(String(200), nullable=False, default="")
    secret_hash = Column(String(64), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class Project(Base):
    __tablename__ = "projects"

    id = Column(String(100), primary_key=True)
    label = Column(String(200), nullable=False)


class Activity(Base):
    __tablename__ = "activities"

    id = Column(String(100), primary_key=True)
    label = Column(String(200), nullable=False)


class Task(Base):
    __tablename__ = "tasks"

    id = Column(Integer, primary_key=True, index=True)
    label = Column(String(200), nullable=False)
    description = Column(Text, nullable=False, default="")
    project_id = Column(String(100), ForeignKey("projects.id"), nullable=True, index=True)
    parent_label = Column(String(200), nullable=True)
    tags = Column(SQLiteJSON, nullable=False, default=list)
    assignee = Column(String(100), nullable=True, index=True)
    total_hours = Column(Float, nullable=False, default=0.0)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    project = relationship("Project")
    logs = relationship(
        "TimeLog",
        back_populates="task",
        cascade="all, delete-orphan",
        order_by="TimeLog.start_time",
    )

    @property
    def open_log(self) -> "TimeLog | None":
        for log in self.logs:
            if log.end_time is None:
                return log
        return None

    def recompute_total(self) -> None:
        seconds = 0.0
        for log in self.logs:
            if log.end_time is None:
                continue
            seconds += max((as_utc(log.end_time) - as_utc(log.start_time)).total_seconds(), 0.0)
        self.total_hours = seconds / 3600.0


class TimeLog(Base):
    __tablename__ = "time_logs"

    id = Column(Integer, primary_key=True, index=True)
    task_id = Column(Integer, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    activity_id = Column(String(100), ForeignKey("activities.id"), nullable=True)
    user_identifier = Column(String(100), nullable=False, default="")
    start_time = Column(DateTime(timezone=True), nullable=False, index=True)
    end_time = Column(DateTime(timezone=True), nullable=True, index=True)

    task = relationship("Task", back_populates="logs")
    activity = relationship("Activity")

    def mark_stopped(self, now: dt.datetime) -> None:
        if self.end_time is not None:
            return
        self.end_time = max(as_utc(now), as_utc(self.start_time))
