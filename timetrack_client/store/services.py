from __future__ import annotations

import datetime as dt
import hashlib
import hmac
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session, selectinload

from ..errors import ConnectorError
from .models import Activity, Project, Task, TimeLog, User, as_utc

UTC = dt.timezone.utc

SECRET_SALT = b"timetrack-client"


def secret_hash(secret: str) -> str:
    digest = hmac.new(SECRET_SALT, msg=secret.encode(), digestmod=hashlib.sha256)
    return digest.hexdigest()


def from_db_datetime(value: Optional[dt.datetime]) -> Optional[dt.datetime]:
    if value is None:
        return None
    return as_utc(value)


def day_bounds(day: dt.date, tz: dt.tzinfo) -> Tuple[dt.datetime, dt.datetime]:
    start_local = dt.datetime.combine(day, dt.time.min, tzinfo=tz)
    end_local = start_local + dt.timedelta(days=1)
    return start_local.astimezone(UTC), end_local.astimezone(UTC)


# ----------------------------------------------------------------------
# Users
# ----------------------------------------------------------------------
def create_user(db: Session, identifier: str, secret: str, display_name: str = "") -> User:
    user = User(identifier=identifier, display_name=display_name or identifier, secret_hash=secret_hash(secret))
    db.add(user)
    db.flush()
    return user


def authenticate(db: Session, identifier: str, secret: str) -> User:
    user = db.query(User).filter(User.identifier == identifier).one_or_none()
    if user is None or not hmac.compare_digest(user.secret_hash, secret_hash(secret)):
        raise ConnectorError.login("Invalid login or password")
    return user


# ----------------------------------------------------------------------
# Reference data
# ----------------------------------------------------------------------
def create_project(db: Session, project_id: str, label: str) -> Project:
    project = Project(id=project_id, label=label)
    db.add(project)
    db.flush()
    return project


def create_activity(db: Session, activity_id: str, label: str) -> Activity:
    activity = Activity(id=activity_id, label=label)
    db.add(activity)
    db.flush()
    return activity


def list_projects(db: Session) -> List[Project]:
    return db.query(Project).order_by(Project.label.asc()).all()


def list_activities(db: Session) -> List[Activity]:
    return db.query(Activity).order_by(Activity.label.asc()).all()


# ----------------------------------------------------------------------
# Tasks
# ----------------------------------------------------------------------
def list_tasks(db: Session, user_identifier: str) -> List[Task]:
    return (
        db.query(Task)
        .options(selectinload(Task.logs))
        .filter(or_(Task.assignee.is_(None), Task.assignee == user_identifier))
        .order_by(Task.id.asc())
        .all()
    )


def create_task(
    db: Session,
    label: str,
    *,
    description: str = "",
    project_id: Optional[str] = None,
    parent_label: Optional[str] = None,
    tags: Iterable[str] = (),
    assignee: Optional[str] = None,
) -> Task:
    label = (label or "").strip()
    if not label:
        raise ConnectorError.create("A task needs a label")
    if project_id and db.get(Project, project_id) is None:
        raise ConnectorError.create(f"Unknown project {project_id}")
    task = Task(
        label=label,
        description=description or "",
        project_id=project_id or None,
        parent_label=parent_label,
        tags=[tag for tag in tags if tag],
        assignee=assignee,
        total_hours=0.0,
    )
    db.add(task)
    db.flush()
    return task


def _get_task(db: Session, task_id: str) -> Task:
    try:
        key = int(task_id)
    except (TypeError, ValueError):
        raise ConnectorError.update(f"Unknown task {task_id}") from None
    task = db.get(Task, key)
    if task is None:
        raise ConnectorError.update(f"Unknown task {task_id}")
    return task


def start_task(
    db: Session,
    task_id: str,
    activity_id: Optional[str],
    timestamp: dt.datetime,
    user_identifier: str,
) -> TimeLog:
    task = _get_task(db, task_id)
    if task.open_log is not None:
        raise ConnectorError.update(f"Task {task.label} is already running")
    if activity_id and db.get(Activity, activity_id) is None:
        raise ConnectorError.update(f"Unknown activity {activity_id}")
    log = TimeLog(
        task=task,
        activity_id=activity_id or None,
        user_identifier=user_identifier,
        start_time=as_utc(timestamp),
    )
    db.add(log)
    db.flush()
    return log


def stop_task(db: Session, task_id: str, timestamp: dt.datetime) -> TimeLog:
    task = _get_task(db, task_id)
    log = task.open_log
    if log is None:
        raise ConnectorError.update(f"Task {task.label} is not running")
    log.mark_stopped(timestamp)
    task.recompute_total()
    db.flush()
    return log


# ----------------------------------------------------------------------
# Time logs
# ----------------------------------------------------------------------
def list_logs_for_day(db: Session, day: dt.date, tz: dt.tzinfo) -> List[TimeLog]:
    start, end = day_bounds(day, tz)
    return (
        db.query(TimeLog)
        .options(selectinload(TimeLog.task), selectinload(TimeLog.activity))
        .filter(and_(TimeLog.start_time >= start, TimeLog.start_time < end))
        .order_by(TimeLog.start_time.asc())
        .all()
    )


def update_log(db: Session, log_id: str, start: dt.datetime, end: dt.datetime) -> TimeLog:
    try:
        key = int(log_id)
    except (TypeError, ValueError):
        raise ConnectorError.update(f"Unknown timeline entry {log_id}") from None
    log = db.get(TimeLog, key)
    if log is None:
        raise ConnectorError.update(f"Unknown timeline entry {log_id}")
    if log.end_time is None:
        raise ConnectorError.update("Running entries cannot be edited")
    start_utc = as_utc(start)
    end_utc = as_utc(end)
    if start_utc >= end_utc:
        raise ConnectorError.update("Start must be before end")
    log.start_time = start_utc
    log.end_time = end_utc
    log.task.recompute_total()
    db.flush()
    return log
