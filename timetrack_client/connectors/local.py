"""In-process connector backed by a SQLite record store."""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Sequence, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..errors import ConnectorError, ErrorKind
from ..models import Activity, AuthCredential, Project, Task, TimelineBlock, UserProfile, utcnow
from ..store import services
from ..store import models as records
from ..store.database import create_session_factory, session_scope, sqlite_url

logger = logging.getLogger(__name__)

T = TypeVar("T")

UTC = dt.timezone.utc


def _task_from_record(record: records.Task) -> Task:
    open_log = record.open_log
    return Task(
        id=str(record.id),
        label=record.label,
        description=record.description or "",
        project=record.project_id,
        parent_label=record.parent_label,
        tags=list(record.tags or []),
        total_hours=record.total_hours or 0.0,
        is_running=open_log is not None,
        last_open_timestamp=services.from_db_datetime(open_log.start_time) if open_log else None,
    )


def _block_from_record(record: records.TimeLog, now: dt.datetime) -> TimelineBlock:
    label = record.task.label
    if record.activity is not None:
        label = f"{label} ({record.activity.label})"
    return TimelineBlock(
        id=str(record.id),
        start=services.from_db_datetime(record.start_time),
        end=services.from_db_datetime(record.end_time) or now,
        task=str(record.task_id),
        activity=record.activity_id,
        label=label,
    )


class LocalConnector:
    """Connector that keeps tasks and time logs in a local SQLite database.

    SQLAlchemy calls block, so each operation runs in a worker thread with
    its own session.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        timezone: Optional[dt.tzinfo] = None,
        clock: Optional[Callable[[], dt.datetime]] = None,
    ) -> None:
        self._session_factory = session_factory
        self.timezone = timezone or UTC
        self._clock = clock or utcnow
        self._user: Optional[UserProfile] = None

    @classmethod
    def from_path(cls, path: Path, **kwargs) -> "LocalConnector":
        return cls(create_session_factory(sqlite_url(path)), **kwargs)

    @property
    def user(self) -> Optional[UserProfile]:
        return self._user

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    async def _run(self, kind: ErrorKind, operation: Callable[[Session], T]) -> T:
        def work() -> T:
            with session_scope(self._session_factory) as session:
                return operation(session)

        try:
            return await asyncio.to_thread(work)
        except SQLAlchemyError as exc:
            logger.warning("Database error during %s operation: %s", kind.value, exc)
            raise ConnectorError(kind, f"Database error: {exc}", original=exc) from exc

    def _require_login(self) -> UserProfile:
        if self._user is None:
            raise ConnectorError.not_ready("Not logged in")
        return self._user

    # ------------------------------------------------------------------
    # Seeding
    # ------------------------------------------------------------------
    async def add_user(self, identifier: str, secret: str, display_name: str = "") -> UserProfile:
        def operation(db: Session) -> UserProfile:
            user = services.create_user(db, identifier, secret, display_name)
            return UserProfile(display_name=user.display_name, identifier=user.identifier)

        return await self._run(ErrorKind.CREATE, operation)

    async def add_project(self, project_id: str, label: str) -> Project:
        def operation(db: Session) -> Project:
            record = services.create_project(db, project_id, label)
            return Project(id=record.id, label=record.label)

        return await self._run(ErrorKind.CREATE, operation)

    async def add_activity(self, activity_id: str, label: str) -> Activity:
        def operation(db: Session) -> Activity:
            record = services.create_activity(db, activity_id, label)
            return Activity(id=record.id, label=record.label)

        return await self._run(ErrorKind.CREATE, operation)

    async def add_task(
        self,
        label: str,
        *,
        description: str = "",
        project: Optional[str] = None,
        parent_label: Optional[str] = None,
        tags: Iterable[str] = (),
        assignee: Optional[str] = None,
    ) -> Task:
        def operation(db: Session) -> Task:
            record = services.create_task(
                db,
                label,
                description=description,
                project_id=project,
                parent_label=parent_label,
                tags=list(tags),
                assignee=assignee,
            )
            return _task_from_record(record)

        return await self._run(ErrorKind.CREATE, operation)

    # ------------------------------------------------------------------
    # Capability
    # ------------------------------------------------------------------
    async def login(self, credential: AuthCredential) -> UserProfile:
        def operation(db: Session) -> UserProfile:
            user = services.authenticate(db, credential.identifier, credential.secret)
            return UserProfile(display_name=user.display_name, identifier=user.identifier)

        self._user = None
        profile = await self._run(ErrorKind.LOGIN, operation)
        self._user = profile
        return profile

    async def list_tasks(self, user_identifier: str) -> List[Task]:
        self._require_login()
        return await self._run(
            ErrorKind.READ,
            lambda db: [_task_from_record(record) for record in services.list_tasks(db, user_identifier)],
        )

    async def list_activities(self) -> List[Activity]:
        self._require_login()
        return await self._run(
            ErrorKind.READ,
            lambda db: [Activity(id=record.id, label=record.label) for record in services.list_activities(db)],
        )

    async def list_projects(self) -> List[Project]:
        self._require_login()
        return await self._run(
            ErrorKind.READ,
            lambda db: [Project(id=record.id, label=record.label) for record in services.list_projects(db)],
        )

    async def start_task(self, task: Task, activity: Activity, timestamp: dt.datetime,
                         user_identifier: str) -> None:
        self._require_login()

        def operation(db: Session) -> None:
            services.start_task(db, task.id, activity.id, timestamp, user_identifier)

        await self._run(ErrorKind.UPDATE, operation)

    async def stop_task(self, task: Task, timestamp: dt.datetime, user_identifier: str) -> None:
        self._require_login()

        def operation(db: Session) -> None:
            services.stop_task(db, task.id, timestamp)

        await self._run(ErrorKind.UPDATE, operation)

    async def new_task(self, task: Task) -> None:
        user = self._require_login()

        def operation(db: Session) -> None:
            services.create_task(
                db,
                task.label,
                description=task.description,
                project_id=task.project,
                parent_label=task.parent_label,
                tags=task.tags,
                assignee=user.identifier,
            )

        await self._run(ErrorKind.CREATE, operation)

    async def list_day_timeline(self, day: dt.date, tasks: Sequence[Task]) -> List[TimelineBlock]:
        self._require_login()
        now = self._clock()

        def operation(db: Session) -> List[TimelineBlock]:
            logs = services.list_logs_for_day(db, day, self.timezone)
            return [_block_from_record(log, now) for log in logs]

        return await self._run(ErrorKind.READ, operation)

    async def update_timeline_item(self, item: TimelineBlock) -> TimelineBlock:
        self._require_login()
        now = self._clock()
        return await self._run(
            ErrorKind.UPDATE,
            lambda db: _block_from_record(services.update_log(db, item.id, item.start, item.end), now),
        )


__all__ = ["LocalConnector"]
