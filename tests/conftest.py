from __future__ import annotations

import asyncio
import datetime as dt
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import pytest
from sqlalchemy.orm import sessionmaker

from timetrack_client.backend import Backend
from timetrack_client.connectors.local import LocalConnector
from timetrack_client.errors import ConnectorError
from timetrack_client.models import Activity, AuthCredential, Project, Task, TimelineBlock, UserProfile
from timetrack_client.store import services
from timetrack_client.store.database import create_session_factory, session_scope, sqlite_url

UTC = dt.timezone.utc
START = dt.datetime(2024, 1, 1, 9, 0, tzinfo=UTC)


class FakeClock:
    def __init__(self, now: dt.datetime = START) -> None:
        self.now = now

    def __call__(self) -> dt.datetime:
        return self.now

    def advance(self, **kwargs) -> dt.datetime:
        self.now = self.now + dt.timedelta(**kwargs)
        return self.now


class FakeConnector:
    """Scripted connector keeping its records in memory.

    ``failures`` maps an operation name to the error it raises, ``gates``
    maps an operation name to an event the call waits for.
    """

    def __init__(self) -> None:
        self.valid = AuthCredential(identifier="u", secret="p", host="h")
        self.profile = UserProfile(display_name="Una User", identifier="u")
        self.projects: List[Project] = [Project(id="P1", label="Website")]
        self.activities: List[Activity] = [
            Activity(id="dev", label="Development"),
            Activity(id="mtg", label="Meeting"),
        ]
        self.tasks: List[Task] = [
            Task(id="T1", label="Write report", project="P1", tags=["docs"], total_hours=1.0),
            Task(id="T2", label="Fix bug", project="P1"),
        ]
        self.timelines: Dict[dt.date, List[TimelineBlock]] = {}
        self.accept_updates = True
        self.failures: Dict[str, Exception] = {}
        self.gates: Dict[str, asyncio.Event] = {}
        self.day_gates: Dict[dt.date, asyncio.Event] = {}
        self.calls: List[tuple] = []

    def call_names(self) -> List[str]:
        return [call[0] for call in self.calls]

    async def _enter(self, name: str, *args) -> None:
        self.calls.append((name, *args))
        gate = self.gates.get(name)
        if gate is not None:
            await gate.wait()
        failure = self.failures.get(name)
        if failure is not None:
            raise failure

    def _replace_task(self, task_id: str, **changes) -> None:
        self.tasks = [
            task.model_copy(update=changes) if task.id == task_id else task for task in self.tasks
        ]

    async def login(self, credential: AuthCredential) -> UserProfile:
        await self._enter("login", credential)
        if credential != self.valid:
            raise ConnectorError.login("Invalid login or password")
        return self.profile

    async def list_tasks(self, user_identifier: str) -> List[Task]:
        await self._enter("list_tasks", user_identifier)
        return list(self.tasks)

    async def list_activities(self) -> List[Activity]:
        await self._enter("list_activities")
        return list(self.activities)

    async def list_projects(self) -> List[Project]:
        await self._enter("list_projects")
        return list(self.projects)

    async def start_task(self, task: Task, activity: Activity, timestamp: dt.datetime,
                         user_identifier: str) -> None:
        await self._enter("start_task", task.id, activity.id, timestamp, user_identifier)
        self._replace_task(task.id, is_running=True, last_open_timestamp=timestamp)

    async def stop_task(self, task: Task, timestamp: dt.datetime, user_identifier: str) -> None:
        await self._enter("stop_task", task.id, timestamp, user_identifier)
        current = next(item for item in self.tasks if item.id == task.id)
        hours = (timestamp - current.last_open_timestamp).total_seconds() / 3600.0
        self._replace_task(
            task.id,
            is_running=False,
            last_open_timestamp=None,
            total_hours=current.total_hours + hours,
        )

    async def new_task(self, task: Task) -> None:
        await self._enter("new_task", task)
        self.tasks.append(task.model_copy(update={"id": f"T{len(self.tasks) + 1}"}))

    async def list_day_timeline(self, day: dt.date, tasks: Sequence[Task]) -> List[TimelineBlock]:
        await self._enter("list_day_timeline", day)
        gate = self.day_gates.get(day)
        if gate is not None:
            await gate.wait()
        return list(self.timelines.get(day, []))

    async def update_timeline_item(self, item: TimelineBlock) -> TimelineBlock:
        await self._enter("update_timeline_item", item)
        if self.accept_updates:
            for day, blocks in self.timelines.items():
                self.timelines[day] = [item if block.id == item.id else block for block in blocks]
        return item


def make_block(block_id: str, start_hour: int, end_hour: int, task: Optional[str] = "T1",
               day: dt.date = START.date()) -> TimelineBlock:
    return TimelineBlock(
        id=block_id,
        start=dt.datetime.combine(day, dt.time(start_hour), tzinfo=UTC),
        end=dt.datetime.combine(day, dt.time(end_hour), tzinfo=UTC),
        task=task,
        activity="dev",
        label=block_id,
    )


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture()
def backend(connector: FakeConnector, clock: FakeClock) -> Backend:
    return Backend(connector, clock=clock, timezone=UTC)


@pytest.fixture()
def session_factory(tmp_path: Path) -> sessionmaker:
    return create_session_factory(sqlite_url(tmp_path / "test.db"))


@pytest.fixture()
def seeded_factory(session_factory: sessionmaker) -> sessionmaker:
    with session_scope(session_factory) as db:
        services.create_user(db, "u", "p", "Una User")
        services.create_project(db, "P1", "Website")
        services.create_activity(db, "dev", "Development")
        services.create_task(db, "Write report", project_id="P1", tags=["docs"])
        services.create_task(db, "Private task", assignee="someone-else")
    return session_factory


@pytest.fixture()
def local_connector(seeded_factory: sessionmaker, clock: FakeClock) -> LocalConnector:
    return LocalConnector(seeded_factory, timezone=UTC, clock=clock)
