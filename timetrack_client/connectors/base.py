"""Capability interface the synchronization core consumes."""

from __future__ import annotations

import datetime as dt
from typing import List, Protocol, Sequence, runtime_checkable

from ..models import Activity, AuthCredential, Project, Task, TimelineBlock, UserProfile


@runtime_checkable
class Connector(Protocol):
    """Backend capability.

    Every method fails with a :class:`~timetrack_client.errors.ConnectorError`
    whose kind matches the operation (login, read, update or create), or
    ``not_ready`` when called before a successful login.
    """

    async def login(self, credential: AuthCredential) -> UserProfile: ...

    async def list_tasks(self, user_identifier: str) -> List[Task]: ...

    async def list_activities(self) -> List[Activity]: ...

    async def list_projects(self) -> List[Project]: ...

    async def start_task(self, task: Task, activity: Activity, timestamp: dt.datetime,
                         user_identifier: str) -> None: ...

    async def stop_task(self, task: Task, timestamp: dt.datetime, user_identifier: str) -> None: ...

    async def new_task(self, task: Task) -> None: ...

    async def list_day_timeline(self, day: dt.date, tasks: Sequence[Task]) -> List[TimelineBlock]: ...

    async def update_timeline_item(self, item: TimelineBlock) -> TimelineBlock: ...


__all__ = ["Connector"]
