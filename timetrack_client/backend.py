"""State synchronization core.

``Backend`` owns the application state and the single active connector.
Every change to the state goes through one of the actions listed in
``ACTION_NAMES``; connector failures never escape an action, they are
funneled through :meth:`Backend.throw_error` into the error queue.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
from types import MappingProxyType
from typing import Any, Callable, Mapping, NamedTuple, Optional, Set

from .connectors.base import Connector
from .errors import ConnectorError, ErrorKind
from .models import Activity, AuthCredential, Task, TimelineBlock, UserProfile, utcnow
from .state import ApplicationState, StateChannel, Subscription

logger = logging.getLogger(__name__)

ACTION_NAMES = (
    "throw_error",
    "login",
    "list_tasks",
    "start_task",
    "stop_task",
    "dismiss_error",
    "list_day_timeline",
    "update_active_timeline_block",
    "update_timeline_block",
    "set_current_date",
    "new_task",
)


class BackendContext(NamedTuple):
    """What consumers receive: the latest snapshot and the bound actions."""

    state: ApplicationState
    actions: Mapping[str, Callable[..., Any]]


def _as_connector_error(exc: Exception, kind: ErrorKind, message: str) -> ConnectorError:
    if isinstance(exc, ConnectorError):
        return exc
    return ConnectorError(kind, f"{message}: {exc}", original=exc)


class Backend:
    def __init__(
        self,
        connector: Connector,
        channel: Optional[StateChannel] = None,
        *,
        clock: Optional[Callable[[], dt.datetime]] = None,
        timezone: Optional[dt.tzinfo] = None,
    ) -> None:
        self.connector = connector
        self.timezone = timezone
        self._clock = clock or utcnow
        self.channel = channel or StateChannel(ApplicationState(day=self._today()))
        self._in_flight: Set[str] = set()
        self._background: Set[asyncio.Task] = set()
        self._timeline_generation = 0
        self.actions: Mapping[str, Callable[..., Any]] = MappingProxyType(
            {name: getattr(self, name) for name in ACTION_NAMES}
        )

    # ------------------------------------------------------------------
    # Distribution
    # ------------------------------------------------------------------
    @property
    def state(self) -> ApplicationState:
        return self.channel.snapshot

    def context(self) -> BackendContext:
        return BackendContext(self.state, self.actions)

    def subscribe(self, listener: Callable[[BackendContext], Any]) -> Subscription:
        return self.channel.subscribe(lambda state: listener(BackendContext(state, self.actions)))

    def running_task(self) -> Optional[Task]:
        return self.state.running_task()

    def now(self) -> dt.datetime:
        return self._clock()

    async def wait_idle(self) -> None:
        """Wait until every scheduled reconciliation has finished."""

        while self._background:
            await asyncio.gather(*list(self._background))

    def _today(self) -> dt.date:
        now = self._clock()
        if self.timezone is not None:
            now = now.astimezone(self.timezone)
        return now.date()

    def _user_identifier(self) -> str:
        user = self.state.user
        return user.identifier or user.display_name

    # ------------------------------------------------------------------
    # Errors
    # ------------------------------------------------------------------
    def dismiss_error(self, err: ConnectorError) -> None:
        errors = self.state.errors
        remaining = tuple(queued for queued in errors if queued is not err)
        if len(remaining) == len(errors):
            return
        self.channel.commit(errors=remaining)

    def throw_error(self, err: ConnectorError, done: Optional[Callable[[ConnectorError], Any]] = None) -> None:
        logger.error("Error in backend call: %s", err.describe())
        if err.info is not None:
            for message in err.info.server_messages:
                logger.error(message)
            for group in err.info.remote_trace:
                logger.error("\n".join(group))

        if not any(queued is err for queued in self.state.errors):
            self.channel.commit(errors=self.state.errors + (err,))
        if callable(done):
            done(err)

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------
    async def login(
        self,
        credential: AuthCredential,
        done: Optional[Callable[..., Any]] = None,
    ) -> Optional[UserProfile]:
        self.channel.commit(attempting_login=True, logged_in=False)
        try:
            user = await self.connector.login(credential)
        except Exception as exc:
            error = _as_connector_error(exc, ErrorKind.LOGIN, "Login failed")
            self.channel.commit(
                attempting_login=False,
                logged_in=False,
                auth=AuthCredential.empty(),
            )
            self.throw_error(error, (lambda err: done(False, err)) if callable(done) else None)
            return None

        self.channel.commit(attempting_login=False, logged_in=True, auth=credential, user=user)
        logger.info("Logged in as %s on %s", user.display_name or credential.identifier, credential.host)
        if callable(done):
            done(user)
        return user

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------
    async def list_tasks(self) -> None:
        # activities and projects are refreshed with the tasks since new ones
        # may appear while the client is running
        try:
            projects, activities, tasks = await asyncio.gather(
                self.connector.list_projects(),
                self.connector.list_activities(),
                self.connector.list_tasks(self._user_identifier()),
            )
        except Exception as exc:
            self.throw_error(_as_connector_error(exc, ErrorKind.READ, "Could not list tasks"))
            return

        self.channel.commit(projects=projects, activities=activities, tasks=tasks)

    async def start_task(self, task: Task, activity: Activity) -> None:
        if not self._claim(task, "start"):
            return
        timestamp = self._clock()
        try:
            await self.connector.start_task(task, activity, timestamp, self._user_identifier())
        except Exception as exc:
            self.throw_error(_as_connector_error(exc, ErrorKind.UPDATE, f"Could not start {task.label}"))
            return
        finally:
            self._in_flight.discard(task.id)
        await self.list_tasks()

    async def stop_task(self, task: Task) -> None:
        if not self._claim(task, "stop"):
            return
        timestamp = self._clock()
        try:
            await self.connector.stop_task(task, timestamp, self._user_identifier())
        except Exception as exc:
            self.throw_error(_as_connector_error(exc, ErrorKind.UPDATE, f"Could not stop {task.label}"))
            return
        finally:
            self._in_flight.discard(task.id)
        await self.list_tasks()

    async def new_task(self, task: Task) -> None:
        try:
            await self.connector.new_task(task)
        except Exception as exc:
            self.throw_error(_as_connector_error(exc, ErrorKind.CREATE, f"Could not create {task.label}"))
            return
        await self.list_tasks()

    def _claim(self, task: Task, action: str) -> bool:
        if task.id in self._in_flight:
            self.throw_error(
                ConnectorError.invalid_operation(
                    f"Cannot {action} {task.label}: a start or stop of this task is still in progress"
                )
            )
            return False
        self._in_flight.add(task.id)
        return True

    # ------------------------------------------------------------------
    # Timeline
    # ------------------------------------------------------------------
    async def list_day_timeline(self, day: Optional[dt.date] = None) -> None:
        if day is None:
            day = self.state.day
        elif isinstance(day, dt.datetime):
            day = day.date()

        self._timeline_generation += 1
        generation = self._timeline_generation
        try:
            blocks = await self.connector.list_day_timeline(day, self.state.tasks)
        except Exception as exc:
            self.throw_error(_as_connector_error(exc, ErrorKind.READ, f"Could not load timeline for {day}"))
            return

        if generation != self._timeline_generation:
            logger.debug("Dropping timeline for %s, a newer request is pending", day)
            return
        self.channel.commit(timeline=blocks, day=day)

    async def set_current_date(self, day: dt.date) -> None:
        await self.list_day_timeline(day)

    def update_active_timeline_block(self, block_id: str, time: dt.datetime) -> None:
        timeline = list(self.state.timeline)
        for index, block in enumerate(timeline):
            if block.id == block_id:
                # validated so a naive time is read as UTC like everywhere else
                timeline[index] = TimelineBlock.model_validate({**block.model_dump(), "end": time})
                self.channel.commit(timeline=timeline)
                return

    def update_timeline_block(self, item: TimelineBlock) -> Optional[asyncio.Task]:
        """Show ``item`` immediately, then persist it and reload from the server.

        The local replacement is provisional: the reload that follows the
        connector call overwrites it with whatever the server holds. Returns
        the reconciliation task, or ``None`` if no block has ``item.id``.
        Must be called from a running event loop.
        """

        timeline = list(self.state.timeline)
        for index, block in enumerate(timeline):
            if block.id == item.id:
                break
        else:
            return None

        timeline[index] = item
        logger.debug("Optimistic update of timeline block %s", item.id)
        self.channel.commit(timeline=timeline)

        task = asyncio.get_running_loop().create_task(self._persist_timeline_block(item))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _persist_timeline_block(self, item: TimelineBlock) -> None:
        try:
            await self.connector.update_timeline_item(item)
        except Exception as exc:
            self.throw_error(_as_connector_error(exc, ErrorKind.UPDATE, f"Could not update block {item.id}"))
        await self.list_tasks()
        await self.list_day_timeline()


__all__ = ["ACTION_NAMES", "Backend", "BackendContext"]
