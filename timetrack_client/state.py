"""Application state snapshots and the channel that distributes them."""

from __future__ import annotations

import dataclasses
import datetime as dt
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Tuple, TypeVar

from .errors import ConnectorError
from .models import Activity, AuthCredential, Project, Task, TimelineBlock, UserProfile

logger = logging.getLogger(__name__)

T = TypeVar("T")

SEQUENCE_FIELDS = ("tasks", "activities", "projects", "timeline", "errors")


@dataclass(frozen=True, slots=True)
class ApplicationState:
    """Immutable snapshot of everything the client knows."""

    auth: AuthCredential = field(default_factory=AuthCredential)
    user: UserProfile = field(default_factory=UserProfile)
    logged_in: bool = False
    attempting_login: bool = False
    day: dt.date = field(default_factory=dt.date.today)
    tasks: Tuple[Task, ...] = ()
    activities: Tuple[Activity, ...] = ()
    projects: Tuple[Project, ...] = ()
    timeline: Tuple[TimelineBlock, ...] = ()
    errors: Tuple[ConnectorError, ...] = ()

    def __post_init__(self) -> None:
        if self.logged_in and self.attempting_login:
            raise ValueError("logged_in and attempting_login are mutually exclusive")
        if len({id(err) for err in self.errors}) != len(self.errors):
            raise ValueError("errors must not contain the same error twice")

    def find_block(self, block_id: str) -> Optional[TimelineBlock]:
        for block in self.timeline:
            if block.id == block_id:
                return block
        return None

    def find_task(self, task_id: str) -> Optional[Task]:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def running_task(self) -> Optional[Task]:
        for task in self.tasks:
            if task.is_running:
                return task
        return None


Listener = Callable[[ApplicationState], Any]


class Subscription:
    """Handle returned by :meth:`StateChannel.subscribe`.

    Doubles as a cancellation token: once canceled, the listener gets no
    further snapshots and :meth:`guard` drops late results.
    """

    def __init__(self, channel: "StateChannel", listener: Listener) -> None:
        self._channel = channel
        self._listener = listener
        self._canceled = False

    @property
    def canceled(self) -> bool:
        return self._canceled

    def cancel(self) -> None:
        if self._canceled:
            return
        self._canceled = True
        self._channel._discard(self)

    async def guard(self, awaitable: Awaitable[T]) -> Optional[T]:
        result = await awaitable
        if self._canceled:
            return None
        return result

    def _deliver(self, state: ApplicationState) -> None:
        if self._canceled:
            return
        self._listener(state)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.cancel()


class StateChannel:
    """Holds the current snapshot and notifies subscribers after each commit."""

    def __init__(self, initial: Optional[ApplicationState] = None) -> None:
        self._state = initial or ApplicationState()
        self._subscriptions: List[Subscription] = []

    @property
    def snapshot(self) -> ApplicationState:
        return self._state

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(self, listener: Listener) -> Subscription:
        subscription = Subscription(self, listener)
        self._subscriptions.append(subscription)
        return subscription

    def commit(self, **changes: Any) -> ApplicationState:
        for name in SEQUENCE_FIELDS:
            if name in changes:
                changes[name] = tuple(changes[name])
        self._state = dataclasses.replace(self._state, **changes)
        self._notify(self._state)
        return self._state

    def _notify(self, state: ApplicationState) -> None:
        for subscription in list(self._subscriptions):
            try:
                subscription._deliver(state)
            except Exception:
                logger.exception("State subscriber %r failed", subscription._listener)

    def _discard(self, subscription: Subscription) -> None:
        try:
            self._subscriptions.remove(subscription)
        except ValueError:
            pass


__all__ = ["ApplicationState", "StateChannel", "Subscription"]
