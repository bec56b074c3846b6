"""Live clock for the timeline blocks of running tasks."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional, Tuple

from .models import TimelineBlock
from .state import ApplicationState

if TYPE_CHECKING:
    from .backend import Backend, BackendContext

logger = logging.getLogger(__name__)

DEFAULT_TICK_INTERVAL = 1.0


def find_active_blocks(state: ApplicationState) -> List[TimelineBlock]:
    """Latest timeline block of every running task."""

    latest: Dict[str, TimelineBlock] = {}
    running = {task.id for task in state.tasks if task.is_running}
    for block in state.timeline:
        if block.task not in running:
            continue
        current = latest.get(block.task)
        if current is None or block.start > current.start:
            latest[block.task] = block
    return sorted(latest.values(), key=lambda block: block.start)


class ActiveBlockTicker:
    """Advances the ``end`` of the active blocks once per interval.

    Follows the backend's state: every running task with a block on the
    timeline has its latest block extended. Ticking stops when no task runs,
    the blocks disappear or :meth:`close` is called. At most one timer
    exists, shared by all active blocks.
    """

    def __init__(self, backend: "Backend", interval: float = DEFAULT_TICK_INTERVAL) -> None:
        self.backend = backend
        self.interval = interval
        self._timer: Optional[asyncio.Task] = None
        self._block_ids: Tuple[str, ...] = ()
        self._subscription = backend.subscribe(self._on_change)
        self._on_change(backend.context())

    @property
    def active_block_ids(self) -> Tuple[str, ...]:
        return self._block_ids

    @property
    def running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def _on_change(self, context: "BackendContext") -> None:
        blocks = find_active_blocks(context.state)
        if blocks:
            self.start(block.id for block in blocks)
        else:
            self.stop()

    def start(self, block_ids: Iterable[str]) -> None:
        self._block_ids = tuple(block_ids)
        if self.running:
            return
        logger.debug("Ticking timeline blocks %s every %.1fs", ", ".join(self._block_ids), self.interval)
        self._timer = asyncio.get_running_loop().create_task(self._run())

    def stop(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._block_ids = ()

    def close(self) -> None:
        self._subscription.cancel()
        self.stop()

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            if not self._block_ids:
                return
            now = self.backend.now()
            for block_id in self._block_ids:
                self.backend.update_active_timeline_block(block_id, now)


__all__ = ["ActiveBlockTicker", "find_active_blocks", "DEFAULT_TICK_INTERVAL"]
