"""HTTP/WebSocket bridge between the synchronization core and browser views."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from fastapi import FastAPI, HTTPException, Response, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware

from .backend import Backend
from .config import Settings
from .models import Activity, AuthCredential, Task, TimelineBlock
from .schemas import (
    ActiveBlockRequest,
    CurrentDateRequest,
    DayRequest,
    LoginRequest,
    NewTaskRequest,
    StartTaskRequest,
    StateResponse,
    StopTaskRequest,
)
from .state import ApplicationState
from .ticker import DEFAULT_TICK_INTERVAL, ActiveBlockTicker

logger = logging.getLogger(__name__)


def _find_task(state: ApplicationState, task_id: str) -> Task:
    task = state.find_task(task_id)
    if task is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Task not found")
    return task


def _find_activity(state: ApplicationState, activity_id: str) -> Activity:
    for activity in state.activities:
        if activity.id == activity_id:
            return activity
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Activity not found")


def offer_latest(queue: asyncio.Queue, item: Any) -> None:
    """Put ``item`` on a bounded queue, replacing whatever is still waiting."""

    while queue.full():
        queue.get_nowait()
    queue.put_nowait(item)


def create_app(backend: Backend, settings: Optional[Settings] = None, *, tick: bool = True) -> FastAPI:
    settings = settings or Settings()
    tick_interval = settings.tick_interval_seconds or DEFAULT_TICK_INTERVAL

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        ticker = ActiveBlockTicker(backend, tick_interval) if tick else None
        app.state.ticker = ticker
        try:
            yield
        finally:
            if ticker is not None:
                ticker.close()
            await backend.wait_idle()

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.state.backend = backend
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://127.0.0.1:5173", "http://localhost:5173"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def snapshot() -> StateResponse:
        return StateResponse.from_state(backend.state)

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/state", response_model=StateResponse)
    async def get_state() -> StateResponse:
        return snapshot()

    @app.post("/actions/login", response_model=StateResponse)
    async def login(payload: LoginRequest) -> StateResponse:
        credential = AuthCredential(identifier=payload.identifier, secret=payload.secret, host=payload.host)
        user = await backend.login(credential)
        if user is not None:
            await backend.list_tasks()
            await backend.list_day_timeline()
        return snapshot()

    @app.post("/actions/list-tasks", response_model=StateResponse)
    async def list_tasks() -> StateResponse:
        await backend.list_tasks()
        return snapshot()

    @app.post("/actions/start-task", response_model=StateResponse)
    async def start_task(payload: StartTaskRequest) -> StateResponse:
        state = backend.state
        task = _find_task(state, payload.task_id)
        activity = _find_activity(state, payload.activity_id)
        await backend.start_task(task, activity)
        return snapshot()

    @app.post("/actions/stop-task", response_model=StateResponse)
    async def stop_task(payload: StopTaskRequest) -> StateResponse:
        task = _find_task(backend.state, payload.task_id)
        await backend.stop_task(task)
        return snapshot()

    @app.post("/actions/new-task", response_model=StateResponse, status_code=status.HTTP_201_CREATED)
    async def new_task(payload: NewTaskRequest) -> StateResponse:
        task = Task(
            id="",
            label=payload.label,
            description=payload.description,
            project=payload.project,
            parent_label=payload.parent_label,
            tags=payload.tags,
        )
        await backend.new_task(task)
        return snapshot()

    @app.post("/actions/list-day-timeline", response_model=StateResponse)
    async def list_day_timeline(payload: DayRequest) -> StateResponse:
        await backend.list_day_timeline(payload.day)
        return snapshot()

    @app.post("/actions/set-current-date", response_model=StateResponse)
    async def set_current_date(payload: CurrentDateRequest) -> StateResponse:
        await backend.set_current_date(payload.day)
        return snapshot()

    @app.post("/actions/update-timeline-block", response_model=StateResponse)
    async def update_timeline_block(payload: TimelineBlock, response: Response) -> StateResponse:
        if backend.update_timeline_block(payload) is not None:
            response.status_code = status.HTTP_202_ACCEPTED
        return snapshot()

    @app.post("/actions/update-active-timeline-block", response_model=StateResponse)
    async def update_active_timeline_block(payload: ActiveBlockRequest) -> StateResponse:
        backend.update_active_timeline_block(payload.block_id, payload.time)
        return snapshot()

    @app.delete("/errors/{uid}", status_code=status.HTTP_204_NO_CONTENT)
    async def dismiss_error(uid: str) -> Response:
        for err in backend.state.errors:
            if err.uid == uid:
                backend.dismiss_error(err)
                return Response(status_code=status.HTTP_204_NO_CONTENT)
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Error not found")

    @app.websocket("/ws")
    async def state_stream(websocket: WebSocket) -> None:
        await websocket.accept()
        # a slow client only ever gets the newest snapshot
        queue: asyncio.Queue = asyncio.Queue(maxsize=1)
        subscription = backend.subscribe(lambda context: offer_latest(queue, context.state))

        async def forward() -> None:
            await websocket.send_json(StateResponse.from_state(backend.state).model_dump(mode="json"))
            while True:
                state = await queue.get()
                await websocket.send_json(StateResponse.from_state(state).model_dump(mode="json"))

        sender = asyncio.create_task(forward())
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            logger.debug("State stream client disconnected")
        finally:
            subscription.cancel()
            sender.cancel()
            try:
                await sender
            except asyncio.CancelledError:
                pass
            except (WebSocketDisconnect, RuntimeError) as exc:
                logger.debug("State stream sender stopped: %r", exc)

    return app


__all__ = ["create_app", "offer_latest"]
