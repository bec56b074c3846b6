from __future__ import annotations

import datetime as dt
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .errors import ConnectorError
from .models import Activity, Project, Task, TimelineBlock, UserProfile
from .state import ApplicationState


class LoginRequest(BaseModel):
    identifier: str
    secret: str
    host: str = ""


class StartTaskRequest(BaseModel):
    task_id: str
    activity_id: str


class StopTaskRequest(BaseModel):
    task_id: str


class NewTaskRequest(BaseModel):
    label: str = Field(min_length=1)
    description: str = ""
    project: Optional[str] = None
    parent_label: Optional[str] = None
    tags: List[str] = Field(default_factory=list)


class DayRequest(BaseModel):
    day: Optional[dt.date] = None


class CurrentDateRequest(BaseModel):
    day: dt.date


class ActiveBlockRequest(BaseModel):
    block_id: str
    time: dt.datetime


class AuthResponse(BaseModel):
    identifier: str
    host: str


class ErrorResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    uid: str
    kind: str
    message: str
    icon: str
    intent: str
    timeout: int
    server_messages: List[str] = Field(default_factory=list)
    remote_trace: List[List[str]] = Field(default_factory=list)

    @classmethod
    def from_error(cls, err: ConnectorError) -> "ErrorResponse":
        info = err.info
        return cls(
            uid=err.uid,
            kind=err.kind.value,
            message=err.message,
            icon=err.icon,
            intent=err.intent,
            timeout=err.timeout,
            server_messages=list(info.server_messages) if info else [],
            remote_trace=[list(group) for group in info.remote_trace] if info else [],
        )


class StateResponse(BaseModel):
    auth: AuthResponse
    user: UserProfile
    logged_in: bool
    attempting_login: bool
    day: dt.date
    tasks: List[Task]
    activities: List[Activity]
    projects: List[Project]
    timeline: List[TimelineBlock]
    errors: List[ErrorResponse]

    @classmethod
    def from_state(cls, state: ApplicationState) -> "StateResponse":
        return cls(
            # the secret never leaves the process
            auth=AuthResponse(identifier=state.auth.identifier, host=state.auth.host),
            user=state.user,
            logged_in=state.logged_in,
            attempting_login=state.attempting_login,
            day=state.day,
            tasks=list(state.tasks),
            activities=list(state.activities),
            projects=list(state.projects),
            timeline=list(state.timeline),
            errors=[ErrorResponse.from_error(err) for err in state.errors],
        )
