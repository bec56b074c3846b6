"""HTTP connector for a Frappe/ERPNext style REST backend."""

from __future__ import annotations

import asyncio
import datetime as dt
import json
import logging
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import quote, urljoin

import requests

from ..errors import ConnectorError, ErrorInfo, ErrorKind
from ..models import Activity, AuthCredential, Project, Task, TimelineBlock, UserProfile

logger = logging.getLogger(__name__)

UTC = dt.timezone.utc

TASK_FIELDS = [
    "name",
    "subject",
    "description",
    "project",
    "parent_task",
    "_user_tags",
    "actual_time",
    "is_running",
    "last_open_timestamp",
]
TIME_LOG_FIELDS = ["name", "task", "activity_type", "from_time", "to_time"]


def parse_error_info(payload: Any) -> Optional[ErrorInfo]:
    """Extract ``_server_messages`` and ``exc`` diagnostics from an error body."""

    if not isinstance(payload, dict):
        return None

    server_messages: List[str] = []
    raw_messages = payload.get("_server_messages")
    if raw_messages:
        try:
            entries = json.loads(raw_messages) if isinstance(raw_messages, str) else raw_messages
        except ValueError:
            entries = [raw_messages]
        for entry in entries or []:
            if isinstance(entry, str):
                try:
                    entry = json.loads(entry)
                except ValueError:
                    server_messages.append(entry)
                    continue
            if isinstance(entry, dict):
                server_messages.append(str(entry.get("message", "")))
            else:
                server_messages.append(str(entry))

    remote_trace: List[List[str]] = []
    raw_trace = payload.get("exc")
    if raw_trace:
        try:
            traces = json.loads(raw_trace) if isinstance(raw_trace, str) else raw_trace
        except ValueError:
            traces = [raw_trace]
        if isinstance(traces, str):
            traces = [traces]
        for trace in traces or []:
            remote_trace.append(str(trace).splitlines())

    info = ErrorInfo.build(server_messages, remote_trace)
    return None if info.is_empty() else info


class HttpConnector:
    """Talks to the record-keeping backend over HTTP.

    ``requests`` blocks, so every call is executed in a worker thread.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: int = 15,
        timezone: Optional[dt.tzinfo] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/") + "/"
        self.timeout = timeout
        self.timezone = timezone or UTC
        self.session = session or requests.Session()
        self._user: Optional[UserProfile] = None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _request(self, kind: ErrorKind, method: str, path: str, **kwargs) -> Any:
        url = urljoin(self.base_url, path.lstrip("/"))
        kwargs.setdefault("timeout", self.timeout)
        headers = kwargs.setdefault("headers", {})
        headers.setdefault("Accept", "application/json")
        try:
            response = self.session.request(method, url, **kwargs)
        except requests.RequestException as exc:
            raise ConnectorError(kind, f"Could not reach {url}: {exc}", original=exc) from exc

        payload: Any = None
        if response.headers.get("Content-Type", "").startswith("application/json"):
            try:
                payload = response.json()
            except ValueError:
                payload = None

        if response.status_code >= 400:
            info = parse_error_info(payload)
            message = f"Server error {response.status_code}"
            if info and info.server_messages:
                message = f"{message}: {info.server_messages[0]}"
            elif isinstance(payload, dict) and payload.get("message"):
                message = f"{message}: {payload['message']}"
            raise ConnectorError(kind, message, info)

        if payload is None:
            return response.content
        return payload

    def _call(self, kind: ErrorKind, method: str, path: str, **kwargs) -> Any:
        return asyncio.to_thread(self._request, kind, method, path, **kwargs)

    def _require_login(self) -> UserProfile:
        if self._user is None:
            raise ConnectorError.not_ready("Not logged in")
        return self._user

    @staticmethod
    def _resource(doctype: str, name: Optional[str] = None) -> str:
        path = f"/api/resource/{quote(doctype)}"
        if name is not None:
            path = f"{path}/{quote(name, safe='')}"
        return path

    def _format_datetime(self, value: dt.datetime) -> str:
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(self.timezone).strftime("%Y-%m-%d %H:%M:%S")

    def _parse_datetime(self, value: Optional[str]) -> Optional[dt.datetime]:
        if not value:
            return None
        try:
            parsed = dt.datetime.fromisoformat(value)
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=self.timezone)
        return parsed.astimezone(UTC)

    @staticmethod
    def _data(payload: Any) -> Any:
        if isinstance(payload, dict):
            return payload.get("data", payload.get("message"))
        return payload

    def _list_params(self, fields: Sequence[str], filters: Optional[list] = None) -> Dict[str, str]:
        params = {"fields": json.dumps(list(fields)), "limit_page_length": "0"}
        if filters:
            params["filters"] = json.dumps(filters)
        return params

    def _task_from_payload(self, item: Dict[str, Any]) -> Task:
        is_running = bool(item.get("is_running"))
        return Task(
            id=str(item.get("name", "")),
            label=item.get("subject") or item.get("name", ""),
            description=item.get("description") or "",
            project=item.get("project"),
            parent_label=item.get("parent_task"),
            tags=item.get("_user_tags") or (),
            total_hours=item.get("actual_time") or 0.0,
            is_running=is_running,
            last_open_timestamp=self._parse_datetime(item.get("last_open_timestamp")) if is_running else None,
        )

    def _block_from_payload(self, item: Dict[str, Any], labels: Dict[str, str]) -> TimelineBlock:
        start = self._parse_datetime(item.get("from_time"))
        end = self._parse_datetime(item.get("to_time")) or dt.datetime.now(UTC)
        task_id = item.get("task")
        activity = item.get("activity_type")
        label = labels.get(task_id or "", task_id or "")
        if activity:
            label = f"{label} ({activity})"
        return TimelineBlock(
            id=str(item.get("name", "")),
            start=start,
            end=end,
            task=task_id,
            activity=activity,
            label=label,
        )

    # ------------------------------------------------------------------
    # Capability
    # ------------------------------------------------------------------
    async def login(self, credential: AuthCredential) -> UserProfile:
        self._user = None
        if credential.host:
            self.base_url = credential.host.rstrip("/") + "/"
        payload = await self._call(
            ErrorKind.LOGIN,
            "POST",
            "/api/method/login",
            data={"usr": credential.identifier, "pwd": credential.secret},
        )
        full_name = payload.get("full_name") if isinstance(payload, dict) else None
        self._user = UserProfile(display_name=full_name or credential.identifier, identifier=credential.identifier)
        logger.info("Logged in to %s as %s", self.base_url, credential.identifier)
        return self._user

    async def list_tasks(self, user_identifier: str) -> List[Task]:
        self._require_login()
        params = self._list_params(TASK_FIELDS, [["_assign", "like", f"%{user_identifier}%"]])
        payload = await self._call(ErrorKind.READ, "GET", self._resource("Task"), params=params)
        return [self._task_from_payload(item) for item in self._data(payload) or []]

    async def list_activities(self) -> List[Activity]:
        self._require_login()
        params = self._list_params(["name"])
        payload = await self._call(ErrorKind.READ, "GET", self._resource("Activity Type"), params=params)
        return [Activity(id=item["name"], label=item["name"]) for item in self._data(payload) or []]

    async def list_projects(self) -> List[Project]:
        self._require_login()
        params = self._list_params(["name", "project_name"])
        payload = await self._call(ErrorKind.READ, "GET", self._resource("Project"), params=params)
        return [
            Project(id=item["name"], label=item.get("project_name") or item["name"])
            for item in self._data(payload) or []
        ]

    async def start_task(self, task: Task, activity: Activity, timestamp: dt.datetime,
                         user_identifier: str) -> None:
        self._require_login()
        body = {
            "task": task.id,
            "activity_type": activity.id,
            "from_time": self._format_datetime(timestamp),
            "user": user_identifier,
        }
        await self._call(ErrorKind.UPDATE, "POST", self._resource("Time Log"), json=body)

    async def stop_task(self, task: Task, timestamp: dt.datetime, user_identifier: str) -> None:
        self._require_login()
        filters = [["task", "=", task.id], ["user", "=", user_identifier], ["to_time", "is", "not set"]]
        payload = await self._call(
            ErrorKind.UPDATE,
            "GET",
            self._resource("Time Log"),
            params=self._list_params(["name"], filters),
        )
        open_logs = self._data(payload) or []
        if not open_logs:
            raise ConnectorError.update(f"Task {task.label} is not running")
        for item in open_logs:
            await self._call(
                ErrorKind.UPDATE,
                "PUT",
                self._resource("Time Log", item["name"]),
                json={"to_time": self._format_datetime(timestamp)},
            )

    async def new_task(self, task: Task) -> None:
        self._require_login()
        body = {
            "subject": task.label,
            "description": task.description,
            "project": task.project,
            "parent_task": task.parent_label,
            "_user_tags": ",".join(task.tags),
        }
        await self._call(ErrorKind.CREATE, "POST", self._resource("Task"), json=body)

    async def list_day_timeline(self, day: dt.date, tasks: Sequence[Task]) -> List[TimelineBlock]:
        self._require_login()
        start = dt.datetime.combine(day, dt.time.min, tzinfo=self.timezone)
        end = start + dt.timedelta(days=1)
        filters = [
            ["from_time", ">=", self._format_datetime(start)],
            ["from_time", "<", self._format_datetime(end)],
        ]
        params = self._list_params(TIME_LOG_FIELDS, filters)
        params["order_by"] = "from_time asc"
        payload = await self._call(ErrorKind.READ, "GET", self._resource("Time Log"), params=params)
        labels = {task.id: task.label for task in tasks}
        return [self._block_from_payload(item, labels) for item in self._data(payload) or []]

    async def update_timeline_item(self, item: TimelineBlock) -> TimelineBlock:
        self._require_login()
        body = {
            "from_time": self._format_datetime(item.start),
            "to_time": self._format_datetime(item.end),
        }
        payload = await self._call(ErrorKind.UPDATE, "PUT", self._resource("Time Log", item.id), json=body)
        data = self._data(payload)
        if not isinstance(data, dict):
            return item
        return self._block_from_payload(data, {}).model_copy(update={"label": item.label})


__all__ = ["HttpConnector", "parse_error_info"]
