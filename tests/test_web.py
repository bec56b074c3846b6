from __future__ import annotations

import asyncio
import datetime as dt

import pytest
from fastapi.testclient import TestClient

from timetrack_client.backend import Backend
from timetrack_client.config import Settings
from timetrack_client.models import TimelineBlock
from timetrack_client.web import create_app, offer_latest

from conftest import START, UTC

LOGIN = {"identifier": "u", "secret": "p", "host": "local"}


@pytest.fixture()
def client(local_connector, clock):
    backend = Backend(local_connector, clock=clock, timezone=UTC)
    with TestClient(create_app(backend, Settings(), tick=False)) as client:
        yield client


def _login(client: TestClient) -> dict:
    response = client.post("/actions/login", json=LOGIN)
    assert response.status_code == 200
    return response.json()


def test_healthz_and_initial_state(client):
    assert client.get("/healthz").json() == {"status": "ok"}

    state = client.get("/state").json()

    assert state["logged_in"] is False
    assert state["day"] == START.date().isoformat()
    assert state["tasks"] == []
    assert "secret" not in state["auth"]


def test_login_loads_tasks_and_timeline(client):
    state = _login(client)

    assert state["logged_in"] is True
    assert state["attempting_login"] is False
    assert state["user"]["display_name"] == "Una User"
    assert [task["label"] for task in state["tasks"]] == ["Write report"]
    assert [activity["id"] for activity in state["activities"]] == ["dev"]
    assert state["auth"] == {"identifier": "u", "host": "local"}


def test_failed_login_queues_dismissable_error(client):
    state = client.post("/actions/login", json={"identifier": "u", "secret": "wrong"}).json()

    assert state["logged_in"] is False
    error = state["errors"][0]
    assert error["kind"] == "login"
    assert error["timeout"] == 5000

    assert client.delete(f"/errors/{error['uid']}").status_code == 204
    assert client.get("/state").json()["errors"] == []
    assert client.delete(f"/errors/{error['uid']}").status_code == 404


def test_start_and_stop_task(client, clock):
    task_id = _login(client)["tasks"][0]["id"]

    started = client.post("/actions/start-task", json={"task_id": task_id, "activity_id": "dev"}).json()
    assert started["tasks"][0]["is_running"] is True

    clock.advance(minutes=90)
    stopped = client.post("/actions/stop-task", json={"task_id": task_id}).json()

    assert stopped["tasks"][0]["is_running"] is False
    assert stopped["tasks"][0]["total_hours"] == pytest.approx(1.5)
    assert stopped["errors"] == []


def test_unknown_task_or_activity_is_404(client):
    task_id = _login(client)["tasks"][0]["id"]

    assert client.post("/actions/stop-task", json={"task_id": "999"}).status_code == 404
    response = client.post("/actions/start-task", json={"task_id": task_id, "activity_id": "nope"})
    assert response.status_code == 404


def test_new_task(client):
    _login(client)

    response = client.post("/actions/new-task", json={"label": "Plan sprint", "project": "P1", "tags": ["q1"]})

    assert response.status_code == 201
    assert [task["label"] for task in response.json()["tasks"]] == ["Write report", "Plan sprint"]
    assert client.post("/actions/new-task", json={"label": ""}).status_code == 422


def test_set_current_date_loads_that_day(client):
    _login(client)

    state = client.post("/actions/set-current-date", json={"day": "2024-01-02"}).json()

    assert state["day"] == "2024-01-02"
    assert state["timeline"] == []


def test_active_block_moves_with_reported_time(client):
    task_id = _login(client)["tasks"][0]["id"]
    client.post("/actions/start-task", json={"task_id": task_id, "activity_id": "dev"})
    timeline = client.post("/actions/list-day-timeline", json={}).json()["timeline"]
    block_id = timeline[0]["id"]
    later = START + dt.timedelta(minutes=30)

    state = client.post(
        "/actions/update-active-timeline-block",
        json={"block_id": block_id, "time": later.isoformat()},
    ).json()

    assert TimelineBlock.model_validate(state["timeline"][0]).end == later


def test_edit_finished_block_is_accepted(client, clock):
    task_id = _login(client)["tasks"][0]["id"]
    client.post("/actions/start-task", json={"task_id": task_id, "activity_id": "dev"})
    clock.advance(hours=1)
    client.post("/actions/stop-task", json={"task_id": task_id})
    block = client.post("/actions/list-day-timeline", json={}).json()["timeline"][0]
    block["end"] = (START + dt.timedelta(hours=2)).isoformat()

    response = client.post("/actions/update-timeline-block", json=block)

    assert response.status_code == 202
    assert TimelineBlock.model_validate(response.json()["timeline"][0]).end == START + dt.timedelta(hours=2)


def test_websocket_streams_snapshots(client):
    with client.websocket_connect("/ws") as websocket:
        first = websocket.receive_json()
        assert first["logged_in"] is False

        _login(client)

        for _ in range(20):
            message = websocket.receive_json()
            if message["logged_in"]:
                break
        assert message["logged_in"] is True
        assert message["user"]["identifier"] == "u"


def test_active_block_accepts_time_without_offset(client):
    task_id = _login(client)["tasks"][0]["id"]
    client.post("/actions/start-task", json={"task_id": task_id, "activity_id": "dev"})
    block_id = client.post("/actions/list-day-timeline", json={}).json()["timeline"][0]["id"]

    response = client.post(
        "/actions/update-active-timeline-block",
        json={"block_id": block_id, "time": "2024-01-01T09:45:00"},
    )

    assert response.status_code == 200
    block = client.app.state.backend.state.find_block(block_id)
    assert block.end == START + dt.timedelta(minutes=45)
    assert block.duration == dt.timedelta(minutes=45)


def test_offer_latest_keeps_only_newest_item():
    queue: asyncio.Queue = asyncio.Queue(maxsize=1)

    for snapshot in ("first", "second", "third"):
        offer_latest(queue, snapshot)

    assert queue.qsize() == 1
    assert queue.get_nowait() == "third"


def test_websocket_close_releases_subscription(client):
    channel = client.app.state.backend.channel
    before = channel.subscriber_count

    with client.websocket_connect("/ws") as websocket:
        websocket.receive_json()
        assert channel.subscriber_count == before + 1

    assert channel.subscriber_count == before
    # later commits reach nobody and raise nothing
    assert client.post("/actions/login", json=LOGIN).json()["logged_in"] is True
