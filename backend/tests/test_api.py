from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterator

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from pokertable_backend.api.routes import _stream_feed, get_room_service
from pokertable_backend.engine.models import BroadcastEvent
from pokertable_backend.engine.service import RoomService
from pokertable_backend.main import app
from pokertable_backend.repo.in_memory import InMemoryRoomRepository

from room_helpers import HOST_ID, player_id_for


def headers(player_id: str) -> dict[str, str]:
    return {"X-Player-Id": player_id}


@pytest.fixture
def client() -> Iterator[TestClient]:
    service = RoomService(InMemoryRoomRepository(), room_id_factory=lambda: "APIR00")
    app.dependency_overrides[get_room_service] = lambda: service
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    service.close()


@pytest.fixture
def room_id(client: TestClient) -> str:
    created = client.post("/api/rooms", headers=headers(HOST_ID))
    assert created.status_code == 200
    for seat in (0, 1, 2):
        joined = client.post(
            "/api/rooms/APIR00/join",
            json={"name": f"Seat {seat}", "seat_index": seat, "buy_in": 1_000},
            headers=headers(player_id_for(seat)),
        )
        assert joined.status_code == 200
    assert client.put("/api/rooms/APIR00/dealer", json={"seat_index": 0}, headers=headers(HOST_ID)).status_code == 200
    return created.json()["room_id"]


def test_healthz(client: TestClient) -> None:
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_create_room_requires_player_header(client: TestClient) -> None:
    assert client.post("/api/rooms").status_code == 422


def test_create_room_returns_host_membership(client: TestClient) -> None:
    response = client.post("/api/rooms", headers=headers(HOST_ID))
    body = response.json()
    assert body["room_id"] == "APIR00"
    assert body["is_host"] is True
    assert body["view"]["room"]["game_status"] == "waiting"


def test_seat_conflict_maps_to_409(client: TestClient, room_id: str) -> None:
    response = client.post(
        f"/api/rooms/{room_id}/join",
        json={"name": "Late", "seat_index": 1},
        headers=headers("player_late"),
    )
    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "SEAT_TAKEN"


def test_host_only_routes_reject_other_players(client: TestClient, room_id: str) -> None:
    response = client.post(f"/api/rooms/{room_id}/status/advance", headers=headers(player_id_for(1)))
    assert response.status_code == 403
    assert response.json()["detail"]["code"] == "NOT_HOST"


def test_unknown_room_is_404(client: TestClient) -> None:
    assert client.get("/api/rooms/NOPE00/view").status_code == 404
    check = client.get("/api/rooms/NOPE00/check", headers=headers(HOST_ID))
    assert check.status_code == 200
    assert check.json()["exists"] is False


def test_betting_flow_over_http(client: TestClient, room_id: str) -> None:
    advanced = client.post(f"/api/rooms/{room_id}/status/advance", headers=headers(HOST_ID))
    assert advanced.json()["room"]["current_turn_seat_index"] == 1

    raised = client.post(
        f"/api/rooms/{room_id}/actions",
        json={"action": "raise", "amount": 100},
        headers=headers(player_id_for(1)),
    )
    assert raised.status_code == 200
    assert raised.json()["accepted"] is True
    assert raised.json()["view"]["room"]["current_highest_bet"] == 100

    out_of_turn = client.post(
        f"/api/rooms/{room_id}/actions",
        json={"action": "call"},
        headers=headers(player_id_for(0)),
    )
    assert out_of_turn.status_code == 200
    assert out_of_turn.json()["accepted"] is False
    assert out_of_turn.json()["error"]["code"] == "NOT_YOUR_TURN"

    client.post(f"/api/rooms/{room_id}/actions", json={"action": "call"}, headers=headers(player_id_for(2)))
    client.post(f"/api/rooms/{room_id}/actions", json={"action": "fold"}, headers=headers(player_id_for(0)))

    collected = client.post(f"/api/rooms/{room_id}/pot/collect", headers=headers(HOST_ID))
    assert collected.json()["room"]["pot"] == 200

    paid = client.post(
        f"/api/rooms/{room_id}/pot/distribute",
        json={"winner_id": player_id_for(2)},
        headers=headers(HOST_ID),
    )
    assert paid.status_code == 200
    assert paid.json()["room"]["pot"] == 0


def test_stage_and_confirm_over_http(client: TestClient, room_id: str) -> None:
    client.post(f"/api/rooms/{room_id}/status/advance", headers=headers(HOST_ID))
    staged = client.post(
        f"/api/rooms/{room_id}/stage",
        json={"amount": 60},
        headers=headers(player_id_for(1)),
    )
    assert staged.status_code == 200

    confirmed = client.post(f"/api/rooms/{room_id}/stage/confirm", headers=headers(player_id_for(1)))
    assert confirmed.json()["accepted"] is True
    assert confirmed.json()["view"]["room"]["current_highest_bet"] == 60

    sent = client.post(
        f"/api/rooms/{room_id}/broadcast",
        json={"amount": 20, "velocity": 1.5},
        headers=headers(player_id_for(2)),
    )
    assert sent.json() == {"status": "sent"}


def test_websocket_sends_room_view_first(client: TestClient, room_id: str) -> None:
    with client.websocket_connect(f"/api/ws/rooms/{room_id}") as websocket:
        message = websocket.receive_json()
    assert message["type"] == "ROOM_VIEW"
    assert message["payload"]["room"]["id"] == room_id
    assert len(message["payload"]["players"]) == 4


def test_websocket_rejects_unknown_room(client: TestClient) -> None:
    with pytest.raises(WebSocketDisconnect) as excinfo:
        with client.websocket_connect("/api/ws/rooms/NOPE00") as websocket:
            websocket.receive_json()
    assert excinfo.value.code == 1008


def test_broadcast_from_outsider_is_404(client: TestClient, room_id: str) -> None:
    response = client.post(
        f"/api/rooms/{room_id}/broadcast",
        json={"amount": 20},
        headers=headers("player_outsider"),
    )
    assert response.status_code == 404
    assert response.json()["detail"]["code"] == "PLAYER_NOT_FOUND"


class FakeSocket:
    def __init__(self, *, fail_sends: bool = False, disconnect: bool = False) -> None:
        self.fail_sends = fail_sends
        self.disconnect = disconnect
        self.sent: list[dict[str, Any]] = []

    async def send_json(self, data: dict[str, Any]) -> None:
        if self.fail_sends:
            raise RuntimeError("socket is gone")
        self.sent.append(data)

    async def receive(self) -> dict[str, Any]:
        if self.disconnect:
            return {"type": "websocket.disconnect", "code": 1000}
        await asyncio.Event().wait()
        return {}


def hint() -> BroadcastEvent:
    return BroadcastEvent(room_id="APIR00", event="stage_animation", payload={"amount": 5})


@pytest.mark.asyncio
async def test_failed_send_ends_the_stream_and_is_logged(caplog: pytest.LogCaptureFixture) -> None:
    queue: asyncio.Queue = asyncio.Queue()
    queue.put_nowait(hint())
    socket = FakeSocket(fail_sends=True)

    with caplog.at_level(logging.WARNING, logger="pokertable_backend.api.routes"):
        await asyncio.wait_for(_stream_feed(socket, "APIR00", queue), timeout=2)

    assert any("socket is gone" in record.getMessage() for record in caplog.records)


@pytest.mark.asyncio
async def test_disconnect_cancels_the_forwarder(caplog: pytest.LogCaptureFixture) -> None:
    queue: asyncio.Queue = asyncio.Queue()
    socket = FakeSocket(disconnect=True)

    with caplog.at_level(logging.WARNING, logger="pokertable_backend.api.routes"):
        await asyncio.wait_for(_stream_feed(socket, "APIR00", queue), timeout=2)

    queue.put_nowait(hint())
    await asyncio.sleep(0)
    assert socket.sent == []
    assert queue.qsize() == 1
    assert caplog.records == []
