from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, WebSocket, WebSocketDisconnect

from pokertable_backend.api import deps
from pokertable_backend.engine.models import (
    ActionResponse,
    BroadcastEvent,
    BroadcastHintRequest,
    CheckRoomResponse,
    DistributePotRequest,
    FeedMessageType,
    JoinRoomRequest,
    MembershipResponse,
    RoomView,
    SetDealerRequest,
    SetGameStatusRequest,
    StageBetRequest,
    SubmitActionRequest,
)
from pokertable_backend.engine.service import EngineRejectedAction, RoomService
from pokertable_backend.realtime.feed import FeedItem


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

PLAYER_HEADER = "X-Player-Id"

ERROR_STATUS = {
    "ROOM_NOT_FOUND": 404,
    "PLAYER_NOT_FOUND": 404,
    "NOT_A_MEMBER": 404,
    "NOT_HOST": 403,
    "SEAT_TAKEN": 409,
    "STORAGE_ERROR": 503,
}


def get_room_service() -> RoomService:
    return deps.room_service


def _http_error(exc: EngineRejectedAction) -> HTTPException:
    status_code = ERROR_STATUS.get(exc.code, 400)
    return HTTPException(status_code=status_code, detail={"code": exc.code, "message": exc.message})


@router.post("/rooms", response_model=MembershipResponse)
async def create_room(
    player_id: str = Header(alias=PLAYER_HEADER),
    service: RoomService = Depends(get_room_service),
) -> MembershipResponse:
    try:
        return await service.create_room(player_id)
    except EngineRejectedAction as exc:
        raise _http_error(exc) from exc


@router.get("/rooms/{room_id}/check", response_model=CheckRoomResponse)
async def check_room(
    room_id: str,
    player_id: str = Header(alias=PLAYER_HEADER),
    service: RoomService = Depends(get_room_service),
) -> CheckRoomResponse:
    try:
        return await service.check_room(room_id, player_id)
    except EngineRejectedAction as exc:
        raise _http_error(exc) from exc


@router.post("/rooms/{room_id}/join", response_model=MembershipResponse)
async def join_room(
    room_id: str,
    request: JoinRoomRequest,
    player_id: str = Header(alias=PLAYER_HEADER),
    service: RoomService = Depends(get_room_service),
) -> MembershipResponse:
    try:
        return await service.join_room(room_id, player_id, request)
    except EngineRejectedAction as exc:
        raise _http_error(exc) from exc


@router.post("/rooms/{room_id}/resume", response_model=MembershipResponse)
async def resume(
    room_id: str,
    player_id: str = Header(alias=PLAYER_HEADER),
    service: RoomService = Depends(get_room_service),
) -> MembershipResponse:
    try:
        return await service.resume(room_id, player_id)
    except EngineRejectedAction as exc:
        raise _http_error(exc) from exc


@router.get("/rooms/{room_id}/view", response_model=RoomView)
async def get_view(room_id: str, service: RoomService = Depends(get_room_service)) -> RoomView:
    try:
        return await service.get_view(room_id)
    except EngineRejectedAction as exc:
        raise _http_error(exc) from exc


@router.post("/rooms/{room_id}/actions", response_model=ActionResponse)
async def submit_action(
    room_id: str,
    request: SubmitActionRequest,
    player_id: str = Header(alias=PLAYER_HEADER),
    service: RoomService = Depends(get_room_service),
) -> ActionResponse:
    try:
        return await service.submit_action(room_id, player_id, request.action, request.amount)
    except EngineRejectedAction as exc:
        raise _http_error(exc) from exc


@router.post("/rooms/{room_id}/stage", response_model=RoomView)
async def stage_bet(
    room_id: str,
    request: StageBetRequest,
    player_id: str = Header(alias=PLAYER_HEADER),
    service: RoomService = Depends(get_room_service),
) -> RoomView:
    try:
        return await service.stage_bet(room_id, player_id, request.amount, request.delta, request.velocity)
    except EngineRejectedAction as exc:
        raise _http_error(exc) from exc


@router.post("/rooms/{room_id}/stage/clear", response_model=RoomView)
async def clear_bet(
    room_id: str,
    player_id: str = Header(alias=PLAYER_HEADER),
    service: RoomService = Depends(get_room_service),
) -> RoomView:
    try:
        return await service.clear_bet(room_id, player_id)
    except EngineRejectedAction as exc:
        raise _http_error(exc) from exc


@router.post("/rooms/{room_id}/stage/confirm", response_model=ActionResponse)
async def confirm_bet(
    room_id: str,
    player_id: str = Header(alias=PLAYER_HEADER),
    service: RoomService = Depends(get_room_service),
) -> ActionResponse:
    try:
        return await service.confirm_bet(room_id, player_id)
    except EngineRejectedAction as exc:
        raise _http_error(exc) from exc


@router.post("/rooms/{room_id}/broadcast")
async def broadcast_hint(
    room_id: str,
    request: BroadcastHintRequest,
    player_id: str = Header(alias=PLAYER_HEADER),
    service: RoomService = Depends(get_room_service),
) -> dict[str, str]:
    try:
        await service.broadcast_hint(room_id, player_id, request.amount, request.velocity)
    except EngineRejectedAction as exc:
        raise _http_error(exc) from exc
    return {"status": "sent"}


@router.post("/rooms/{room_id}/round/start", response_model=RoomView)
async def start_round(
    room_id: str,
    player_id: str = Header(alias=PLAYER_HEADER),
    service: RoomService = Depends(get_room_service),
) -> RoomView:
    try:
        return await service.start_round(room_id, player_id)
    except EngineRejectedAction as exc:
        raise _http_error(exc) from exc


@router.post("/rooms/{room_id}/pot/collect", response_model=RoomView)
async def collect_bets(
    room_id: str,
    player_id: str = Header(alias=PLAYER_HEADER),
    service: RoomService = Depends(get_room_service),
) -> RoomView:
    try:
        return await service.collect_bets(room_id, player_id)
    except EngineRejectedAction as exc:
        raise _http_error(exc) from exc


@router.post("/rooms/{room_id}/pot/distribute", response_model=RoomView)
async def distribute_pot(
    room_id: str,
    request: DistributePotRequest,
    player_id: str = Header(alias=PLAYER_HEADER),
    service: RoomService = Depends(get_room_service),
) -> RoomView:
    try:
        return await service.distribute_pot(room_id, player_id, request.winner_id)
    except EngineRejectedAction as exc:
        raise _http_error(exc) from exc


@router.post("/rooms/{room_id}/status/advance", response_model=RoomView)
async def advance_stage(
    room_id: str,
    player_id: str = Header(alias=PLAYER_HEADER),
    service: RoomService = Depends(get_room_service),
) -> RoomView:
    try:
        return await service.advance_stage(room_id, player_id)
    except EngineRejectedAction as exc:
        raise _http_error(exc) from exc


@router.put("/rooms/{room_id}/status", response_model=RoomView)
async def set_game_status(
    room_id: str,
    request: SetGameStatusRequest,
    player_id: str = Header(alias=PLAYER_HEADER),
    service: RoomService = Depends(get_room_service),
) -> RoomView:
    try:
        return await service.set_game_status(room_id, player_id, request.status)
    except EngineRejectedAction as exc:
        raise _http_error(exc) from exc


@router.put("/rooms/{room_id}/dealer", response_model=RoomView)
async def set_dealer(
    room_id: str,
    request: SetDealerRequest,
    player_id: str = Header(alias=PLAYER_HEADER),
    service: RoomService = Depends(get_room_service),
) -> RoomView:
    try:
        return await service.set_dealer(room_id, player_id, request.seat_index)
    except EngineRejectedAction as exc:
        raise _http_error(exc) from exc


@router.post("/rooms/{room_id}/dealer/next", response_model=RoomView)
async def move_button(
    room_id: str,
    player_id: str = Header(alias=PLAYER_HEADER),
    service: RoomService = Depends(get_room_service),
) -> RoomView:
    try:
        return await service.move_button(room_id, player_id)
    except EngineRejectedAction as exc:
        raise _http_error(exc) from exc


@router.post("/rooms/{room_id}/new-round", response_model=RoomView)
async def new_round(
    room_id: str,
    player_id: str = Header(alias=PLAYER_HEADER),
    service: RoomService = Depends(get_room_service),
) -> RoomView:
    try:
        return await service.new_round(room_id, player_id)
    except EngineRejectedAction as exc:
        raise _http_error(exc) from exc


@router.websocket("/ws/rooms/{room_id}")
async def room_socket(
    websocket: WebSocket,
    room_id: str,
    service: RoomService = Depends(get_room_service),
) -> None:
    await websocket.accept()
    try:
        queue = await service.subscribe(room_id)
    except EngineRejectedAction:
        await websocket.close(code=1008)
        return

    try:
        view = await service.get_view(room_id)
        await websocket.send_json({"type": FeedMessageType.ROOM_VIEW.value, "payload": view.model_dump(mode="json")})
        await _stream_feed(websocket, room_id, queue)
    except WebSocketDisconnect:
        logger.debug("subscriber left room %s", room_id)
    finally:
        await service.unsubscribe(room_id, queue)


async def _stream_feed(websocket: WebSocket, room_id: str, queue: asyncio.Queue[FeedItem]) -> None:
    forwarder = asyncio.create_task(_forward_feed(websocket, queue))
    watcher = asyncio.create_task(_watch_inbound(websocket))
    try:
        await asyncio.wait({forwarder, watcher}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        forwarder.cancel()
        watcher.cancel()
        sent, received = await asyncio.gather(forwarder, watcher, return_exceptions=True)
    if isinstance(sent, Exception):
        logger.warning("stopped streaming room %s: %r", room_id, sent)
    if isinstance(received, Exception):
        logger.warning("lost inbound side of room %s socket: %r", room_id, received)
    else:
        logger.debug("subscriber left room %s", room_id)


async def _forward_feed(websocket: WebSocket, queue: asyncio.Queue[FeedItem]) -> None:
    while True:
        item = await queue.get()
        message_type = FeedMessageType.BROADCAST if isinstance(item, BroadcastEvent) else FeedMessageType.CHANGE
        await websocket.send_json({"type": message_type.value, "payload": item.model_dump(mode="json")})


async def _watch_inbound(websocket: WebSocket) -> None:
    # inbound frames are ignored; the disconnect message ends the stream
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return
