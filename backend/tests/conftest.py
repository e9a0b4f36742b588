from __future__ import annotations

import itertools
from typing import Awaitable, Callable, Iterator, Sequence

import pytest

from pokertable_backend.engine.models import JoinRoomRequest
from pokertable_backend.engine.service import RoomService
from pokertable_backend.repo.base import RoomRepository
from pokertable_backend.repo.in_memory import InMemoryRoomRepository
from pokertable_backend.repo.sqlite import SQLiteRoomRepository

from room_helpers import HOST_ID, player_id_for


@pytest.fixture(params=["memory", "sqlite"])
def repository(request, tmp_path) -> Iterator[RoomRepository]:
    if request.param == "memory":
        yield InMemoryRoomRepository()
        return
    repo = SQLiteRoomRepository(tmp_path / "rooms.sqlite")
    yield repo
    repo.close()


@pytest.fixture
def service(repository: RoomRepository) -> Iterator[RoomService]:
    counter = itertools.count(1)
    room_service = RoomService(repository, room_id_factory=lambda: f"ROOM{next(counter):02d}")
    yield room_service
    room_service.close()


SeatedRoomFactory = Callable[..., Awaitable[str]]


@pytest.fixture
def seated_room(service: RoomService) -> SeatedRoomFactory:
    async def _factory(
        balances: Sequence[int] = (1_000, 1_000, 1_000),
        seats: Sequence[int] | None = None,
        dealer: int | None = 0,
    ) -> str:
        created = await service.create_room(HOST_ID)
        room_id = created.room_id
        seat_list = list(seats) if seats is not None else list(range(len(balances)))
        for seat, balance in zip(seat_list, balances):
            await service.join_room(
                room_id,
                player_id_for(seat),
                JoinRoomRequest(name=f"Seat {seat}", seat_index=seat, avatar="🙂", buy_in=balance),
            )
        if dealer is not None:
            await service.set_dealer(room_id, HOST_ID, dealer)
        return room_id

    return _factory
