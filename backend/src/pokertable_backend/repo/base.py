from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable

from pokertable_backend.engine.models import ChangeKind, Player, Room


logger = logging.getLogger(__name__)

ChangeListener = Callable[[str, str, ChangeKind, "dict[str, Any] | None", "dict[str, Any] | None"], None]

PLAYERS_TABLE = "players"
ROOMS_TABLE = "rooms"


class RepositoryError(Exception):
    pass


class RoomNotFound(RepositoryError):
    def __init__(self, room_id: str) -> None:
        super().__init__(f"room {room_id} not found")
        self.room_id = room_id


class PlayerNotFound(RepositoryError):
    def __init__(self, room_id: str, player_id: str) -> None:
        super().__init__(f"player {player_id} not found in room {room_id}")
        self.room_id = room_id
        self.player_id = player_id


class DuplicateRoom(RepositoryError):
    pass


class SeatTaken(RepositoryError):
    def __init__(self, room_id: str, seat_index: int) -> None:
        super().__init__(f"seat {seat_index} in room {room_id} is already taken")
        self.room_id = room_id
        self.seat_index = seat_index


class RoomRepository(ABC):
    def __init__(self) -> None:
        self._listeners: list[ChangeListener] = []

    def add_listener(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    def close(self) -> None:
        return None

    def _notify(
        self,
        room_id: str,
        table: str,
        kind: ChangeKind,
        old: Room | Player | None,
        new: Room | Player | None,
    ) -> None:
        old_row = old.model_dump(mode="json") if old is not None else None
        new_row = new.model_dump(mode="json") if new is not None else None
        if old_row == new_row:
            return
        for listener in list(self._listeners):
            try:
                listener(room_id, table, kind, old_row, new_row)
            except Exception:
                logger.exception("change listener failed for %s/%s", table, room_id)

    @abstractmethod
    def create_room(self, room: Room) -> None:
        raise NotImplementedError

    @abstractmethod
    def get_room(self, room_id: str) -> Room:
        raise NotImplementedError

    @abstractmethod
    def room_exists(self, room_id: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def update_room(self, room: Room) -> Room:
        raise NotImplementedError

    @abstractmethod
    def list_players(self, room_id: str) -> list[Player]:
        raise NotImplementedError

    @abstractmethod
    def get_player(self, room_id: str, player_id: str) -> Player:
        raise NotImplementedError

    @abstractmethod
    def upsert_player(self, player: Player) -> Player:
        raise NotImplementedError

    @abstractmethod
    def update_player(self, player: Player) -> Player:
        raise NotImplementedError

    @abstractmethod
    def apply_bet(self, player: Player, highest_bet: int, reopen: bool) -> None:
        """Persist a betting action, the room's highest bet and, for a raise,
        the acted-flag reset of every other active player, as one unit."""
        raise NotImplementedError

    @abstractmethod
    def start_round(self, room_id: str, players: list[Player], turn_seat: int) -> Room:
        raise NotImplementedError

    @abstractmethod
    def collect_bets(self, room_id: str) -> int:
        raise NotImplementedError

    @abstractmethod
    def award_pot(self, room_id: str, winner_id: str) -> int:
        raise NotImplementedError
