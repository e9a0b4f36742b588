from __future__ import annotations

from pokertable_backend.engine.lifecycle import outstanding_bets
from pokertable_backend.engine.models import ChangeKind, Player, Room, utc_now
from pokertable_backend.repo.base import (
    PLAYERS_TABLE,
    ROOMS_TABLE,
    DuplicateRoom,
    PlayerNotFound,
    RoomNotFound,
    RoomRepository,
    SeatTaken,
)


class InMemoryRoomRepository(RoomRepository):
    def __init__(self) -> None:
        super().__init__()
        self._rooms: dict[str, Room] = {}
        self._players: dict[tuple[str, str], Player] = {}

    def create_room(self, room: Room) -> None:
        if room.id in self._rooms:
            raise DuplicateRoom(f"room {room.id} already exists")
        self._rooms[room.id] = room.model_copy()
        self._notify(room.id, ROOMS_TABLE, ChangeKind.INSERT, None, room)

    def get_room(self, room_id: str) -> Room:
        if room_id not in self._rooms:
            raise RoomNotFound(room_id)
        return self._rooms[room_id].model_copy()

    def room_exists(self, room_id: str) -> bool:
        return room_id in self._rooms

    def update_room(self, room: Room) -> Room:
        old = self.get_room(room.id)
        self._rooms[room.id] = room.model_copy()
        self._notify(room.id, ROOMS_TABLE, ChangeKind.UPDATE, old, room)
        return room

    def list_players(self, room_id: str) -> list[Player]:
        return [
            player.model_copy()
            for (player_room, _), player in self._players.items()
            if player_room == room_id
        ]

    def get_player(self, room_id: str, player_id: str) -> Player:
        key = (room_id, player_id)
        if key not in self._players:
            raise PlayerNotFound(room_id, player_id)
        return self._players[key].model_copy()

    def upsert_player(self, player: Player) -> Player:
        if player.room_id not in self._rooms:
            raise RoomNotFound(player.room_id)
        if player.is_seated:
            for (room_id, player_id), other in self._players.items():
                if room_id == player.room_id and player_id != player.id and other.seat_index == player.seat_index:
                    raise SeatTaken(player.room_id, player.seat_index)
        key = (player.room_id, player.id)
        old = self._players.get(key)
        stored = player.model_copy(update={"last_seen": utc_now()})
        self._players[key] = stored
        kind = ChangeKind.INSERT if old is None else ChangeKind.UPDATE
        self._notify(player.room_id, PLAYERS_TABLE, kind, old, stored)
        return stored.model_copy()

    def update_player(self, player: Player) -> Player:
        old = self.get_player(player.room_id, player.id)
        if player.is_seated and player.seat_index != old.seat_index:
            for (room_id, player_id), other in self._players.items():
                if room_id == player.room_id and player_id != player.id and other.seat_index == player.seat_index:
                    raise SeatTaken(player.room_id, player.seat_index)
        stored = player.model_copy(update={"last_seen": utc_now()})
        self._players[(player.room_id, player.id)] = stored
        self._notify(player.room_id, PLAYERS_TABLE, ChangeKind.UPDATE, old, stored)
        return stored.model_copy()

    def apply_bet(self, player: Player, highest_bet: int, reopen: bool) -> None:
        room = self.get_room(player.room_id)
        self.get_player(player.room_id, player.id)
        self.update_player(player)
        if reopen:
            for other in self.list_players(player.room_id):
                if other.id != player.id and other.is_active and other.has_acted_this_round:
                    self.update_player(other.model_copy(update={"has_acted_this_round": False}))
        if room.current_highest_bet != highest_bet:
            self.update_room(room.model_copy(update={"current_highest_bet": highest_bet}))

    def start_round(self, room_id: str, players: list[Player], turn_seat: int) -> Room:
        room = self.get_room(room_id)
        for player in players:
            self.get_player(room_id, player.id)
        for player in players:
            self.update_player(player)
        updated = room.model_copy(
            update={
                "current_turn_seat_index": turn_seat,
                "current_highest_bet": 0,
                "betting_round_complete": False,
            },
        )
        return self.update_room(updated)

    def collect_bets(self, room_id: str) -> int:
        room = self.get_room(room_id)
        players = self.list_players(room_id)
        total = outstanding_bets(players)
        if total == 0:
            return 0
        for player in players:
            if player.current_bet:
                self.update_player(player.model_copy(update={"current_bet": 0}))
        self.update_room(room.model_copy(update={"pot": room.pot + total}))
        return total

    def award_pot(self, room_id: str, winner_id: str) -> int:
        room = self.get_room(room_id)
        winner = self.get_player(room_id, winner_id)
        amount = room.pot
        if amount <= 0:
            return 0
        self.update_player(winner.model_copy(update={"balance": winner.balance + amount}))
        self.update_room(room.model_copy(update={"pot": 0}))
        return amount
