from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator

from pokertable_backend.engine.lifecycle import outstanding_bets
from pokertable_backend.engine.models import (
    ChangeKind,
    GameStatus,
    Player,
    PlayerAction,
    Room,
    utc_now,
)
from pokertable_backend.repo.base import (
    PLAYERS_TABLE,
    ROOMS_TABLE,
    DuplicateRoom,
    PlayerNotFound,
    RepositoryError,
    RoomNotFound,
    RoomRepository,
    SeatTaken,
)


logger = logging.getLogger(__name__)

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS rooms (
        id TEXT PRIMARY KEY,
        host_id TEXT NOT NULL,
        pot INTEGER NOT NULL DEFAULT 0 CHECK (pot >= 0),
        game_status TEXT NOT NULL DEFAULT 'waiting',
        dealer_index INTEGER NOT NULL DEFAULT -1,
        current_turn_seat_index INTEGER NOT NULL DEFAULT -1,
        current_highest_bet INTEGER NOT NULL DEFAULT 0 CHECK (current_highest_bet >= 0),
        betting_round_complete INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS players (
        room_id TEXT NOT NULL REFERENCES rooms(id),
        user_id TEXT NOT NULL,
        name TEXT NOT NULL,
        avatar TEXT NOT NULL DEFAULT '',
        color TEXT,
        is_host INTEGER NOT NULL DEFAULT 0,
        seat_index INTEGER NOT NULL DEFAULT -1,
        balance INTEGER NOT NULL DEFAULT 0 CHECK (balance >= 0),
        current_bet INTEGER NOT NULL DEFAULT 0 CHECK (current_bet >= 0),
        staged_bet INTEGER NOT NULL DEFAULT 0 CHECK (staged_bet >= 0),
        is_folded INTEGER NOT NULL DEFAULT 0,
        has_acted_this_round INTEGER NOT NULL DEFAULT 0,
        player_action TEXT NOT NULL DEFAULT 'none',
        last_seen TEXT NOT NULL,
        PRIMARY KEY (room_id, user_id)
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS players_room_seat
        ON players (room_id, seat_index) WHERE seat_index >= 0
    """,
)

PLAYER_COLUMNS = (
    "room_id",
    "user_id",
    "name",
    "avatar",
    "color",
    "is_host",
    "seat_index",
    "balance",
    "current_bet",
    "staged_bet",
    "is_folded",
    "has_acted_this_round",
    "player_action",
    "last_seen",
)


Pending = list[tuple[str, str, ChangeKind, Any, Any]]


class SQLiteRoomRepository(RoomRepository):
    def __init__(self, db_path: str | Path = "pokertable.sqlite", busy_timeout: float = 5.0) -> None:
        super().__init__()
        self.busy_timeout = busy_timeout
        self.db_path = str(db_path) if str(db_path) == ":memory:" else str(Path(db_path).resolve())
        self._local = threading.local()
        self._init_schema()

    def _get_connection(self) -> sqlite3.Connection:
        if not hasattr(self._local, "connection"):
            connection = sqlite3.connect(
                self.db_path,
                check_same_thread=False,
                timeout=self.busy_timeout,
                isolation_level=None,
            )
            connection.row_factory = sqlite3.Row
            connection.execute("PRAGMA foreign_keys = ON")
            if self.db_path != ":memory:":
                connection.execute("PRAGMA journal_mode = WAL")
            else:
                # every thread opens its own in-memory database
                for statement in SCHEMA:
                    connection.execute(statement)
            self._local.connection = connection
        return self._local.connection

    def _cursor(self) -> sqlite3.Cursor:
        try:
            return self._get_connection().cursor()
        except sqlite3.Error as exc:
            raise RepositoryError(f"sqlite failure: {exc}") from exc

    def close(self) -> None:
        connection = getattr(self._local, "connection", None)
        if connection is not None:
            connection.close()
            del self._local.connection

    @contextmanager
    def _transaction(self) -> Iterator[tuple[sqlite3.Cursor, Pending]]:
        cursor = self._cursor()
        pending: Pending = []
        try:
            cursor.execute("BEGIN IMMEDIATE")
            try:
                yield cursor, pending
                cursor.execute("COMMIT")
            except Exception:
                cursor.execute("ROLLBACK")
                raise
        except sqlite3.Error as exc:
            raise RepositoryError(f"sqlite failure: {exc}") from exc
        finally:
            cursor.close()
        for room_id, table, kind, old, new in pending:
            self._notify(room_id, table, kind, old, new)

    @contextmanager
    def _reading(self) -> Iterator[sqlite3.Cursor]:
        cursor = self._cursor()
        try:
            yield cursor
        except sqlite3.Error as exc:
            raise RepositoryError(f"sqlite failure: {exc}") from exc
        finally:
            cursor.close()

    def _init_schema(self) -> None:
        with self._transaction() as (cursor, _):
            for statement in SCHEMA:
                cursor.execute(statement)

    def create_room(self, room: Room) -> None:
        with self._transaction() as (cursor, pending):
            try:
                cursor.execute(
                    """
                    INSERT INTO rooms (id, host_id, pot, game_status, dealer_index,
                        current_turn_seat_index, current_highest_bet, betting_round_complete)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    _room_params(room),
                )
            except sqlite3.IntegrityError as exc:
                raise DuplicateRoom(f"room {room.id} already exists") from exc
            pending.append((room.id, ROOMS_TABLE, ChangeKind.INSERT, None, room))

    def get_room(self, room_id: str) -> Room:
        with self._reading() as cursor:
            return self._fetch_room(cursor, room_id)

    def room_exists(self, room_id: str) -> bool:
        with self._reading() as cursor:
            cursor.execute("SELECT 1 FROM rooms WHERE id = ?", (room_id,))
            return cursor.fetchone() is not None

    def update_room(self, room: Room) -> Room:
        with self._transaction() as (cursor, pending):
            self._write_room(cursor, pending, room)
        return room

    def list_players(self, room_id: str) -> list[Player]:
        with self._reading() as cursor:
            return self._fetch_players(cursor, room_id)

    def get_player(self, room_id: str, player_id: str) -> Player:
        with self._reading() as cursor:
            return self._fetch_player(cursor, room_id, player_id)

    def upsert_player(self, player: Player) -> Player:
        stored = player.model_copy(update={"last_seen": utc_now()})
        with self._transaction() as (cursor, pending):
            self._fetch_room(cursor, player.room_id)
            old = self._find_player(cursor, player.room_id, player.id)
            assignments = ", ".join(f"{column} = excluded.{column}" for column in PLAYER_COLUMNS[2:])
            try:
                cursor.execute(
                    f"""
                    INSERT INTO players ({", ".join(PLAYER_COLUMNS)})
                    VALUES ({", ".join("?" for _ in PLAYER_COLUMNS)})
                    ON CONFLICT (room_id, user_id) DO UPDATE SET {assignments}
                    """,
                    _player_params(stored),
                )
            except sqlite3.IntegrityError as exc:
                raise self._translate_integrity(stored, exc) from exc
            kind = ChangeKind.INSERT if old is None else ChangeKind.UPDATE
            pending.append((player.room_id, PLAYERS_TABLE, kind, old, stored))
        return stored

    def update_player(self, player: Player) -> Player:
        with self._transaction() as (cursor, pending):
            return self._write_player(cursor, pending, player)

    def apply_bet(self, player: Player, highest_bet: int, reopen: bool) -> None:
        with self._transaction() as (cursor, pending):
            room = self._fetch_room(cursor, player.room_id)
            self._write_player(cursor, pending, player)
            if reopen:
                for other in self._fetch_players(cursor, player.room_id):
                    if other.id != player.id and other.is_active and other.has_acted_this_round:
                        self._write_player(
                            cursor,
                            pending,
                            other.model_copy(update={"has_acted_this_round": False}),
                        )
            if room.current_highest_bet != highest_bet:
                self._write_room(
                    cursor,
                    pending,
                    room.model_copy(update={"current_highest_bet": highest_bet}),
                )

    def start_round(self, room_id: str, players: list[Player], turn_seat: int) -> Room:
        with self._transaction() as (cursor, pending):
            room = self._fetch_room(cursor, room_id)
            for player in players:
                self._write_player(cursor, pending, player)
            updated = room.model_copy(
                update={
                    "current_turn_seat_index": turn_seat,
                    "current_highest_bet": 0,
                    "betting_round_complete": False,
                },
            )
            self._write_room(cursor, pending, updated)
        return updated

    def collect_bets(self, room_id: str) -> int:
        with self._transaction() as (cursor, pending):
            room = self._fetch_room(cursor, room_id)
            players = self._fetch_players(cursor, room_id)
            total = outstanding_bets(players)
            if total == 0:
                return 0
            for player in players:
                if player.current_bet:
                    self._write_player(cursor, pending, player.model_copy(update={"current_bet": 0}))
            self._write_room(cursor, pending, room.model_copy(update={"pot": room.pot + total}))
        return total

    def award_pot(self, room_id: str, winner_id: str) -> int:
        with self._transaction() as (cursor, pending):
            room = self._fetch_room(cursor, room_id)
            winner = self._fetch_player(cursor, room_id, winner_id)
            amount = room.pot
            if amount <= 0:
                return 0
            self._write_player(
                cursor,
                pending,
                winner.model_copy(update={"balance": winner.balance + amount}),
            )
            self._write_room(cursor, pending, room.model_copy(update={"pot": 0}))
        return amount

    def _fetch_room(self, cursor: sqlite3.Cursor, room_id: str) -> Room:
        cursor.execute("SELECT * FROM rooms WHERE id = ?", (room_id,))
        row = cursor.fetchone()
        if row is None:
            raise RoomNotFound(room_id)
        return _room_from_row(row)

    def _fetch_players(self, cursor: sqlite3.Cursor, room_id: str) -> list[Player]:
        cursor.execute("SELECT * FROM players WHERE room_id = ? ORDER BY seat_index, user_id", (room_id,))
        return [_player_from_row(row) for row in cursor.fetchall()]

    def _find_player(self, cursor: sqlite3.Cursor, room_id: str, player_id: str) -> Player | None:
        cursor.execute("SELECT * FROM players WHERE room_id = ? AND user_id = ?", (room_id, player_id))
        row = cursor.fetchone()
        return _player_from_row(row) if row is not None else None

    def _fetch_player(self, cursor: sqlite3.Cursor, room_id: str, player_id: str) -> Player:
        player = self._find_player(cursor, room_id, player_id)
        if player is None:
            raise PlayerNotFound(room_id, player_id)
        return player

    def _write_room(self, cursor: sqlite3.Cursor, pending: Pending, room: Room) -> None:
        old = self._fetch_room(cursor, room.id)
        cursor.execute(
            """
            UPDATE rooms SET host_id = ?, pot = ?, game_status = ?, dealer_index = ?,
                current_turn_seat_index = ?, current_highest_bet = ?, betting_round_complete = ?
            WHERE id = ?
            """,
            (*_room_params(room)[1:], room.id),
        )
        pending.append((room.id, ROOMS_TABLE, ChangeKind.UPDATE, old, room))

    def _write_player(self, cursor: sqlite3.Cursor, pending: Pending, player: Player) -> Player:
        old = self._fetch_player(cursor, player.room_id, player.id)
        stored = player.model_copy(update={"last_seen": utc_now()})
        assignments = ", ".join(f"{column} = ?" for column in PLAYER_COLUMNS[2:])
        try:
            cursor.execute(
                f"UPDATE players SET {assignments} WHERE room_id = ? AND user_id = ?",
                (*_player_params(stored)[2:], stored.room_id, stored.id),
            )
        except sqlite3.IntegrityError as exc:
            raise self._translate_integrity(stored, exc) from exc
        pending.append((player.room_id, PLAYERS_TABLE, ChangeKind.UPDATE, old, stored))
        return stored

    @staticmethod
    def _translate_integrity(player: Player, exc: sqlite3.IntegrityError) -> RepositoryError:
        if "seat_index" in str(exc):
            return SeatTaken(player.room_id, player.seat_index)
        logger.error("integrity violation writing player %s/%s: %s", player.room_id, player.id, exc)
        return RepositoryError(str(exc))


def _room_params(room: Room) -> tuple[Any, ...]:
    return (
        room.id,
        room.host_id,
        room.pot,
        room.game_status.value,
        room.dealer_index,
        room.current_turn_seat_index,
        room.current_highest_bet,
        int(room.betting_round_complete),
    )


def _room_from_row(row: sqlite3.Row) -> Room:
    return Room(
        id=row["id"],
        host_id=row["host_id"],
        pot=row["pot"],
        game_status=GameStatus(row["game_status"]),
        dealer_index=row["dealer_index"],
        current_turn_seat_index=row["current_turn_seat_index"],
        current_highest_bet=row["current_highest_bet"],
        betting_round_complete=bool(row["betting_round_complete"]),
    )


def _player_params(player: Player) -> tuple[Any, ...]:
    return (
        player.room_id,
        player.id,
        player.name,
        player.avatar,
        player.color,
        int(player.is_host),
        player.seat_index,
        player.balance,
        player.current_bet,
        player.staged_bet,
        int(player.is_folded),
        int(player.has_acted_this_round),
        player.player_action.value,
        player.last_seen.isoformat(),
    )


def _player_from_row(row: sqlite3.Row) -> Player:
    return Player(
        id=row["user_id"],
        room_id=row["room_id"],
        name=row["name"],
        avatar=row["avatar"],
        color=row["color"],
        is_host=bool(row["is_host"]),
        seat_index=row["seat_index"],
        balance=row["balance"],
        current_bet=row["current_bet"],
        staged_bet=row["staged_bet"],
        is_folded=bool(row["is_folded"]),
        has_acted_this_round=bool(row["has_acted_this_round"]),
        player_action=PlayerAction(row["player_action"]),
        last_seen=datetime.fromisoformat(row["last_seen"]),
    )
