from __future__ import annotations

import random
import re
from pathlib import Path

import pytest
from pydantic import ValidationError

from pokertable_backend.config import Settings, StorageBackend, load_settings
from pokertable_backend.engine.models import Player, Room
from pokertable_backend.utils.hashing import room_state_hash, stable_hash
from pokertable_backend.utils.identity import generate_player_id, generate_room_id, load_or_create_player_id

from room_helpers import HOST_ID, ROOM_ID, make_player


def test_room_and_player_id_shapes() -> None:
    rng = random.Random(7)
    assert re.fullmatch(r"[A-Z0-9]{6}", generate_room_id(rng))
    assert re.fullmatch(r"player_[0-9a-z]{9}", generate_player_id(rng))


def test_player_id_is_persisted(tmp_path: Path) -> None:
    path = tmp_path / "identity" / "player_id"
    first = load_or_create_player_id(path, random.Random(1))
    again = load_or_create_player_id(path, random.Random(2))
    assert first == again
    assert path.read_text() == first


def test_stable_hash_ignores_key_order() -> None:
    assert stable_hash({"a": 1, "b": [1, 2]}) == stable_hash({"b": [1, 2], "a": 1})


def test_room_state_hash_ignores_last_seen_and_order() -> None:
    room = Room(id=ROOM_ID, host_id=HOST_ID)
    players = [make_player(0), make_player(1)]
    touched: list[Player] = [players[1].model_copy(update={"last_seen": players[1].last_seen.replace(year=2000)}), players[0]]
    assert room_state_hash(room, players) == room_state_hash(room, touched)
    assert room_state_hash(room, players) != room_state_hash(room, [make_player(0, balance=1), players[1]])


def test_settings_defaults() -> None:
    settings = load_settings({})
    assert settings.storage is StorageBackend.MEMORY
    assert settings.host_bankroll == 999_999
    assert settings.max_seats == 9


def test_settings_from_environment() -> None:
    settings = load_settings(
        {
            "POKERTABLE_STORAGE": "sqlite",
            "POKERTABLE_DB_PATH": "/tmp/rooms.sqlite",
            "POKERTABLE_MAX_SEATS": "6",
            "UNRELATED": "ignored",
        },
    )
    assert settings.storage is StorageBackend.SQLITE
    assert settings.db_path == "/tmp/rooms.sqlite"
    assert settings.max_seats == 6


def test_settings_reject_bad_values() -> None:
    with pytest.raises(ValidationError):
        load_settings({"POKERTABLE_MAX_SEATS": "12"})
    with pytest.raises(ValidationError):
        Settings(storage="postgres")
