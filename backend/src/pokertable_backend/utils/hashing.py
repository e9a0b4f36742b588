from __future__ import annotations

import hashlib
import json
from typing import Any, Iterable

from pokertable_backend.engine.models import Player, Room


def stable_hash(payload: Any) -> str:
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()


def room_state_hash(room: Room, players: Iterable[Player]) -> str:
    # last_seen changes on every write; the hash only tracks ledger state
    rows = sorted(
        (player.model_dump(mode="json", exclude={"last_seen"}) for player in players),
        key=lambda row: (row["seat_index"], row["id"]),
    )
    return stable_hash({"room": room.model_dump(mode="json"), "players": rows})
