from __future__ import annotations

import random
import string
from pathlib import Path


ROOM_ID_ALPHABET = string.ascii_uppercase + string.digits
ROOM_ID_LENGTH = 6
PLAYER_ID_ALPHABET = string.digits + string.ascii_lowercase
PLAYER_ID_PREFIX = "player_"


def generate_room_id(rng: random.Random | None = None) -> str:
    rng = rng or random.SystemRandom()
    return "".join(rng.choice(ROOM_ID_ALPHABET) for _ in range(ROOM_ID_LENGTH))


def generate_player_id(rng: random.Random | None = None) -> str:
    rng = rng or random.SystemRandom()
    return PLAYER_ID_PREFIX + "".join(rng.choice(PLAYER_ID_ALPHABET) for _ in range(9))


def load_or_create_player_id(path: Path, rng: random.Random | None = None) -> str:
    if path.exists():
        stored = path.read_text().strip()
        if stored:
            return stored
    player_id = generate_player_id(rng)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(player_id)
    return player_id
