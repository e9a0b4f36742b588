from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

from pokertable_backend.engine.service import EngineRejectedAction, RoomService
from pokertable_backend.repo.sqlite import SQLiteRoomRepository
from pokertable_backend.utils.identity import load_or_create_player_id


async def _run(db_path: Path, room_id: str, identity: Path | None) -> int:
    service = RoomService(SQLiteRoomRepository(db_path))
    try:
        if identity is not None:
            player_id = load_or_create_player_id(identity)
            result = await service.check_room(room_id, player_id)
        else:
            result = await service.get_view(room_id)
    except EngineRejectedAction as exc:
        print(json.dumps({"code": exc.code, "message": exc.message}), file=sys.stderr)
        return 1
    finally:
        service.close()
    print(json.dumps(result.model_dump(mode="json"), indent=2))
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Print the persisted state of a poker room")
    parser.add_argument("db_path", type=Path)
    parser.add_argument("room_id")
    parser.add_argument(
        "--identity",
        type=Path,
        help="player id file; prints the room check for that player instead of the view",
    )
    args = parser.parse_args(argv)
    if not args.db_path.exists():
        parser.error(f"database {args.db_path} does not exist")
    return asyncio.run(_run(args.db_path, args.room_id, args.identity))


if __name__ == "__main__":
    raise SystemExit(main())
