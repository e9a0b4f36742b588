from __future__ import annotations

from pokertable_backend.config import Settings, StorageBackend, load_settings
from pokertable_backend.engine.service import RoomService
from pokertable_backend.realtime.feed import RoomFeed
from pokertable_backend.repo.base import RoomRepository
from pokertable_backend.repo.in_memory import InMemoryRoomRepository
from pokertable_backend.repo.sqlite import SQLiteRoomRepository


def build_repository(settings: Settings) -> RoomRepository:
    if settings.storage is StorageBackend.SQLITE:
        return SQLiteRoomRepository(settings.db_path, busy_timeout=settings.db_busy_timeout)
    return InMemoryRoomRepository()


def build_service(settings: Settings) -> RoomService:
    return RoomService(build_repository(settings), feed=RoomFeed(), settings=settings)


settings = load_settings()
room_service = build_service(settings)
