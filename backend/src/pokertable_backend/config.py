from __future__ import annotations

import os
from enum import Enum
from typing import Mapping

from pydantic import BaseModel, ConfigDict, Field

from pokertable_backend.engine.models import MAX_SEATS


ENV_PREFIX = "POKERTABLE_"


class StorageBackend(str, Enum):
    MEMORY = "memory"
    SQLITE = "sqlite"


class Settings(BaseModel):
    storage: StorageBackend = StorageBackend.MEMORY
    db_path: str = "pokertable.sqlite"
    db_busy_timeout: float = Field(default=5.0, gt=0)
    log_level: str = "INFO"
    host_bankroll: int = Field(default=999_999, ge=0)
    max_seats: int = Field(default=MAX_SEATS, ge=2, le=MAX_SEATS)
    default_buy_in: int = Field(default=1_000, gt=0)

    model_config = ConfigDict(extra="forbid")


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    environ = os.environ if environ is None else environ
    values = {
        field_name: environ[ENV_PREFIX + field_name.upper()]
        for field_name in Settings.model_fields
        if ENV_PREFIX + field_name.upper() in environ
    }
    return Settings.model_validate(values)
