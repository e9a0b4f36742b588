from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


MAX_SEATS = 9
UNSEATED = -1
NO_TURN = -1
NO_DEALER = -1


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class GameStatus(str, Enum):
    WAITING = "waiting"
    PRE_FLOP = "pre-flop"
    FLOP = "flop"
    TURN = "turn"
    RIVER = "river"
    SHOWDOWN = "showdown"


STAGE_ORDER: tuple[GameStatus, ...] = (
    GameStatus.WAITING,
    GameStatus.PRE_FLOP,
    GameStatus.FLOP,
    GameStatus.TURN,
    GameStatus.RIVER,
    GameStatus.SHOWDOWN,
)

BETTING_STAGES = frozenset(
    {GameStatus.PRE_FLOP, GameStatus.FLOP, GameStatus.TURN, GameStatus.RIVER},
)


class PlayerAction(str, Enum):
    NONE = "none"
    CHECK = "check"
    CALL = "call"
    BET = "bet"
    RAISE = "raise"
    FOLD = "fold"


class ClientActionType(str, Enum):
    FOLD = "fold"
    CHECK = "check"
    CALL = "call"
    BET = "bet"
    RAISE = "raise"


class ChangeKind(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"


class FeedMessageType(str, Enum):
    ROOM_VIEW = "ROOM_VIEW"
    CHANGE = "CHANGE"
    BROADCAST = "BROADCAST"


class Player(BaseModel):
    id: str
    room_id: str
    name: str = "Player"
    avatar: str = ""
    color: str | None = None
    is_host: bool = False
    seat_index: int = UNSEATED
    balance: int = Field(default=0, ge=0)
    current_bet: int = Field(default=0, ge=0)
    staged_bet: int = Field(default=0, ge=0)
    is_folded: bool = False
    has_acted_this_round: bool = False
    player_action: PlayerAction = PlayerAction.NONE
    last_seen: datetime = Field(default_factory=utc_now)

    model_config = ConfigDict(extra="forbid")

    @property
    def is_seated(self) -> bool:
        return self.seat_index >= 0

    @property
    def is_active(self) -> bool:
        return self.is_seated and not self.is_folded


class Room(BaseModel):
    id: str
    host_id: str
    pot: int = Field(default=0, ge=0)
    game_status: GameStatus = GameStatus.WAITING
    dealer_index: int = NO_DEALER
    current_turn_seat_index: int = NO_TURN
    current_highest_bet: int = Field(default=0, ge=0)
    betting_round_complete: bool = False

    model_config = ConfigDict(extra="forbid")


class JoinRoomRequest(BaseModel):
    name: str
    seat_index: int
    avatar: str = ""
    buy_in: int | None = None
    color: str | None = None

    model_config = ConfigDict(extra="forbid")


class SubmitActionRequest(BaseModel):
    action: ClientActionType
    amount: int | None = None

    model_config = ConfigDict(extra="forbid")


class StageBetRequest(BaseModel):
    amount: int
    delta: int | None = None
    velocity: float | None = None

    model_config = ConfigDict(extra="forbid")


class BroadcastHintRequest(BaseModel):
    amount: int
    velocity: float | None = None

    model_config = ConfigDict(extra="forbid")


class DistributePotRequest(BaseModel):
    winner_id: str

    model_config = ConfigDict(extra="forbid")


class SetGameStatusRequest(BaseModel):
    status: GameStatus

    model_config = ConfigDict(extra="forbid")


class SetDealerRequest(BaseModel):
    seat_index: int

    model_config = ConfigDict(extra="forbid")


class EngineError(BaseModel):
    code: str
    message: str

    model_config = ConfigDict(extra="forbid")


class RoomView(BaseModel):
    room: Room
    players: list[Player]
    state_hash: str

    model_config = ConfigDict(extra="forbid")


class ActionResponse(BaseModel):
    accepted: bool
    error: EngineError | None = None
    view: RoomView

    model_config = ConfigDict(extra="forbid")


class CheckRoomResponse(BaseModel):
    exists: bool
    member: bool = False
    occupied_seats: list[int] = Field(default_factory=list)
    taken_names: list[str] = Field(default_factory=list)
    player: Player | None = None

    model_config = ConfigDict(extra="forbid")


class MembershipResponse(BaseModel):
    room_id: str
    player_id: str
    is_host: bool
    view: RoomView

    model_config = ConfigDict(extra="forbid")


class ChangeEvent(BaseModel):
    room_id: str
    table: str
    kind: ChangeKind
    old: dict[str, Any] | None = None
    new: dict[str, Any] | None = None
    ts: datetime = Field(default_factory=utc_now)

    model_config = ConfigDict(extra="forbid")


class BroadcastEvent(BaseModel):
    room_id: str
    event: str
    payload: dict[str, Any]
    ts: datetime = Field(default_factory=utc_now)

    model_config = ConfigDict(extra="forbid")
