from __future__ import annotations

import asyncio
import functools
import logging
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from typing import Any, Callable, Iterator, TypeVar

from pokertable_backend.config import Settings
from pokertable_backend.engine import betting, lifecycle
from pokertable_backend.engine.betting import ActionRejected
from pokertable_backend.engine.models import (
    NO_TURN,
    UNSEATED,
    ActionResponse,
    CheckRoomResponse,
    ClientActionType,
    EngineError,
    GameStatus,
    JoinRoomRequest,
    MembershipResponse,
    Player,
    Room,
    RoomView,
)
from pokertable_backend.realtime.feed import FeedItem, RoomFeed
from pokertable_backend.repo.base import (
    DuplicateRoom,
    PlayerNotFound,
    RepositoryError,
    RoomNotFound,
    RoomRepository,
    SeatTaken,
)
from pokertable_backend.utils.hashing import room_state_hash
from pokertable_backend.utils.identity import generate_room_id


logger = logging.getLogger(__name__)

STAGE_ANIMATION_EVENT = "stage_animation"
ROOM_ID_ATTEMPTS = 8

T = TypeVar("T")


class EngineRejectedAction(ActionRejected):
    pass


class RoomService:
    def __init__(
        self,
        repository: RoomRepository,
        feed: RoomFeed | None = None,
        settings: Settings | None = None,
        room_id_factory: Callable[[], str] = generate_room_id,
    ) -> None:
        self._repo = repository
        self._feed = feed or RoomFeed()
        self._settings = settings or Settings()
        self._room_id_factory = room_id_factory
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        # one worker: storage calls never run concurrently and never block the loop
        self._storage_worker = ThreadPoolExecutor(max_workers=1, thread_name_prefix="room-storage")
        self._repo.add_listener(self._feed.publish_change)

    @property
    def feed(self) -> RoomFeed:
        return self._feed

    def close(self) -> None:
        self._storage_worker.submit(self._repo.close).result()
        self._storage_worker.shutdown(wait=True)

    # Membership

    async def create_room(self, host_id: str) -> MembershipResponse:
        return await self._offload(self._create_room, host_id)

    async def check_room(self, room_id: str, player_id: str) -> CheckRoomResponse:
        return await self._offload(self._check_room, room_id, player_id)

    async def join_room(self, room_id: str, player_id: str, request: JoinRoomRequest) -> MembershipResponse:
        async with self._locks[room_id]:
            return await self._offload(self._join_room, room_id, player_id, request)

    async def resume(self, room_id: str, player_id: str) -> MembershipResponse:
        return await self._offload(self._resume, room_id, player_id)

    async def get_view(self, room_id: str) -> RoomView:
        return await self._offload(self._read_view, room_id)

    # Player actions

    async def submit_action(
        self,
        room_id: str,
        player_id: str,
        action: ClientActionType,
        amount: int | None = None,
    ) -> ActionResponse:
        async with self._locks[room_id]:
            return await self._offload(self._act, room_id, player_id, action, amount, False)

    async def confirm_bet(self, room_id: str, player_id: str) -> ActionResponse:
        async with self._locks[room_id]:
            return await self._offload(self._act, room_id, player_id, ClientActionType.RAISE, None, True)

    async def stage_bet(
        self,
        room_id: str,
        player_id: str,
        amount: int,
        delta: int | None = None,
        velocity: float | None = None,
    ) -> RoomView:
        async with self._locks[room_id]:
            return await self._offload(self._stage_bet, room_id, player_id, amount, delta, velocity)

    async def clear_bet(self, room_id: str, player_id: str) -> RoomView:
        async with self._locks[room_id]:
            return await self._offload(self._clear_bet, room_id, player_id)

    async def broadcast_hint(
        self,
        room_id: str,
        player_id: str,
        amount: int,
        velocity: float | None = None,
    ) -> None:
        await self._offload(self._broadcast_hint, room_id, player_id, amount, velocity)

    # Host lifecycle

    async def start_round(self, room_id: str, actor_id: str) -> RoomView:
        async with self._locks[room_id]:
            return await self._offload(self._host_start_round, room_id, actor_id)

    async def collect_bets(self, room_id: str, actor_id: str) -> RoomView:
        async with self._locks[room_id]:
            return await self._offload(self._collect_bets, room_id, actor_id)

    async def distribute_pot(self, room_id: str, actor_id: str, winner_id: str) -> RoomView:
        async with self._locks[room_id]:
            return await self._offload(self._distribute_pot, room_id, actor_id, winner_id)

    async def advance_stage(self, room_id: str, actor_id: str) -> RoomView:
        async with self._locks[room_id]:
            return await self._offload(self._advance_stage, room_id, actor_id)

    async def set_game_status(self, room_id: str, actor_id: str, status: GameStatus) -> RoomView:
        async with self._locks[room_id]:
            return await self._offload(self._set_game_status, room_id, actor_id, status)

    async def set_dealer(self, room_id: str, actor_id: str, seat_index: int) -> RoomView:
        async with self._locks[room_id]:
            return await self._offload(self._set_dealer, room_id, actor_id, seat_index)

    async def move_button(self, room_id: str, actor_id: str) -> RoomView:
        async with self._locks[room_id]:
            return await self._offload(self._move_button, room_id, actor_id)

    async def new_round(self, room_id: str, actor_id: str) -> RoomView:
        async with self._locks[room_id]:
            return await self._offload(self._new_round, room_id, actor_id)

    # Realtime

    async def subscribe(self, room_id: str) -> asyncio.Queue[FeedItem]:
        exists = await self._offload(self._room_exists, room_id)
        if not exists:
            raise EngineRejectedAction("ROOM_NOT_FOUND", f"Room {room_id} does not exist.")
        return self._feed.subscribe(room_id)

    async def unsubscribe(self, room_id: str, queue: asyncio.Queue[FeedItem]) -> None:
        self._feed.unsubscribe(room_id, queue)

    # Storage-thread bodies

    async def _offload(self, fn: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._storage_worker, functools.partial(fn, *args))

    def _create_room(self, host_id: str) -> MembershipResponse:
        room_id = None
        with self._storage("create_room"):
            for _ in range(ROOM_ID_ATTEMPTS):
                candidate = self._room_id_factory()
                try:
                    self._repo.create_room(Room(id=candidate, host_id=host_id))
                except DuplicateRoom:
                    logger.debug("room id %s already in use, retrying", candidate)
                    continue
                room_id = candidate
                break
        if room_id is None:
            raise EngineRejectedAction("ROOM_ID_EXHAUSTED", "Could not allocate a free room id.")

        with self._storage("create_room"):
            self._repo.upsert_player(
                Player(
                    id=host_id,
                    room_id=room_id,
                    name="Host",
                    avatar="👑",
                    is_host=True,
                    seat_index=UNSEATED,
                    balance=self._settings.host_bankroll,
                ),
            )
            logger.info("room %s created by host %s", room_id, host_id)
            return MembershipResponse(
                room_id=room_id,
                player_id=host_id,
                is_host=True,
                view=self._build_view(room_id),
            )

    def _check_room(self, room_id: str, player_id: str) -> CheckRoomResponse:
        with self._storage("check_room"):
            if not self._repo.room_exists(room_id):
                return CheckRoomResponse(exists=False)
            players = self._repo.list_players(room_id)

        me = next((player for player in players if player.id == player_id), None)
        return CheckRoomResponse(
            exists=True,
            member=me is not None,
            occupied_seats=betting.occupied_seats(players),
            taken_names=[player.name for player in players],
            player=me,
        )

    def _join_room(self, room_id: str, player_id: str, request: JoinRoomRequest) -> MembershipResponse:
        with self._storage("join_room"):
            room = self._repo.get_room(room_id)
            existing = self._find_player(room_id, player_id)

            if existing is not None and existing.is_host:
                logger.info("player %s is already host of room %s, resuming as host", player_id, room_id)
                return self._membership(room, existing)

            if not 0 <= request.seat_index < self._settings.max_seats:
                raise EngineRejectedAction(
                    "INVALID_SEAT",
                    f"Seat {request.seat_index} is outside [0, {self._settings.max_seats - 1}].",
                )
            buy_in = self._settings.default_buy_in if request.buy_in is None else request.buy_in
            if existing is None and buy_in <= 0:
                raise EngineRejectedAction("INVALID_BUY_IN", "Buy-in must be positive.")

            if existing is None:
                player = Player(
                    id=player_id,
                    room_id=room_id,
                    name=request.name,
                    avatar=request.avatar,
                    color=request.color,
                    seat_index=request.seat_index,
                    balance=buy_in,
                )
            else:
                player = existing.model_copy(
                    update={
                        "name": request.name,
                        "avatar": request.avatar,
                        "color": request.color,
                        "seat_index": request.seat_index,
                    },
                )

            try:
                stored = self._repo.upsert_player(player)
            except SeatTaken as exc:
                logger.info("seat %s in room %s already taken", request.seat_index, room_id)
                raise EngineRejectedAction(
                    "SEAT_TAKEN",
                    f"Seat {request.seat_index} is already taken! Please choose another seat.",
                ) from exc
            logger.info("player %s joined room %s at seat %s", player_id, room_id, stored.seat_index)
            return self._membership(room, stored)

    def _resume(self, room_id: str, player_id: str) -> MembershipResponse:
        with self._storage("resume"):
            room = self._repo.get_room(room_id)
            player = self._find_player(room_id, player_id)
            if player is None:
                raise EngineRejectedAction("NOT_A_MEMBER", "You are not a member of this room.")
            return self._membership(room, player)

    def _read_view(self, room_id: str) -> RoomView:
        with self._storage("get_view"):
            return self._build_view(room_id)

    def _room_exists(self, room_id: str) -> bool:
        with self._storage("subscribe"):
            return self._repo.room_exists(room_id)

    def _act(
        self,
        room_id: str,
        player_id: str,
        action: ClientActionType,
        amount: int | None,
        from_staged: bool,
    ) -> ActionResponse:
        with self._storage("submit_action"):
            player = self._repo.get_player(room_id, player_id)
            room = self._repo.get_room(room_id)

        try:
            self._ensure_turn(room, player)
            if from_staged:
                if player.staged_bet <= 0:
                    raise EngineRejectedAction("INVALID_AMOUNT", "There are no staged chips to confirm.")
                amount = player.current_bet + player.staged_bet
            outcome = betting.apply_action(player, action, room.current_highest_bet, amount)
        except ActionRejected as exc:
            logger.info(
                "rejected %s by %s in room %s: %s (%s)",
                action.value,
                player_id,
                room_id,
                exc.code,
                exc.message,
            )
            with self._storage("submit_action"):
                view = self._build_view(room_id)
            return ActionResponse(
                accepted=False,
                error=EngineError(code=exc.code, message=exc.message),
                view=view,
            )

        with self._storage("submit_action"):
            self._repo.apply_bet(outcome.player, outcome.highest_bet, outcome.reopened)
            logger.info(
                "seat %s %s in room %s (deducted %s, bet %s, balance %s, highest %s)",
                player.seat_index,
                outcome.player.player_action.value,
                room_id,
                outcome.deducted,
                outcome.player.current_bet,
                outcome.player.balance,
                outcome.highest_bet,
            )
            self._advance(room_id)
            return ActionResponse(accepted=True, view=self._build_view(room_id))

    def _stage_bet(
        self,
        room_id: str,
        player_id: str,
        amount: int,
        delta: int | None,
        velocity: float | None,
    ) -> RoomView:
        with self._storage("stage_bet"):
            player = self._repo.get_player(room_id, player_id)
            try:
                staged = betting.stage_chips(player, amount)
            except ActionRejected as exc:
                raise EngineRejectedAction(exc.code, exc.message) from exc
            self._repo.update_player(staged)
            if delta and velocity:
                self._publish_stage_hint(room_id, player_id, delta, velocity)
            return self._build_view(room_id)

    def _clear_bet(self, room_id: str, player_id: str) -> RoomView:
        with self._storage("clear_bet"):
            player = self._repo.get_player(room_id, player_id)
            if player.staged_bet:
                self._repo.update_player(betting.release_staged(player))
            return self._build_view(room_id)

    def _broadcast_hint(self, room_id: str, player_id: str, amount: int, velocity: float | None) -> None:
        with self._storage("broadcast_hint"):
            self._repo.get_room(room_id)
            self._repo.get_player(room_id, player_id)
        self._publish_stage_hint(room_id, player_id, amount, velocity)

    def _host_start_round(self, room_id: str, actor_id: str) -> RoomView:
        with self._storage("start_round"):
            room = self._require_host(room_id, actor_id)
            self._start_round(room)
            return self._build_view(room_id)

    def _collect_bets(self, room_id: str, actor_id: str) -> RoomView:
        with self._storage("collect_bets"):
            self._require_host(room_id, actor_id)
            collected = self._repo.collect_bets(room_id)
            if collected:
                logger.info("collected %s chips into the pot of room %s", collected, room_id)
            return self._build_view(room_id)

    def _distribute_pot(self, room_id: str, actor_id: str, winner_id: str) -> RoomView:
        with self._storage("distribute_pot"):
            room = self._require_host(room_id, actor_id)
            winner = self._find_player(room_id, winner_id)
            try:
                lifecycle.validate_distribution(room, winner)
            except ActionRejected as exc:
                logger.warning("pot distribution in room %s rejected: %s", room_id, exc.message)
                raise EngineRejectedAction(exc.code, exc.message) from exc
            awarded = self._repo.award_pot(room_id, winner_id)
            logger.info("awarded %s chips to %s in room %s", awarded, winner_id, room_id)
            return self._build_view(room_id)

    def _advance_stage(self, room_id: str, actor_id: str) -> RoomView:
        with self._storage("advance_stage"):
            room = self._require_host(room_id, actor_id)
            self._enter_stage(room, lifecycle.next_stage(room.game_status))
            return self._build_view(room_id)

    def _set_game_status(self, room_id: str, actor_id: str, status: GameStatus) -> RoomView:
        with self._storage("set_game_status"):
            room = self._require_host(room_id, actor_id)
            self._enter_stage(room, status)
            return self._build_view(room_id)

    def _set_dealer(self, room_id: str, actor_id: str, seat_index: int) -> RoomView:
        with self._storage("set_dealer"):
            room = self._require_host(room_id, actor_id)
            try:
                lifecycle.validate_dealer(self._repo.list_players(room_id), seat_index)
            except ActionRejected as exc:
                raise EngineRejectedAction(exc.code, exc.message) from exc
            self._repo.update_room(room.model_copy(update={"dealer_index": seat_index}))
            return self._build_view(room_id)

    def _move_button(self, room_id: str, actor_id: str) -> RoomView:
        with self._storage("move_button"):
            room = self._require_host(room_id, actor_id)
            self._pass_button(room)
            return self._build_view(room_id)

    def _new_round(self, room_id: str, actor_id: str) -> RoomView:
        with self._storage("new_round"):
            room = self._require_host(room_id, actor_id)
            room = self._enter_stage(room, GameStatus.WAITING)
            self._pass_button(room)
            return self._build_view(room_id)

    # Helpers, always called on the storage thread

    def _advance(self, room_id: str) -> Room:
        # re-read so the decision sees the write that was just made
        players = self._repo.list_players(room_id)
        room = self._repo.get_room(room_id)
        decision = betting.advance_turn(players, room.current_highest_bet, room.current_turn_seat_index)
        if decision is None:
            return room

        update: dict[str, object] = {
            "current_turn_seat_index": decision.current_turn_seat_index,
            "betting_round_complete": decision.betting_round_complete,
        }
        if decision.sole_survivor is not None:
            logger.info(
                "seat %s is the last active player in room %s, moving to showdown",
                decision.sole_survivor.seat_index,
                room_id,
            )
            update["game_status"] = GameStatus.SHOWDOWN
        elif decision.betting_round_complete:
            logger.info("betting round complete in room %s", room_id)
        else:
            logger.debug(
                "turn passes to seat %s in room %s (waiting on %s)",
                decision.current_turn_seat_index,
                room_id,
                decision.waiting_on,
            )
        return self._repo.update_room(room.model_copy(update=update))

    def _start_round(self, room: Room) -> Room:
        plan = betting.start_round(self._repo.list_players(room.id), room.dealer_index)
        if plan is None:
            logger.info("no occupied seats in room %s, betting round not started", room.id)
            return room
        logger.info("betting round started in room %s, seat %s to act", room.id, plan.turn_seat)
        return self._repo.start_round(room.id, plan.players, plan.turn_seat)

    def _enter_stage(self, room: Room, status: GameStatus) -> Room:
        update: dict[str, object] = {"game_status": status}
        if not lifecycle.starts_betting_round(status):
            update["current_turn_seat_index"] = NO_TURN
        room = self._repo.update_room(room.model_copy(update=update))
        logger.info("room %s entered stage %s", room.id, status.value)
        if lifecycle.starts_betting_round(status):
            room = self._start_round(room)
        return room

    def _pass_button(self, room: Room) -> Room:
        dealer = lifecycle.next_dealer(self._repo.list_players(room.id), room.dealer_index)
        if dealer is None:
            return room
        return self._repo.update_room(room.model_copy(update={"dealer_index": dealer}))

    def _ensure_turn(self, room: Room, player: Player) -> None:
        if room.current_turn_seat_index == NO_TURN or room.betting_round_complete:
            raise EngineRejectedAction("NO_ACTIVE_ROUND", "No betting round is waiting for an action.")
        if player.seat_index != room.current_turn_seat_index:
            raise EngineRejectedAction(
                "NOT_YOUR_TURN",
                f"Seat {room.current_turn_seat_index} is to act, not seat {player.seat_index}.",
            )

    def _require_host(self, room_id: str, actor_id: str) -> Room:
        room = self._repo.get_room(room_id)
        if room.host_id != actor_id:
            logger.warning("player %s attempted a host action in room %s", actor_id, room_id)
            raise EngineRejectedAction("NOT_HOST", "Only the host of this room can do that.")
        return room

    def _find_player(self, room_id: str, player_id: str) -> Player | None:
        try:
            return self._repo.get_player(room_id, player_id)
        except PlayerNotFound:
            return None

    def _publish_stage_hint(self, room_id: str, player_id: str, amount: int, velocity: float | None) -> None:
        payload: dict[str, object] = {"amount": amount, "player_id": player_id}
        if velocity is not None:
            payload["velocity"] = velocity
        self._feed.publish_broadcast(room_id, STAGE_ANIMATION_EVENT, payload)

    def _membership(self, room: Room, player: Player) -> MembershipResponse:
        return MembershipResponse(
            room_id=room.id,
            player_id=player.id,
            is_host=room.host_id == player.id,
            view=self._build_view(room.id),
        )

    def _build_view(self, room_id: str) -> RoomView:
        room = self._repo.get_room(room_id)
        players = sorted(
            self._repo.list_players(room_id),
            key=lambda player: (player.seat_index, player.id),
        )
        return RoomView(room=room, players=players, state_hash=room_state_hash(room, players))

    @contextmanager
    def _storage(self, operation: str) -> Iterator[None]:
        try:
            yield
        except RoomNotFound as exc:
            raise EngineRejectedAction("ROOM_NOT_FOUND", f"Room {exc.room_id} does not exist.") from exc
        except PlayerNotFound as exc:
            raise EngineRejectedAction(
                "PLAYER_NOT_FOUND",
                f"Player {exc.player_id} is not in room {exc.room_id}.",
            ) from exc
        except SeatTaken as exc:
            raise EngineRejectedAction("SEAT_TAKEN", f"Seat {exc.seat_index} is already taken.") from exc
        except RepositoryError as exc:
            logger.exception("storage failure during %s", operation)
            raise EngineRejectedAction("STORAGE_ERROR", f"Storage failure during {operation}.") from exc
