from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable

from pokertable_backend.engine.models import (
    NO_TURN,
    ClientActionType,
    Player,
    PlayerAction,
)


logger = logging.getLogger(__name__)


class ActionRejected(Exception):
    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


@dataclass
class RoundStart:
    players: list[Player]
    turn_seat: int
    highest_bet: int = 0
    complete: bool = False


@dataclass
class ActionOutcome:
    player: Player
    highest_bet: int
    reopened: bool = False
    deducted: int = 0


@dataclass
class TurnDecision:
    current_turn_seat_index: int
    betting_round_complete: bool
    sole_survivor: Player | None = None
    waiting_on: list[int] = field(default_factory=list)


def occupied_seats(players: Iterable[Player]) -> list[int]:
    return sorted(player.seat_index for player in players if player.is_seated)


def active_players(players: Iterable[Player]) -> list[Player]:
    return sorted(
        (player for player in players if player.is_active),
        key=lambda player: player.seat_index,
    )


def next_clockwise(seat: int, seats: Iterable[int]) -> int | None:
    """Next seat strictly after ``seat`` in ascending order, wrapping to the lowest."""
    ordered = sorted(set(seats))
    if not ordered:
        return None
    for candidate in ordered:
        if candidate > seat:
            return candidate
    return ordered[0]


def start_round(players: Iterable[Player], dealer_index: int) -> RoundStart | None:
    seated = sorted(
        (player for player in players if player.is_seated),
        key=lambda player: player.seat_index,
    )
    turn_seat = next_clockwise(dealer_index, (player.seat_index for player in seated))
    if turn_seat is None:
        return None

    reset = [
        player.model_copy(
            update={
                "is_folded": False,
                "has_acted_this_round": False,
                "player_action": PlayerAction.NONE,
            },
        )
        for player in seated
    ]
    return RoundStart(players=reset, turn_seat=turn_seat)


def stage_chips(player: Player, amount: int) -> Player:
    """Move chips between ``balance`` and ``staged_bet`` so that ``amount`` is staged."""
    if not player.is_seated:
        raise ActionRejected("NOT_SEATED", f"Player {player.id} is not seated.")
    if player.is_folded:
        raise ActionRejected("PLAYER_FOLDED", "Folded players cannot stage chips.")
    if amount < 0:
        raise ActionRejected("INVALID_AMOUNT", "Staged amount cannot be negative.")
    available = player.balance + player.staged_bet
    if amount > available:
        raise ActionRejected(
            "INSUFFICIENT_FUNDS",
            f"Staged amount {amount} exceeds available chips {available}.",
        )
    return player.model_copy(update={"balance": available - amount, "staged_bet": amount})


def release_staged(player: Player) -> Player:
    return player.model_copy(update={"balance": player.balance + player.staged_bet, "staged_bet": 0})


def apply_action(
    player: Player,
    action: ClientActionType,
    highest_bet: int,
    amount: int | None = None,
) -> ActionOutcome:
    if not player.is_seated:
        raise ActionRejected("NOT_SEATED", f"Player {player.id} is not seated.")
    if player.is_folded:
        raise ActionRejected("PLAYER_FOLDED", f"Player {player.id} has already folded.")

    # staged chips go back to the balance before any deduction
    released = release_staged(player)

    if action is ClientActionType.FOLD:
        updated = released.model_copy(
            update={
                "is_folded": True,
                "has_acted_this_round": True,
                "player_action": PlayerAction.FOLD,
            },
        )
        return ActionOutcome(player=updated, highest_bet=highest_bet)

    if action is ClientActionType.CHECK:
        if highest_bet != 0 and player.current_bet != highest_bet:
            raise ActionRejected(
                "ILLEGAL_CHECK",
                f"Cannot check while owing {highest_bet - player.current_bet}.",
            )
        updated = released.model_copy(
            update={
                "has_acted_this_round": True,
                "player_action": PlayerAction.CHECK,
            },
        )
        return ActionOutcome(player=updated, highest_bet=highest_bet)

    if action is ClientActionType.CALL:
        deduction = highest_bet - player.current_bet
        if deduction <= 0:
            raise ActionRejected("NOTHING_TO_CALL", "There is no outstanding bet to call.")
        _ensure_funds(released, deduction)
        updated = released.model_copy(
            update={
                "balance": released.balance - deduction,
                "current_bet": highest_bet,
                "has_acted_this_round": True,
                "player_action": PlayerAction.CALL,
            },
        )
        return ActionOutcome(player=updated, highest_bet=highest_bet, deducted=deduction)

    if action in (ClientActionType.BET, ClientActionType.RAISE):
        if amount is None:
            raise ActionRejected("MISSING_AMOUNT", "bet/raise requires an amount.")
        deduction = amount - player.current_bet
        if deduction <= 0:
            raise ActionRejected(
                "INVALID_AMOUNT",
                f"Amount {amount} does not exceed the current bet {player.current_bet}.",
            )
        _ensure_funds(released, deduction)
        label = PlayerAction.BET if highest_bet == 0 else PlayerAction.RAISE
        updated = released.model_copy(
            update={
                "balance": released.balance - deduction,
                "current_bet": amount,
                "has_acted_this_round": True,
                "player_action": label,
            },
        )
        return ActionOutcome(
            player=updated,
            highest_bet=max(highest_bet, amount),
            reopened=amount > highest_bet,
            deducted=deduction,
        )

    raise ActionRejected("UNKNOWN_ACTION", f"Unsupported action {action}.")


def reopen_action(players: Iterable[Player], raiser_id: str) -> list[Player]:
    return [
        player.model_copy(update={"has_acted_this_round": False})
        for player in players
        if player.id != raiser_id and player.is_active
    ]


def round_complete(active: list[Player], highest_bet: int) -> bool:
    return all(player.has_acted_this_round for player in active) and all(
        player.current_bet == highest_bet for player in active
    )


def advance_turn(
    players: Iterable[Player],
    highest_bet: int,
    current_turn: int,
) -> TurnDecision | None:
    active = active_players(players)
    next_seat = next_clockwise(current_turn, (player.seat_index for player in active))
    if next_seat is None:
        return None

    if len(active) == 1:
        logger.debug("only seat %s remains active", active[0].seat_index)
        return TurnDecision(
            current_turn_seat_index=NO_TURN,
            betting_round_complete=True,
            sole_survivor=active[0],
        )

    if round_complete(active, highest_bet):
        return TurnDecision(current_turn_seat_index=NO_TURN, betting_round_complete=True)

    waiting_on = [
        player.seat_index
        for player in active
        if not player.has_acted_this_round or player.current_bet != highest_bet
    ]
    return TurnDecision(
        current_turn_seat_index=next_seat,
        betting_round_complete=False,
        waiting_on=waiting_on,
    )


def _ensure_funds(player: Player, deduction: int) -> None:
    if player.balance < deduction:
        raise ActionRejected(
            "INSUFFICIENT_FUNDS",
            f"Balance {player.balance} is below the required {deduction}.",
        )
