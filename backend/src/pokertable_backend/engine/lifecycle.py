from __future__ import annotations

from typing import Iterable

from pokertable_backend.engine.betting import ActionRejected, next_clockwise, occupied_seats
from pokertable_backend.engine.models import (
    BETTING_STAGES,
    NO_DEALER,
    STAGE_ORDER,
    GameStatus,
    Player,
    Room,
)


def next_stage(status: GameStatus) -> GameStatus:
    index = STAGE_ORDER.index(status)
    return STAGE_ORDER[(index + 1) % len(STAGE_ORDER)]


def starts_betting_round(status: GameStatus) -> bool:
    return status in BETTING_STAGES


def outstanding_bets(players: Iterable[Player]) -> int:
    return sum(player.current_bet for player in players)


def validate_distribution(room: Room, winner: Player | None) -> int:
    if room.pot <= 0:
        raise ActionRejected("EMPTY_POT", "There is nothing in the pot to distribute.")
    if winner is None:
        raise ActionRejected("PLAYER_NOT_FOUND", "Winner is not a member of this room.")
    if winner.is_folded:
        raise ActionRejected("WINNER_FOLDED", f"Player {winner.id} has folded and cannot win the pot.")
    return room.pot


def next_dealer(players: Iterable[Player], dealer_index: int) -> int | None:
    seats = occupied_seats(players)
    if not seats:
        return None
    if dealer_index == NO_DEALER:
        return seats[0]
    return next_clockwise(dealer_index, seats)


def validate_dealer(players: Iterable[Player], seat_index: int) -> None:
    if seat_index == NO_DEALER:
        return
    if seat_index not in occupied_seats(players):
        raise ActionRejected("INVALID_DEALER", f"Seat {seat_index} is not occupied.")
