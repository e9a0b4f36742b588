from __future__ import annotations

import pytest

from pokertable_backend.engine import lifecycle
from pokertable_backend.engine.betting import ActionRejected
from pokertable_backend.engine.models import NO_DEALER, GameStatus, Room
from pokertable_backend.engine.reconcile import merge_staged, reconcile_staged

from room_helpers import HOST_ID, ROOM_ID, make_player


@pytest.mark.parametrize(
    ("current", "expected"),
    [
        (GameStatus.WAITING, GameStatus.PRE_FLOP),
        (GameStatus.PRE_FLOP, GameStatus.FLOP),
        (GameStatus.FLOP, GameStatus.TURN),
        (GameStatus.TURN, GameStatus.RIVER),
        (GameStatus.RIVER, GameStatus.SHOWDOWN),
        (GameStatus.SHOWDOWN, GameStatus.WAITING),
    ],
)
def test_next_stage_cycles(current: GameStatus, expected: GameStatus) -> None:
    assert lifecycle.next_stage(current) is expected


def test_only_betting_stages_start_rounds() -> None:
    started = {status for status in GameStatus if lifecycle.starts_betting_round(status)}
    assert started == {GameStatus.PRE_FLOP, GameStatus.FLOP, GameStatus.TURN, GameStatus.RIVER}


def test_outstanding_bets_sums_current_bets() -> None:
    players = [make_player(0, current_bet=100), make_player(1, current_bet=100), make_player(2)]
    assert lifecycle.outstanding_bets(players) == 200


def test_distribution_to_folded_player_is_rejected() -> None:
    room = Room(id=ROOM_ID, host_id=HOST_ID, pot=200)
    with pytest.raises(ActionRejected) as excinfo:
        lifecycle.validate_distribution(room, make_player(1, is_folded=True))
    assert excinfo.value.code == "WINNER_FOLDED"


def test_distribution_of_empty_pot_is_rejected() -> None:
    room = Room(id=ROOM_ID, host_id=HOST_ID, pot=0)
    with pytest.raises(ActionRejected) as excinfo:
        lifecycle.validate_distribution(room, make_player(1))
    assert excinfo.value.code == "EMPTY_POT"


def test_distribution_to_unknown_player_is_rejected() -> None:
    room = Room(id=ROOM_ID, host_id=HOST_ID, pot=10)
    with pytest.raises(ActionRejected) as excinfo:
        lifecycle.validate_distribution(room, None)
    assert excinfo.value.code == "PLAYER_NOT_FOUND"


def test_distribution_returns_pot_amount() -> None:
    room = Room(id=ROOM_ID, host_id=HOST_ID, pot=350)
    assert lifecycle.validate_distribution(room, make_player(4)) == 350


def test_next_dealer_moves_clockwise_and_wraps() -> None:
    players = [make_player(1), make_player(4), make_player(7)]
    assert lifecycle.next_dealer(players, NO_DEALER) == 1
    assert lifecycle.next_dealer(players, 1) == 4
    assert lifecycle.next_dealer(players, 7) == 1
    assert lifecycle.next_dealer([], 3) is None


def test_dealer_must_be_an_occupied_seat() -> None:
    players = [make_player(2)]
    lifecycle.validate_dealer(players, 2)
    lifecycle.validate_dealer(players, NO_DEALER)
    with pytest.raises(ActionRejected) as excinfo:
        lifecycle.validate_dealer(players, 5)
    assert excinfo.value.code == "INVALID_DEALER"


def test_staged_merge_prefers_larger_and_resets_on_remote_zero() -> None:
    assert merge_staged(local=50, remote=30) == 50
    assert merge_staged(local=20, remote=80) == 80
    assert merge_staged(local=90, remote=0) == 0


def test_reconcile_staged_keeps_local_only_players() -> None:
    merged = reconcile_staged(
        local={"a": 100, "b": 40, "c": 5},
        remote={"a": 0, "b": 60, "d": 25},
    )
    assert merged == {"a": 0, "b": 60, "c": 5, "d": 25}
