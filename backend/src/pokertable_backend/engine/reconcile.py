from __future__ import annotations

from typing import Mapping


def merge_staged(local: int, remote: int) -> int:
    if remote == 0:
        return 0
    return max(local, remote)


def reconcile_staged(local: Mapping[str, int], remote: Mapping[str, int]) -> dict[str, int]:
    """Merge locally predicted staged bets with the last storage-confirmed values.

    A remote zero means the stake was cleared or confirmed and always wins.
    Otherwise the larger value wins, so a lagging read cannot shrink a stake
    the client already showed. This is a monotone merge per player, not
    conflict resolution: concurrent writers to the same player are not
    ordered. Players only known locally keep their local value.
    """
    merged = dict(local)
    for player_id, remote_value in remote.items():
        merged[player_id] = merge_staged(local.get(player_id, 0), remote_value)
    return merged
