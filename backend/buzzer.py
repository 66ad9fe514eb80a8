"""Timestamp-based buzzer locks.

Two independent locks gate a buzz-in: the global lock on the game state
(armed whenever a question opens) and a personal penalty lock on each
player (armed when that player presses while locked). Both hold absolute
epoch milliseconds read against the host's wall clock.
"""
import time
from typing import Optional

import config
from protocol import GameState, Player


def now_ms() -> int:
    return int(time.time() * 1000)


def is_locked(lock_until: Optional[int], now: int) -> bool:
    return bool(lock_until) and now < lock_until


def arm_global_lock(now: int) -> int:
    return now + config.GLOBAL_LOCK_MS


def penalty_lock(now: int) -> int:
    return now + config.PENALTY_LOCK_MS


def is_globally_locked(state: GameState, now: int) -> bool:
    return is_locked(state.buzzer_lock_until, now)


def is_player_locked(player: Player, now: int) -> bool:
    return is_locked(player.buzzer_lock_until, now)


def can_buzz(state: GameState, player_id: str, now: int) -> bool:
    """True if neither lock blocks `player_id` at `now`."""
    player = state.find_player(player_id)
    if player is None:
        return False
    return not is_globally_locked(state, now) and not is_player_locked(player, now)


def lock_remaining_ms(state: GameState, player_id: str, now: int) -> int:
    """Milliseconds until the player may buzz again (0 when free)."""
    player = state.find_player(player_id)
    until = max(state.buzzer_lock_until or 0, (player.buzzer_lock_until or 0) if player else 0)
    return max(0, until - now)
