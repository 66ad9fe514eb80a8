import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

import buzzer
import config
from protocol import GameState, Player

NOW = 1_700_000_000_000


def make_state(global_lock=None, p1_lock=None):
    return GameState(
        room_code="TEST",
        status="QUESTION_ACTIVE",
        players=[Player(id="p1", name="Alice", buzzer_lock_until=p1_lock),
                 Player(id="p2", name="Bob")],
        buzzer_lock_until=global_lock,
    )


class TestIsLocked:
    def test_unset_lock_is_free(self):
        assert not buzzer.is_locked(None, NOW)
        assert not buzzer.is_locked(0, NOW)

    def test_future_lock_holds(self):
        assert buzzer.is_locked(NOW + 1, NOW)

    def test_lock_expires_at_its_timestamp(self):
        assert not buzzer.is_locked(NOW, NOW)


class TestCanBuzz:
    def test_free(self):
        assert buzzer.can_buzz(make_state(), "p1", NOW)

    def test_global_lock_blocks_everyone(self):
        state = make_state(global_lock=buzzer.arm_global_lock(NOW))
        assert not buzzer.can_buzz(state, "p1", NOW + 1000)
        assert not buzzer.can_buzz(state, "p2", NOW + 1000)

    def test_global_lock_is_an_hour(self):
        assert buzzer.arm_global_lock(NOW) - NOW == config.GLOBAL_LOCK_MS == 3_600_000

    def test_personal_lock_blocks_only_that_player(self):
        state = make_state(p1_lock=buzzer.penalty_lock(NOW))
        assert not buzzer.can_buzz(state, "p1", NOW + 1999)
        assert buzzer.can_buzz(state, "p2", NOW + 1999)
        assert buzzer.can_buzz(state, "p1", NOW + 2000)

    def test_unknown_player(self):
        assert not buzzer.can_buzz(make_state(), "ghost", NOW)


class TestLockRemaining:
    def test_free_is_zero(self):
        assert buzzer.lock_remaining_ms(make_state(), "p1", NOW) == 0

    def test_takes_the_later_lock(self):
        state = make_state(global_lock=NOW + 500, p1_lock=NOW + 2000)
        assert buzzer.lock_remaining_ms(state, "p1", NOW) == 2000
        assert buzzer.lock_remaining_ms(state, "p2", NOW) == 500

    def test_expired_lock_is_zero(self):
        assert buzzer.lock_remaining_ms(make_state(p1_lock=NOW - 10), "p1", NOW) == 0
