"""Phase transitions for the authoritative game state.

Every rule takes the current state and returns a Transition holding the
next state, or None when the guard rejects the input. The input state is
never mutated; callers swap in `Transition.state` wholesale.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional

import buzzer
import config
import cues
from protocol import (
    FINISHED, INTRO, LOBBY, PLAYING, QUESTION_ACTIVE, REVEAL,
    GameState, JoinPayload, Player, Question, sanitize_name,
)

logger = logging.getLogger(__name__)


@dataclass
class Transition:
    state: GameState
    cues: List[str] = field(default_factory=list)
    # The question just opened (or re-opened); think music follows after a delay
    think_music_pending: bool = False


def multiplier_for(question: Question) -> int:
    """Red overrides golden; plain questions score at face value."""
    if question.is_red:
        return config.RED_MULTIPLIER
    if question.is_golden:
        return config.GOLDEN_MULTIPLIER
    return 1


def points_for(question: Question) -> int:
    return question.value * multiplier_for(question)


def all_answered(state: GameState) -> bool:
    return all(q.is_answered for q in state.all_questions())


def contestants(state: GameState) -> List[Player]:
    return [p for p in state.players if p.name != config.CONTROLLER_NAME]


def _mark_answered(state: GameState, question_id: str):
    question = state.find_question(question_id)
    if question:
        question.is_answered = True
    if state.active_question and state.active_question.id == question_id:
        state.active_question.is_answered = True


# ---------------------------------------------------------------------------
# Roster
# ---------------------------------------------------------------------------

def add_player(state: GameState, join: JoinPayload) -> Optional[Transition]:
    if state.find_player(join.id):
        return None
    name = sanitize_name(join.name)
    if not name or name == config.CONTROLLER_NAME:
        return None
    nxt = state.model_copy(deep=True)
    nxt.players.append(Player(id=join.id, name=name, score=0, is_buzzed=False))
    logger.info("Player '%s' (%s) joined room %s", name, join.id, state.room_code)
    return Transition(nxt)


def set_controller_connected(state: GameState, connected: bool) -> Optional[Transition]:
    if bool(state.is_host_controller_connected) == connected:
        return None
    return Transition(state.model_copy(update={"is_host_controller_connected": connected}, deep=True))


def rename_player(state: GameState, player_id: str, new_name: str) -> Optional[Transition]:
    name = sanitize_name(new_name)
    if not name or not state.find_player(player_id):
        return None
    nxt = state.model_copy(deep=True)
    nxt.find_player(player_id).name = name
    return Transition(nxt)


def override_score(state: GameState, player_id: str, new_score: int) -> Optional[Transition]:
    if not state.find_player(player_id):
        return None
    nxt = state.model_copy(deep=True)
    nxt.find_player(player_id).score = new_score
    return Transition(nxt)


def kick_player(state: GameState, player_id: str) -> Optional[Transition]:
    if not state.find_player(player_id):
        return None
    nxt = state.model_copy(deep=True)
    nxt.players = [p for p in nxt.players if p.id != player_id]
    if nxt.active_player_id == player_id:
        nxt.active_player_id = None
    logger.info("Player %s kicked from room %s", player_id, state.room_code)
    return Transition(nxt)


# ---------------------------------------------------------------------------
# Lobby and intro
# ---------------------------------------------------------------------------

def start_game(state: GameState) -> Optional[Transition]:
    if state.status != LOBBY or not contestants(state):
        return None
    nxt = state.model_copy(update={"status": INTRO, "intro_player_index": 0}, deep=True)
    return Transition(nxt, cues=[cues.BUZZ])


def intro_in_progress(state: GameState) -> bool:
    """True while the cursor still points at a player to introduce."""
    return (state.status == INTRO and state.intro_player_index is not None
            and state.intro_player_index < len(state.players))


def advance_intro(state: GameState) -> Optional[Transition]:
    if not intro_in_progress(state):
        return None
    nxt = state.model_copy(update={"intro_player_index": state.intro_player_index + 1}, deep=True)
    return Transition(nxt, cues=[cues.BUZZ] if intro_in_progress(nxt) else [])


def finish_intro(state: GameState) -> Optional[Transition]:
    if state.status != INTRO:
        return None
    return Transition(state.model_copy(update={"status": PLAYING, "intro_player_index": None}, deep=True))


# ---------------------------------------------------------------------------
# Questions
# ---------------------------------------------------------------------------

def select_question(state: GameState, question_id: str, now: int) -> Optional[Transition]:
    if state.status != PLAYING:
        return None
    question = state.find_question(question_id)
    if question is None or question.is_answered:
        return None
    nxt = state.model_copy(deep=True)
    nxt.status = QUESTION_ACTIVE
    nxt.active_question = question.model_copy(deep=True)
    nxt.active_player_id = None
    nxt.timer = config.QUESTION_TIME
    nxt.reveal_timer = None
    nxt.buzzer_lock_until = buzzer.arm_global_lock(now)
    return Transition(nxt, think_music_pending=True)


def buzz(state: GameState, player_id: str, now: int) -> Optional[Transition]:
    if state.status != QUESTION_ACTIVE or state.active_player_id:
        return None
    if not buzzer.can_buzz(state, player_id, now):
        logger.debug("Buzz from %s ignored: locked", player_id)
        return None
    nxt = state.model_copy(deep=True)
    nxt.active_player_id = player_id
    nxt.find_player(player_id).is_buzzed = True
    return Transition(nxt, cues=[cues.BUZZ, cues.STOP_THINK_MUSIC])


def locked_attempt(state: GameState, player_id: str, now: int) -> Optional[Transition]:
    """Restart the personal penalty lock of a player who pressed while locked."""
    if not state.find_player(player_id):
        return None
    nxt = state.model_copy(deep=True)
    nxt.find_player(player_id).buzzer_lock_until = buzzer.penalty_lock(now)
    return Transition(nxt)


def release_buzzer(state: GameState) -> Transition:
    return Transition(state.model_copy(update={"buzzer_lock_until": 0}, deep=True))


def _can_judge(state: GameState, player_id: Optional[str]) -> bool:
    if state.status != QUESTION_ACTIVE or not state.active_question or not state.active_player_id:
        return False
    if player_id is not None and player_id != state.active_player_id:
        return False
    return state.find_player(state.active_player_id) is not None


def mark_correct(state: GameState, player_id: Optional[str] = None) -> Optional[Transition]:
    if not _can_judge(state, player_id):
        return None
    nxt = state.model_copy(deep=True)
    points = points_for(nxt.active_question)
    for player in nxt.players:
        player.is_buzzed = False
    nxt.find_player(nxt.active_player_id).score += points
    _mark_answered(nxt, nxt.active_question.id)
    nxt.status = REVEAL
    nxt.reveal_timer = config.REVEAL_TIME
    nxt.buzzer_lock_until = None
    return Transition(nxt, cues=[cues.CORRECT, cues.STOP_THINK_MUSIC])


def mark_incorrect(state: GameState, now: int, player_id: Optional[str] = None) -> Optional[Transition]:
    if not _can_judge(state, player_id):
        return None
    nxt = state.model_copy(deep=True)
    active = nxt.find_player(nxt.active_player_id)
    active.score -= points_for(nxt.active_question)
    active.is_buzzed = False
    nxt.active_player_id = None
    nxt.timer = config.QUESTION_TIME
    nxt.buzzer_lock_until = buzzer.arm_global_lock(now)
    return Transition(nxt, cues=[cues.INCORRECT], think_music_pending=True)


def skip_question(state: GameState) -> Optional[Transition]:
    if state.status != QUESTION_ACTIVE or not state.active_question:
        return None
    nxt = state.model_copy(deep=True)
    _mark_answered(nxt, nxt.active_question.id)
    for player in nxt.players:
        player.is_buzzed = False
    nxt.status = REVEAL
    nxt.active_player_id = None
    nxt.reveal_timer = config.REVEAL_TIME
    nxt.buzzer_lock_until = None
    return Transition(nxt, cues=[cues.TIMEOUT, cues.STOP_THINK_MUSIC])


def tick_question(state: GameState) -> Optional[Transition]:
    """One second off the question clock while nobody is answering."""
    if state.status != QUESTION_ACTIVE or state.active_player_id or state.timer <= 0:
        return None
    nxt = state.model_copy(update={"timer": state.timer - 1}, deep=True)
    return Transition(nxt, cues=[cues.STOP_THINK_MUSIC] if nxt.timer == 1 else [])


def time_up(state: GameState) -> Optional[Transition]:
    if state.status != QUESTION_ACTIVE or state.active_player_id or state.timer > 0:
        return None
    return skip_question(state)


# ---------------------------------------------------------------------------
# Reveal
# ---------------------------------------------------------------------------

def tick_reveal(state: GameState) -> Optional[Transition]:
    if state.status != REVEAL or not state.reveal_timer:
        return None
    return Transition(state.model_copy(update={"reveal_timer": state.reveal_timer - 1}, deep=True))


def finish_reveal(state: GameState) -> Optional[Transition]:
    if state.status != REVEAL:
        return None
    nxt = state.model_copy(deep=True)
    nxt.status = FINISHED if all_answered(nxt) else PLAYING
    nxt.active_question = None
    nxt.active_player_id = None
    nxt.reveal_timer = None
    if nxt.status == FINISHED:
        logger.info("Room %s finished: every question answered", state.room_code)
    return Transition(nxt, cues=[cues.STOP_THINK_MUSIC])
