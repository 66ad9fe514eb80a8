"""Wire models for the game state and the host <-> client envelopes.

Every model serializes with camelCase aliases so snapshots look the same
on every endpoint; Python code uses the snake_case attribute names.
"""
import re
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

import config

# Game phases
LOBBY = "LOBBY"
INTRO = "INTRO"
PLAYING = "PLAYING"
QUESTION_ACTIVE = "QUESTION_ACTIVE"
REVEAL = "REVEAL"
FINISHED = "FINISHED"

Status = Literal["LOBBY", "INTRO", "PLAYING", "QUESTION_ACTIVE", "REVEAL", "FINISHED"]


class ProtocolError(Exception):
    """Raised when an incoming frame is not a valid envelope."""
    pass


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Game state
# ---------------------------------------------------------------------------

class Player(WireModel):
    id: str
    name: str
    score: int = 0
    is_buzzed: bool = False
    buzzer_lock_until: Optional[int] = None


class Question(WireModel):
    id: str
    value: int
    question: str
    answer: str
    category: str
    is_answered: bool = False
    is_golden: Optional[bool] = None
    is_red: Optional[bool] = None


class Category(WireModel):
    title: str
    questions: List[Question]


class GameState(WireModel):
    room_code: str
    status: Status = LOBBY
    active_question: Optional[Question] = None
    active_player_id: Optional[str] = None
    players: List[Player] = Field(default_factory=list)
    categories: List[Category] = Field(default_factory=list)
    theme: str = ""
    timer: int = config.QUESTION_TIME
    buzzer_lock_until: Optional[int] = None
    reveal_timer: Optional[int] = None
    is_host_controller_connected: Optional[bool] = None
    intro_player_index: Optional[int] = None

    def find_player(self, player_id: Optional[str]) -> Optional[Player]:
        if player_id is None:
            return None
        return next((p for p in self.players if p.id == player_id), None)

    def find_question(self, question_id: str) -> Optional[Question]:
        for category in self.categories:
            for question in category.questions:
                if question.id == question_id:
                    return question
        return None

    def all_questions(self) -> List[Question]:
        return [q for category in self.categories for q in category.questions]


# ---------------------------------------------------------------------------
# Host actions (payload of HOST_ACTION)
# ---------------------------------------------------------------------------

class StartGame(WireModel):
    action: Literal["START_GAME"] = "START_GAME"


class SelectQuestion(WireModel):
    action: Literal["SELECT_QUESTION"] = "SELECT_QUESTION"
    question_id: str


class MarkCorrect(WireModel):
    action: Literal["CORRECT"] = "CORRECT"
    player_id: Optional[str] = None


class MarkIncorrect(WireModel):
    action: Literal["INCORRECT"] = "INCORRECT"
    player_id: Optional[str] = None


class ContinueGame(WireModel):
    action: Literal["CONTINUE"] = "CONTINUE"


class SkipQuestion(WireModel):
    action: Literal["SKIP"] = "SKIP"


class ReleaseBuzzerAction(WireModel):
    action: Literal["RELEASE_BUZZER"] = "RELEASE_BUZZER"


class RenamePlayer(WireModel):
    action: Literal["RENAME_PLAYER"] = "RENAME_PLAYER"
    player_id: str
    new_name: str


class OverrideScore(WireModel):
    action: Literal["OVERRIDE_SCORE"] = "OVERRIDE_SCORE"
    player_id: str
    new_score: int


class KickPlayer(WireModel):
    action: Literal["KICK_PLAYER"] = "KICK_PLAYER"
    player_id: str


HostAction = Annotated[
    Union[
        StartGame, SelectQuestion, MarkCorrect, MarkIncorrect, ContinueGame,
        SkipQuestion, ReleaseBuzzerAction, RenamePlayer, OverrideScore, KickPlayer,
    ],
    Field(discriminator="action"),
]


# ---------------------------------------------------------------------------
# Envelopes
# ---------------------------------------------------------------------------

class JoinPayload(WireModel):
    id: str
    name: str
    score: int = 0
    is_buzzed: bool = False


class UpdateState(WireModel):
    type: Literal["UPDATE_STATE"] = "UPDATE_STATE"
    payload: GameState
    sender_id: str = config.HOST_SENDER_ID


class PlayerJoin(WireModel):
    type: Literal["PLAYER_JOIN"] = "PLAYER_JOIN"
    payload: JoinPayload
    sender_id: str


class Buzz(WireModel):
    type: Literal["BUZZ"] = "BUZZ"
    payload: None = None
    sender_id: str


class BuzzLockedAttempt(WireModel):
    type: Literal["BUZZ_LOCKED_ATTEMPT"] = "BUZZ_LOCKED_ATTEMPT"
    payload: None = None
    sender_id: str


class HostActionMessage(WireModel):
    type: Literal["HOST_ACTION"] = "HOST_ACTION"
    payload: HostAction
    sender_id: str


class ReleaseBuzzer(WireModel):
    type: Literal["RELEASE_BUZZER"] = "RELEASE_BUZZER"
    payload: None = None
    sender_id: str = config.HOST_SENDER_ID


class Rejected(WireModel):
    type: Literal["REJECTED"] = "REJECTED"
    payload: str
    sender_id: str = config.HOST_SENDER_ID


class Kicked(WireModel):
    type: Literal["KICKED"] = "KICKED"
    payload: str
    sender_id: str = config.HOST_SENDER_ID


SyncMessage = Annotated[
    Union[
        UpdateState, PlayerJoin, Buzz, BuzzLockedAttempt, HostActionMessage,
        ReleaseBuzzer, Rejected, Kicked,
    ],
    Field(discriminator="type"),
]

_message_adapter = TypeAdapter(SyncMessage)
_action_adapter = TypeAdapter(HostAction)


def parse_message(raw) -> SyncMessage:
    """Validate a raw frame (JSON text, bytes or an already-decoded dict)."""
    try:
        if isinstance(raw, (str, bytes, bytearray)):
            return _message_adapter.validate_json(raw)
        return _message_adapter.validate_python(raw)
    except ValidationError as e:
        raise ProtocolError(f"Invalid message: {e.error_count()} validation error(s)") from e


def parse_host_action(raw: dict):
    try:
        return _action_adapter.validate_python(raw)
    except ValidationError as e:
        raise ProtocolError(f"Invalid host action: {e.error_count()} validation error(s)") from e


def encode_message(message: BaseModel) -> str:
    return message.model_dump_json(by_alias=True, exclude_none=True)


def encode_state(state: GameState) -> str:
    return state.model_dump_json(by_alias=True, exclude_none=True)


def decode_state(raw) -> GameState:
    try:
        if isinstance(raw, (str, bytes, bytearray)):
            return GameState.model_validate_json(raw)
        return GameState.model_validate(raw)
    except ValidationError as e:
        raise ProtocolError(f"Invalid game state: {e.error_count()} validation error(s)") from e


def sanitize_name(name: str) -> str:
    """Strip HTML tags and control characters from a display name."""
    name = re.sub(r'<[^>]+>', '', name)
    name = re.sub(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]', '', name)
    return name.strip()[:config.MAX_NAME_LENGTH]
