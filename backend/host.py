from typing import Callable, Optional
import asyncio
import logging
import random

import board_engine
import buzzer
import config
import game_rules as rules
from cues import THINK_MUSIC, CuePlayer
from protocol import (
    INTRO, LOBBY, QUESTION_ACTIVE, REVEAL,
    Buzz, BuzzLockedAttempt, ContinueGame, GameState, HostActionMessage, Kicked,
    KickPlayer, MarkCorrect, MarkIncorrect, OverrideScore, PlayerJoin, Rejected,
    ReleaseBuzzer, ReleaseBuzzerAction, RenamePlayer, SelectQuestion, SkipQuestion,
    StartGame, UpdateState,
)
from scheduler import PhaseScheduler
from session_registry import SessionRegistry
from transport import HostEndpoint, Link, PeerBroker

logger = logging.getLogger(__name__)

INTRO_TASK = "intro"
QUESTION_CLOCK = "question_clock"
REVEAL_CLOCK = "reveal_clock"
THINK_MUSIC_TASK = "think_music"

CONTROLLER_TAKEN = "Another host controller is already connected."
KICK_NOTICE = "You have been kicked by the host."


class GameHost:
    """Owns the authoritative GameState for one room.

    Every accepted transition swaps the state wholesale and broadcasts the
    full snapshot to every open link.
    """

    def __init__(self, broker: PeerBroker, room_code: str, theme: str,
                 cue_player: Optional[CuePlayer] = None,
                 clock: Callable[[], int] = buzzer.now_ms,
                 board_loader=board_engine.build_board,
                 rng=random):
        self.broker = broker
        self.room_code = room_code
        self.theme = theme
        self.identity = f"{config.PEER_PREFIX}{room_code}"
        self.state: Optional[GameState] = None
        self.registry = SessionRegistry()
        self.scheduler = PhaseScheduler()
        self.cues = cue_player or CuePlayer()
        self.endpoint: Optional[HostEndpoint] = None
        self._clock = clock
        self._board_loader = board_loader
        self._rng = rng

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    async def initialize(self) -> GameState:
        """Build the board and start listening. Board errors are fatal."""
        categories = await self._board_loader(self.theme, self._rng)
        self.state = GameState(
            room_code=self.room_code,
            theme=self.theme,
            status=LOBBY,
            players=[],
            categories=categories,
            timer=config.QUESTION_TIME,
        )
        await self.open_endpoint()
        logger.info("Room %s ready (theme '%s')", self.room_code, self.theme)
        return self.state

    async def open_endpoint(self):
        if self.endpoint is not None:
            await self.endpoint.destroy()
            self.endpoint = None
            # Let the previous registration release before reusing the identity
            await asyncio.sleep(config.PEER_SETTLE_DELAY)
        self.endpoint = self.broker.open(self.identity)
        self.endpoint.on_connection = self.attach

    async def shutdown(self):
        self.scheduler.cancel_all()
        if self.endpoint is not None:
            await self.endpoint.destroy()
            self.endpoint = None
        logger.info("Room %s shut down", self.room_code)

    def attach(self, link: Link):
        link.on_message = self.handle_message
        link.on_close = self.detach
        link.on_error = self._link_error
        self.registry.register(link)

    async def detach(self, link: Link):
        departure = self.registry.unregister(link)
        if departure.player_id:
            # Disconnecting is not leaving: the player stays until kicked
            logger.info("Player %s lost connection to room %s", departure.player_id, self.room_code)
        if departure.was_controller and self.state is not None:
            await self._commit(rules.set_controller_connected(self.state, False))

    def _link_error(self, link: Link, error: Exception):
        logger.warning("Link %s error: %s", link.remote_id, error)

    # -----------------------------------------------------------------------
    # Replication
    # -----------------------------------------------------------------------

    async def broadcast_state(self):
        await self.registry.broadcast(UpdateState(payload=self.state))

    async def _send_snapshot(self, link: Link):
        await self.registry.send_to(link.remote_id, UpdateState(payload=self.state))

    async def _commit(self, transition: Optional[rules.Transition]) -> bool:
        if transition is None:
            return False
        previous, self.state = self.state, transition.state
        self.cues.fire_all(transition.cues)
        self._schedule(previous, transition)
        await self.broadcast_state()
        return True

    # -----------------------------------------------------------------------
    # Incoming messages
    # -----------------------------------------------------------------------

    async def handle_message(self, link: Link, message):
        if self.state is None:
            return

        if isinstance(message, PlayerJoin):
            await self._on_join(link, message)

        elif isinstance(message, (Buzz, BuzzLockedAttempt)):
            player_id = self.registry.player_id_for(link.remote_id)
            if player_id is None or player_id != message.sender_id:
                logger.debug("Buzz from unbound peer %s dropped", link.remote_id)
                return
            now = self._clock()
            if isinstance(message, Buzz):
                await self._commit(rules.buzz(self.state, player_id, now))
            else:
                await self._commit(rules.locked_attempt(self.state, player_id, now))

        elif isinstance(message, HostActionMessage):
            if not self.registry.is_controller(link.remote_id):
                logger.warning("Host action from non-controller %s dropped", link.remote_id)
                return
            await self.perform(message.payload)

        elif isinstance(message, ReleaseBuzzer):
            if self.registry.is_controller(link.remote_id):
                await self.perform(ReleaseBuzzerAction())

        else:
            logger.debug("Ignoring %s from %s", message.type, link.remote_id)

    async def _on_join(self, link: Link, message: PlayerJoin):
        join = message.payload
        if join.name == config.CONTROLLER_NAME:
            if self.registry.player_id_for(link.remote_id) is not None:
                logger.warning("Player peer %s tried to claim the controller slot", link.remote_id)
                return
            if not self.registry.claim_controller(link.remote_id):
                logger.info("Rejecting additional host controller: %s", link.remote_id)
                await self.registry.send_to(link.remote_id, Rejected(payload=CONTROLLER_TAKEN))
                return
            logger.info("Host controller connected: %s", link.remote_id)
            if not await self._commit(rules.set_controller_connected(self.state, True)):
                await self._send_snapshot(link)
            return

        if self.registry.is_controller(link.remote_id):
            return
        bound = self.registry.player_id_for(link.remote_id)
        if bound is not None and bound != join.id:
            logger.warning("Peer %s tried to join as %s while bound to %s", link.remote_id, join.id, bound)
            return

        if self.state.find_player(join.id) is not None:
            # Same player on a fresh link: rebind and resync
            self.registry.bind_player(link.remote_id, join.id)
            await self._send_snapshot(link)
            return

        transition = rules.add_player(self.state, join)
        if transition is None:
            return
        self.registry.bind_player(link.remote_id, join.id)
        await self._commit(transition)

    async def perform(self, action) -> bool:
        """Apply a host action (from the controller or the host's own screen)."""
        if self.state is None:
            return False
        state, now = self.state, self._clock()

        if isinstance(action, KickPlayer):
            return await self._kick(action.player_id)
        if isinstance(action, StartGame):
            transition = rules.start_game(state)
        elif isinstance(action, SelectQuestion):
            transition = rules.select_question(state, action.question_id, now)
        elif isinstance(action, MarkCorrect):
            transition = rules.mark_correct(state, action.player_id)
        elif isinstance(action, MarkIncorrect):
            transition = rules.mark_incorrect(state, now, action.player_id)
        elif isinstance(action, ContinueGame):
            transition = rules.finish_reveal(state)
        elif isinstance(action, SkipQuestion):
            transition = rules.skip_question(state)
        elif isinstance(action, ReleaseBuzzerAction):
            transition = rules.release_buzzer(state)
        elif isinstance(action, RenamePlayer):
            transition = rules.rename_player(state, action.player_id, action.new_name)
        elif isinstance(action, OverrideScore):
            transition = rules.override_score(state, action.player_id, action.new_score)
        else:
            transition = None

        if transition is None:
            logger.debug("Host action %s dropped in %s", action.action, state.status)
            return False
        return await self._commit(transition)

    async def _kick(self, player_id: str) -> bool:
        if self.state.find_player(player_id) is None:
            return False
        link = self.registry.find_by_player_id(player_id)
        if link is not None:
            await self.registry.send_to(link.remote_id, Kicked(payload=KICK_NOTICE))
            self.registry.unbind_player(player_id)
        return await self._commit(rules.kick_player(self.state, player_id))

    # -----------------------------------------------------------------------
    # Phase timers
    # -----------------------------------------------------------------------

    def _schedule(self, previous: GameState, transition: rules.Transition):
        state = transition.state
        if previous.status != state.status:
            self.scheduler.cancel_all()

        if state.status == INTRO and (previous.status != INTRO
                                      or previous.intro_player_index != state.intro_player_index):
            delay = config.INTRO_PLAYER_DELAY if rules.intro_in_progress(state) else config.INTRO_FINAL_DELAY
            self.scheduler.call_later(INTRO_TASK, delay, self._step_intro)

        elif state.status == QUESTION_ACTIVE:
            if state.active_player_id:
                self.scheduler.cancel(QUESTION_CLOCK)
                self.scheduler.cancel(THINK_MUSIC_TASK)
            elif transition.think_music_pending or not self.scheduler.is_pending(QUESTION_CLOCK):
                self.scheduler.call_every(QUESTION_CLOCK, config.TICK_INTERVAL, self._tick_question)
            if transition.think_music_pending:
                question_id = state.active_question.id
                self.scheduler.call_later(THINK_MUSIC_TASK, config.THINK_MUSIC_DELAY,
                                          lambda: self._start_think_music(question_id))

        elif state.status == REVEAL and previous.status != REVEAL and state.reveal_timer is not None:
            self.scheduler.call_every(REVEAL_CLOCK, config.TICK_INTERVAL, self._tick_reveal)

    async def _step_intro(self):
        if rules.intro_in_progress(self.state):
            await self._commit(rules.advance_intro(self.state))
        else:
            await self._commit(rules.finish_intro(self.state))

    async def _tick_question(self):
        await self._commit(rules.tick_question(self.state))
        if self.state.status == QUESTION_ACTIVE and not self.state.active_player_id and self.state.timer <= 0:
            logger.info("Time's up on %s in room %s", self.state.active_question.id, self.room_code)
            await self._commit(rules.time_up(self.state))

    async def _tick_reveal(self):
        await self._commit(rules.tick_reveal(self.state))
        if self.state.status == REVEAL and self.state.reveal_timer == 0:
            await self._commit(rules.finish_reveal(self.state))

    def _start_think_music(self, question_id: str):
        state = self.state
        if (state.status == QUESTION_ACTIVE and state.active_question
                and state.active_question.id == question_id and not state.active_player_id):
            self.cues.fire(THINK_MUSIC)
