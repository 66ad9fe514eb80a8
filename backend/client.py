"""Player / controller side: connection retries and the local replica."""
from typing import Callable, Optional, Tuple
import asyncio
import inspect
import logging
import uuid

import buzzer
import config
from protocol import (
    QUESTION_ACTIVE,
    Buzz, BuzzLockedAttempt, GameState, HostActionMessage, JoinPayload, Kicked,
    Player, PlayerJoin, Rejected, UpdateState,
)
from transport import ClientEndpoint, ClientLink, NetworkError, PeerUnavailableError, TransportError

logger = logging.getLogger(__name__)


class ConnectionFailed(Exception):
    """Terminal connection error after every attempt failed.

    `kind` is one of "unavailable", "network", "timeout" or "unknown".
    """

    def __init__(self, kind: str, message: str):
        super().__init__(message)
        self.kind = kind


def classify_failure(error: Optional[BaseException]) -> str:
    if isinstance(error, PeerUnavailableError):
        return "unavailable"
    if isinstance(error, asyncio.TimeoutError):
        return "timeout"
    if isinstance(error, (NetworkError, TransportError, OSError)):
        return "network"
    return "unknown"


async def _notify(callback: Optional[Callable], *args):
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class ReconnectionManager:
    """Bounded connection attempts with a per-attempt timeout and fixed backoff."""

    def __init__(self, server_url: str = config.PEER_SERVER_URL,
                 endpoint_factory=ClientEndpoint,
                 attempt_timeout: float = config.CONNECT_ATTEMPT_TIMEOUT,
                 retry_delay: float = config.CONNECT_RETRY_DELAY):
        self.server_url = server_url
        self.endpoint_factory = endpoint_factory
        self.attempt_timeout = attempt_timeout
        self.retry_delay = retry_delay
        self.endpoint: Optional[ClientEndpoint] = None
        self.link: Optional[ClientLink] = None

    async def connect(self, room_code: str, name: str, on_message: Callable,
                      on_attempt: Optional[Callable] = None,
                      max_attempts: int = config.CONNECT_MAX_ATTEMPTS,
                      player_id: Optional[str] = None) -> Player:
        """Join `room_code` as `name`; returns the Player sent in the join."""
        player = Player(id=player_id or uuid.uuid4().hex[:8], name=name, score=0, is_buzzed=False)
        last_error: Optional[BaseException] = None

        for attempt in range(1, max_attempts + 1):
            await _notify(on_attempt, attempt)
            logger.info("Connection attempt %d/%d to room %s", attempt, max_attempts, room_code)
            try:
                self.endpoint, self.link = await self._attempt(room_code, player, on_message)
                logger.info("Connected to host of room %s as %s", room_code, player.id)
                return player
            except asyncio.TimeoutError as e:
                logger.warning("Attempt %d: timed out after %.0fs", attempt, self.attempt_timeout)
                last_error = e
            except (TransportError, OSError) as e:
                logger.warning("Attempt %d: %s", attempt, e)
                last_error = e
            except Exception as e:
                logger.error("Attempt %d: unexpected error: %s", attempt, e)
                last_error = e
            if attempt < max_attempts:
                await asyncio.sleep(self.retry_delay)

        kind = classify_failure(last_error)
        raise ConnectionFailed(
            kind, f"Failed after {max_attempts} attempts ({kind}). Is the host active and online?"
        ) from last_error

    async def _attempt(self, room_code: str, player: Player,
                       on_message: Callable) -> Tuple[ClientEndpoint, ClientLink]:
        endpoint = self.endpoint_factory(self.server_url)
        endpoint.open()
        try:
            link = await asyncio.wait_for(self._handshake(endpoint, room_code, player, on_message),
                                          timeout=self.attempt_timeout)
        except Exception:
            await self._cleanup(endpoint)
            raise
        return endpoint, link

    async def _handshake(self, endpoint: ClientEndpoint, room_code: str, player: Player,
                         on_message: Callable) -> ClientLink:
        link = await endpoint.connect(f"{config.PEER_PREFIX}{room_code}")
        link.on_message = lambda _link, message: on_message(message)
        join = PlayerJoin(payload=JoinPayload(id=player.id, name=player.name), sender_id=player.id)
        await link.send(join)
        link.start()
        return link

    async def _cleanup(self, endpoint: ClientEndpoint):
        try:
            await endpoint.destroy()
        except Exception:
            logger.debug("Endpoint cleanup failed", exc_info=True)

    async def disconnect(self):
        if self.endpoint is not None:
            await self._cleanup(self.endpoint)
        self.endpoint = None
        self.link = None


class GameClient:
    """A player's (or the controller's) view of the game.

    The local state is a read-only replica, replaced wholesale by every
    UPDATE_STATE from the host.
    """

    def __init__(self, room_code: str, name: str, manager: Optional[ReconnectionManager] = None,
                 clock: Callable[[], int] = buzzer.now_ms):
        self.room_code = room_code
        self.name = name
        self.manager = manager or ReconnectionManager()
        self.state: Optional[GameState] = None
        self.player: Optional[Player] = None
        self.attempt = 0
        self.connected = False
        self.kicked = False
        self.kick_reason: Optional[str] = None
        self.rejected_reason: Optional[str] = None
        self.on_state: Optional[Callable[[GameState], None]] = None
        self._clock = clock

    @property
    def is_controller(self) -> bool:
        return self.name == config.CONTROLLER_NAME

    @property
    def me(self) -> Optional[Player]:
        if self.state is None or self.player is None:
            return None
        return self.state.find_player(self.player.id)

    async def connect(self, max_attempts: int = config.CONNECT_MAX_ATTEMPTS) -> Player:
        """Join the room; a reconnect reuses the player id so the host keeps the score."""
        if self.manager.link is not None:
            await self.manager.disconnect()
        self.player = await self.manager.connect(
            self.room_code, self.name, self.handle_message,
            on_attempt=self._on_attempt, max_attempts=max_attempts,
            player_id=self.player.id if self.player else None,
        )
        self.connected = True
        self.manager.link.on_close = self._on_close
        return self.player

    async def close(self):
        self.connected = False
        await self.manager.disconnect()

    def _on_attempt(self, attempt: int):
        self.attempt = attempt

    def _on_close(self, link):
        self.connected = False

    def handle_message(self, message):
        if isinstance(message, UpdateState):
            self.state = message.payload
            if self.on_state:
                self.on_state(self.state)
        elif isinstance(message, Kicked):
            self.kicked = True
            self.kick_reason = message.payload
            logger.warning("Kicked from room %s: %s", self.room_code, message.payload)
        elif isinstance(message, Rejected):
            self.rejected_reason = message.payload or "Another host controller is already connected to this room."
            logger.warning("Rejected by room %s: %s", self.room_code, self.rejected_reason)

    async def send(self, message) -> bool:
        link = self.manager.link
        if link is None or not link.open:
            return False
        try:
            await link.send(message)
        except TransportError as e:
            logger.warning("Send failed: %s", e)
            return False
        return True

    def is_buzzer_locked(self, now: Optional[int] = None) -> bool:
        if self.state is None or self.player is None:
            return False
        now = self._clock() if now is None else now
        return buzzer.lock_remaining_ms(self.state, self.player.id, now) > 0

    async def buzz(self) -> Optional[str]:
        """Press the buzzer. Returns the message type sent, if any.

        While a lock shows on the replica the press is reported as a locked
        attempt, which restarts this player's penalty lock on the host.
        """
        state = self.state
        if self.player is None or state is None:
            return None
        if state.status != QUESTION_ACTIVE or state.active_player_id:
            return None
        if self.is_buzzer_locked():
            await self.send(BuzzLockedAttempt(sender_id=self.player.id))
            return "BUZZ_LOCKED_ATTEMPT"
        await self.send(Buzz(sender_id=self.player.id))
        return "BUZZ"

    async def host_action(self, action) -> bool:
        if self.player is None:
            return False
        return await self.send(HostActionMessage(payload=action, sender_id=self.player.id))
