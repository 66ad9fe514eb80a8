"""Peer links over WebSockets.

The host process doubles as the peer broker: endpoints register under an
identity, and remote peers dial `/peer/{identity}?peer_id=<their id>`.
Clients dial with the `websockets` library. Every frame is one JSON
envelope from `protocol`.
"""
from fastapi import WebSocket, WebSocketDisconnect
from typing import Awaitable, Callable, Dict, List, Optional, Set, Union
import asyncio
import inspect
import logging
import time
import uuid

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake

import config
from protocol import ProtocolError, encode_message, parse_message

logger = logging.getLogger(__name__)

# Close code for a dial to an identity nobody has opened
PEER_UNAVAILABLE_CODE = 4404
# Close code for a dial reusing a peer id that already has an open link
IDENTITY_IN_USE_CODE = 4409


class TransportError(Exception):
    """Base class for peer-link failures. `kind` is a coarse classification."""
    kind = "unknown"


class IdentityInUseError(TransportError):
    kind = "unavailable-id"


class PeerUnavailableError(TransportError):
    kind = "peer-unavailable"


class NetworkError(TransportError):
    kind = "network"


class LinkClosedError(TransportError):
    kind = "closed"


async def _fire(callback: Optional[Callable], *args):
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class Link:
    """One end of a peer link.

    `on_message(link, message)`, `on_close(link)` and `on_error(link, exc)`
    may be plain functions or coroutines.
    """

    def __init__(self, remote_id: str):
        self.remote_id = remote_id
        self.on_message: Optional[Callable] = None
        self.on_close: Optional[Callable] = None
        self.on_error: Optional[Callable] = None
        self._open = True

    @property
    def open(self) -> bool:
        return self._open

    async def send(self, message):
        raise NotImplementedError

    async def close(self):
        raise NotImplementedError

    async def _deliver(self, raw):
        if len(raw) > config.MAX_MESSAGE_SIZE:
            logger.warning("Dropping oversized frame (%d bytes) from %s", len(raw), self.remote_id)
            return
        try:
            message = parse_message(raw)
        except ProtocolError as e:
            logger.warning("Malformed frame from %s: %s", self.remote_id, e)
            return
        await _fire(self.on_message, self, message)

    def __repr__(self):
        return f"<{type(self).__name__} {self.remote_id} {'open' if self._open else 'closed'}>"


# ---------------------------------------------------------------------------
# Host side
# ---------------------------------------------------------------------------

class WebSocketLink(Link):
    """Server end of a link, wrapping a FastAPI WebSocket."""

    def __init__(self, websocket: WebSocket, remote_id: str):
        super().__init__(remote_id)
        self.websocket = websocket
        # Arrival times of frames accepted in the last second
        self.msg_timestamps: List[float] = []

    def _rate_limited(self) -> bool:
        now = time.monotonic()
        self.msg_timestamps[:] = [t for t in self.msg_timestamps if now - t < 1.0]
        if len(self.msg_timestamps) >= config.WS_RATE_LIMIT_PER_SEC:
            return True
        self.msg_timestamps.append(now)
        return False

    async def send(self, message):
        if not self._open:
            raise LinkClosedError(f"Link to {self.remote_id} is closed")
        await self.websocket.send_text(encode_message(message))

    async def close(self):
        if not self._open:
            return
        self._open = False
        try:
            await self.websocket.close()
        except Exception:
            logger.debug("Close of link %s raced with disconnect", self.remote_id)

    async def serve(self):
        """Pump frames until the peer goes away, then report the close."""
        try:
            while True:
                data = await self.websocket.receive_text()
                if self._rate_limited():
                    logger.warning("Rate limit hit by peer %s, frame dropped", self.remote_id)
                    continue
                await self._deliver(data)
        except WebSocketDisconnect:
            logger.info("Peer %s disconnected", self.remote_id)
        except Exception as e:
            logger.exception("Link error for peer %s", self.remote_id)
            await _fire(self.on_error, self, e)
        finally:
            self._open = False
            await _fire(self.on_close, self)


class HostEndpoint:
    """An addressable identity on the broker that accepts incoming links."""

    def __init__(self, broker: "PeerBroker", identity: str):
        self.broker = broker
        self.identity = identity
        self.on_connection: Optional[Callable[[Link], Union[None, Awaitable[None]]]] = None
        self.links: Set[Link] = set()
        self.destroyed = False

    def find_open_link(self, remote_id: str) -> Optional[Link]:
        return next((l for l in self.links if l.open and l.remote_id == remote_id), None)

    async def accept(self, link: Link):
        existing = self.find_open_link(link.remote_id)
        if existing is not None and existing is not link:
            raise IdentityInUseError(f"Peer ID \"{link.remote_id}\" already has an open link")
        self.links.add(link)
        await _fire(self.on_connection, link)

    def forget(self, link: Link):
        self.links.discard(link)

    async def destroy(self):
        if self.destroyed:
            return
        self.destroyed = True
        self.broker.release(self)
        for link in list(self.links):
            await link.close()
        self.links.clear()
        logger.info("Endpoint %s destroyed", self.identity)


class PeerBroker:
    def __init__(self):
        self.endpoints: Dict[str, HostEndpoint] = {}

    def open(self, identity: Optional[str] = None) -> HostEndpoint:
        """Register an endpoint. Anonymous endpoints get a random identity."""
        identity = identity or uuid.uuid4().hex
        existing = self.endpoints.get(identity)
        if existing and not existing.destroyed:
            raise IdentityInUseError(f"ID \"{identity}\" is taken")
        endpoint = HostEndpoint(self, identity)
        self.endpoints[identity] = endpoint
        logger.info("Endpoint opened with ID: %s", identity)
        return endpoint

    def release(self, endpoint: HostEndpoint):
        if self.endpoints.get(endpoint.identity) is endpoint:
            del self.endpoints[endpoint.identity]

    async def connect(self, websocket: WebSocket, identity: str, peer_id: str = ""):
        endpoint = self.endpoints.get(identity)
        if endpoint is None or endpoint.destroyed:
            logger.warning("Dial to unknown peer %s rejected", identity)
            await websocket.close(code=PEER_UNAVAILABLE_CODE)
            return
        if peer_id and endpoint.find_open_link(peer_id) is not None:
            logger.warning("Dial from %s rejected: peer id already connected to %s", peer_id, identity)
            await websocket.close(code=IDENTITY_IN_USE_CODE)
            return

        await websocket.accept()
        link = WebSocketLink(websocket, peer_id or uuid.uuid4().hex)
        logger.info("New peer connecting: %s -> %s", link.remote_id, identity)
        try:
            await endpoint.accept(link)
            await link.serve()
        finally:
            endpoint.forget(link)


# ---------------------------------------------------------------------------
# Client side
# ---------------------------------------------------------------------------

class ClientLink(Link):
    """Client end of a link, wrapping a `websockets` connection."""

    def __init__(self, connection, remote_id: str):
        super().__init__(remote_id)
        self.connection = connection
        self._reader: Optional[asyncio.Task] = None

    def start(self):
        if self._reader is None:
            self._reader = asyncio.create_task(self._pump())

    async def send(self, message):
        if not self._open:
            raise LinkClosedError(f"Link to {self.remote_id} is closed")
        try:
            await self.connection.send(encode_message(message))
        except ConnectionClosed as e:
            self._open = False
            raise LinkClosedError(f"Link to {self.remote_id} closed while sending") from e

    async def close(self):
        self._open = False
        await self.connection.close()
        if self._reader and self._reader is not asyncio.current_task():
            await asyncio.gather(self._reader, return_exceptions=True)

    async def _pump(self):
        try:
            async for raw in self.connection:
                await self._deliver(raw)
        except ConnectionClosed:
            pass
        except Exception as e:
            logger.exception("Link error talking to %s", self.remote_id)
            await _fire(self.on_error, self, e)
        finally:
            self._open = False
            logger.warning("Host connection closed")
            await _fire(self.on_close, self)


class ClientEndpoint:
    """An anonymous client identity that can dial named endpoints."""

    def __init__(self, server_url: str = config.PEER_SERVER_URL):
        self.server_url = server_url.rstrip("/")
        self.identity: Optional[str] = None
        self.link: Optional[ClientLink] = None

    def open(self) -> str:
        self.identity = uuid.uuid4().hex
        logger.info("Client endpoint opened with ID: %s", self.identity)
        return self.identity

    async def connect(self, remote_identity: str) -> ClientLink:
        if self.identity is None:
            self.open()
        url = f"{self.server_url}/peer/{remote_identity}?peer_id={self.identity}"
        try:
            connection = await websockets.connect(url, max_size=config.MAX_MESSAGE_SIZE)
        except InvalidHandshake as e:
            raise PeerUnavailableError(f"Could not connect to peer {remote_identity}") from e
        except asyncio.TimeoutError:
            raise
        except OSError as e:
            raise NetworkError(f"Network error reaching {self.server_url}: {e}") from e
        self.link = ClientLink(connection, remote_identity)
        return self.link

    async def destroy(self):
        if self.link is not None:
            link, self.link = self.link, None
            await link.close()
