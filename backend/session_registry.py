from dataclasses import dataclass
from typing import Dict, List, Optional
import logging

from transport import IdentityInUseError, Link

logger = logging.getLogger(__name__)


@dataclass
class Departure:
    """What a closed link was holding when it went away."""
    remote_id: str
    player_id: Optional[str] = None
    was_controller: bool = False


class SessionRegistry:
    """Live links on the host, keyed by the remote peer id.

    Links are bound to a player id once their join is accepted, and one
    link at most may hold the controller slot.
    """

    def __init__(self):
        self.links: Dict[str, Link] = {}
        self.player_ids: Dict[str, str] = {}  # remote_id -> player_id
        self.controller_id: Optional[str] = None

    def register(self, link: Link):
        old = self.links.get(link.remote_id)
        if old is not None and old is not link:
            if old.open:
                raise IdentityInUseError(f"Peer ID \"{link.remote_id}\" already has an open link")
            logger.info("Peer %s re-registered, replacing stale link", link.remote_id)
        self.links[link.remote_id] = link

    def unregister(self, link: Link) -> Departure:
        departure = Departure(remote_id=link.remote_id)
        if self.links.get(link.remote_id) is not link:
            # A newer link for the same peer already took over
            return departure
        del self.links[link.remote_id]
        departure.player_id = self.player_ids.pop(link.remote_id, None)
        if self.controller_id == link.remote_id:
            self.controller_id = None
            departure.was_controller = True
            logger.info("Host controller %s disconnected", link.remote_id)
        return departure

    def find_by_remote_id(self, remote_id: str) -> Optional[Link]:
        return self.links.get(remote_id)

    def find_by_player_id(self, player_id: str) -> Optional[Link]:
        for remote_id, pid in self.player_ids.items():
            if pid == player_id:
                return self.links.get(remote_id)
        return None

    def bind_player(self, remote_id: str, player_id: str):
        self.player_ids[remote_id] = player_id

    def unbind_player(self, player_id: str):
        for remote_id in [r for r, pid in self.player_ids.items() if pid == player_id]:
            del self.player_ids[remote_id]

    def player_id_for(self, remote_id: str) -> Optional[str]:
        return self.player_ids.get(remote_id)

    def claim_controller(self, remote_id: str) -> bool:
        """Take the controller slot; False if another peer already holds it."""
        if self.controller_id and self.controller_id != remote_id:
            return False
        self.controller_id = remote_id
        return True

    def is_controller(self, remote_id: str) -> bool:
        return self.controller_id is not None and self.controller_id == remote_id

    async def broadcast(self, message):
        disconnected: List[Link] = []
        for link in list(self.links.values()):
            if not link.open:
                continue
            try:
                await link.send(message)
            except Exception:
                disconnected.append(link)
        for link in disconnected:
            logger.info("Dropping link %s after failed send", link.remote_id)
            await link.close()

    async def send_to(self, remote_id: str, message) -> bool:
        link = self.links.get(remote_id)
        if link is None or not link.open:
            return False
        try:
            await link.send(message)
        except Exception:
            logger.warning("Send to %s failed", remote_id)
            return False
        return True
