import sys
import os

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from session_registry import SessionRegistry
from transport import IdentityInUseError, Link, LinkClosedError
from protocol import Kicked


class MockLink(Link):
    """In-memory link that records every message sent to it."""

    def __init__(self, remote_id, fail_send=False):
        super().__init__(remote_id)
        self.sent = []
        self.fail_send = fail_send
        self.closed = False

    async def send(self, message):
        if self.fail_send:
            raise LinkClosedError("boom")
        self.sent.append(message)

    async def close(self):
        self._open = False
        self.closed = True


class TestRegistration:
    def test_register_and_find(self):
        reg = SessionRegistry()
        link = MockLink("r1")
        reg.register(link)
        assert reg.find_by_remote_id("r1") is link

    def test_unregister_reports_bound_player(self):
        reg = SessionRegistry()
        link = MockLink("r1")
        reg.register(link)
        reg.bind_player("r1", "p1")
        departure = reg.unregister(link)
        assert departure.player_id == "p1"
        assert departure.was_controller is False
        assert reg.find_by_remote_id("r1") is None
        assert reg.player_id_for("r1") is None

    def test_stale_link_does_not_evict_newer(self):
        reg = SessionRegistry()
        old, new = MockLink("r1"), MockLink("r1")
        reg.register(old)
        reg.bind_player("r1", "p1")
        old._open = False
        reg.register(new)
        departure = reg.unregister(old)
        assert departure.player_id is None
        assert reg.find_by_remote_id("r1") is new
        assert reg.player_id_for("r1") == "p1"

    def test_second_open_link_for_same_peer_refused(self):
        reg = SessionRegistry()
        first, second = MockLink("r1"), MockLink("r1")
        reg.register(first)
        reg.claim_controller("r1")
        with pytest.raises(IdentityInUseError):
            reg.register(second)
        assert reg.find_by_remote_id("r1") is first
        assert reg.is_controller("r1")

    def test_find_by_player_id(self):
        reg = SessionRegistry()
        link = MockLink("r1")
        reg.register(link)
        reg.bind_player("r1", "p1")
        assert reg.find_by_player_id("p1") is link
        reg.unbind_player("p1")
        assert reg.find_by_player_id("p1") is None


class TestControllerSlot:
    def test_single_controller(self):
        reg = SessionRegistry()
        assert reg.claim_controller("c1")
        assert not reg.claim_controller("c2")
        assert reg.is_controller("c1")
        assert not reg.is_controller("c2")

    def test_same_peer_may_reclaim(self):
        reg = SessionRegistry()
        reg.claim_controller("c1")
        assert reg.claim_controller("c1")

    def test_slot_frees_on_disconnect(self):
        reg = SessionRegistry()
        link = MockLink("c1")
        reg.register(link)
        reg.claim_controller("c1")
        assert reg.unregister(link).was_controller is True
        assert reg.claim_controller("c2")


class TestBroadcast:
    @pytest.mark.asyncio
    async def test_reaches_every_open_link(self):
        reg = SessionRegistry()
        a, b = MockLink("a"), MockLink("b")
        reg.register(a)
        reg.register(b)
        message = Kicked(payload="x")
        await reg.broadcast(message)
        assert a.sent == [message]
        assert b.sent == [message]

    @pytest.mark.asyncio
    async def test_skips_closed_links(self):
        reg = SessionRegistry()
        a = MockLink("a")
        reg.register(a)
        await a.close()
        await reg.broadcast(Kicked(payload="x"))
        assert a.sent == []

    @pytest.mark.asyncio
    async def test_failed_send_closes_link_and_continues(self):
        reg = SessionRegistry()
        bad, good = MockLink("bad", fail_send=True), MockLink("good")
        reg.register(bad)
        reg.register(good)
        await reg.broadcast(Kicked(payload="x"))
        assert bad.closed is True
        assert len(good.sent) == 1

    @pytest.mark.asyncio
    async def test_send_to(self):
        reg = SessionRegistry()
        a = MockLink("a")
        reg.register(a)
        assert await reg.send_to("a", Kicked(payload="x"))
        assert not await reg.send_to("missing", Kicked(payload="x"))
        assert len(a.sent) == 1

    @pytest.mark.asyncio
    async def test_send_to_failing_link(self):
        reg = SessionRegistry()
        reg.register(MockLink("bad", fail_send=True))
        assert not await reg.send_to("bad", Kicked(payload="x"))
