"""API endpoint tests using FastAPI TestClient."""
import sys
import os
import json
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from fastapi import WebSocketDisconnect
from fastapi.testclient import TestClient
from main import app, RoomCreateRequest
import board_engine
import config
from protocol import JoinPayload, PlayerJoin, Rejected, UpdateState, encode_message, parse_message
from transport import IDENTITY_IN_USE_CODE


@pytest.fixture
def client():
    """Fresh broker and no hosted game for every test."""
    with TestClient(app) as c:
        yield c


def create_static_room(client):
    res = client.post("/room/create", json={"theme": config.STATIC_BOARD_THEME})
    assert res.status_code == 200
    return res.json()


def join_frame(player_id, name):
    return encode_message(PlayerJoin(payload=JoinPayload(id=player_id, name=name), sender_id=player_id))


# ---------------------------------------------------------------------------
# Health & Root
# ---------------------------------------------------------------------------

class TestHealthEndpoints:
    def test_root(self, client):
        res = client.get("/")
        assert res.status_code == 200
        assert "running" in res.json()["message"].lower()

    def test_health(self, client):
        res = client.get("/health")
        assert res.status_code == 200
        assert res.json()["status"] == "healthy"

    def test_system_info(self, client):
        res = client.get("/system/info")
        assert res.status_code == 200
        assert "ip" in res.json()


# ---------------------------------------------------------------------------
# Room Creation Tests
# ---------------------------------------------------------------------------

class TestRoomCreation:
    def test_create_static_room(self, client):
        data = create_static_room(client)
        assert len(data["room_code"]) == config.ROOM_CODE_LENGTH
        assert data["identity"] == f"{config.PEER_PREFIX}{data['room_code']}"

    def test_room_snapshot(self, client):
        data = create_static_room(client)
        state = client.get("/room").json()
        assert state["roomCode"] == data["room_code"]
        assert state["status"] == "LOBBY"
        assert state["theme"] == config.STATIC_BOARD_THEME
        questions = [q for c in state["categories"] for q in c["questions"]]
        assert len(questions) == 25
        assert sum(1 for q in questions if q.get("isGolden")) == 3
        assert sum(1 for q in questions if q.get("isRed")) == 1

    def test_second_room_while_hosting(self, client):
        create_static_room(client)
        res = client.post("/room/create", json={"theme": config.STATIC_BOARD_THEME})
        assert res.status_code == 409

    def test_missing_api_key(self, client, monkeypatch):
        monkeypatch.setattr(config, "GEMINI_API_KEY", "")
        res = client.post("/room/create", json={"theme": "Space"})
        assert res.status_code == 503
        assert "GEMINI_API_KEY" in res.json()["detail"]
        assert client.get("/room").status_code == 404

    def test_malformed_board(self, client, monkeypatch):
        monkeypatch.setattr(config, "GEMINI_API_KEY", "test-key")
        monkeypatch.setattr(board_engine, "_request_gemini", lambda theme: json.dumps([{"title": "Only one"}]))
        res = client.post("/room/create", json={"theme": "Space"})
        assert res.status_code == 502

    def test_close_room(self, client):
        data = create_static_room(client)
        res = client.delete("/room")
        assert res.status_code == 200
        assert res.json()["closed"] == data["room_code"]
        assert client.get("/room").status_code == 404
        create_static_room(client)

    def test_no_room(self, client):
        assert client.get("/room").status_code == 404
        assert client.delete("/room").status_code == 404


# ---------------------------------------------------------------------------
# Theme Validation Tests
# ---------------------------------------------------------------------------

class TestThemeValidation:
    def test_empty_theme_rejected(self, client):
        res = client.post("/room/create", json={"theme": ""})
        assert res.status_code == 422

    def test_whitespace_theme_rejected(self, client):
        res = client.post("/room/create", json={"theme": "   "})
        assert res.status_code == 422

    def test_long_theme_rejected(self, client):
        res = client.post("/room/create", json={"theme": "x" * 101})
        assert res.status_code == 422

    def test_theme_sanitized(self):
        assert RoomCreateRequest(theme=" <b>Space</b>\x00 ").theme == "Space"


# ---------------------------------------------------------------------------
# Host Screen Actions
# ---------------------------------------------------------------------------

class TestRoomActions:
    def test_action_needs_room(self, client):
        res = client.post("/room/action", json={"action": "START_GAME"})
        assert res.status_code == 404

    def test_invalid_action(self, client):
        create_static_room(client)
        res = client.post("/room/action", json={"action": "DANCE"})
        assert res.status_code == 422

    def test_start_without_players_not_applied(self, client):
        create_static_room(client)
        res = client.post("/room/action", json={"action": "START_GAME"})
        assert res.status_code == 200
        assert res.json() == {"applied": False, "status": "LOBBY"}

    def test_start_with_player(self, client):
        data = create_static_room(client)
        with client.websocket_connect(f"/peer/{data['identity']}?peer_id=p1") as ws:
            ws.send_text(join_frame("p1", "Alice"))
            parse_message(ws.receive_text())
            res = client.post("/room/action", json={"action": "START_GAME"})
            assert res.json() == {"applied": True, "status": "INTRO"}
            message = parse_message(ws.receive_text())
            assert isinstance(message, UpdateState)
            assert message.payload.status == "INTRO"


# ---------------------------------------------------------------------------
# Peer Links
# ---------------------------------------------------------------------------

class TestPeerLinks:
    def test_unknown_identity_refused(self, client):
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect("/peer/HARI-JEOPARDY-ZZZZ?peer_id=p1") as ws:
                ws.receive_text()

    def test_duplicate_peer_id_refused(self, client):
        data = create_static_room(client)
        with client.websocket_connect(f"/peer/{data['identity']}?peer_id=ctrl") as first:
            first.send_text(join_frame("ctrl", config.CONTROLLER_NAME))
            assert isinstance(parse_message(first.receive_text()), UpdateState)
            with pytest.raises(WebSocketDisconnect) as exc:
                with client.websocket_connect(f"/peer/{data['identity']}?peer_id=ctrl") as second:
                    second.receive_text()
            assert exc.value.code == IDENTITY_IN_USE_CODE
            host = client.app.state.game_host
            assert host.registry.is_controller("ctrl")
            assert host.state.is_host_controller_connected is True

    def test_join_receives_snapshot(self, client):
        data = create_static_room(client)
        with client.websocket_connect(f"/peer/{data['identity']}?peer_id=p1") as ws:
            ws.send_text(join_frame("p1", "<i>Alice</i>"))
            message = parse_message(ws.receive_text())
            assert isinstance(message, UpdateState)
            assert [p.name for p in message.payload.players] == ["Alice"]
            assert message.payload.players[0].score == 0
        assert client.get("/room").json()["players"][0]["id"] == "p1"

    def test_second_controller_rejected(self, client):
        data = create_static_room(client)
        url = f"/peer/{data['identity']}"
        with client.websocket_connect(f"{url}?peer_id=c1") as first:
            first.send_text(join_frame("c1", config.CONTROLLER_NAME))
            state = parse_message(first.receive_text())
            assert state.payload.is_host_controller_connected is True
            with client.websocket_connect(f"{url}?peer_id=c2") as second:
                second.send_text(join_frame("c2", config.CONTROLLER_NAME))
                assert isinstance(parse_message(second.receive_text()), Rejected)
        assert client.get("/room").json()["players"] == []

    def test_malformed_frame_ignored(self, client):
        data = create_static_room(client)
        with client.websocket_connect(f"/peer/{data['identity']}?peer_id=p1") as ws:
            ws.send_text("{not json")
            ws.send_text(json.dumps({"type": "NOPE", "senderId": "p1"}))
            ws.send_text(join_frame("p1", "Alice"))
            assert isinstance(parse_message(ws.receive_text()), UpdateState)
