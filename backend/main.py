from fastapi import Body, FastAPI, HTTPException, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, field_validator
from contextlib import asynccontextmanager
import re
import logging
import socket as socketlib
import uvicorn

import config
config.setup_logging()

from board_engine import BoardConfigurationError, BoardError, MalformedBoardError, generate_room_code
from host import GameHost
from protocol import FINISHED, ProtocolError, parse_host_action
from transport import IdentityInUseError, PeerBroker

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting trivia host")
    app.state.broker = PeerBroker()
    app.state.game_host = None
    yield
    if app.state.game_host is not None:
        await app.state.game_host.shutdown()
    logger.info("Shutting down trivia host")


app = FastAPI(title="Trivia Host", lifespan=lifespan)


def get_local_ip():
    try:
        s = socketlib.socket(socketlib.AF_INET, socketlib.SOCK_DGRAM)
        s.connect(("8.8.8.8", 80))
        ip = s.getsockname()[0]
        s.close()
        return ip
    except Exception:
        return "127.0.0.1"


@app.get("/system/info")
async def get_system_info():
    return {"ip": get_local_ip()}


class RoomCreateRequest(BaseModel):
    theme: str

    @field_validator('theme')
    @classmethod
    def validate_theme(cls, v: str) -> str:
        v = re.sub(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]', '', v)
        v = re.sub(r'<[^>]+>', '', v)
        v = v.strip()
        if not v or len(v) > 100:
            raise ValueError('Theme must be 1-100 characters')
        return v


def _current_host(request: Request) -> GameHost:
    game_host = request.app.state.game_host
    if game_host is None or game_host.state is None:
        raise HTTPException(status_code=404, detail="No game is being hosted")
    return game_host


@app.post("/room/create")
async def create_room(body: RoomCreateRequest, request: Request):
    current = request.app.state.game_host
    if current is not None and current.state is not None and current.state.status != FINISHED:
        raise HTTPException(status_code=409, detail="A game is already being hosted")
    if current is not None:
        await current.shutdown()
        request.app.state.game_host = None

    room_code = generate_room_code()
    game_host = GameHost(request.app.state.broker, room_code, body.theme)
    try:
        await game_host.initialize()
    except BoardConfigurationError as e:
        logger.error("Board configuration error: %s", e)
        raise HTTPException(status_code=503, detail=str(e))
    except MalformedBoardError as e:
        logger.error("Malformed board for theme '%s': %s", body.theme, e)
        raise HTTPException(status_code=502, detail="Board generator returned a malformed board")
    except BoardError as e:
        logger.error("Board generation failed: %s", e)
        raise HTTPException(status_code=502, detail="Failed to generate board")
    except IdentityInUseError as e:
        raise HTTPException(status_code=409, detail=str(e))

    request.app.state.game_host = game_host
    logger.info("Room created: %s", room_code)
    return {"room_code": room_code, "identity": game_host.identity}


@app.get("/room")
async def get_room(request: Request):
    game_host = _current_host(request)
    return game_host.state.model_dump(by_alias=True, exclude_none=True)


@app.post("/room/action")
async def room_action(request: Request, payload: dict = Body(...)):
    """Host-screen actions; the same set a controller may send."""
    game_host = _current_host(request)
    try:
        action = parse_host_action(payload)
    except ProtocolError as e:
        raise HTTPException(status_code=422, detail=str(e))
    applied = await game_host.perform(action)
    return {"applied": applied, "status": game_host.state.status}


@app.delete("/room")
async def close_room(request: Request):
    game_host = _current_host(request)
    await game_host.shutdown()
    request.app.state.game_host = None
    return {"closed": game_host.room_code}


@app.websocket("/peer/{identity}")
async def peer_endpoint(websocket: WebSocket, identity: str, peer_id: str = ""):
    await websocket.app.state.broker.connect(websocket, identity, peer_id)


# Configure CORS
if config.ALLOWED_ORIGINS.strip():
    origins = [o.strip() for o in config.ALLOWED_ORIGINS.split(",")]
else:
    local_ip = get_local_ip()
    origins = [
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        f"http://{local_ip}:5173",
    ]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=False,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Content-Type"],
)


@app.get("/")
async def root():
    return {"message": "Trivia host is running"}


@app.get("/health")
async def health():
    return {"status": "healthy"}


if __name__ == "__main__":
    uvicorn.run("main:app", host=config.HOST, port=config.PORT, reload=True)
