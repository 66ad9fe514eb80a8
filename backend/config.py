"""Centralized configuration: every env var and game constant in one place."""
import os
import logging
from dotenv import load_dotenv

load_dotenv()

# --- Board generation (Gemini) ---
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY", "")
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.0-flash")
GEMINI_TIMEOUT = int(os.getenv("GEMINI_TIMEOUT", "60"))
STATIC_BOARD_THEME = "MEDICAL_SPECIAL"
STATIC_BOARD_PATH = os.getenv(
    "STATIC_BOARD_PATH",
    os.path.join(os.path.dirname(__file__), "data", "static_board.json"),
)

# --- Server ---
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8000"))
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "")

# --- Peer links ---
PEER_PREFIX = "HARI-JEOPARDY-"
PEER_SERVER_URL = os.getenv("PEER_SERVER_URL", f"ws://127.0.0.1:{PORT}")
PEER_SETTLE_DELAY = float(os.getenv("PEER_SETTLE_DELAY", "0.5"))  # seconds
MAX_MESSAGE_SIZE = 256 * 1024  # bytes; snapshots carry the whole board
WS_RATE_LIMIT_PER_SEC = 10  # max frames per second per peer link
HOST_SENDER_ID = "HOST"
CONTROLLER_NAME = "HOST_CONTROLLER"

# --- Client reconnection ---
CONNECT_MAX_ATTEMPTS = 3
CONNECT_ATTEMPT_TIMEOUT = 10.0  # seconds
CONNECT_RETRY_DELAY = 2.0  # seconds

# --- Room codes ---
ROOM_CODE_ALPHABET = "ABCDEFGHIJKLMNPQRSTUVWXYZ"  # no 'O'
ROOM_CODE_LENGTH = 4

# --- Game ---
QUESTION_TIME = 30  # seconds
REVEAL_TIME = 5  # seconds
THINK_MUSIC_DELAY = 1.5  # seconds after a question opens
INTRO_PLAYER_DELAY = 2.0  # seconds per introduced player
INTRO_FINAL_DELAY = 1.0
TICK_INTERVAL = 1.0
MAX_NAME_LENGTH = 20
CATEGORY_COUNT = 5
QUESTIONS_PER_CATEGORY = 5
QUESTION_VALUES = (200, 400, 600, 800, 1000)

# --- Special questions ---
GOLDEN_QUESTION_COUNT = 3
RED_QUESTION_COUNT = 1
GOLDEN_MULTIPLIER = 2
RED_MULTIPLIER = 5

# --- Buzzer locks ---
GLOBAL_LOCK_MS = 60 * 60 * 1000  # held until released by the host
PENALTY_LOCK_MS = 2000

# --- Logging ---
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LOG_FILE", "")  # empty = stdout only


def setup_logging():
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if LOG_FILE:
        handlers.append(logging.FileHandler(LOG_FILE))
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )
