"""Audio/visual cue notifications.

The game only announces cues; whatever plays them lives outside the
engine. Cues are fire-and-forget: a failing player is logged and ignored.
"""
import logging
from typing import Iterable

logger = logging.getLogger(__name__)

BUZZ = "buzz"
CORRECT = "correct"
INCORRECT = "incorrect"
TIMEOUT = "timeout"
THINK_MUSIC = "think_music"
STOP_THINK_MUSIC = "stop_think_music"


class CuePlayer:
    """Default cue player: writes each cue to the log."""

    def play_buzz(self):
        logger.info("Cue: buzz")

    def play_correct(self):
        logger.info("Cue: correct")

    def play_incorrect(self):
        logger.info("Cue: incorrect")

    def play_timeout(self):
        logger.info("Cue: timeout")

    def play_think_music(self):
        logger.info("Cue: think music")

    def stop_think_music(self):
        logger.debug("Cue: stop think music")

    def fire(self, cue: str):
        handler = {
            BUZZ: self.play_buzz,
            CORRECT: self.play_correct,
            INCORRECT: self.play_incorrect,
            TIMEOUT: self.play_timeout,
            THINK_MUSIC: self.play_think_music,
            STOP_THINK_MUSIC: self.stop_think_music,
        }.get(cue)
        if handler is None:
            logger.warning("Unknown cue: %s", cue)
            return
        try:
            handler()
        except Exception:
            logger.exception("Cue %s failed", cue)

    def fire_all(self, cues: Iterable[str]):
        for cue in cues:
            self.fire(cue)
