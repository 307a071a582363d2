"""Logging for the tictac metronome.

Every module calls get_logger(__name__) once at import. Lines look like

    [I 14:23:45.123 scheduler] Metronome started at 120 BPM, 4 beats
    [D 14:23:45.151 scheduler] {tictac-poll} Beat 1/4 at 3.020s (120 BPM)

Records emitted off the main thread carry the thread name in braces, so poll
worker output can be told apart from console commands.
"""
import logging
import os
import sys
import threading
from typing import Optional

LEVEL_ENV_VAR = "TICTAC_LOG_LEVEL"
MODULE_WIDTH = 9

_handler_lock = threading.Lock()


def _resolve_level(level: Optional[str]) -> int:
    name = level if level is not None else os.getenv(LEVEL_ENV_VAR, "INFO")
    return getattr(logging, name.upper(), logging.INFO)


class TictacFormatter(logging.Formatter):
    """[{level[0]} {HH:MM:SS.mmm} {module:9}] [{thread}] message"""

    def format(self, record):
        module = record.name.rsplit('.', 1)[-1][:MODULE_WIDTH].ljust(MODULE_WIDTH)
        stamp = f"{self.formatTime(record, '%H:%M:%S')}.{record.msecs:03.0f}"
        thread = "" if record.threadName == "MainThread" else f"{{{record.threadName}}} "
        return f"[{record.levelname[0]} {stamp} {module}] {thread}{record.getMessage()}"


def get_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    """Get the logger for a tictac module.

    Args:
        name: Module name (usually __name__)
        level: DEBUG/INFO/WARNING/ERROR; defaults to TICTAC_LOG_LEVEL, then INFO
    """
    logger = logging.getLogger(name)
    logger.setLevel(_resolve_level(level))

    with _handler_lock:
        if not logger.handlers:
            handler = logging.StreamHandler(sys.stdout)
            handler.setFormatter(TictacFormatter())
            logger.addHandler(handler)

    return logger


def set_level(level: str) -> None:
    """Apply a level to every tictac logger created so far (--log-level)."""
    resolved = _resolve_level(level)
    for name, logger in list(logging.root.manager.loggerDict.items()):
        if name.split('.')[0] == "tictac" and isinstance(logger, logging.Logger):
            logger.setLevel(resolved)
