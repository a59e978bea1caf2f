"""Logging for mixbridge components.

Every module does ``logger = get_logger(__name__)`` at import time, before
command-line options are parsed, so the level can be changed afterwards for
all of them with set_level().
"""
import logging
import os
import sys
import threading
from typing import Dict, Optional


LOG_LEVEL_ENV = "MIXBRIDGE_LOG_LEVEL"
MODULE_WIDTH = 9

# Loggers handed out so far, by name
_loggers: Dict[str, logging.Logger] = {}
_loggers_lock = threading.Lock()


class BridgeFormatter(logging.Formatter):
    """One line per record: level initial, time with ms, short module name.

    Example: [W 14:23:45.123 devices  ] MIDI output device not found: 'LPD8'

    Tracebacks (logger.exception) follow on the next lines.
    """

    def format(self, record):
        label = record.name.rsplit('.', 1)[-1][:MODULE_WIDTH].ljust(MODULE_WIDTH)
        clock = f"{self.formatTime(record, '%H:%M:%S')}.{record.msecs:03.0f}"

        line = f"[{record.levelname[0]} {clock} {label}] {record.getMessage()}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def _level_number(level: Optional[str]) -> int:
    if level is None:
        level = os.getenv(LOG_LEVEL_ENV, "INFO")
    return getattr(logging, str(level).upper(), logging.INFO)


def get_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    """Get the logger of a bridge component.

    Args:
        name: Component name (usually __name__)
        level: DEBUG/INFO/WARNING/ERROR; defaults to $MIXBRIDGE_LOG_LEVEL,
               then INFO

    Example:
        >>> logger = get_logger(__name__)
        >>> logger.info("Mixer link open")
        [I 14:23:45.123 osc      ] Mixer link open
    """
    logger = logging.getLogger(name)
    logger.setLevel(_level_number(level))

    with _loggers_lock:
        if not logger.handlers:
            handler = logging.StreamHandler(sys.stdout)
            handler.setFormatter(BridgeFormatter())
            logger.addHandler(handler)
        _loggers[name] = logger

    return logger


def set_level(level: str) -> None:
    """Apply level to every logger created so far and to later ones."""
    os.environ[LOG_LEVEL_ENV] = level
    number = _level_number(level)
    with _loggers_lock:
        for logger in _loggers.values():
            logger.setLevel(number)
