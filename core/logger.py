"""
Logging - Настройка журнала узла
================================

[LOGGING] setup_logging() настраивает root logger и подключает
ActivityLogHandler: ограниченный буфер последних строк, подсветка по
[TAG] префиксу и публикация в event_bus (EVENT_ACTIVITY_LOG).
"""

import logging
from collections import deque
from typing import Deque, Optional

from core.events import event_bus, EVENT_ACTIVITY_LOG


COLOR_MAP = {
    "COORD": "\033[35m",   # purple
    "PEER": "\033[36m",    # cyan
    "CODEC": "\033[33m",   # yellow
    "SESSION": "\033[32m", # green
    "NODE": "\033[34m",    # blue
}
RESET = "\033[0m"


def colorize(msg: str) -> str:
    for key, color in COLOR_MAP.items():
        if f"[{key}]" in msg:
            return f"{color}{msg}{RESET}"
    return msg


class ActivityLogHandler(logging.Handler):
    """Logging handler that keeps recent lines and pushes them to the event bus."""

    def __init__(self, buffer: Optional[Deque[str]] = None, maxlen: int = 1000, color: bool = False):
        super().__init__()
        self.buffer = buffer if buffer is not None else deque(maxlen=maxlen)
        self.color = color

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            line = colorize(msg) if self.color else msg
            self.buffer.append(line)
            event_bus.emit(EVENT_ACTIVITY_LOG, {"message": line, "level": record.levelname})
        except Exception:
            self.handleError(record)


def setup_logging(
    level: str = "INFO",
    fmt: str = "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    activity_buffer: int = 1000,
) -> ActivityLogHandler:
    """Configure root logging and attach the activity handler."""
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=fmt)

    handler = ActivityLogHandler(maxlen=activity_buffer)
    handler.setFormatter(logging.Formatter(fmt))
    logging.getLogger().addHandler(handler)
    return handler
