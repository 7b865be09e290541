"""In-memory ring of recent log records, served at /logs."""
from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass


@dataclass
class LogLine:
    created: float
    level: str
    message: str


class LogRingHandler(logging.Handler):
    def __init__(self, capacity: int = 200, level: int = logging.INFO) -> None:
        super().__init__(level)
        self._lines: deque[LogLine] = deque(maxlen=capacity)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            message = record.getMessage()
        except Exception:
            self.handleError(record)
            return
        level = "error" if record.levelno >= logging.ERROR else "info"
        self._lines.append(LogLine(record.created, level, message))

    def lines(self, newest_first: bool = True) -> list[LogLine]:
        items = list(self._lines)
        if newest_first:
            items.reverse()
        return items
