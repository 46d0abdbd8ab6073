from __future__ import annotations

import logging
from collections import deque
from datetime import datetime, timezone
from typing import Any


class LogBuffer(logging.Handler):
    """Keeps the most recent log records in memory for the web UI."""

    def __init__(self, maxlen: int = 500, level: int = logging.NOTSET) -> None:
        super().__init__(level=level)
        self._buf: deque[dict[str, Any]] = deque(maxlen=max(10, int(maxlen or 500)))

    @property
    def maxlen(self) -> int:
        return int(self._buf.maxlen or 0)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            ts = datetime.fromtimestamp(record.created, tz=timezone.utc)
            self._buf.append(
                {
                    "timestamp": ts.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
                    "level": record.levelname,
                    "logger": record.name,
                    "message": record.getMessage(),
                }
            )
        except Exception:
            self.handleError(record)

    def recent(self, limit: int = 100) -> list[dict[str, Any]]:
        limit = max(1, min(int(limit), self.maxlen))
        items = list(self._buf)
        return items[-limit:]

    def clear(self) -> None:
        self._buf.clear()
