from __future__ import annotations

import logging
import time
from collections import deque
from typing import Callable

from .errors import RateLimited

logger = logging.getLogger(__name__)


class TurnRateLimiter:
    """Per-session sliding-window caps on patient turns (in-memory, single process)."""

    def __init__(
        self,
        *,
        per_minute: int = 10,
        per_hour: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.per_minute = per_minute
        self.per_hour = per_hour
        self._clock = clock
        self._turns: dict[str, deque[float]] = {}

    def check(self, session_id: str) -> None:
        now = self._clock()
        window = self._turns.setdefault(session_id, deque())
        while window and now - window[0] >= 3600.0:
            window.popleft()

        last_minute = sum(1 for stamp in window if now - stamp < 60.0)
        if self.per_minute > 0 and last_minute >= self.per_minute:
            logger.warning("turn rate limit exceeded session_id=%s window=minute", session_id)
            raise RateLimited("Too many messages. Please slow down.")
        if self.per_hour > 0 and len(window) >= self.per_hour:
            logger.warning("turn rate limit exceeded session_id=%s window=hour", session_id)
            raise RateLimited("Too many messages. Please slow down.")
        window.append(now)

    def forget(self, session_id: str) -> None:
        self._turns.pop(session_id, None)
