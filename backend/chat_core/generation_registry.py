from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass
class GenerationHandle:
    session_id: str
    signal: asyncio.Event = field(default_factory=asyncio.Event)
    reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self.signal.is_set()

    def cancel(self, reason: str = "user") -> None:
        if not self.signal.is_set():
            self.reason = reason
            self.signal.set()


class GenerationRegistry:
    """Active streaming turns keyed by session id.

    Only the orchestrator registers and releases handles; a handle is removed
    when its turn completes, is cancelled, or fails.
    """

    def __init__(self) -> None:
        self._handles: dict[str, GenerationHandle] = {}

    def register(self, session_id: str) -> GenerationHandle:
        handle = GenerationHandle(session_id=session_id)
        self._handles[session_id] = handle
        return handle

    def cancel(self, session_id: str, reason: str = "user") -> bool:
        handle = self._handles.get(session_id)
        if handle is None:
            return False
        handle.cancel(reason)
        logger.info("generation cancelled session_id=%s reason=%s", session_id, reason)
        return True

    def release(self, handle: GenerationHandle) -> None:
        # A newer turn for the same session may have replaced this handle.
        if self._handles.get(handle.session_id) is handle:
            del self._handles[handle.session_id]

    def __len__(self) -> int:
        return len(self._handles)
