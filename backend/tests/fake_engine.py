from __future__ import annotations

import asyncio
import re
from typing import Any

from chat_core import Completion, GenerationCancelled


class ScriptedEngine:
    """Stands in for the inference client; replies come from a script, in order."""

    model_name = "scripted-engine"

    def __init__(
        self,
        replies: list[str] | None = None,
        *,
        error: Exception | None = None,
        hold_after: int | None = None,
        fragment_delay: float = 0.0,
        gate: asyncio.Event | None = None,
    ) -> None:
        self.replies = list(replies or [])
        self.default_reply = "Resting and staying hydrated usually helps with a mild cold."
        self.error = error
        self.hold_after = hold_after
        self.fragment_delay = fragment_delay
        self.gate = gate
        self.calls: list[list[dict[str, str]]] = []
        self.relayed: list[str] = []
        self.saw_cancel = False

    def _next_reply(self) -> str:
        return self.replies.pop(0) if self.replies else self.default_reply

    async def complete(self, context: list[dict[str, str]], params: Any = None) -> Completion:
        self.calls.append(list(context))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        text = self._next_reply()
        return Completion(text=text, token_count=len(text.split()), latency_ms=5, model=self.model_name)

    async def complete_streaming(
        self,
        context: list[dict[str, str]],
        on_token,
        cancel: asyncio.Event,
        params: Any = None,
    ) -> Completion:
        self.calls.append(list(context))
        if self.error is not None:
            raise self.error
        text = self._next_reply()
        pieces = re.findall(r"\S+\s*", text)
        for index, piece in enumerate(pieces):
            if cancel.is_set():
                self.saw_cancel = True
                raise GenerationCancelled()
            self.relayed.append(piece)
            on_token(piece, index == len(pieces) - 1)
            if self.hold_after is not None and index + 1 == self.hold_after:
                await cancel.wait()
                self.saw_cancel = True
                raise GenerationCancelled()
            await asyncio.sleep(self.fragment_delay)
        return Completion(text=text.strip(), token_count=len(pieces), latency_ms=5, model=self.model_name)

    async def health_check(self) -> bool:
        return True
