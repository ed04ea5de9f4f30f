from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator

from chat_store import ConversationStore, HandoffStore
from chat_store.time_utils import to_iso, utc_now

from .errors import ChatError, GenerationCancelled, NotFound, RateLimited
from .generation_registry import GenerationHandle, GenerationRegistry
from .inference import Completion, InferenceClient
from .input_guard import InputGuard
from .lifecycle import ConversationLifecycle, TurnLifecycle
from .models import Conversation, Message, StreamEvent, TurnResult
from .rate_limit import TurnRateLimiter
from .safety import IncomingClassification, SafetyFilter

logger = logging.getLogger(__name__)


@dataclass
class PreparedTurn:
    """A patient turn that passed the gate checks and has its user message persisted.

    Either ``short_circuit`` holds the finished policy response, or ``context``
    is the window to hand to the inference engine.
    """

    conversation: Conversation
    text: str
    lifecycle: TurnLifecycle
    incoming: IncomingClassification | None = None
    short_circuit: TurnResult | None = None
    context: list[dict[str, str]] | None = None

    @property
    def urgent_prefix(self) -> str:
        if self.incoming is not None and self.incoming.is_urgent and self.incoming.advisory:
            return f"{self.incoming.advisory}\n\n"
        return ""


class SessionOrchestrator:
    def __init__(
        self,
        store: ConversationStore,
        handoffs: HandoffStore,
        safety: SafetyFilter,
        inference: InferenceClient,
        *,
        generations: GenerationRegistry | None = None,
        guard: InputGuard | None = None,
        rate_limiter: TurnRateLimiter | None = None,
        safety_mode: bool = True,
        context_window: int = 10,
        heartbeat_seconds: float = 15.0,
    ) -> None:
        self.store = store
        self.handoffs = handoffs
        self.safety = safety
        self.inference = inference
        self.generations = generations or GenerationRegistry()
        self.guard = guard or InputGuard()
        self.rate_limiter = rate_limiter
        self.lifecycle = ConversationLifecycle()
        self.safety_mode = safety_mode
        self.context_window = context_window
        self.heartbeat_seconds = heartbeat_seconds
        self._background: set[asyncio.Task[Any]] = set()

    def create_session(self, patient_id: str | None = None) -> Conversation:
        return self.store.create_session(patient_id)

    def _require_conversation(self, session_token: Any) -> Conversation:
        token = self.guard.ensure_session_token(session_token)
        conversation = self.store.get_conversation(token)
        if conversation is None:
            raise NotFound("Chat session not found", code="SESSION_NOT_FOUND")
        return conversation

    def prepare_turn(self, session_token: Any, message: Any) -> PreparedTurn:
        conversation = self._require_conversation(session_token)
        self.lifecycle.ensure_patient_turn(conversation)
        text = self.guard.clean_message(message)

        limits = self.store.check_limits(conversation.session_id)
        if limits.exceeded:
            logger.warning(
                "session limit exceeded session_id=%s reason=%s message_count=%s",
                conversation.session_id,
                limits.reason,
                limits.message_count,
            )
            raise RateLimited(limits.reason, code="SESSION_LIMIT_EXCEEDED")
        if self.rate_limiter is not None:
            self.rate_limiter.check(conversation.session_id)

        self.store.add_message(conversation.id, "user", text)
        turn = PreparedTurn(conversation=conversation, text=text, lifecycle=TurnLifecycle())

        if self.safety_mode:
            turn.lifecycle.advance("pre-filtered")
            turn.incoming = self.safety.classify_incoming(text)
            if turn.incoming.is_emergency:
                turn.short_circuit = self._emergency_turn(turn)
                return turn
            prohibited = self.safety.classify_prohibited(text)
            if prohibited.prohibited:
                turn.short_circuit = self._short_circuit(
                    turn,
                    prohibited.refusal or "",
                    {"safety_override": True, "refusal": True, "matched_keywords": prohibited.matched_topics},
                )
                return turn

        turn.context = self.store.get_context_window(conversation.session_id, self.context_window)
        turn.lifecycle.advance("generating")
        return turn

    def _emergency_turn(self, turn: PreparedTurn) -> TurnResult:
        incoming = turn.incoming
        result = self._short_circuit(
            turn,
            incoming.advisory or "",
            {
                "safety_override": True,
                "emergency_response": True,
                "priority": "emergency",
                "matched_keywords": incoming.matched_keywords,
            },
        )
        self.handoffs.create_request(
            turn.conversation.id,
            reason=f"Emergency keywords detected: {', '.join(incoming.matched_keywords)}",
            priority="emergency",
        )
        logger.warning(
            "emergency handoff opened session_id=%s keywords=%s",
            turn.conversation.session_id,
            incoming.matched_keywords,
        )
        return result

    def _short_circuit(self, turn: PreparedTurn, content: str, metadata: dict[str, Any]) -> TurnResult:
        turn.lifecycle.advance("short-circuited")
        saved = self.store.add_message(turn.conversation.id, "assistant", content, metadata)
        turn.lifecycle.advance("persisted")
        return self._deliver(turn, saved)

    def _deliver(self, turn: PreparedTurn, saved: Message) -> TurnResult:
        turn.lifecycle.advance("delivered")
        return TurnResult(
            session_id=turn.conversation.session_id,
            message=saved.content,
            role=saved.role,
            metadata=saved.metadata,
            states=list(turn.lifecycle.states),
            timestamp=saved.created_at,
        )

    def _ensure_still_ai_owned(self, turn: PreparedTurn) -> None:
        # Staff may take over or the patient may close while the engine is busy.
        current = self.store.get_conversation(turn.conversation.session_id)
        if current is None:
            raise NotFound("Chat session not found", code="SESSION_NOT_FOUND")
        if current.status != "ai-active":
            logger.info(
                "dropping generated reply session_id=%s status=%s",
                current.session_id,
                current.status,
            )
        self.lifecycle.ensure_patient_turn(current)

    def _finish_turn(self, turn: PreparedTurn, completion: Completion, *, streamed: bool) -> TurnResult:
        content = completion.text
        metadata: dict[str, Any] = {
            "tokens": completion.token_count,
            "duration_ms": completion.latency_ms,
            "model": completion.model,
        }
        if self.safety_mode:
            turn.lifecycle.advance("post-filtered")
            validation = self.safety.validate_generated(content)
            if validation.valid:
                metadata["validated"] = True
            else:
                logger.warning(
                    "generated response replaced session_id=%s reason=%s",
                    turn.conversation.session_id,
                    validation.reason,
                )
                content = self.safety.deflection_message
                metadata["safety_override"] = True
                metadata["validation_failed"] = True
            if turn.urgent_prefix:
                content = turn.urgent_prefix + content
                metadata["urgent_guidance"] = True
        else:
            metadata["fast_mode"] = True
        if streamed:
            metadata["streamed"] = True

        self._ensure_still_ai_owned(turn)
        saved =self.store.add_message(turn.conversation.id, "assistant", content, metadata)
        turn.lifecycle.advance("persisted")
        return self._deliver(turn, saved)

    async def send_message(self, session_token: Any, message: Any) -> TurnResult:
        turn = self.prepare_turn(session_token, message)
        if turn.short_circuit is not None:
            return turn.short_circuit
        completion = await self.inference.complete(turn.context or [])
        return self._finish_turn(turn, completion, streamed=False)

    async def stream_message(self, session_token: Any, message: Any) -> AsyncIterator[StreamEvent]:
        try:
            turn = self.prepare_turn(session_token, message)
        except ChatError as exc:
            yield StreamEvent("error", exc.as_payload())
            return
        events = self.stream_turn(turn)
        try:
            async for event in events:
                yield event
        finally:
            await events.aclose()

    async def stream_turn(self, turn: PreparedTurn) -> AsyncIterator[StreamEvent]:
        """Yield ``start``, ``token`` events and one ``done`` or ``error``.

        Nothing is yielded once the turn's handle is cancelled, whether by
        :meth:`cancel_generation` or because the consumer stopped iterating.
        """
        session_id = turn.conversation.session_id
        yield StreamEvent("start", {"session_id": session_id, "timestamp": to_iso(utc_now())})

        if turn.short_circuit is not None:
            result = turn.short_circuit
            yield StreamEvent("token", {"token": result.message, "content": result.message})
            yield StreamEvent("done", result.as_payload())
            return

        handle = self.generations.register(session_id)
        queue: asyncio.Queue[StreamEvent | None] = asyncio.Queue()
        self._spawn(self._produce(turn, handle, queue))
        heartbeat = self._spawn(self._heartbeat(handle, queue)) if self.heartbeat_seconds > 0 else None
        finished = False
        try:
            while True:
                event = await queue.get()
                if event is None or handle.cancelled:
                    finished = True
                    break
                yield event
        finally:
            if heartbeat is not None:
                heartbeat.cancel()
            if not finished and not handle.cancelled:
                logger.info("stream consumer went away session_id=%s", session_id)
                handle.cancel("disconnect")

    def _spawn(self, coro: Any) -> asyncio.Task[Any]:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _heartbeat(self, handle: GenerationHandle, queue: asyncio.Queue[StreamEvent | None]) -> None:
        while not handle.cancelled:
            await asyncio.sleep(self.heartbeat_seconds)
            if handle.cancelled:
                break
            queue.put_nowait(StreamEvent("heartbeat", {}))

    async def _produce(
        self,
        turn: PreparedTurn,
        handle: GenerationHandle,
        queue: asyncio.Queue[StreamEvent | None],
    ) -> None:
        session_id = turn.conversation.session_id
        prefix = turn.urgent_prefix
        relayed = prefix
        blocked = False

        def on_token(fragment: str, is_final: bool) -> None:
            nonlocal relayed, blocked
            if blocked or handle.cancelled:
                return
            candidate = relayed + fragment
            if self.safety_mode and not self.safety.validate_generated(candidate[len(prefix):]).valid:
                blocked = True
                logger.warning("stopped relaying unsafe fragment session_id=%s", session_id)
                return
            relayed = candidate
            queue.put_nowait(StreamEvent("token", {"token": fragment, "content": relayed}))

        try:
            if prefix:
                queue.put_nowait(StreamEvent("token", {"token": prefix, "content": prefix}))
            completion = await self.inference.complete_streaming(turn.context or [], on_token, handle.signal)
            if handle.cancelled:
                raise GenerationCancelled()
            result = self._finish_turn(turn, completion, streamed=True)
            queue.put_nowait(StreamEvent("done", result.as_payload()))
        except GenerationCancelled:
            logger.info("streaming turn cancelled session_id=%s reason=%s", session_id, handle.reason)
        except ChatError as exc:
            logger.warning("streaming turn failed session_id=%s code=%s error=%s", session_id, exc.code, exc.message)
            queue.put_nowait(StreamEvent("error", exc.as_payload()))
        except Exception:
            logger.exception("streaming turn crashed session_id=%s", session_id)
            queue.put_nowait(
                StreamEvent("error", {"error": "INTERNAL_ERROR", "message": "Failed to generate response"})
            )
        finally:
            self.generations.release(handle)
            queue.put_nowait(None)

    def cancel_generation(self, session_token: Any) -> bool:
        token = self.guard.ensure_session_token(session_token)
        return self.generations.cancel(token, reason="user")

    def get_history(self, session_token: Any, limit: int = 50) -> list[Message]:
        token = self.guard.ensure_session_token(session_token)
        return self.store.get_history(token, limit=limit)

    def close_session(self, session_token: Any) -> Conversation:
        conversation = self._require_conversation(session_token)
        self.generations.cancel(conversation.session_id, reason="closed")
        if self.rate_limiter is not None:
            self.rate_limiter.forget(conversation.session_id)
        return self.store.close_conversation(conversation.session_id)
