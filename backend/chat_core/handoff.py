from __future__ import annotations

import logging
from typing import Any

from chat_store import ConversationStore, HandoffStore

from .errors import Forbidden, NotFound
from .generation_registry import GenerationRegistry
from .input_guard import InputGuard
from .lifecycle import ConversationLifecycle
from .models import Conversation, Message

logger = logging.getLogger(__name__)

TAKEOVER_NOTICE = "A staff member has joined the conversation."
RELEASE_NOTICE = "The conversation has been returned to AI assistance."


class StaffDesk:
    """Staff-side operations: dashboard listings, takeover/release, staff replies."""

    def __init__(
        self,
        store: ConversationStore,
        handoffs: HandoffStore,
        *,
        guard: InputGuard | None = None,
        generations: GenerationRegistry | None = None,
    ) -> None:
        self.store = store
        self.handoffs = handoffs
        self.guard = guard or InputGuard()
        self.generations = generations
        self.lifecycle = ConversationLifecycle()

    def _require(self, session_token: Any) -> Conversation:
        token = self.guard.ensure_session_token(session_token)
        conversation = self.store.get_conversation(token)
        if conversation is None:
            raise NotFound("Chat session not found", code="SESSION_NOT_FOUND")
        return conversation

    def list_active(self) -> list[dict[str, Any]]:
        rows = self.store.list_active()
        for row in rows:
            pending = self.handoffs.latest_pending(row["conversation_id"])
            row["pending_handoff"] = pending.as_dict() if pending else None
        return rows

    def list_pending_handoffs(self) -> list[dict[str, Any]]:
        return self.handoffs.pending_queue()

    def takeover(self, session_token: Any, staff_id: str) -> Conversation:
        conversation = self._require(session_token)
        if conversation.status == "closed":
            raise Forbidden("Conversation is closed", code="CONVERSATION_CLOSED")
        if conversation.staff_id:
            raise Forbidden("Conversation is already handled by a staff member", code="ALREADY_TAKEN")
        self.lifecycle.ensure_transition(conversation, "staff-taken")

        if self.generations is not None:
            self.generations.cancel(conversation.session_id, reason="takeover")
        updated = self.store.update_status(conversation.session_id, "staff-taken", staff_id)
        assigned = self.handoffs.assign_pending(conversation.id, staff_id)
        self.store.add_message(
            conversation.id,
            "system",
            TAKEOVER_NOTICE,
            {"staff_id": staff_id, "action": "takeover"},
        )
        logger.info(
            "staff takeover session_id=%s staff_id=%s assigned_handoffs=%s",
            conversation.session_id,
            staff_id,
            assigned,
        )
        return updated

    def _require_owner(self, conversation: Conversation, staff_id: str) -> None:
        if conversation.status != "staff-taken" or conversation.staff_id != staff_id:
            raise Forbidden("Only the staff member handling this conversation can do that", code="NOT_CONVERSATION_OWNER")

    def release(self, session_token: Any, staff_id: str) -> Conversation:
        conversation = self._require(session_token)
        self._require_owner(conversation, staff_id)
        self.lifecycle.ensure_transition(conversation, "ai-active")

        updated = self.store.update_status(conversation.session_id, "ai-active")
        resolved = self.handoffs.resolve_assigned(conversation.id)
        self.store.add_message(
            conversation.id,
            "system",
            RELEASE_NOTICE,
            {"staff_id": staff_id, "action": "release"},
        )
        logger.info(
            "staff release session_id=%s staff_id=%s resolved_handoffs=%s",
            conversation.session_id,
            staff_id,
            resolved,
        )
        return updated

    def staff_send_message(self, session_token: Any, staff_id: str, message: Any) -> Message:
        conversation = self._require(session_token)
        self._require_owner(conversation, staff_id)
        text = self.guard.clean_message(message)
        return self.store.add_message(conversation.id, "staff", text, {"staff_id": staff_id})

    def get_transcript(self, session_token: Any, limit: int = 1000) -> dict[str, Any]:
        conversation = self._require(session_token)
        messages = self.store.get_history(conversation.session_id, limit=limit)
        return {
            "conversation": conversation.as_dict(),
            "messages": [message.as_dict() for message in messages],
            "handoffs": [request.as_dict() for request in self.handoffs.list_for_conversation(conversation.id)],
        }
