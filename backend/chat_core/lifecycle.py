from __future__ import annotations

from .errors import Forbidden
from .models import Conversation


class LifecycleError(Exception):
    pass


class ConversationLifecycle:
    _TRANSITIONS = {
        "ai-active": {"staff-taken", "closed"},
        "staff-taken": {"ai-active", "closed"},
        "closed": set(),
    }

    def ensure_transition(self, conversation: Conversation, next_state: str) -> None:
        allowed_next = self._TRANSITIONS.get(conversation.status, set())
        if next_state not in allowed_next:
            raise Forbidden(
                f"Conversation cannot move from {conversation.status} to {next_state}",
                code="INVALID_STATUS_TRANSITION",
            )

    def ensure_patient_turn(self, conversation: Conversation) -> None:
        if conversation.status == "closed":
            raise Forbidden("Conversation is closed", code="CONVERSATION_CLOSED")
        if conversation.status == "staff-taken":
            raise Forbidden("A staff member is handling this conversation", code="STAFF_OWNED")


class TurnLifecycle:
    """Ordered record of the states one turn has passed through."""

    _TRANSITIONS = {
        "received": {"pre-filtered", "generating"},
        "pre-filtered": {"short-circuited", "generating"},
        "short-circuited": {"persisted"},
        "generating": {"post-filtered", "persisted"},
        "post-filtered": {"persisted"},
        "persisted": {"delivered"},
        "delivered": set(),
    }

    def __init__(self) -> None:
        self.states: list[str] = ["received"]

    @property
    def current(self) -> str:
        return self.states[-1]

    def advance(self, next_state: str) -> list[str]:
        allowed_next = self._TRANSITIONS.get(self.current, set())
        if next_state not in allowed_next:
            raise LifecycleError(f"Invalid turn transition: {self.current} -> {next_state}")
        self.states.append(next_state)
        return list(self.states)
