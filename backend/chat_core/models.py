from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


CONVERSATION_STATUSES = {"ai-active", "staff-taken", "closed"}
MESSAGE_ROLES = {"user", "assistant", "system", "staff"}
HANDOFF_PRIORITIES = ("emergency", "high", "normal", "low")


@dataclass
class Conversation:
    id: int
    session_id: str
    status: str
    patient_id: str | None = None
    staff_id: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    closed_at: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "conversation_id": self.id,
            "session_id": self.session_id,
            "patient_id": self.patient_id,
            "status": self.status,
            "staff_id": self.staff_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "closed_at": self.closed_at,
        }


@dataclass
class Message:
    id: int
    conversation_id: int
    role: str
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "metadata": self.metadata,
            "timestamp": self.created_at,
        }


@dataclass
class HandoffRequest:
    id: int
    conversation_id: int
    reason: str
    priority: str
    status: str
    assigned_staff_id: str | None = None
    assigned_at: str | None = None
    resolved_at: str | None = None
    created_at: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.id,
            "conversation_id": self.conversation_id,
            "reason": self.reason,
            "priority": self.priority,
            "status": self.status,
            "assigned_staff_id": self.assigned_staff_id,
            "assigned_at": self.assigned_at,
            "resolved_at": self.resolved_at,
            "created_at": self.created_at,
        }


@dataclass
class TurnResult:
    session_id: str
    message: str
    role: str = "assistant"
    metadata: dict[str, Any] = field(default_factory=dict)
    states: list[str] = field(default_factory=list)
    timestamp: str | None = None

    def as_payload(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "message": self.message,
            "role": self.role,
            "metadata": self.metadata,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class StreamEvent:
    event: str
    data: dict[str, Any] = field(default_factory=dict)
