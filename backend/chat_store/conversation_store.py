from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass
from typing import Any

from chat_core.errors import NotFound
from chat_core.models import CONVERSATION_STATUSES, MESSAGE_ROLES, Conversation, Message

from .database import SQLiteChatDB
from .time_utils import parse_iso, to_iso, utc_now

logger = logging.getLogger(__name__)

SAFETY_GREETING = (
    "Hello! I'm your AI medical assistant. How can I help you today?\n\n"
    "You can ask me about general health questions, symptom information, or wellness tips.\n\n"
    "Note: I provide general health information only, not professional medical advice."
)
FAST_GREETING = "Hello! How can I help you today?"


def _json_dumps(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def _conversation_from_row(row: sqlite3.Row) -> Conversation:
    return Conversation(
        id=row["id"],
        session_id=row["session_id"],
        status=row["status"],
        patient_id=row["patient_id"],
        staff_id=row["staff_id"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        closed_at=row["closed_at"],
    )


def _message_from_row(row: sqlite3.Row) -> Message:
    return Message(
        id=row["id"],
        conversation_id=row["conversation_id"],
        role=row["role"],
        content=row["content"],
        metadata=json.loads(row["metadata_json"] or "{}"),
        created_at=row["created_at"],
    )


@dataclass(frozen=True)
class LimitCheck:
    exceeded: bool
    reason: str | None = None
    message_count: int = 0
    session_hours: float = 0.0


class ConversationStore:
    def __init__(
        self,
        db: SQLiteChatDB,
        *,
        safety_mode: bool = True,
        max_messages_per_session: int = 50,
        max_session_hours: float = 24.0,
    ) -> None:
        self._db = db
        self.safety_mode = safety_mode
        self.max_messages_per_session = max_messages_per_session
        self.max_session_hours = max_session_hours

    @property
    def greeting(self) -> str:
        return SAFETY_GREETING if self.safety_mode else FAST_GREETING

    def create_session(self, patient_id: str | None = None) -> Conversation:
        session_id = str(uuid.uuid4())
        now = to_iso(utc_now())
        with self._db.connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO conversations (session_id, patient_id, status, created_at, updated_at)
                VALUES (?, ?, 'ai-active', ?, ?)
                """,
                (session_id, patient_id, now, now),
            )
            conversation_id = cursor.lastrowid
        self.add_message(conversation_id, "assistant", self.greeting, {"is_greeting": True})
        logger.info(
            "conversation session created session_id=%s patient_id=%s conversation_id=%s",
            session_id,
            patient_id,
            conversation_id,
        )
        return self._require(session_id)

    def get_conversation(self, session_token: str) -> Conversation | None:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM conversations WHERE session_id = ?",
                (session_token,),
            ).fetchone()
        return _conversation_from_row(row) if row else None

    def _require(self, session_token: str) -> Conversation:
        conversation = self.get_conversation(session_token)
        if conversation is None:
            raise NotFound("Chat session not found", code="SESSION_NOT_FOUND")
        return conversation

    def add_message(
        self,
        conversation_id: int,
        role: str,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> Message:
        if role not in MESSAGE_ROLES:
            raise ValueError(f"Unsupported message role: {role}")
        now = to_iso(utc_now())
        with self._db.connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO messages (conversation_id, role, content, metadata_json, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (conversation_id, role, content, _json_dumps(metadata or {}), now),
            )
            conn.execute(
                "UPDATE conversations SET updated_at = ? WHERE id = ?",
                (now, conversation_id),
            )
            row = conn.execute("SELECT * FROM messages WHERE id = ?", (cursor.lastrowid,)).fetchone()
        return _message_from_row(row)

    def get_context_window(self, session_token: str, max_messages: int = 10) -> list[dict[str, str]]:
        conversation = self._require(session_token)
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT role, content
                FROM messages
                WHERE conversation_id = ?
                  AND json_extract(metadata_json, '$.is_greeting') IS NULL
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                (conversation.id, max(0, max_messages)),
            ).fetchall()
        return [{"role": row["role"], "content": row["content"]} for row in reversed(rows)]

    def get_history(self, session_token: str, limit: int = 50) -> list[Message]:
        conversation = self._require(session_token)
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM messages
                WHERE conversation_id = ?
                ORDER BY created_at ASC, id ASC
                LIMIT ?
                """,
                (conversation.id, max(1, limit)),
            ).fetchall()
        return [_message_from_row(row) for row in rows]

    def count_messages(self, conversation_id: int) -> int:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS message_count FROM messages WHERE conversation_id = ?",
                (conversation_id,),
            ).fetchone()
        return int(row["message_count"])

    def check_limits(self, session_token: str) -> LimitCheck:
        conversation = self._require(session_token)
        message_count = self.count_messages(conversation.id)
        if message_count >= self.max_messages_per_session:
            return LimitCheck(True, "Maximum messages reached", message_count=message_count)

        created_at = parse_iso(conversation.created_at) or utc_now()
        session_hours = (utc_now() - created_at).total_seconds() / 3600.0
        if session_hours >= self.max_session_hours:
            return LimitCheck(
                True,
                "Maximum session duration reached",
                message_count=message_count,
                session_hours=session_hours,
            )
        return LimitCheck(False, message_count=message_count, session_hours=session_hours)

    def update_status(self, session_token: str, status: str, staff_id: str | None = None) -> Conversation:
        if status not in CONVERSATION_STATUSES:
            raise ValueError(f"Unsupported conversation status: {status}")
        if status == "staff-taken" and not staff_id:
            raise ValueError("staff-taken requires a staff id")
        if status != "staff-taken":
            staff_id = None
        self._require(session_token)
        with self._db.connection() as conn:
            conn.execute(
                """
                UPDATE conversations
                SET status = ?, staff_id = ?, updated_at = ?
                WHERE session_id = ?
                """,
                (status, staff_id, to_iso(utc_now()), session_token),
            )
        logger.info("conversation status updated session_id=%s status=%s staff_id=%s", session_token, status, staff_id)
        return self._require(session_token)

    def close_conversation(self, session_token: str) -> Conversation:
        self._require(session_token)
        now = to_iso(utc_now())
        with self._db.connection() as conn:
            updated = conn.execute(
                """
                UPDATE conversations
                SET status = 'closed', staff_id = NULL, closed_at = ?, updated_at = ?
                WHERE session_id = ? AND closed_at IS NULL
                """,
                (now, now, session_token),
            ).rowcount
        if updated:
            logger.info("conversation closed session_id=%s", session_token)
        return self._require(session_token)

    def list_active(self) -> list[dict[str, Any]]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM v_active_chats
                ORDER BY last_message_at DESC, id DESC
                """
            ).fetchall()
        return [
            {
                "conversation_id": row["id"],
                "session_id": row["session_id"],
                "patient_id": row["patient_id"],
                "status": row["status"],
                "staff_id": row["staff_id"],
                "created_at": row["created_at"],
                "updated_at": row["updated_at"],
                "message_count": int(row["message_count"]),
                "last_message_at": row["last_message_at"],
            }
            for row in rows
        ]
