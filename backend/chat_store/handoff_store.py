from __future__ import annotations

import logging
import sqlite3
from typing import Any

from chat_core.models import HANDOFF_PRIORITIES, HandoffRequest

from .database import SQLiteChatDB
from .time_utils import to_iso, utc_now

logger = logging.getLogger(__name__)


def _handoff_from_row(row: sqlite3.Row) -> HandoffRequest:
    return HandoffRequest(
        id=row["id"],
        conversation_id=row["conversation_id"],
        reason=row["reason"],
        priority=row["priority"],
        status=row["status"],
        assigned_staff_id=row["assigned_staff_id"],
        assigned_at=row["assigned_at"],
        resolved_at=row["resolved_at"],
        created_at=row["created_at"],
    )


class HandoffStore:
    def __init__(self, db: SQLiteChatDB) -> None:
        self._db = db

    def create_request(self, conversation_id: int, reason: str, priority: str = "normal") -> HandoffRequest:
        if priority not in HANDOFF_PRIORITIES:
            raise ValueError(f"Unsupported handoff priority: {priority}")
        with self._db.connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO handoff_requests (conversation_id, reason, priority, status, created_at)
                VALUES (?, ?, ?, 'pending', ?)
                """,
                (conversation_id, reason, priority, to_iso(utc_now())),
            )
            row = conn.execute("SELECT * FROM handoff_requests WHERE id = ?", (cursor.lastrowid,)).fetchone()
        request = _handoff_from_row(row)
        logger.info(
            "handoff request created conversation_id=%s reason=%s priority=%s request_id=%s",
            conversation_id,
            reason,
            priority,
            request.id,
        )
        return request

    def latest_pending(self, conversation_id: int) -> HandoffRequest | None:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT *
                FROM handoff_requests
                WHERE conversation_id = ? AND status = 'pending'
                ORDER BY created_at DESC, id DESC
                LIMIT 1
                """,
                (conversation_id,),
            ).fetchone()
        return _handoff_from_row(row) if row else None

    def list_for_conversation(self, conversation_id: int) -> list[HandoffRequest]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM handoff_requests
                WHERE conversation_id = ?
                ORDER BY created_at ASC, id ASC
                """,
                (conversation_id,),
            ).fetchall()
        return [_handoff_from_row(row) for row in rows]

    def pending_queue(self) -> list[dict[str, Any]]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM v_handoff_queue
                ORDER BY priority_rank ASC, requested_at ASC, request_id ASC
                """
            ).fetchall()
        return [
            {
                "request_id": row["request_id"],
                "conversation_id": row["conversation_id"],
                "session_id": row["session_id"],
                "patient_id": row["patient_id"],
                "reason": row["reason"],
                "priority": row["priority"],
                "status": row["request_status"],
                "requested_at": row["requested_at"],
                "conversation_status": row["conversation_status"],
                "conversation_started": row["conversation_started"],
                "message_count": int(row["message_count"]),
            }
            for row in rows
        ]

    def assign_pending(self, conversation_id: int, staff_id: str) -> int:
        with self._db.connection() as conn:
            return conn.execute(
                """
                UPDATE handoff_requests
                SET status = 'assigned', assigned_staff_id = ?, assigned_at = ?
                WHERE conversation_id = ? AND status = 'pending'
                """,
                (staff_id, to_iso(utc_now()), conversation_id),
            ).rowcount

    def resolve_assigned(self, conversation_id: int) -> int:
        with self._db.connection() as conn:
            return conn.execute(
                """
                UPDATE handoff_requests
                SET status = 'resolved', resolved_at = ?
                WHERE conversation_id = ? AND status = 'assigned'
                """,
                (to_iso(utc_now()), conversation_id),
            ).rowcount
