from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator


class SQLiteChatDB:
    def __init__(self, db_path: str) -> None:
        self._path = Path(db_path).expanduser().resolve()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._init_schema()

    @property
    def path(self) -> str:
        return str(self._path)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._path), timeout=30.0, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._lock, self.connection() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS conversations (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  session_id TEXT UNIQUE NOT NULL,
                  patient_id TEXT,
                  status TEXT NOT NULL DEFAULT 'ai-active',
                  staff_id TEXT,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL,
                  closed_at TEXT
                );

                CREATE TABLE IF NOT EXISTS messages (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  conversation_id INTEGER NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
                  role TEXT NOT NULL,
                  content TEXT NOT NULL,
                  metadata_json TEXT NOT NULL DEFAULT '{}',
                  created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS handoff_requests (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  conversation_id INTEGER NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
                  reason TEXT NOT NULL,
                  priority TEXT NOT NULL DEFAULT 'normal',
                  status TEXT NOT NULL DEFAULT 'pending',
                  assigned_staff_id TEXT,
                  assigned_at TEXT,
                  resolved_at TEXT,
                  created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_conversations_status
                  ON conversations(status);
                CREATE INDEX IF NOT EXISTS idx_conversations_patient
                  ON conversations(patient_id);
                CREATE INDEX IF NOT EXISTS idx_messages_conversation_time
                  ON messages(conversation_id, created_at);
                CREATE INDEX IF NOT EXISTS idx_handoff_status_priority
                  ON handoff_requests(status, priority);
                CREATE INDEX IF NOT EXISTS idx_handoff_conversation
                  ON handoff_requests(conversation_id);

                CREATE VIEW IF NOT EXISTS v_active_chats AS
                SELECT
                  c.id,
                  c.session_id,
                  c.patient_id,
                  c.status,
                  c.staff_id,
                  c.created_at,
                  c.updated_at,
                  COUNT(m.id) AS message_count,
                  MAX(m.created_at) AS last_message_at
                FROM conversations c
                LEFT JOIN messages m ON c.id = m.conversation_id
                WHERE c.status IN ('ai-active', 'staff-taken')
                GROUP BY c.id;

                CREATE VIEW IF NOT EXISTS v_handoff_queue AS
                SELECT
                  hr.id AS request_id,
                  hr.conversation_id,
                  hr.reason,
                  hr.priority,
                  hr.status AS request_status,
                  hr.created_at AS requested_at,
                  c.session_id,
                  c.patient_id,
                  c.status AS conversation_status,
                  c.created_at AS conversation_started,
                  (SELECT COUNT(*) FROM messages WHERE conversation_id = c.id) AS message_count,
                  CASE hr.priority
                    WHEN 'emergency' THEN 1
                    WHEN 'high' THEN 2
                    WHEN 'normal' THEN 3
                    WHEN 'low' THEN 4
                    ELSE 5
                  END AS priority_rank
                FROM handoff_requests hr
                JOIN conversations c ON hr.conversation_id = c.id
                WHERE hr.status = 'pending';
                """
            )
