from __future__ import annotations

import json
from uuid import uuid4

from micro_x_agent_bridge.memory.events import EventEmitter
from micro_x_agent_bridge.memory.store import MemoryStore
from micro_x_agent_bridge.messages import ContentPart, Message, utc_now


class SessionManager:
    """Owns the persisted causal chain: sessions and their parent-linked messages."""

    def __init__(self, store: MemoryStore, model: str, events: EventEmitter):
        self._store = store
        self._model = model
        self._events = events

    def get_session(self, session_id: str) -> dict | None:
        row = self._store.execute(
            "SELECT * FROM sessions WHERE id = ? LIMIT 1",
            (session_id,),
        ).fetchone()
        if row is None:
            return None
        session = dict(row)
        session["metadata"] = self._parse_metadata(session.pop("metadata_json", "{}"))
        return session

    def create_session(
        self,
        session_id: str | None = None,
        *,
        model: str | None = None,
        cwd: str = "",
        metadata: dict | None = None,
    ) -> str:
        sid = session_id or str(uuid4())
        now = utc_now()
        self._store.execute(
            """
            INSERT INTO sessions (id, created_at, updated_at, model, cwd, metadata_json)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (sid, now, now, model or self._model, cwd, json.dumps(metadata or {}, ensure_ascii=True)),
        )
        self._store.commit()
        self._events.emit(sid, "session.started", {"session_id": sid})
        return sid

    def load_or_create(self, session_id: str, *, model: str | None = None, cwd: str = "") -> str:
        if self.get_session(session_id) is not None:
            return session_id
        return self.create_session(session_id, model=model, cwd=cwd)

    def append_message(
        self,
        session_id: str,
        role: str,
        content: list[ContentPart],
        *,
        message_id: str | None = None,
        parent_id: str | None = None,
        agent_id: str | None = None,
    ) -> Message:
        row = self._store.execute(
            "SELECT COALESCE(MAX(seq), 0) AS max_seq FROM messages WHERE session_id = ?",
            (session_id,),
        ).fetchone()
        next_seq = int(row["max_seq"]) + 1
        mid = message_id or str(uuid4())
        now = utc_now()
        self._store.execute(
            """
            INSERT INTO messages (id, session_id, parent_id, agent_id, seq, role, content_json, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (mid, session_id, parent_id, agent_id, next_seq, role, json.dumps(content, ensure_ascii=True), now),
        )
        self._store.execute(
            "UPDATE sessions SET updated_at = ? WHERE id = ?",
            (now, session_id),
        )
        self._store.commit()
        self._events.emit(
            session_id,
            "message.appended",
            {"session_id": session_id, "message_id": mid, "parent_id": parent_id, "seq": next_seq, "role": role},
        )
        return Message(
            role=role,
            content=content,
            uuid=mid,
            parent_uuid=parent_id,
            session_id=session_id,
            timestamp=now,
            agent_id=agent_id,
        )

    def has_message(self, session_id: str, message_id: str) -> bool:
        row = self._store.execute(
            "SELECT 1 FROM messages WHERE session_id = ? AND id = ? LIMIT 1",
            (session_id, message_id),
        ).fetchone()
        return row is not None

    def load_chain(self, session_id: str, *, include_sidechains: bool = False) -> list[Message]:
        """Messages of a session in the order they were persisted."""
        query = """
            SELECT id, parent_id, agent_id, role, content_json, created_at
            FROM messages
            WHERE session_id = ?
        """
        if not include_sidechains:
            query += " AND agent_id IS NULL"
        query += " ORDER BY seq ASC"
        rows = self._store.execute(query, (session_id,)).fetchall()
        return [self._row_to_message(session_id, row) for row in rows]

    def load_ancestry(self, session_id: str, message_id: str) -> list[Message]:
        """Walk parent links from ``message_id`` back to the root; returned root-first."""
        rows = self._store.execute(
            """
            WITH RECURSIVE ancestry(id, parent_id, agent_id, role, content_json, created_at, depth) AS (
                SELECT id, parent_id, agent_id, role, content_json, created_at, 0
                FROM messages
                WHERE session_id = ? AND id = ?
                UNION ALL
                SELECT m.id, m.parent_id, m.agent_id, m.role, m.content_json, m.created_at, a.depth + 1
                FROM messages m
                JOIN ancestry a ON m.id = a.parent_id
                WHERE m.session_id = ?
            )
            SELECT id, parent_id, agent_id, role, content_json, created_at
            FROM ancestry
            ORDER BY depth DESC
            """,
            (session_id, message_id, session_id),
        ).fetchall()
        return [self._row_to_message(session_id, row) for row in rows]

    def _row_to_message(self, session_id: str, row) -> Message:
        return Message(
            role=str(row["role"]),
            content=json.loads(row["content_json"]),
            uuid=str(row["id"]),
            parent_uuid=row["parent_id"],
            session_id=session_id,
            timestamp=str(row["created_at"]),
            agent_id=row["agent_id"],
        )

    def _parse_metadata(self, metadata_json: str) -> dict:
        try:
            parsed = json.loads(metadata_json)
        except (TypeError, ValueError):
            return {}
        return parsed if isinstance(parsed, dict) else {}
