import sqlite3
import unittest

from micro_x_agent_bridge.memory import MemoryStore
from tests.memory.base import MemoryStoreTestCase


class MemoryStoreTests(MemoryStoreTestCase):
    def test_schema_is_created(self) -> None:
        rows = self._store.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
        names = {row["name"] for row in rows}
        self.assertTrue({"sessions", "messages", "events"} <= names)

    def test_transaction_rolls_back_on_error(self) -> None:
        with self.assertRaises(RuntimeError):
            with self._store.transaction():
                self._store.execute(
                    "INSERT INTO sessions (id, created_at, updated_at, model) VALUES (?, ?, ?, ?)",
                    ("tx", "t", "t", "m"),
                )
                raise RuntimeError("abort")
        row = self._store.execute("SELECT COUNT(*) AS c FROM sessions WHERE id = 'tx'").fetchone()
        self.assertEqual(0, int(row["c"]))

    def test_messages_require_a_known_role(self) -> None:
        sid = self._sessions.create_session("roles")
        with self.assertRaises(sqlite3.IntegrityError):
            self._sessions.append_message(sid, "tool", [{"type": "text", "text": "x"}])


class InMemoryStoreTests(unittest.TestCase):
    def test_in_memory_store_closes_idempotently(self) -> None:
        store = MemoryStore(":memory:")
        self.assertFalse(store.closed)
        store.close()
        store.close()
        self.assertTrue(store.closed)


if __name__ == "__main__":
    unittest.main()
