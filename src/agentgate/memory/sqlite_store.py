"""SQLite-backed memory with FTS5 keyword recall.

Keys are unique per scope. Scope ``""`` holds shared entries that every
scope can recall; entries written under an identity's scope are only
visible to, and removable by, that identity.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from datetime import UTC, datetime
from pathlib import Path

from agentgate.db.connection import get_conn, transaction
from agentgate.errors import MemoryStoreError
from agentgate.ids import new_id
from agentgate.memory.interfaces import MemoryItem

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS memory_items(
  id TEXT PRIMARY KEY,
  key TEXT NOT NULL,
  scope TEXT NOT NULL DEFAULT '',
  category TEXT NOT NULL DEFAULT 'conversation',
  content TEXT NOT NULL,
  created_at TEXT NOT NULL,
  UNIQUE(scope, key)
);
CREATE INDEX IF NOT EXISTS idx_memory_items_scope ON memory_items(scope, created_at);
"""
FTS_SCHEMA = """
CREATE VIRTUAL TABLE IF NOT EXISTS memory_fts USING fts5(
  key UNINDEXED, scope UNINDEXED, content
);
"""


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _fts_query(text: str) -> str:
    tokens = [
        token.strip()
        for token in "".join(ch if ch.isalnum() else " " for ch in text).split()
        if len(token.strip()) > 1
    ]
    if not tokens:
        return ""
    return " OR ".join(f'"{token}"' for token in tokens[:8])


class SqliteMemoryStore:
    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self._fts = True
        self._ready = False

    def _ensure_schema(self, conn: sqlite3.Connection) -> None:
        if self._ready:
            return
        conn.executescript(SCHEMA)
        try:
            conn.executescript(FTS_SCHEMA)
        except sqlite3.OperationalError:
            logger.warning("SQLite FTS5 unavailable; memory recall falls back to LIKE")
            self._fts = False
        self._ready = True

    def _delete(self, conn: sqlite3.Connection, key: str, scope: str) -> int:
        deleted = conn.execute(
            "DELETE FROM memory_items WHERE key=? AND scope=?", (key, scope)
        ).rowcount
        if self._fts:
            conn.execute("DELETE FROM memory_fts WHERE key=? AND scope=?", (key, scope))
        return deleted

    def _insert(
        self, conn: sqlite3.Connection, key: str, scope: str, category: str, content: str
    ) -> None:
        self._delete(conn, key, scope)
        conn.execute(
            "INSERT INTO memory_items(id, key, scope, category, content, created_at) "
            "VALUES(?,?,?,?,?,?)",
            (new_id("mem"), key, scope, category, content, _now_iso()),
        )
        if self._fts:
            conn.execute(
                "INSERT INTO memory_fts(key, scope, content) VALUES(?,?,?)",
                (key, scope, content),
            )

    def _store_sync(self, key: str, scope: str, category: str, content: str) -> str:
        try:
            with get_conn(self.db_path) as conn:
                self._ensure_schema(conn)
                with transaction(conn):
                    self._insert(conn, key, scope, category, content)
        except sqlite3.Error as exc:
            raise MemoryStoreError(f"memory write failed: {exc}") from exc
        return key

    def _recall_sync(self, query: str, limit: int, scope: str) -> list[MemoryItem]:
        try:
            with get_conn(self.db_path) as conn:
                self._ensure_schema(conn)
                return self._search(conn, query, limit, scope)
        except sqlite3.Error as exc:
            raise MemoryStoreError(f"memory recall failed: {exc}") from exc

    def _search(
        self, conn: sqlite3.Connection, query: str, limit: int, scope: str
    ) -> list[MemoryItem]:
        fts_query = _fts_query(query)
        if not fts_query:
            return []
        if self._fts:
            sql = (
                "SELECT mi.key, mi.content, mi.category, mi.scope, mi.created_at, "
                "bm25(memory_fts) AS rank FROM memory_fts "
                "JOIN memory_items mi "
                "ON mi.key = memory_fts.key AND mi.scope = memory_fts.scope "
                "WHERE memory_fts MATCH ? AND mi.scope IN (?, '') ORDER BY rank LIMIT ?"
            )
            params: list[object] = [fts_query]
        else:
            first = fts_query.split(" OR ")[0].strip('"')
            sql = (
                "SELECT mi.key, mi.content, mi.category, mi.scope, mi.created_at, 0.0 AS rank "
                "FROM memory_items mi WHERE mi.content LIKE ? AND mi.scope IN (?, '') "
                "ORDER BY mi.created_at DESC LIMIT ?"
            )
            params = [f"%{first}%"]
        params.extend([scope, max(1, limit)])
        rows = conn.execute(sql, params).fetchall()
        return [
            MemoryItem(
                key=str(row["key"]),
                content=str(row["content"]),
                category=str(row["category"]),
                scope=str(row["scope"]),
                created_at=str(row["created_at"]),
                score=-float(row["rank"]),
            )
            for row in rows
        ]

    def _forget_sync(self, key: str, scope: str) -> bool:
        try:
            with get_conn(self.db_path) as conn:
                self._ensure_schema(conn)
                with transaction(conn):
                    deleted = self._delete(conn, key, scope)
        except sqlite3.Error as exc:
            raise MemoryStoreError(f"memory delete failed: {exc}") from exc
        return deleted > 0

    async def recall(self, query: str, limit: int = 5, *, scope: str = "") -> list[MemoryItem]:
        return await asyncio.to_thread(self._recall_sync, query, limit, scope)

    async def save(self, scope: str, role: str, content: str) -> str:
        key = new_id(role)
        return await asyncio.to_thread(self._store_sync, key, scope, "conversation", content)

    async def store(self, key: str, content: str, *, scope: str = "") -> str:
        return await asyncio.to_thread(self._store_sync, key, scope, "core", content)

    async def forget(self, key: str, *, scope: str = "") -> bool:
        return await asyncio.to_thread(self._forget_sync, key, scope)
