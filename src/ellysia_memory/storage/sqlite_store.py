"""SQLite persistent store for memory fragments.

The authoritative tier. Uses aiosqlite with WAL mode so retrieval reads are
not blocked by the per-user writer. Access log rows reference fragments with
``ON DELETE CASCADE``, so eviction and purge remove them as well.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

import aiosqlite
from loguru import logger

from ..models import EvictionCandidate, MemoryFragment, MemoryType

_FRAGMENT_COLUMNS = (
    "id, user_id, memory_type, importance_score, memory_text, related_keywords, "
    "source_conversation_id, created_at, last_accessed, access_count"
)


def _ts(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _row_to_fragment(row: Any) -> MemoryFragment:
    return MemoryFragment(
        id=row[0],
        user_id=row[1],
        type=MemoryType(row[2]),
        importance_score=row[3],
        text=row[4],
        related_keywords=json.loads(row[5]) if row[5] else [],
        source_conversation_id=row[6],
        created_at=_parse_ts(row[7]),
        last_accessed=_parse_ts(row[8]),
        access_count=row[9],
    )


class PersistentStore:
    """SQLite source of truth for memory fragments.

    Implements the tier contract (``get``/``get_all``/``put``/``delete``) and
    the queries only this tier supports: counts, eviction ranking, keyword
    search and access bookkeeping.
    """

    name = "persistent"

    def __init__(self, db_path: str = "./memory/fragments.db"):
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None
        logger.info(f"PersistentStore initialized with db_path: {db_path}")

    async def initialize(self) -> None:
        """Create tables and indexes if they don't exist."""
        if self._db is not None:
            return
        db_dir = Path(self.db_path).parent
        db_dir.mkdir(parents=True, exist_ok=True)

        self._db = await aiosqlite.connect(self.db_path)
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA foreign_keys=ON")

        await self._create_tables()
        await self._create_indexes()
        await self._db.commit()
        logger.info("Memory fragment database initialized successfully")

    async def _create_tables(self) -> None:
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS memory_fragments (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                memory_type TEXT NOT NULL,
                importance_score REAL NOT NULL DEFAULT 0.5,
                memory_text TEXT NOT NULL,
                related_keywords TEXT,
                source_conversation_id TEXT,
                created_at TEXT NOT NULL,
                last_accessed TEXT NOT NULL,
                access_count INTEGER NOT NULL DEFAULT 0,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS memory_access_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                fragment_id TEXT NOT NULL,
                conversation_id TEXT,
                access_type TEXT NOT NULL,
                access_context TEXT,
                created_at TEXT NOT NULL,
                FOREIGN KEY (fragment_id) REFERENCES memory_fragments(id)
                    ON DELETE CASCADE
            )
        """)
        logger.debug("Memory tables created successfully")

    async def _create_indexes(self) -> None:
        await self._db.execute("""
            CREATE INDEX IF NOT EXISTS idx_fragment_user
            ON memory_fragments(user_id)
        """)

        await self._db.execute("""
            CREATE INDEX IF NOT EXISTS idx_fragment_user_rank
            ON memory_fragments(user_id, importance_score, last_accessed)
        """)

        await self._db.execute("""
            CREATE INDEX IF NOT EXISTS idx_fragment_user_type
            ON memory_fragments(user_id, memory_type)
        """)

        await self._db.execute("""
            CREATE INDEX IF NOT EXISTS idx_access_log_fragment
            ON memory_access_logs(fragment_id)
        """)

    async def close(self) -> None:
        """Close database connection."""
        if self._db:
            await self._db.close()
            self._db = None
            logger.info("Memory fragment database connection closed")

    def _require_db(self) -> aiosqlite.Connection:
        if not self._db:
            raise RuntimeError("Database not initialized. Call initialize() first.")
        return self._db

    # ------------------------------------------------------------------
    # Tier contract
    # ------------------------------------------------------------------

    async def get(self, user_id: str, key: str) -> MemoryFragment | None:
        db = self._require_db()
        async with db.execute(
            f"SELECT {_FRAGMENT_COLUMNS} FROM memory_fragments WHERE user_id = ? AND id = ?",
            (user_id, key),
        ) as cursor:
            row = await cursor.fetchone()
        return _row_to_fragment(row) if row else None

    async def get_all(
        self,
        user_id: str,
        limit: int | None = None,
        memory_type: MemoryType | None = None,
    ) -> list[MemoryFragment]:
        """Fragments of a user, most important and most recently used first."""
        db = self._require_db()
        query = f"SELECT {_FRAGMENT_COLUMNS} FROM memory_fragments WHERE user_id = ?"
        params: list[Any] = [user_id]
        if memory_type is not None:
            query += " AND memory_type = ?"
            params.append(MemoryType(memory_type).value)
        query += " ORDER BY importance_score DESC, last_accessed DESC, created_at DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        async with db.execute(query, params) as cursor:
            rows = await cursor.fetchall()
        return [_row_to_fragment(row) for row in rows]

    async def put(
        self, user_id: str, fragment: MemoryFragment, ttl: float | None = None
    ) -> None:
        """Insert or update a fragment. ``ttl`` is ignored by this tier."""
        db = self._require_db()
        if fragment.user_id != user_id:
            raise ValueError(
                f"Fragment {fragment.id} belongs to {fragment.user_id}, not {user_id}"
            )
        await db.execute(
            """
            INSERT INTO memory_fragments (
                id, user_id, memory_type, importance_score, memory_text,
                related_keywords, source_conversation_id, created_at,
                last_accessed, access_count, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
            ON CONFLICT(id) DO UPDATE SET
                importance_score = excluded.importance_score,
                memory_text = excluded.memory_text,
                related_keywords = excluded.related_keywords,
                last_accessed = excluded.last_accessed,
                access_count = excluded.access_count,
                updated_at = CURRENT_TIMESTAMP
            """,
            (
                fragment.id,
                user_id,
                fragment.type.value,
                fragment.importance_score,
                fragment.text,
                json.dumps(fragment.related_keywords, ensure_ascii=False),
                fragment.source_conversation_id,
                _ts(fragment.created_at),
                _ts(fragment.last_accessed),
                fragment.access_count,
            ),
        )
        await db.commit()

    async def delete(self, user_id: str, key: str) -> bool:
        return await self.delete_many(user_id, [key]) > 0

    # ------------------------------------------------------------------
    # Capacity and eviction
    # ------------------------------------------------------------------

    async def count(self, user_id: str) -> int:
        db = self._require_db()
        async with db.execute(
            "SELECT COUNT(*) FROM memory_fragments WHERE user_id = ?", (user_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return int(row[0]) if row else 0

    async def eviction_candidates(self, user_id: str, limit: int) -> list[EvictionCandidate]:
        """The ``limit`` lowest-ranked fragments (importance asc, last access asc)."""
        if limit <= 0:
            return []
        db = self._require_db()
        async with db.execute(
            """
            SELECT id, importance_score, last_accessed
            FROM memory_fragments
            WHERE user_id = ?
            ORDER BY importance_score ASC, last_accessed ASC, created_at ASC
            LIMIT ?
            """,
            (user_id, limit),
        ) as cursor:
            rows = await cursor.fetchall()
        return [
            EvictionCandidate(
                fragment_id=row[0], importance_score=row[1], last_accessed=_parse_ts(row[2])
            )
            for row in rows
        ]

    async def delete_many(self, user_id: str, fragment_ids: Iterable[str]) -> int:
        db = self._require_db()
        ids = list(fragment_ids)
        if not ids:
            return 0
        placeholders = ",".join("?" for _ in ids)
        cursor = await db.execute(
            f"DELETE FROM memory_fragments WHERE user_id = ? AND id IN ({placeholders})",
            (user_id, *ids),
        )
        await db.commit()
        return cursor.rowcount

    async def purge_user(self, user_id: str) -> int:
        db = self._require_db()
        await db.execute("DELETE FROM memory_access_logs WHERE user_id = ?", (user_id,))
        cursor = await db.execute(
            "DELETE FROM memory_fragments WHERE user_id = ?", (user_id,)
        )
        await db.commit()
        return cursor.rowcount

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def search(
        self,
        user_id: str,
        keyword: str,
        limit: int = 10,
        memory_type: MemoryType | None = None,
    ) -> list[MemoryFragment]:
        """Fragments whose text or keywords contain ``keyword``."""
        db = self._require_db()
        pattern = f"%{keyword}%"
        query = (
            f"SELECT {_FRAGMENT_COLUMNS} FROM memory_fragments "
            "WHERE user_id = ? AND (memory_text LIKE ? OR related_keywords LIKE ?)"
        )
        params: list[Any] = [user_id, pattern, pattern]
        if memory_type is not None:
            query += " AND memory_type = ?"
            params.append(MemoryType(memory_type).value)
        query += " ORDER BY importance_score DESC, last_accessed DESC LIMIT ?"
        params.append(limit)

        async with db.execute(query, params) as cursor:
            rows = await cursor.fetchall()
        return [_row_to_fragment(row) for row in rows]

    async def type_distribution(self, user_id: str) -> dict[str, int]:
        db = self._require_db()
        async with db.execute(
            """
            SELECT memory_type, COUNT(*) FROM memory_fragments
            WHERE user_id = ? GROUP BY memory_type
            """,
            (user_id,),
        ) as cursor:
            rows = await cursor.fetchall()
        return {row[0]: int(row[1]) for row in rows}

    async def count_above(self, user_id: str, threshold: float) -> int:
        db = self._require_db()
        async with db.execute(
            "SELECT COUNT(*) FROM memory_fragments WHERE user_id = ? AND importance_score > ?",
            (user_id, threshold),
        ) as cursor:
            row = await cursor.fetchone()
        return int(row[0]) if row else 0

    async def count_since(self, user_id: str, since: datetime) -> int:
        db = self._require_db()
        async with db.execute(
            "SELECT COUNT(*) FROM memory_fragments WHERE user_id = ? AND created_at >= ?",
            (user_id, _ts(since)),
        ) as cursor:
            row = await cursor.fetchone()
        return int(row[0]) if row else 0

    # ------------------------------------------------------------------
    # Mutations outside the write path
    # ------------------------------------------------------------------

    async def update_importance(
        self, user_id: str, fragment_id: str, importance: float
    ) -> MemoryFragment | None:
        db = self._require_db()
        importance = max(0.0, min(1.0, importance))
        cursor = await db.execute(
            """
            UPDATE memory_fragments
            SET importance_score = ?, updated_at = CURRENT_TIMESTAMP
            WHERE user_id = ? AND id = ?
            """,
            (importance, user_id, fragment_id),
        )
        await db.commit()
        if cursor.rowcount == 0:
            return None
        return await self.get(user_id, fragment_id)

    async def record_access(
        self,
        user_id: str,
        fragment_ids: Iterable[str],
        accessed_at: datetime,
        access_type: str = "retrieval",
        conversation_id: str | None = None,
        context: str | None = None,
    ) -> int:
        """Bump access counters and write one access log row per fragment."""
        db = self._require_db()
        ids = list(fragment_ids)
        if not ids:
            return 0
        stamp = _ts(accessed_at)
        updated = 0
        for fragment_id in ids:
            cursor = await db.execute(
                """
                UPDATE memory_fragments
                SET access_count = access_count + 1, last_accessed = ?
                WHERE user_id = ? AND id = ?
                """,
                (stamp, user_id, fragment_id),
            )
            if cursor.rowcount:
                updated += 1
                await db.execute(
                    """
                    INSERT INTO memory_access_logs (
                        user_id, fragment_id, conversation_id, access_type,
                        access_context, created_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (user_id, fragment_id, conversation_id, access_type, context, stamp),
                )
        await db.commit()
        return updated

    async def access_log_count(self, user_id: str, fragment_id: str | None = None) -> int:
        db = self._require_db()
        query = "SELECT COUNT(*) FROM memory_access_logs WHERE user_id = ?"
        params: list[Any] = [user_id]
        if fragment_id is not None:
            query += " AND fragment_id = ?"
            params.append(fragment_id)
        async with db.execute(query, params) as cursor:
            row = await cursor.fetchone()
        return int(row[0]) if row else 0

    async def ping(self) -> bool:
        if not self._db:
            return False
        try:
            async with self._db.execute("SELECT 1") as cursor:
                await cursor.fetchone()
            return True
        except aiosqlite.Error as e:
            logger.warning(f"Memory fragment database health check failed: {e}")
            return False
