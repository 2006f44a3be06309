"""
持久化上下文 - 基于 aiosqlite 的追加式事件存储

显式构造、显式 init/reset/close，不使用模块级单例。
"""
import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiosqlite

from .errors import StorageUnavailableError

logger = logging.getLogger(__name__)

MEMORY_LOCATOR = ":memory:"

SCHEMA = """
CREATE TABLE IF NOT EXISTS threads (
    id          TEXT PRIMARY KEY,
    created_at  TEXT NOT NULL,
    metadata    TEXT
);

CREATE TABLE IF NOT EXISTS events (
    seq         INTEGER PRIMARY KEY AUTOINCREMENT,
    id          TEXT NOT NULL UNIQUE,
    thread_id   TEXT NOT NULL REFERENCES threads(id),
    type        TEXT NOT NULL,
    timestamp   TEXT NOT NULL,
    data        TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_events_thread ON events(thread_id, seq);
"""


class EventStoreHandle:
    """存储句柄 - 按线程追加和有序读取"""

    def __init__(self, db: aiosqlite.Connection):
        self._db = db
        self._write_lock = asyncio.Lock()

    async def create_thread(self, thread_id: str, created_at: str, metadata: Optional[Dict] = None) -> bool:
        """创建线程，已存在时返回 False"""
        async with self._write_lock:
            try:
                cursor = await self._db.execute(
                    "INSERT OR IGNORE INTO threads (id, created_at, metadata) VALUES (?, ?, ?)",
                    (thread_id, created_at, json.dumps(metadata or {})),
                )
                await self._db.commit()
                return cursor.rowcount > 0
            except aiosqlite.Error as e:
                await self._rollback()
                raise StorageUnavailableError(f"Failed to create thread {thread_id}: {e}") from e

    async def thread_exists(self, thread_id: str) -> bool:
        row = await self._fetchone("SELECT 1 FROM threads WHERE id = ?", (thread_id,))
        return row is not None

    async def get_thread_metadata(self, thread_id: str) -> Optional[Dict[str, Any]]:
        row = await self._fetchone("SELECT metadata FROM threads WHERE id = ?", (thread_id,))
        if row is None:
            return None
        return json.loads(row[0] or "{}")

    async def list_threads(self) -> List[str]:
        rows = await self._fetchall("SELECT id FROM threads ORDER BY created_at, id", ())
        return [row[0] for row in rows]

    async def append(self, row: Dict[str, Any], created_at: str) -> None:
        """原子追加：线程登记与事件写入在同一事务内"""
        async with self._write_lock:
            try:
                await self._db.execute(
                    "INSERT OR IGNORE INTO threads (id, created_at, metadata) VALUES (?, ?, ?)",
                    (row["thread_id"], created_at, "{}"),
                )
                await self._db.execute(
                    "INSERT INTO events (id, thread_id, type, timestamp, data) VALUES (?, ?, ?, ?, ?)",
                    (
                        row["id"],
                        row["thread_id"],
                        row["type"],
                        row["timestamp"],
                        json.dumps(row["data"], ensure_ascii=False),
                    ),
                )
                await self._db.commit()
            except aiosqlite.Error as e:
                await self._rollback()
                raise StorageUnavailableError(f"Failed to append event to {row['thread_id']}: {e}") from e

    async def read(self, thread_id: str) -> List[Dict[str, Any]]:
        rows = await self._fetchall(
            "SELECT id, thread_id, type, timestamp, data FROM events WHERE thread_id = ? ORDER BY seq",
            (thread_id,),
        )
        return [
            {
                "id": row[0],
                "thread_id": row[1],
                "type": row[2],
                "timestamp": row[3],
                "data": json.loads(row[4]),
            }
            for row in rows
        ]

    async def purge(self, thread_id: str) -> int:
        """删除线程及其所有事件（管理操作）"""
        async with self._write_lock:
            try:
                cursor = await self._db.execute("DELETE FROM events WHERE thread_id = ?", (thread_id,))
                deleted = cursor.rowcount
                await self._db.execute("DELETE FROM threads WHERE id = ?", (thread_id,))
                await self._db.commit()
                return deleted
            except aiosqlite.Error as e:
                await self._rollback()
                raise StorageUnavailableError(f"Failed to purge thread {thread_id}: {e}") from e

    async def clear(self) -> None:
        async with self._write_lock:
            try:
                await self._db.execute("DELETE FROM events")
                await self._db.execute("DELETE FROM threads")
                await self._db.commit()
            except aiosqlite.Error as e:
                await self._rollback()
                raise StorageUnavailableError(f"Failed to reset storage: {e}") from e

    async def _fetchone(self, sql: str, params: tuple):
        try:
            async with self._db.execute(sql, params) as cursor:
                return await cursor.fetchone()
        except (aiosqlite.Error, ValueError) as e:
            raise StorageUnavailableError(str(e)) from e

    async def _fetchall(self, sql: str, params: tuple):
        try:
            async with self._db.execute(sql, params) as cursor:
                return await cursor.fetchall()
        except (aiosqlite.Error, ValueError) as e:
            raise StorageUnavailableError(str(e)) from e

    async def _rollback(self) -> None:
        try:
            await self._db.rollback()
        except aiosqlite.Error as e:
            logger.warning(f"Rollback failed: {e}")


class Persistence:
    """持久化上下文"""

    def __init__(self):
        self._db: Optional[aiosqlite.Connection] = None
        self._handle: Optional[EventStoreHandle] = None
        self.locator: Optional[str] = None

    @property
    def is_initialized(self) -> bool:
        return self._handle is not None

    async def init(self, locator: str = MEMORY_LOCATOR) -> None:
        """打开数据库并建表（幂等）"""
        if self._handle is not None:
            return
        try:
            if locator != MEMORY_LOCATOR:
                Path(locator).expanduser().parent.mkdir(parents=True, exist_ok=True)
                locator = str(Path(locator).expanduser())
            db = await aiosqlite.connect(locator)
            if locator != MEMORY_LOCATOR:
                await db.execute("PRAGMA journal_mode=WAL")
            await db.execute("PRAGMA foreign_keys=ON")
            await db.executescript(SCHEMA)
            await db.commit()
        except (aiosqlite.Error, OSError) as e:
            raise StorageUnavailableError(f"Cannot open storage at {locator}: {e}") from e

        self._db = db
        self._handle = EventStoreHandle(db)
        self.locator = locator
        logger.info(f"Event store initialized at {locator}")

    async def reset(self) -> None:
        """清空所有线程和事件"""
        await self.get().clear()

    def get(self) -> EventStoreHandle:
        if self._handle is None:
            raise StorageUnavailableError("Persistence has not been initialized")
        return self._handle

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            logger.info("Event store closed.")
        self._db = None
        self._handle = None
