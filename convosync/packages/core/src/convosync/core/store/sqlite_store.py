"""SnapshotStore SQLite 实现

单表 snapshots(key, value, updated_at)，每次写入即提交。
使用 aiosqlite 异步操作。
"""

from datetime import UTC, datetime
from pathlib import Path

import aiosqlite

_SNAPSHOTS_DDL = """
CREATE TABLE IF NOT EXISTS snapshots (
    key         TEXT PRIMARY KEY,
    value       TEXT NOT NULL,
    updated_at  TEXT NOT NULL
);
"""


async def init_db(conn: aiosqlite.Connection) -> None:
    """初始化数据库：设置 PRAGMA + 创建表

    Args:
        conn: aiosqlite 数据库连接
    """
    await conn.execute("PRAGMA journal_mode = WAL;")
    await conn.execute("PRAGMA busy_timeout = 5000;")
    await conn.execute(_SNAPSHOTS_DDL)
    await conn.commit()


class SqliteSnapshotStore:
    """SnapshotStore 的 SQLite 实现"""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def get(self, key: str) -> str | None:
        cursor = await self._conn.execute(
            "SELECT value FROM snapshots WHERE key = ?",
            (key,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return row[0]

    async def set(self, key: str, value: str) -> None:
        await self._conn.execute(
            """
            INSERT INTO snapshots (key, value, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                updated_at = excluded.updated_at
            """,
            (key, value, datetime.now(UTC).isoformat()),
        )
        await self._conn.commit()

    async def remove(self, key: str) -> None:
        await self._conn.execute("DELETE FROM snapshots WHERE key = ?", (key,))
        await self._conn.commit()

    async def keys(self, prefix: str = "") -> list[str]:
        """列出键（按前缀筛选，按 key 排序）"""
        cursor = await self._conn.execute(
            "SELECT key FROM snapshots WHERE key LIKE ? ORDER BY key",
            (f"{prefix}%",),
        )
        rows = await cursor.fetchall()
        return [row[0] for row in rows]

    async def close(self) -> None:
        await self._conn.close()


async def create_snapshot_store(db_path: str | Path) -> SqliteSnapshotStore:
    """创建 SQLite 快照存储

    Args:
        db_path: SQLite 数据库文件路径（目录不存在时自动创建）

    Returns:
        已初始化的 SqliteSnapshotStore
    """
    db_dir = Path(db_path).parent
    db_dir.mkdir(parents=True, exist_ok=True)

    conn = await aiosqlite.connect(str(db_path))
    await init_db(conn)
    return SqliteSnapshotStore(conn)
