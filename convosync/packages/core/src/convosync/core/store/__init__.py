"""convosync Core Store -- 快照持久化

SnapshotStore 实现（内存 / SQLite）与带命名空间的 SnapshotRepository。
"""

from .memory_store import MemorySnapshotStore
from .protocols import SnapshotStore
from .snapshots import SnapshotRepository
from .sqlite_store import SqliteSnapshotStore, create_snapshot_store, init_db

__all__ = [
    "SnapshotStore",
    "MemorySnapshotStore",
    "SqliteSnapshotStore",
    "SnapshotRepository",
    "create_snapshot_store",
    "init_db",
]
