"""CLI 入口模块 -- python -m convosync.core <command>

支持的命令：
  list-snapshots [prefix]        列出快照键
  clear-conversation <id>        删除会话快照（消息 + 建议回复）
"""

import asyncio
import sys

from .config import get_db_path
from .logging_config import setup_logging

_USAGE = """用法: python -m convosync.core <command>
命令:
  list-snapshots [prefix]        列出快照键
  clear-conversation <id>        删除会话快照（消息 + 建议回复）"""


def main() -> None:
    """CLI 主入口"""
    setup_logging()
    if len(sys.argv) < 2:
        print(_USAGE)
        sys.exit(1)

    command = sys.argv[1]

    if command == "list-snapshots":
        prefix = sys.argv[2] if len(sys.argv) > 2 else ""
        asyncio.run(list_snapshots(prefix))
    elif command == "clear-conversation" and len(sys.argv) > 2:
        asyncio.run(clear_conversation(sys.argv[2]))
    else:
        print(f"未知命令: {command}")
        print(_USAGE)
        sys.exit(1)


async def list_snapshots(prefix: str = "") -> None:
    """列出快照键"""
    from .store import create_snapshot_store

    db_path = get_db_path()
    print(f"数据库路径: {db_path}")

    store = await create_snapshot_store(db_path)
    try:
        keys = await store.keys(prefix)
        for key in keys:
            print(key)
        print(f"共 {len(keys)} 个快照")
    finally:
        await store.close()


async def clear_conversation(conversation_id: str) -> None:
    """删除会话快照"""
    from .store import SnapshotRepository, create_snapshot_store
    from .store.snapshots import suggestions_key

    store = await create_snapshot_store(get_db_path())
    try:
        repository = SnapshotRepository(store)
        await repository.remove_conversation(conversation_id)
        await repository.remove(suggestions_key(conversation_id))
        await repository.remove_tool_activity(conversation_id)
        print(f"已删除会话快照: {conversation_id}")
    finally:
        await store.close()


if __name__ == "__main__":
    main()
