"""SnapshotStore Protocol 接口定义

键值快照存储：字符串键、字符串值。实现可能随时不可用，
调用方（SnapshotRepository）负责捕获失败并降级为纯内存运行。
"""

from typing import Protocol


class SnapshotStore(Protocol):
    """快照存储接口"""

    async def get(self, key: str) -> str | None:
        """读取键值，不存在返回 None"""
        ...

    async def set(self, key: str, value: str) -> None:
        """写入键值（同键最后写入者胜出）"""
        ...

    async def remove(self, key: str) -> None:
        """删除键（不存在时无操作）"""
        ...
