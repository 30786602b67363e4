"""SnapshotRepository -- 带命名空间的快照读写

包装任意 SnapshotStore：
- 每次访问都有保护，存储故障只记录日志，调用方继续纯内存运行
- 通过 pydantic TypeAdapter 序列化 / 反序列化
- 损坏或结构不符的快照视为不存在，并删除该键

键命名空间:
    chat:{conversation_id}:history           ConversationSnapshot
    chat:{conversation_id}:suggestions       list[str]
    chat:{conversation_id}:tool              ToolActivity（进行中的工具调用）
    model:{model_id}:starters                list[ConversationStarter]
    model:{model_id}:conversation:{scope}    当前会话 ID（scope = standard | admin）
    model:{model_id}:conversations           list[HistoryItem]
    canvas:{model_id}:{conversation_id}      list[Canvas]
    canvas-versions:{model_id}:{conversation_id}  dict[canvas_id, list[CanvasVersion]]
    user                                     Identity
"""

from typing import Any, TypeVar

import structlog
from pydantic import TypeAdapter, ValidationError

from ..models.canvas import Canvas, CanvasVersion
from ..models.message import (
    ConversationSnapshot,
    ConversationStarter,
    HistoryItem,
    Identity,
    ToolActivity,
)
from .protocols import SnapshotStore

log = structlog.get_logger()

T = TypeVar("T")

_SNAPSHOT = TypeAdapter(ConversationSnapshot)
_STRINGS = TypeAdapter(list[str])
_STARTERS = TypeAdapter(list[ConversationStarter])
_HISTORY = TypeAdapter(list[HistoryItem])
_CANVASES = TypeAdapter(list[Canvas])
_VERSIONS = TypeAdapter(dict[str, list[CanvasVersion]])
_IDENTITY = TypeAdapter(Identity)
_TOOL = TypeAdapter(ToolActivity)

USER_KEY = "user"


def history_key(conversation_id: str) -> str:
    return f"chat:{conversation_id}:history"


def suggestions_key(conversation_id: str) -> str:
    return f"chat:{conversation_id}:suggestions"


def tool_activity_key(conversation_id: str) -> str:
    return f"chat:{conversation_id}:tool"


def starters_key(model_id: str) -> str:
    return f"model:{model_id}:starters"


def active_conversation_key(model_id: str, admin: bool = False) -> str:
    scope = "admin" if admin else "standard"
    return f"model:{model_id}:conversation:{scope}"


def history_index_key(model_id: str) -> str:
    return f"model:{model_id}:conversations"


def canvas_key(model_id: str, conversation_id: str) -> str:
    return f"canvas:{model_id}:{conversation_id}"


def canvas_versions_key(model_id: str, conversation_id: str) -> str:
    return f"canvas-versions:{model_id}:{conversation_id}"


class SnapshotRepository:
    """快照仓库"""

    def __init__(self, store: SnapshotStore) -> None:
        self._store = store

    # ---- 底层受保护访问 ----

    async def read_raw(self, key: str) -> str | None:
        try:
            return await self._store.get(key)
        except Exception as e:
            log.warning("snapshot_read_failed", key=key, error=str(e))
            return None

    async def write_raw(self, key: str, value: str) -> bool:
        try:
            await self._store.set(key, value)
        except Exception as e:
            log.warning("snapshot_write_failed", key=key, error=str(e))
            return False
        return True

    async def remove(self, key: str) -> bool:
        try:
            await self._store.remove(key)
        except Exception as e:
            log.warning("snapshot_remove_failed", key=key, error=str(e))
            return False
        return True

    async def _load(self, key: str, adapter: TypeAdapter[T]) -> T | None:
        raw = await self.read_raw(key)
        if raw is None:
            return None
        try:
            return adapter.validate_json(raw)
        except ValidationError as e:
            log.warning(
                "snapshot_corrupt",
                key=key,
                error_count=e.error_count(),
            )
            await self.remove(key)
            return None

    async def _save(self, key: str, adapter: TypeAdapter[Any], value: Any) -> bool:
        return await self.write_raw(key, adapter.dump_json(value).decode())

    # ---- 会话快照 ----

    async def load_conversation(self, conversation_id: str) -> ConversationSnapshot | None:
        snapshot = await self._load(history_key(conversation_id), _SNAPSHOT)
        if snapshot is not None and snapshot.conversation_id != conversation_id:
            log.warning(
                "snapshot_conversation_mismatch",
                key=history_key(conversation_id),
                stored=snapshot.conversation_id,
            )
            return None
        return snapshot

    async def save_conversation(self, snapshot: ConversationSnapshot) -> bool:
        return await self._save(history_key(snapshot.conversation_id), _SNAPSHOT, snapshot)

    async def remove_conversation(self, conversation_id: str) -> bool:
        return await self.remove(history_key(conversation_id))

    async def load_suggestions(self, conversation_id: str) -> list[str]:
        return await self._load(suggestions_key(conversation_id), _STRINGS) or []

    async def save_suggestions(self, conversation_id: str, suggestions: list[str]) -> bool:
        return await self._save(suggestions_key(conversation_id), _STRINGS, suggestions)

    async def load_tool_activity(self, conversation_id: str) -> ToolActivity | None:
        return await self._load(tool_activity_key(conversation_id), _TOOL)

    async def save_tool_activity(self, conversation_id: str, tool: ToolActivity) -> bool:
        return await self._save(tool_activity_key(conversation_id), _TOOL, tool)

    async def remove_tool_activity(self, conversation_id: str) -> bool:
        return await self.remove(tool_activity_key(conversation_id))

    # ---- 模型级数据 ----

    async def load_starters(self, model_id: str) -> list[ConversationStarter]:
        return await self._load(starters_key(model_id), _STARTERS) or []

    async def save_starters(self, model_id: str, starters: list[ConversationStarter]) -> bool:
        return await self._save(starters_key(model_id), _STARTERS, starters)

    async def load_active_conversation(self, model_id: str, admin: bool = False) -> str | None:
        value = await self.read_raw(active_conversation_key(model_id, admin))
        return value or None

    async def save_active_conversation(
        self,
        model_id: str,
        conversation_id: str,
        admin: bool = False,
    ) -> bool:
        return await self.write_raw(active_conversation_key(model_id, admin), conversation_id)

    async def remove_active_conversation(self, model_id: str, admin: bool = False) -> bool:
        return await self.remove(active_conversation_key(model_id, admin))

    async def load_history_index(self, model_id: str) -> list[HistoryItem]:
        return await self._load(history_index_key(model_id), _HISTORY) or []

    async def save_history_index(self, model_id: str, items: list[HistoryItem]) -> bool:
        return await self._save(history_index_key(model_id), _HISTORY, items)

    # ---- Canvas ----

    async def load_canvases(self, model_id: str, conversation_id: str) -> list[Canvas]:
        return await self._load(canvas_key(model_id, conversation_id), _CANVASES) or []

    async def save_canvases(
        self,
        model_id: str,
        conversation_id: str,
        canvases: list[Canvas],
    ) -> bool:
        return await self._save(canvas_key(model_id, conversation_id), _CANVASES, canvases)

    async def load_canvas_versions(
        self,
        model_id: str,
        conversation_id: str,
    ) -> dict[str, list[CanvasVersion]]:
        key = canvas_versions_key(model_id, conversation_id)
        return await self._load(key, _VERSIONS) or {}

    async def save_canvas_versions(
        self,
        model_id: str,
        conversation_id: str,
        versions: dict[str, list[CanvasVersion]],
    ) -> bool:
        key = canvas_versions_key(model_id, conversation_id)
        return await self._save(key, _VERSIONS, versions)

    # ---- 身份 ----

    async def load_identity(self) -> Identity | None:
        return await self._load(USER_KEY, _IDENTITY)

    async def save_identity(self, identity: Identity) -> bool:
        return await self._save(USER_KEY, _IDENTITY, identity)

    async def remove_identity(self) -> bool:
        return await self.remove(USER_KEY)
