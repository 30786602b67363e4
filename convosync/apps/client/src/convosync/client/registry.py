"""ConversationRegistry -- 每个模型的活跃会话与会话索引

活跃会话 ID 按模型持久化，管理员与普通用户使用独立命名空间。
create_new() 以锁保护：已有创建请求在途时，新的调用直接返回 None。
"""

import asyncio
from datetime import UTC, datetime

import structlog
from convosync.core.models import HistoryItem, Identity
from convosync.core.store import SnapshotRepository

from .config import ClientConfig
from .exceptions import ClientError
from .http import ChatApiClient

log = structlog.get_logger()


class ConversationRegistry:
    """会话注册表"""

    def __init__(
        self,
        api: ChatApiClient,
        repository: SnapshotRepository,
        config: ClientConfig,
    ) -> None:
        self._api = api
        self._repository = repository
        self._config = config
        self._creating = asyncio.Lock()

    @property
    def model_id(self) -> str:
        return self._config.model_id

    async def active(self) -> str | None:
        return await self._repository.load_active_conversation(self.model_id, self._config.admin)

    async def select(self, conversation_id: str) -> None:
        await self._repository.save_active_conversation(
            self.model_id, conversation_id, self._config.admin
        )

    async def clear(self) -> None:
        """清除持久化的活跃会话"""
        await self._repository.remove_active_conversation(self.model_id, self._config.admin)

    async def create_new(self, user: Identity | None = None) -> str | None:
        """创建新会话并设为活跃

        Returns:
            新会话 ID；创建失败或已有创建在途时返回 None
        """
        if self._creating.locked():
            log.debug("conversation_create_in_flight", model_id=self.model_id)
            return None

        async with self._creating:
            try:
                conversation_id = await self._api.create_conversation(user)
            except ClientError as e:
                log.warning("conversation_create_failed", model_id=self.model_id, error=str(e))
                return None

            await self.select(conversation_id)
            await self.touch(conversation_id)
            log.info("conversation_created", conversation_id=conversation_id, model_id=self.model_id)
            return conversation_id

    async def ensure(self, user: Identity | None = None) -> str | None:
        """返回活跃会话，没有则创建"""
        return await self.active() or await self.create_new(user)

    # ---- 会话索引 ----

    async def history(self) -> list[HistoryItem]:
        """会话索引，最近更新的在前"""
        return await self._repository.load_history_index(self.model_id)

    async def touch(self, conversation_id: str, title: str | None = None) -> HistoryItem:
        """新增或更新索引条目并移到最前；超出 history_limit 的旧条目被淘汰"""
        items = await self._repository.load_history_index(self.model_id)
        existing = next((item for item in items if item.id == conversation_id), None)
        entry = HistoryItem(
            id=conversation_id,
            title=title or (existing.title if existing else ""),
            last_updated=datetime.now(UTC),
        )
        items = [entry, *(item for item in items if item.id != conversation_id)]
        items = items[: self._config.history_limit]
        await self._repository.save_history_index(self.model_id, items)
        return entry

    async def forget(self, conversation_id: str) -> None:
        """从索引中移除会话"""
        items = await self._repository.load_history_index(self.model_id)
        remaining = [item for item in items if item.id != conversation_id]
        if len(remaining) != len(items):
            await self._repository.save_history_index(self.model_id, remaining)
