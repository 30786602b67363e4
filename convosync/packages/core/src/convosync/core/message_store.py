"""Message Store -- 消息日志 + 会话元数据

chat_reducer 负责纯状态变更；MessageStore 负责副作用：
- 消息或标题变化后安排防抖快照写入（每个会话一个 key，尾沿合并）
- ResetChat 删除会话快照（同时取消待写入）
- 建议回复变化后写入独立 key
- 通知订阅者
持久化失败只记录日志，不阻塞内存状态更新。
"""

from collections.abc import Callable
from datetime import UTC, datetime

import structlog

from .config import SyncConfig
from .models.message import ConversationSnapshot, Identity, Message
from .models.state import (
    AddMessage,
    ChatState,
    ResetChat,
    SetLoading,
    SetMessages,
    UpdateMessage,
    UpdateNotificationCount,
    UpdateSuggestions,
    UpdateTitle,
)
from .reducer import chat_reducer
from .scheduler import TimerScheduler
from .store.snapshots import SnapshotRepository, suggestions_key

log = structlog.get_logger()

Listener = Callable[[ChatState], None]


def persist_job_key(conversation_id: str) -> str:
    return f"messages:{conversation_id}"


def suggestions_job_key(conversation_id: str) -> str:
    return f"suggestions:{conversation_id}"


class MessageStore:
    """单个活跃会话的消息存储"""

    def __init__(
        self,
        repository: SnapshotRepository,
        scheduler: TimerScheduler,
        config: SyncConfig,
        current_user: Identity | None = None,
    ) -> None:
        self._repository = repository
        self._scheduler = scheduler
        self._config = config
        self._current_user = current_user
        self._state = ChatState(title=config.default_title)
        self._listeners: list[Listener] = []

    @property
    def state(self) -> ChatState:
        return self._state

    @property
    def messages(self) -> list[Message]:
        return self._state.messages

    @property
    def current_user(self) -> Identity | None:
        return self._current_user

    @current_user.setter
    def current_user(self, identity: Identity | None) -> None:
        self._current_user = identity

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """注册状态变化监听，返回取消函数"""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def dispatch(self, action: object) -> ChatState:
        """应用 action 并执行副作用

        Returns:
            应用后的状态；未产生变化时为原对象
        """
        previous = self._state
        state = chat_reducer(previous, action, self._config, self._current_user)
        if state is previous:
            return previous

        self._state = state
        self._schedule_persistence(previous, state, action)
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception as e:
                log.error("message_store_listener_failed", error=str(e))
        return state

    # ---- 持久化副作用 ----

    def _schedule_persistence(self, previous: ChatState, state: ChatState, action: object) -> None:
        if isinstance(action, ResetChat):
            cid = action.conversation_id
            # 同 key 重新 arm，取消尚未落盘的写入
            self._scheduler.arm(persist_job_key(cid), 0, lambda: self._remove_snapshot(cid))
            return

        cid = state.conversation_id
        if not cid:
            return

        if isinstance(action, UpdateSuggestions):
            suggestions = list(state.suggestions)
            self._scheduler.arm(
                suggestions_job_key(cid),
                0,
                lambda: self._repository.save_suggestions(cid, suggestions),
            )
            return

        changed = state.messages != previous.messages or state.title != previous.title
        if not changed:
            return
        if not state.messages:
            if previous.messages and previous.conversation_id == cid:
                # 日志被清空：以删除覆盖同 key 尚未落盘的旧写入
                self._scheduler.arm(
                    persist_job_key(cid),
                    self._config.persist_debounce_s,
                    lambda: self._repository.remove_conversation(cid),
                )
            return

        snapshot = ConversationSnapshot(
            conversation_id=cid,
            title=state.title,
            messages=list(state.messages),
            last_updated=datetime.now(UTC),
        )
        self._scheduler.arm(
            persist_job_key(cid),
            self._config.persist_debounce_s,
            lambda: self._write_snapshot(snapshot),
        )

    async def _write_snapshot(self, snapshot: ConversationSnapshot) -> None:
        if await self._repository.save_conversation(snapshot):
            log.debug(
                "conversation_snapshot_saved",
                conversation_id=snapshot.conversation_id,
                message_count=len(snapshot.messages),
            )

    async def _remove_snapshot(self, conversation_id: str) -> None:
        await self._repository.remove_conversation(conversation_id)
        await self._repository.remove(suggestions_key(conversation_id))
        await self._repository.remove_tool_activity(conversation_id)
        log.debug("conversation_snapshot_removed", conversation_id=conversation_id)

    async def restore(self, conversation_id: str) -> ConversationSnapshot | None:
        """读取会话快照并替换当前日志（在任何网络请求之前调用）

        无快照时日志清空，标题恢复默认。

        Returns:
            读取到的快照，或 None
        """
        snapshot = await self._repository.load_conversation(conversation_id)
        suggestions = await self._repository.load_suggestions(conversation_id)
        messages = snapshot.messages if snapshot else []
        title = snapshot.title if snapshot and snapshot.title else self._config.default_title

        self.dispatch(SetMessages(conversation_id=conversation_id, messages=messages, reset=True))
        self.dispatch(UpdateTitle(title=title))
        self.dispatch(UpdateSuggestions(suggestions=suggestions))
        log.debug(
            "conversation_restored",
            conversation_id=conversation_id,
            message_count=len(messages),
            cached=snapshot is not None,
        )
        return snapshot

    async def flush(self) -> None:
        """立即执行所有待写入"""
        await self._scheduler.flush()

    # ---- action 便捷入口 ----

    def set_messages(
        self,
        conversation_id: str,
        messages: list[Message],
        reset: bool = False,
        current_user: Identity | None = None,
    ) -> ChatState:
        return self.dispatch(
            SetMessages(
                conversation_id=conversation_id,
                messages=messages,
                reset=reset,
                current_user=current_user,
            )
        )

    def add_message(self, message: Message) -> ChatState:
        return self.dispatch(AddMessage(message=message))

    def update_message(self, message: Message) -> ChatState:
        return self.dispatch(UpdateMessage(message=message))

    def reset_chat(self, conversation_id: str) -> ChatState:
        return self.dispatch(ResetChat(conversation_id=conversation_id))

    def update_title(self, title: str) -> ChatState:
        return self.dispatch(UpdateTitle(title=title))

    def update_suggestions(self, suggestions: list[str]) -> ChatState:
        return self.dispatch(UpdateSuggestions(suggestions=suggestions))

    def update_notification_count(self, count: int) -> ChatState:
        return self.dispatch(UpdateNotificationCount(count=count))

    def set_loading(self, loading: bool) -> ChatState:
        return self.dispatch(SetLoading(loading=loading))
