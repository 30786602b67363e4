"""TransportSessionManager -- 实时连接生命周期

职责：
1. 每个管理器实例至多持有一个连接；建立新连接前总是先完整拆除旧连接
   （先注销全部处理函数，再关闭连接，最后清空引用）
2. 前置条件（会话 ID / 模型 ID / 端点）缺失时强制 DISCONNECTED，不发起连接
3. 连接错误只体现为状态（ERROR），按指数退避有限次重连，耗尽后 FAILED
4. 某次激活中首次连接成功且本地日志为空时触发一次历史拉取；重连不再触发
5. 入站事件经 codec 解码后按会话过滤，再分发到 Message Store / Canvas 引擎
6. 进行中的工具调用写入快照，重新激活同一会话时恢复
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from convosync.core.canvas_engine import CanvasPatchEngine
from convosync.core.config import SyncConfig
from convosync.core.dedup import compute_is_sent
from convosync.core.identity import IdentityStore
from convosync.core.message_store import MessageStore
from convosync.core.models import (
    CanvasLinePatchEvent,
    CanvasReplaceEvent,
    ConnectionStatus,
    ConversationStarter,
    ConversationStartersEvent,
    IdentityUpgradeEvent,
    LiveEvent,
    LiveEventType,
    NewMessageEvent,
    SuggestionsEvent,
    ToolActivity,
    ToolActivityEvent,
    TypingEvent,
    TypingUser,
    validate_transition,
)
from convosync.core.scheduler import TimerScheduler
from convosync.core.store import SnapshotRepository
from pydantic import BaseModel

from .codec import decode_event
from .connection import CONNECT, CONNECT_ERROR, DISCONNECT, ConnectionFactory, Handshake, LiveConnection
from .exceptions import TransportError
from .typing_indicator import TypingTracker

log = structlog.get_logger()

StatusListener = Callable[[ConnectionStatus], None]

RECONNECT_JOB = "transport:reconnect"
RESTART_JOB = "transport:restart"
REFETCH_JOB = "transport:refetch"


class SessionTarget(BaseModel):
    """一次激活的连接目标"""

    conversation_id: str
    model_id: str
    endpoint: str


class TransportSessionManager:
    """实时连接会话管理器"""

    def __init__(
        self,
        *,
        connection_factory: ConnectionFactory,
        message_store: MessageStore,
        canvas_engine: CanvasPatchEngine,
        identity_store: IdentityStore,
        repository: SnapshotRepository,
        scheduler: TimerScheduler,
        config: SyncConfig,
        refetch_history: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        self._factory = connection_factory
        self._messages = message_store
        self._canvas = canvas_engine
        self._identity = identity_store
        self._repository = repository
        self._scheduler = scheduler
        self._config = config
        self.refetch_history = refetch_history

        self._lock = asyncio.Lock()
        self._connection: LiveConnection | None = None
        self._target: SessionTarget | None = None
        self._status = ConnectionStatus.DISCONNECTED
        self._status_listeners: list[StatusListener] = []
        self._attempt = 0
        self._initial_connect_done = False

        self._starters: list[ConversationStarter] = []
        self._active_tool: ToolActivity | None = None
        self._typing = TypingTracker(scheduler, config)

    # ---- 对外状态 ----

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def connection(self) -> LiveConnection | None:
        return self._connection

    @property
    def conversation_id(self) -> str | None:
        return self._target.conversation_id if self._target else None

    @property
    def conversation_starters(self) -> list[ConversationStarter]:
        return list(self._starters)

    @property
    def active_tool(self) -> ToolActivity | None:
        return self._active_tool

    @property
    def typing_users(self) -> list[TypingUser]:
        return self._typing.users

    def add_status_listener(self, listener: StatusListener) -> Callable[[], None]:
        self._status_listeners.append(listener)

        def remove() -> None:
            if listener in self._status_listeners:
                self._status_listeners.remove(listener)

        return remove

    def _set_status(self, status: ConnectionStatus) -> None:
        if status == self._status:
            return
        if not validate_transition(self._status, status):
            log.warning(
                "transport_unexpected_transition",
                from_status=self._status,
                to_status=status,
            )
        log.debug("transport_status", from_status=self._status, to_status=status)
        self._status = status
        for listener in list(self._status_listeners):
            try:
                listener(status)
            except Exception as e:
                log.error("transport_status_listener_failed", error=str(e))

    # ---- 生命周期 ----

    async def activate(
        self,
        conversation_id: str | None,
        model_id: str | None,
        endpoint: str | None,
    ) -> None:
        """激活（或切换到）指定会话的连接

        总是先完整拆除当前连接；前置条件缺失时停留在 DISCONNECTED。
        """
        async with self._lock:
            self._cancel_jobs()
            await self._teardown()
            self._typing.clear()
            self._active_tool = None
            self._set_status(ConnectionStatus.DISCONNECTED)

            if not conversation_id or not model_id or not endpoint:
                self._target = None
                log.debug(
                    "transport_prerequisites_missing",
                    conversation_id=conversation_id,
                    model_id=model_id,
                    has_endpoint=bool(endpoint),
                )
                return

            if self._target is None or self._target.model_id != model_id:
                self._starters = await self._repository.load_starters(model_id)

            self._target = SessionTarget(
                conversation_id=conversation_id,
                model_id=model_id,
                endpoint=endpoint,
            )
            self._active_tool = await self._repository.load_tool_activity(conversation_id)
            self._attempt = 0
            self._initial_connect_done = False
            self._set_status(ConnectionStatus.CONNECTING)
            await self._open()

    async def deactivate(self) -> None:
        """卸载：拆除连接并停止一切重连"""
        async with self._lock:
            self._cancel_jobs()
            await self._teardown()
            self._typing.clear()
            self._target = None
            self._set_status(ConnectionStatus.DISCONNECTED)

    async def reconnect(self) -> None:
        """显式重连当前会话（FAILED 后由用户触发）"""
        target = self._target
        if target is None:
            return
        await self.activate(target.conversation_id, target.model_id, target.endpoint)

    def _cancel_jobs(self) -> None:
        for key in (RECONNECT_JOB, RESTART_JOB, REFETCH_JOB):
            self._scheduler.cancel(key)

    async def _teardown(self) -> None:
        """拆除当前连接：注销处理函数 -> 关闭连接 -> 清空引用"""
        connection, self._connection = self._connection, None
        if connection is None:
            return
        connection.remove_all_listeners()
        try:
            await connection.disconnect()
        except Exception as e:
            log.warning("transport_disconnect_failed", error=str(e))

    def _handshake(self, target: SessionTarget) -> Handshake:
        user = self._identity.user
        anonymous = self._config.anonymous
        return Handshake(
            chat_instance_id=target.conversation_id,
            user_id=user.id or anonymous.id or "",
            user_email=user.email or anonymous.email,
            user_name=user.name or anonymous.name,
            token=user.token,
        )

    async def _open(self) -> None:
        target = self._target
        if target is None:
            return
        connection = self._factory(target.endpoint, self._handshake(target))
        self._connection = connection

        connection.on(CONNECT, lambda _: self._on_connect(connection))
        connection.on(DISCONNECT, lambda reason: self._on_disconnect(connection, reason))
        connection.on(CONNECT_ERROR, lambda error: self._on_connect_error(connection, error))
        for event_name in LiveEventType:
            connection.on(
                event_name,
                lambda data, name=event_name: self._on_event(connection, name, data),
            )

        await connection.connect()

    # ---- 连接回调 ----

    async def _on_connect(self, connection: LiveConnection) -> None:
        if connection is not self._connection or self._target is None:
            return
        target = self._target
        user = self._identity.user
        try:
            await connection.emit(
                "join",
                {
                    "chatInstanceId": target.conversation_id,
                    "userId": user.id,
                    "userEmail": user.email,
                    "userName": user.name,
                },
            )
        except TransportError as e:
            log.warning("transport_join_failed", error=str(e))
            self._set_status(ConnectionStatus.ERROR)
            self._schedule_reconnect()
            return

        self._attempt = 0
        self._set_status(ConnectionStatus.CONNECTED)
        await log.ainfo("transport_connected", conversation_id=target.conversation_id)

        if not self._initial_connect_done:
            self._initial_connect_done = True
            if not self._messages.messages and self.refetch_history is not None:
                self._scheduler.arm(REFETCH_JOB, 0, self.refetch_history)

    def _on_disconnect(self, connection: LiveConnection, reason: Any) -> None:
        if connection is not self._connection:
            return
        log.info("transport_disconnected", reason=str(reason))
        self._connection = None
        connection.remove_all_listeners()
        self._set_status(ConnectionStatus.DISCONNECTED)
        self._schedule_reconnect()

    def _on_connect_error(self, connection: LiveConnection, error: Any) -> None:
        if connection is not self._connection:
            return
        log.warning("transport_connect_error", error=str(error), attempt=self._attempt)
        self._connection = None
        connection.remove_all_listeners()
        self._set_status(ConnectionStatus.ERROR)
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        policy = self._config.reconnect
        if self._attempt >= policy.max_attempts:
            log.error("transport_reconnect_exhausted", attempts=self._attempt)
            self._set_status(ConnectionStatus.FAILED)
            return
        delay = policy.delay_for(self._attempt)
        self._attempt += 1
        log.info("transport_reconnect_scheduled", attempt=self._attempt, delay_s=delay)
        self._scheduler.arm(RECONNECT_JOB, delay, self._reconnect_attempt)

    async def _reconnect_attempt(self) -> None:
        async with self._lock:
            if self._target is None:
                return
            await self._teardown()
            self._set_status(ConnectionStatus.RECONNECTING)
            await self._open()

    async def _restart(self) -> None:
        """以新身份重建连接（不重置首连标记）"""
        async with self._lock:
            if self._target is None:
                return
            await self._teardown()
            self._attempt = 0
            self._set_status(ConnectionStatus.RECONNECTING)
            await self._open()

    # ---- 入站事件 ----

    async def _on_event(self, connection: LiveConnection, name: str, data: Any) -> None:
        if connection is not self._connection:
            return
        event = decode_event(name, data)
        if event is None:
            return
        if event.conversation_id != self.conversation_id:
            log.debug(
                "live_event_foreign_conversation",
                event_name=name,
                conversation_id=event.conversation_id,
            )
            return
        await self.handle_event(event)

    async def handle_event(self, event: LiveEvent) -> None:
        """将已解码、已过滤的事件分发到对应组件"""
        match event:
            case NewMessageEvent(message=message):
                if not message.conversation_id:
                    message = message.model_copy(update={"conversation_id": event.conversation_id})
                is_sent = compute_is_sent(message, self._identity.user, self._config)
                self._messages.add_message(message.model_copy(update={"is_sent": is_sent}))
                if self._active_tool is not None:
                    # 回复到达即工具调用结束
                    self._active_tool = None
                    await self._repository.remove_tool_activity(event.conversation_id)
            case TypingEvent():
                self._typing.update(event.to_typing_user())
            case SuggestionsEvent(suggestions=suggestions):
                self._messages.update_suggestions(suggestions)
            case ConversationStartersEvent(conversation_starters=starters):
                if starters and self._target is not None:
                    self._starters = list(starters)
                    await self._repository.save_starters(self._target.model_id, self._starters)
            case IdentityUpgradeEvent():
                await self._upgrade_identity(event)
            case ToolActivityEvent(tool=tool):
                self._active_tool = tool
                await self._repository.save_tool_activity(event.conversation_id, tool)
            case CanvasReplaceEvent():
                self._canvas.replace(event.canvas_id, event.title, event.content)
            case CanvasLinePatchEvent():
                self._canvas.apply_live_patch(event.canvas_id, event.updates)

    async def _upgrade_identity(self, event: IdentityUpgradeEvent) -> None:
        if not event.is_complete or event.user is None:
            log.warning("identity_upgrade_incomplete", conversation_id=event.conversation_id)
            user = await self._identity.revert_to_anonymous()
            self._messages.current_user = user
            return

        user = await self._identity.set(event.user.model_copy(update={"token": event.token}))
        self._messages.current_user = user
        # 关闭当前连接，重连时握手携带新身份
        self._scheduler.arm(RESTART_JOB, 0, self._restart)
