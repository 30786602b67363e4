"""ChatSession -- Session Controller

把 Message Store、Canvas 引擎、身份存储、实时连接与 REST 客户端组装为一个会话：
- open(): 先恢复本地快照（warm cache 立即可用），再后台拉取历史对账
- send(): 乐观插入临时消息，失败时回滚
- fetch_history(): 跨 await 检查会话是否已切换，切换则丢弃结果
"""

import asyncio
import contextlib

import structlog
from convosync.core.canvas_engine import CanvasPatchEngine
from convosync.core.config import SyncConfig
from convosync.core.identity import IdentityStore
from convosync.core.logging_config import bind_session_context
from convosync.core.message_store import MessageStore
from convosync.core.models import ChatState, ConnectionStatus, Identity, Message
from convosync.core.scheduler import TimerScheduler
from convosync.core.store import SnapshotRepository
from convosync.transport import ConnectionFactory, TransportSessionManager, websocket_factory
from ulid import ULID

from .config import ClientConfig
from .exceptions import ClientError, RateLimitedError
from .http import ChatApiClient
from .registry import ConversationRegistry

log = structlog.get_logger()


def derive_title(text: str, max_length: int = 50) -> str:
    """由首条消息生成标题：截断到 max_length，超长时追加省略号"""
    if len(text) > max_length:
        return text[:max_length] + "..."
    return text


class ChatSession:
    """单个聊天组件实例的会话控制器"""

    def __init__(
        self,
        *,
        client_config: ClientConfig,
        sync_config: SyncConfig,
        api: ChatApiClient,
        repository: SnapshotRepository,
        scheduler: TimerScheduler,
        connection_factory: ConnectionFactory = websocket_factory,
        identity_override: Identity | None = None,
    ) -> None:
        self._client_config = client_config
        self._sync_config = sync_config
        self._api = api
        self._repository = repository
        self._scheduler = scheduler

        self.identity = IdentityStore(repository, sync_config, override=identity_override)
        self.messages = MessageStore(repository, scheduler, sync_config)
        self.canvas = CanvasPatchEngine(
            repository,
            scheduler,
            sync_config,
            model_id=client_config.model_id,
        )
        self.registry = ConversationRegistry(api, repository, client_config)
        self.transport = TransportSessionManager(
            connection_factory=connection_factory,
            message_store=self.messages,
            canvas_engine=self.canvas,
            identity_store=self.identity,
            repository=repository,
            scheduler=scheduler,
            config=sync_config,
            refetch_history=self._refetch_if_idle,
        )

        self._conversation_id: str | None = None
        self._fetch_task: asyncio.Task | None = None
        self.error: str | None = None

        self.messages.subscribe(self._derive_title)

    # ---- 对外状态 ----

    @property
    def conversation_id(self) -> str | None:
        return self._conversation_id

    @property
    def state(self) -> ChatState:
        return self.messages.state

    @property
    def status(self) -> ConnectionStatus:
        return self.transport.status

    # ---- 生命周期 ----

    async def start(self) -> str | None:
        """加载身份，打开持久化的活跃会话（没有则创建）"""
        user = await self.identity.load()
        self.messages.current_user = user
        conversation_id = await self.registry.ensure(user)
        if conversation_id is None:
            self.error = "Unable to start a conversation."
            return None
        await self.open(conversation_id)
        return conversation_id

    async def open(self, conversation_id: str) -> None:
        """切换到指定会话

        顺序：拆除旧连接 -> 落盘旧会话待写入 -> 恢复快照 -> 建立新连接 -> 后台对账
        """
        self._cancel_fetch()
        await self.transport.deactivate()
        await self.messages.flush()

        self._conversation_id = conversation_id
        self.error = None
        bind_session_context(conversation_id, self._client_config.model_id)

        await self.registry.select(conversation_id)
        await self.messages.restore(conversation_id)
        await self.canvas.bind(self._client_config.model_id, conversation_id)

        await self.transport.activate(
            conversation_id,
            self._client_config.model_id,
            self._client_config.ws_url,
        )
        self._start_fetch()

    async def new_conversation(self) -> str | None:
        """创建并切换到新会话"""
        conversation_id = await self.registry.create_new(self.identity.user)
        if conversation_id is not None:
            await self.open(conversation_id)
        return conversation_id

    async def close(self) -> None:
        """卸载：拆除连接并落盘全部待写入"""
        self._cancel_fetch()
        await self.transport.deactivate()
        await self.messages.flush()
        log.info("chat_session_closed", conversation_id=self._conversation_id)

    # ---- 历史对账 ----

    def _start_fetch(self) -> None:
        self._fetch_task = asyncio.ensure_future(self.fetch_history())

    def _cancel_fetch(self) -> None:
        task, self._fetch_task = self._fetch_task, None
        if task is not None and not task.done():
            task.cancel()

    async def _refetch_if_idle(self) -> None:
        if self._fetch_task is not None and not self._fetch_task.done():
            return
        await self.fetch_history()

    async def wait_for_fetch(self) -> None:
        """等待后台历史拉取完成"""
        task = self._fetch_task
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def fetch_history(self) -> None:
        """拉取历史并合并进日志

        请求期间会话若已切换，结果直接丢弃；限流错误转化为可展示的 error。
        """
        conversation_id = self._conversation_id
        if not conversation_id:
            return

        try:
            page = await self._api.fetch_history(conversation_id)
        except RateLimitedError as e:
            if conversation_id == self._conversation_id:
                self.error = e.user_message
                self.messages.set_loading(False)
            return
        except ClientError as e:
            if conversation_id == self._conversation_id:
                self.error = str(e)
            return

        if conversation_id != self._conversation_id:
            log.debug("history_discarded_stale", conversation_id=conversation_id)
            return

        self.error = None
        if not page.messages:
            return
        self.messages.set_messages(
            conversation_id,
            [m.model_copy(update={"conversation_id": conversation_id}) for m in page.messages],
            current_user=page.user or self.identity.user,
        )

    # ---- 发送 ----

    async def send(self, text: str) -> Message | None:
        """发送消息

        已有请求在途时忽略本次调用。失败时移除乐观插入的临时消息。

        Returns:
            服务端回显的消息（可能为 None）
        """
        text = text.strip()
        conversation_id = self._conversation_id
        if not text or not conversation_id:
            return None
        if self.messages.state.loading:
            log.debug("send_ignored_loading", conversation_id=conversation_id)
            return None

        self.messages.set_loading(True)
        user = self.identity.user
        temp = Message(
            id=f"{self._sync_config.temp_id_prefix}{ULID()}",
            text=text,
            conversation_id=conversation_id,
            locally_created=True,
            is_sent=True,
            author=Identity(id=user.id, email=user.email, name=user.name, image=user.image),
        )
        window = [*self.messages.messages, temp]
        self.messages.add_message(temp)

        try:
            echo = await self._api.send_message(conversation_id, text, window, user)
        except RateLimitedError as e:
            self._rollback(conversation_id, temp.id)
            self.error = e.user_message
            return None
        except ClientError as e:
            log.warning("message_send_rolled_back", conversation_id=conversation_id, error=str(e))
            self._rollback(conversation_id, temp.id)
            self.error = str(e)
            return None
        finally:
            self.messages.set_loading(False)

        self.error = None
        if echo is not None and conversation_id == self._conversation_id:
            if not echo.conversation_id:
                echo = echo.model_copy(update={"conversation_id": conversation_id})
            self.messages.add_message(echo)
        await self.registry.touch(conversation_id, self.messages.state.title)
        return echo

    def _rollback(self, conversation_id: str, temp_id: str) -> None:
        if conversation_id != self._conversation_id:
            return
        remaining = [m for m in self.messages.messages if m.id != temp_id]
        self.messages.set_messages(conversation_id, remaining, reset=True)
        if not remaining:
            # 标题由失败消息派生，随之撤销
            self.messages.update_title(self._sync_config.default_title)

    # ---- 元数据 ----

    def _derive_title(self, state: ChatState) -> None:
        if state.title != self._sync_config.default_title or not state.messages:
            return
        title = derive_title(state.messages[0].text, self._sync_config.title_max_length)
        if title:
            self.messages.update_title(title)

    async def rename(self, title: str) -> None:
        """修改会话标题并同步索引"""
        self.messages.update_title(title)
        if self._conversation_id:
            await self.registry.touch(self._conversation_id, self.messages.state.title)

    async def reset(self) -> None:
        """清空当前会话：先把索引条目落盘，再重置日志"""
        conversation_id = self._conversation_id
        if not conversation_id:
            return
        if self.messages.messages:
            await self.registry.touch(conversation_id, self.messages.state.title)
        self.messages.reset_chat(conversation_id)
        self.messages.update_notification_count(0)
