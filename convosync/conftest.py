"""全局 pytest 配置 -- 同步配置、虚拟时钟调度器、快照存储、假连接 fixture"""

import asyncio
import inspect
from collections import defaultdict
from collections.abc import AsyncGenerator, Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import httpx
import pytest
import pytest_asyncio
from convosync.client.config import ClientConfig
from convosync.client.http import ChatApiClient
from convosync.client.session import ChatSession
from convosync.core.canvas_engine import CanvasPatchEngine
from convosync.core.config import SyncConfig
from convosync.core.identity import IdentityStore
from convosync.core.message_store import MessageStore
from convosync.core.models import Identity, Message
from convosync.core.scheduler import ManualScheduler
from convosync.core.store import (
    MemorySnapshotStore,
    SnapshotRepository,
    SqliteSnapshotStore,
    create_snapshot_store,
)
from convosync.transport import CONNECT, CONNECT_ERROR, DISCONNECT, Handshake, NotConnectedError
from pydantic import SecretStr

BASE_TS = datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)

ALICE = Identity(id="user-alice", email="alice@example.com", name="Alice")
BOB = Identity(id="user-bob", email="bob@example.com", name="Bob")
AI = Identity(id="ai", name="Assistant", role="BOT")


@pytest.fixture
def sync_config() -> SyncConfig:
    return SyncConfig()


@pytest.fixture
def scheduler() -> ManualScheduler:
    """虚拟时钟调度器"""
    return ManualScheduler()


@pytest.fixture
def memory_store() -> MemorySnapshotStore:
    return MemorySnapshotStore()


@pytest.fixture
def repository(memory_store: MemorySnapshotStore) -> SnapshotRepository:
    return SnapshotRepository(memory_store)


@pytest_asyncio.fixture
async def tmp_db_path(tmp_path: Path) -> Path:
    """提供临时 SQLite 数据库路径"""
    return tmp_path / "sqlite" / "snapshots.db"


@pytest_asyncio.fixture
async def sqlite_store(tmp_db_path: Path) -> AsyncGenerator[SqliteSnapshotStore, None]:
    """提供已初始化的临时 SQLite 快照存储"""
    store = await create_snapshot_store(tmp_db_path)
    yield store
    await store.close()


@pytest.fixture
def make_message() -> Callable[..., Message]:
    """消息工厂：offset_s 为相对 BASE_TS 的秒数"""

    def _make(
        message_id: str,
        text: str = "hello",
        author: Identity | None = ALICE,
        offset_s: float = 0.0,
        conversation_id: str = "chat-1",
        local: bool = False,
    ) -> Message:
        ts = BASE_TS + timedelta(seconds=offset_s)
        return Message(
            id=message_id,
            text=text,
            conversation_id=conversation_id,
            created_at=ts,
            updated_at=ts,
            locally_created=local,
            author=author,
        )

    return _make


class FakeConnection:
    """内存中的 LiveConnection，所有调用记入共享 journal"""

    def __init__(
        self,
        serial: int,
        url: str,
        handshake: Handshake,
        journal: list[tuple[int, str]],
        fail_connect: bool = False,
        fail_emit: bool = False,
    ) -> None:
        self.serial = serial
        self.url = url
        self.handshake = handshake
        self.journal = journal
        self.fail_connect = fail_connect
        self.fail_emit = fail_emit
        self.handlers: dict[str, list[Any]] = defaultdict(list)
        self.emitted: list[tuple[str, dict[str, Any]]] = []
        self.closed = False
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    def on(self, event: str, handler: Any) -> None:
        self.handlers[event].append(handler)

    def remove_all_listeners(self) -> None:
        self.journal.append((self.serial, "remove_all_listeners"))
        self.handlers.clear()

    async def connect(self) -> None:
        self.journal.append((self.serial, "connect"))
        if self.fail_connect:
            await self.fire(CONNECT_ERROR, OSError("connection refused"))
            return
        self._connected = True
        await self.fire(CONNECT, None)

    async def emit(self, event: str, data: dict[str, Any]) -> None:
        if not self._connected or self.fail_emit:
            raise NotConnectedError(event)
        self.emitted.append((event, data))

    async def disconnect(self) -> None:
        self.journal.append((self.serial, "disconnect"))
        self._connected = False
        self.closed = True

    async def fire(self, event: str, data: Any) -> None:
        for handler in list(self.handlers.get(event, [])):
            result = handler(data)
            if inspect.isawaitable(result):
                await result

    async def push(self, event: str, data: Any) -> None:
        """模拟服务端推送"""
        await self.fire(event, data)

    async def drop(self, reason: str = "transport close") -> None:
        """模拟连接意外断开"""
        self._connected = False
        await self.fire(DISCONNECT, reason)


class FakeConnectionFactory:
    """记录创建过的连接；fail_connects 控制接下来失败的连接次数"""

    def __init__(self) -> None:
        self.connections: list[FakeConnection] = []
        self.journal: list[tuple[int, str]] = []
        self.fail_connects = 0
        self.fail_emit = False

    def __call__(self, url: str, handshake: Handshake) -> FakeConnection:
        fail = self.fail_connects > 0
        if fail:
            self.fail_connects -= 1
        connection = FakeConnection(
            len(self.connections),
            url,
            handshake,
            self.journal,
            fail_connect=fail,
            fail_emit=self.fail_emit,
        )
        self.connections.append(connection)
        return connection

    @property
    def latest(self) -> FakeConnection:
        return self.connections[-1]

    @property
    def open_connections(self) -> list[FakeConnection]:
        return [c for c in self.connections if c.connected]


@pytest.fixture
def factory() -> FakeConnectionFactory:
    return FakeConnectionFactory()



@pytest.fixture
def message_store(
    repository: SnapshotRepository,
    scheduler: ManualScheduler,
    sync_config: SyncConfig,
) -> MessageStore:
    return MessageStore(repository, scheduler, sync_config)


@pytest.fixture
def canvas_engine(
    repository: SnapshotRepository,
    scheduler: ManualScheduler,
    sync_config: SyncConfig,
) -> CanvasPatchEngine:
    return CanvasPatchEngine(
        repository,
        scheduler,
        sync_config,
        model_id="model-1",
        conversation_id="chat-1",
    )


@pytest.fixture
def identity_store(repository: SnapshotRepository, sync_config: SyncConfig) -> IdentityStore:
    return IdentityStore(repository, sync_config)


def server_message(
    message_id: str,
    text: str = "hello",
    author: Identity | None = ALICE,
    offset_s: float = 0.0,
    conversation_id: str = "chat-1",
) -> dict[str, Any]:
    """服务端线上格式的消息"""
    ts = (BASE_TS + timedelta(seconds=offset_s)).isoformat()
    return {
        "id": message_id,
        "text": text,
        "chatInstanceId": conversation_id,
        "created_at": ts,
        "updated_at": ts,
        "user": author.model_dump(exclude_none=True) if author else None,
    }


class ApiStub:
    """REST 协作方桩：按路径返回预设响应，记录全部请求

    gate(path) 返回 (entered, release)：请求到达时 set entered，
    等待 release 后才返回，用于构造跨 await 的竞态。
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.responses: dict[str, tuple[int, Any]] = {}
        self._gates: dict[str, tuple[asyncio.Event, asyncio.Event]] = {}

    def respond(self, path: str, status: int = 200, body: Any = None) -> None:
        self.responses[path] = (status, body)

    def gate(self, path: str) -> tuple[asyncio.Event, asyncio.Event]:
        self._gates[path] = (asyncio.Event(), asyncio.Event())
        return self._gates[path]

    def calls(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if gate := self._gates.get(path):
            entered, release = gate
            entered.set()
            await release.wait()

        if path in self.responses:
            status, body = self.responses[path]
        elif path.startswith("/api/chat/history/"):
            status, body = 200, {"messages": []}
        elif path == "/api/chat":
            status, body = 200, {}
        else:
            status, body = 404, {"error": "not found"}

        if isinstance(body, str):
            return httpx.Response(status, text=body)
        return httpx.Response(status, json=body)


@pytest.fixture
def client_config() -> ClientConfig:
    return ClientConfig(
        api_url="https://api.example.com",
        ws_url="wss://api.example.com/live",
        api_token=SecretStr("app-token"),
        model_id="model-1",
    )


@pytest.fixture
def api_stub() -> ApiStub:
    return ApiStub()


@pytest_asyncio.fixture
async def api_client(
    client_config: ClientConfig, api_stub: ApiStub
) -> AsyncGenerator[ChatApiClient, None]:
    client = ChatApiClient(client_config, transport=httpx.MockTransport(api_stub))
    yield client
    await client.close()


@pytest.fixture
def chat_session(
    client_config: ClientConfig,
    sync_config: SyncConfig,
    api_client: ChatApiClient,
    repository: SnapshotRepository,
    scheduler: ManualScheduler,
    factory: FakeConnectionFactory,
) -> ChatSession:
    return ChatSession(
        client_config=client_config,
        sync_config=sync_config,
        api=api_client,
        repository=repository,
        scheduler=scheduler,
        connection_factory=factory,
    )


@pytest.fixture
def wire_message() -> Callable[..., dict[str, Any]]:
    """服务端线上格式消息工厂"""
    return server_message
