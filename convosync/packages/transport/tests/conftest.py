"""packages/transport 测试配置 -- 会话管理器 fixture"""

from unittest.mock import AsyncMock

import pytest
from convosync.core.canvas_engine import CanvasPatchEngine
from convosync.core.config import SyncConfig
from convosync.core.identity import IdentityStore
from convosync.core.message_store import MessageStore
from convosync.core.scheduler import ManualScheduler
from convosync.core.store import SnapshotRepository
from convosync.transport import TransportSessionManager


@pytest.fixture
def refetch() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def manager(
    factory,
    message_store: MessageStore,
    canvas_engine: CanvasPatchEngine,
    identity_store: IdentityStore,
    repository: SnapshotRepository,
    scheduler: ManualScheduler,
    sync_config: SyncConfig,
    refetch: AsyncMock,
) -> TransportSessionManager:
    return TransportSessionManager(
        connection_factory=factory,
        message_store=message_store,
        canvas_engine=canvas_engine,
        identity_store=identity_store,
        repository=repository,
        scheduler=scheduler,
        config=sync_config,
        refetch_history=refetch,
    )
