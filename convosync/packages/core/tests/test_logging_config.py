"""structlog 配置与维护 CLI 测试

测试内容：
1. setup_logging() 按环境变量 / 参数选择渲染器与级别
2. 第三方库 logger 级别被提升
3. bind_session_context() 绑定会话上下文
4. python -m convosync.core 的 list-snapshots / clear-conversation
"""

import logging
import sys
from pathlib import Path

import pytest
import structlog
from convosync.core import __main__ as cli
from convosync.core.logging_config import NOISY_LOGGERS, bind_session_context, setup_logging
from convosync.core.models import ConversationSnapshot
from convosync.core.store import SnapshotRepository, create_snapshot_store


@pytest.fixture(autouse=True)
def restore_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    library_levels = {name: logging.getLogger(name).level for name in NOISY_LOGGERS}
    yield
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()
    root.handlers[:] = handlers
    root.setLevel(level)
    for name, value in library_levels.items():
        logging.getLogger(name).setLevel(value)


class TestSetupLogging:
    def test_json_format_from_env(self, monkeypatch):
        monkeypatch.setenv("CONVOSYNC_LOG_FORMAT", "json")
        monkeypatch.setenv("CONVOSYNC_LOG_LEVEL", "debug")
        setup_logging()

        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        formatter = root.handlers[0].formatter
        assert isinstance(formatter, structlog.stdlib.ProcessorFormatter)
        assert any(isinstance(p, structlog.processors.JSONRenderer) for p in formatter.processors)

    def test_arguments_override_env(self, monkeypatch):
        monkeypatch.setenv("CONVOSYNC_LOG_FORMAT", "json")
        setup_logging(log_format="dev", log_level="WARNING")

        root = logging.getLogger()
        assert root.level == logging.WARNING
        formatter = root.handlers[0].formatter
        assert any(isinstance(p, structlog.dev.ConsoleRenderer) for p in formatter.processors)

    def test_unknown_level_falls_back_to_info(self):
        setup_logging(log_level="chatty")
        assert logging.getLogger().level == logging.INFO

    def test_library_loggers_quieted(self):
        setup_logging()
        for name in NOISY_LOGGERS:
            assert logging.getLogger(name).level == logging.WARNING


class TestSessionContext:
    def test_bind_replaces_previous_context(self):
        structlog.contextvars.bind_contextvars(request_id="stale")
        bind_session_context("chat-1", "model-1")
        assert structlog.contextvars.get_contextvars() == {
            "conversation_id": "chat-1",
            "model_id": "model-1",
        }


class TestCli:
    @pytest.fixture
    async def seeded_db(self, tmp_path: Path, monkeypatch) -> Path:
        db_path = tmp_path / "sqlite" / "convosync.db"
        monkeypatch.setenv("CONVOSYNC_DB_PATH", str(db_path))
        store = await create_snapshot_store(db_path)
        try:
            repository = SnapshotRepository(store)
            await repository.save_conversation(ConversationSnapshot(conversation_id="chat-1"))
            await repository.save_suggestions("chat-1", ["Tell me more"])
            await repository.save_conversation(ConversationSnapshot(conversation_id="chat-2"))
        finally:
            await store.close()
        return db_path

    async def test_list_snapshots(self, seeded_db, capsys):
        await cli.list_snapshots("chat:chat-1")
        out = capsys.readouterr().out
        assert "chat:chat-1:history" in out
        assert "chat:chat-1:suggestions" in out
        assert "chat:chat-2:history" not in out

    async def test_clear_conversation(self, seeded_db):
        await cli.clear_conversation("chat-1")

        store = await create_snapshot_store(seeded_db)
        try:
            assert await store.keys("chat:") == ["chat:chat-2:history"]
        finally:
            await store.close()

    def test_usage_without_command(self, monkeypatch, capsys):
        monkeypatch.setattr(sys, "argv", ["convosync.core"])
        with pytest.raises(SystemExit) as exc_info:
            cli.main()
        assert exc_info.value.code == 1
        assert "list-snapshots" in capsys.readouterr().out
