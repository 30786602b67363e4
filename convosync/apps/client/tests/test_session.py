"""ChatSession 测试

测试内容：
1. open(): 快照先于网络请求恢复，后台拉取再对账
2. fetch_history(): 会话切换后丢弃过期结果；限流转化为可展示错误
3. send(): 乐观插入 + 占位替换；失败回滚；请求在途时忽略新发送
4. 标题由首条消息生成
5. reset() / close() / start()
"""

import asyncio
import json

from convosync.client.exceptions import RateLimitedError
from convosync.client.session import derive_title
from convosync.core.models import ConnectionStatus, ConversationSnapshot, Identity

BOT = Identity(id="ai", name="Assistant", role="BOT")
HISTORY = "/api/chat/history/chat-1"


async def _seed(repository, make_message, *ids: str) -> None:
    await repository.save_conversation(
        ConversationSnapshot(
            conversation_id="chat-1",
            title="Cached",
            messages=[make_message(i, text=f"text {i}", offset_s=n) for n, i in enumerate(ids)],
        )
    )


class TestOpen:
    async def test_cache_restored_before_fetch(
        self, chat_session, api_stub, repository, make_message, wire_message
    ):
        await _seed(repository, make_message, "srv-1")
        api_stub.respond(
            HISTORY,
            body={
                "messages": [
                    wire_message("srv-1", "text srv-1"),
                    wire_message("srv-2", "fresh", offset_s=5),
                ]
            },
        )

        await chat_session.open("chat-1")
        assert [m.id for m in chat_session.state.messages] == ["srv-1"]
        assert chat_session.state.title == "Cached"
        assert api_stub.requests == []

        await chat_session.wait_for_fetch()
        assert [m.id for m in chat_session.state.messages] == ["srv-1", "srv-2"]
        assert chat_session.status == ConnectionStatus.CONNECTED

    async def test_transport_refetch_skipped_while_fetch_in_flight(
        self, chat_session, api_stub, scheduler
    ):
        await chat_session.open("chat-1")
        await scheduler.advance(0)
        await chat_session.wait_for_fetch()
        assert len(api_stub.calls(HISTORY)) == 1

    async def test_stale_fetch_discarded(self, chat_session, api_stub, wire_message):
        api_stub.respond(HISTORY, body={"messages": [wire_message("old-1", "from chat 1")]})
        await chat_session.open("chat-1")
        await chat_session.wait_for_fetch()

        entered, release = api_stub.gate(HISTORY)
        stale = asyncio.ensure_future(chat_session.fetch_history())
        await entered.wait()
        await chat_session.open("chat-2")
        release.set()
        await stale
        await chat_session.wait_for_fetch()

        assert chat_session.conversation_id == "chat-2"
        assert chat_session.state.messages == []

    async def test_rate_limit_surfaces_error(
        self, chat_session, api_stub, repository, make_message
    ):
        await _seed(repository, make_message, "srv-1")
        api_stub.respond(HISTORY, status=429, body={})

        await chat_session.open("chat-1")
        await chat_session.wait_for_fetch()

        assert chat_session.error == RateLimitedError().user_message
        assert chat_session.state.loading is False
        assert [m.id for m in chat_session.state.messages] == ["srv-1"]

    async def test_live_push_lands_in_store(self, chat_session, factory, wire_message):
        await chat_session.open("chat-1")
        await factory.latest.push(
            "chat-message",
            {"chatInstanceId": "chat-1", "message": wire_message("srv-5", "hi!", author=BOT)},
        )
        assert [m.id for m in chat_session.state.messages] == ["srv-5"]
        assert chat_session.state.messages[0].is_sent is False


class TestSend:
    async def test_echo_replaces_placeholder(
        self, chat_session, api_stub, sync_config, wire_message
    ):
        await chat_session.open("chat-1")
        await chat_session.wait_for_fetch()
        api_stub.respond(
            "/api/chat",
            body={"message": wire_message("srv-1", "hello there", author=sync_config.anonymous)},
        )

        echo = await chat_session.send("  hello there ")

        assert echo.id == "srv-1"
        messages = chat_session.state.messages
        assert [m.id for m in messages] == ["srv-1"]
        assert messages[0].is_sent is True
        assert chat_session.state.loading is False
        assert chat_session.state.title == "hello there"

        history = await chat_session.registry.history()
        assert [(item.id, item.title) for item in history] == [("chat-1", "hello there")]

    async def test_window_includes_optimistic_message(self, chat_session, api_stub):
        await chat_session.open("chat-1")
        await chat_session.wait_for_fetch()
        await chat_session.send("ping")

        body = json.loads(api_stub.calls("/api/chat")[0].content)
        assert body["messages"][-1]["text"] == "ping"
        assert body["messages"][-1]["id"].startswith("temp-")

    async def test_failure_rolls_back(
        self, chat_session, api_stub, repository, make_message
    ):
        await _seed(repository, make_message, "srv-0")
        await chat_session.open("chat-1")
        await chat_session.wait_for_fetch()
        api_stub.respond("/api/chat", status=500, body={})

        assert await chat_session.send("will fail") is None

        assert [m.id for m in chat_session.state.messages] == ["srv-0"]
        assert chat_session.error is not None
        assert chat_session.state.loading is False

    async def test_failed_first_message_leaves_nothing_behind(
        self, chat_session, api_stub, repository, scheduler, sync_config
    ):
        await chat_session.open("chat-1")
        await chat_session.wait_for_fetch()
        api_stub.respond("/api/chat", status=500, body={})

        assert await chat_session.send("will fail") is None
        await scheduler.advance(1)

        assert chat_session.state.messages == []
        assert chat_session.state.title == sync_config.default_title
        assert await repository.load_conversation("chat-1") is None

        await chat_session.open("chat-1")
        assert chat_session.state.messages == []

    async def test_failure_persists_log_without_placeholder(
        self, chat_session, api_stub, repository, scheduler, make_message
    ):
        await _seed(repository, make_message, "srv-0")
        await chat_session.open("chat-1")
        await chat_session.wait_for_fetch()
        api_stub.respond("/api/chat", status=500, body={})

        await chat_session.send("will fail")
        await scheduler.advance(1)

        snapshot = await repository.load_conversation("chat-1")
        assert [m.id for m in snapshot.messages] == ["srv-0"]

    async def test_ignored_while_loading(self, chat_session, api_stub):
        await chat_session.open("chat-1")
        await chat_session.wait_for_fetch()
        chat_session.messages.set_loading(True)

        assert await chat_session.send("hi") is None
        assert api_stub.calls("/api/chat") == []

    async def test_concurrent_send_ignored(self, chat_session, api_stub):
        await chat_session.open("chat-1")
        await chat_session.wait_for_fetch()
        entered, release = api_stub.gate("/api/chat")

        first = asyncio.ensure_future(chat_session.send("a"))
        await entered.wait()
        assert await chat_session.send("b") is None
        release.set()
        await first

        assert len(api_stub.calls("/api/chat")) == 1
        assert [m.text for m in chat_session.state.messages] == ["a"]

    async def test_blank_text_ignored(self, chat_session, api_stub):
        await chat_session.open("chat-1")
        assert await chat_session.send("   ") is None
        assert api_stub.calls("/api/chat") == []


class TestTitle:
    def test_short_text_kept(self):
        assert derive_title("Plan a trip") == "Plan a trip"

    def test_long_text_truncated(self):
        text = "x" * 60
        assert derive_title(text) == "x" * 50 + "..."

    async def test_derived_from_first_message(self, chat_session, wire_message, api_stub):
        api_stub.respond(HISTORY, body={"messages": [wire_message("srv-1", "y" * 70)]})
        await chat_session.open("chat-1")
        await chat_session.wait_for_fetch()
        assert chat_session.state.title == "y" * 50 + "..."

    async def test_rename_updates_index(self, chat_session):
        await chat_session.open("chat-1")
        await chat_session.rename("Budget")
        history = await chat_session.registry.history()
        assert history[0].title == "Budget"


class TestLifecycle:
    async def test_start_creates_conversation(self, chat_session, api_stub, factory):
        api_stub.respond("/api/chat/createInstance", body={"chatInstanceId": "chat-new"})

        assert await chat_session.start() == "chat-new"
        assert await chat_session.registry.active() == "chat-new"
        assert factory.latest.handshake.chat_instance_id == "chat-new"

    async def test_start_reuses_active_conversation(self, chat_session, api_stub):
        await chat_session.registry.select("chat-1")
        assert await chat_session.start() == "chat-1"
        assert api_stub.calls("/api/chat/createInstance") == []

    async def test_start_failure_sets_error(self, chat_session, api_stub):
        api_stub.respond("/api/chat/createInstance", status=500, body={})
        assert await chat_session.start() is None
        assert chat_session.error

    async def test_reset_clears_log_and_snapshot(
        self, chat_session, repository, scheduler, make_message
    ):
        await _seed(repository, make_message, "srv-1", "srv-2")
        await chat_session.open("chat-1")
        await chat_session.wait_for_fetch()

        await chat_session.reset()
        await scheduler.advance(0)

        assert chat_session.state.messages == []
        assert await repository.load_conversation("chat-1") is None
        history = await chat_session.registry.history()
        assert history[0].id == "chat-1"

    async def test_close_flushes_and_disconnects(
        self, chat_session, factory, repository, wire_message
    ):
        await chat_session.open("chat-1")
        await chat_session.wait_for_fetch()
        await factory.latest.push(
            "chat-message",
            {"chatInstanceId": "chat-1", "message": wire_message("srv-7", "bye", author=BOT)},
        )

        await chat_session.close()

        snapshot = await repository.load_conversation("chat-1")
        assert [m.id for m in snapshot.messages] == ["srv-7"]
        assert factory.open_connections == []
        assert chat_session.status == ConnectionStatus.DISCONNECTED
