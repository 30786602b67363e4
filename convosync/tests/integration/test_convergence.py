"""跨包集成测试：三路来源（REST / 推送 / 本地快照）收敛

测试内容：
1. 发送时 API 回显与推送竞态，任一到达顺序都只留下一条消息
2. 跨通道重复投递在窗口内被抑制
3. 会话切换后旧连接与其他会话的事件不会泄漏
4. 重连后重复推送不产生重复消息，也不重新拉取历史
5. Canvas 补丁持久化后可在新会话实例中恢复（SQLite）
6. 身份升级后以新身份重连，后续消息正确归属
"""

import asyncio

from convosync.client.session import ChatSession
from convosync.core.models import ConnectionStatus, Identity
from convosync.core.scheduler import ManualScheduler
from convosync.core.store import SnapshotRepository

BOT = Identity(id="ai", name="Assistant", role="BOT")
SEND = "/api/chat"


def _push(message: dict) -> dict:
    return {"chatInstanceId": message["chatInstanceId"], "message": message}


async def _open(session: ChatSession, conversation_id: str = "chat-1") -> None:
    await session.open(conversation_id)
    await session.wait_for_fetch()


class TestSendRace:
    async def test_push_before_api_echo(
        self, chat_session, api_stub, factory, sync_config, wire_message
    ):
        await _open(chat_session)
        server_copy = wire_message("srv-1", "hello", author=sync_config.anonymous)
        api_stub.respond(SEND, body={"message": server_copy})
        entered, release = api_stub.gate(SEND)

        sending = asyncio.ensure_future(chat_session.send("hello"))
        await entered.wait()
        await factory.latest.push("chat-message", _push(server_copy))
        release.set()
        await sending

        messages = chat_session.state.messages
        assert [m.id for m in messages] == ["srv-1"]
        assert messages[0].is_sent is True

    async def test_api_echo_before_push(
        self, chat_session, api_stub, factory, sync_config, wire_message
    ):
        await _open(chat_session)
        server_copy = wire_message("srv-1", "hello", author=sync_config.anonymous)
        api_stub.respond(SEND, body={"message": server_copy})

        await chat_session.send("hello")
        await factory.latest.push("chat-message", _push(server_copy))

        assert [m.id for m in chat_session.state.messages] == ["srv-1"]

    async def test_push_only_confirmation(
        self, chat_session, factory, sync_config, wire_message
    ):
        await _open(chat_session)
        await chat_session.send("hello")
        assert chat_session.state.messages[0].id.startswith("temp-")

        await factory.latest.push(
            "chat-message",
            _push(wire_message("srv-1", "hello", author=sync_config.anonymous)),
        )
        assert [m.id for m in chat_session.state.messages] == ["srv-1"]

    async def test_bot_reply_not_mistaken_for_placeholder(
        self, chat_session, factory, wire_message
    ):
        await _open(chat_session)
        await chat_session.send("hello")
        await factory.latest.push("chat-message", _push(wire_message("srv-2", "hello", author=BOT)))

        messages = chat_session.state.messages
        assert len(messages) == 2
        assert {m.is_sent for m in messages} == {True, False}


class TestCrossChannelDuplicates:
    async def test_history_and_push_same_event(
        self, chat_session, api_stub, factory, wire_message
    ):
        api_stub.respond(
            "/api/chat/history/chat-1",
            body={"messages": [wire_message("srv-1", "Welcome!", author=BOT)]},
        )
        await _open(chat_session)
        await factory.latest.push(
            "chat-message",
            _push(wire_message("srv-1-push", "Welcome!", author=BOT, offset_s=2)),
        )
        assert [m.id for m in chat_session.state.messages] == ["srv-1"]

    async def test_replayed_history_is_idempotent(self, chat_session, api_stub, wire_message):
        api_stub.respond(
            "/api/chat/history/chat-1",
            body={
                "messages": [
                    wire_message("srv-1", "a", author=BOT),
                    wire_message("srv-2", "b", offset_s=1),
                ]
            },
        )
        await _open(chat_session)
        first = chat_session.state.messages
        await chat_session.fetch_history()
        assert chat_session.state.messages == first


class TestConversationSwitch:
    async def test_no_leakage_between_conversations(
        self, chat_session, factory, repository, scheduler, wire_message
    ):
        await _open(chat_session, "chat-1")
        old = factory.latest
        await old.push("chat-message", _push(wire_message("c1-1", "in chat 1", author=BOT)))

        await _open(chat_session, "chat-2")
        new = factory.latest
        assert old.closed is True
        assert factory.open_connections == [new]

        await old.push("chat-message", _push(wire_message("c1-2", "late", author=BOT)))
        await new.push("chat-message", _push(wire_message("c1-3", "foreign", author=BOT)))
        await new.push(
            "chat-message",
            _push(wire_message("c2-1", "in chat 2", author=BOT, conversation_id="chat-2")),
        )

        assert [m.id for m in chat_session.state.messages] == ["c2-1"]

        await chat_session.close()
        chat_1 = await repository.load_conversation("chat-1")
        chat_2 = await repository.load_conversation("chat-2")
        assert [m.id for m in chat_1.messages] == ["c1-1"]
        assert [m.id for m in chat_2.messages] == ["c2-1"]

    async def test_switch_back_restores_from_cache(
        self, chat_session, factory, api_stub, wire_message
    ):
        await _open(chat_session, "chat-1")
        await factory.latest.push("chat-message", _push(wire_message("c1-1", "kept", author=BOT)))
        await _open(chat_session, "chat-2")

        await chat_session.open("chat-1")
        assert [m.id for m in chat_session.state.messages] == ["c1-1"]


class TestReconnect:
    async def test_redelivered_message_not_duplicated(
        self, chat_session, factory, scheduler, api_stub, wire_message
    ):
        await _open(chat_session)
        message = wire_message("srv-1", "hi", author=BOT)
        await factory.latest.push("chat-message", _push(message))
        history_calls = len(api_stub.calls("/api/chat/history/chat-1"))

        await factory.latest.drop()
        assert chat_session.status == ConnectionStatus.DISCONNECTED
        await scheduler.advance(1)
        assert chat_session.status == ConnectionStatus.CONNECTED

        await factory.latest.push("chat-message", _push(message))
        assert [m.id for m in chat_session.state.messages] == ["srv-1"]
        assert len(api_stub.calls("/api/chat/history/chat-1")) == history_calls


class TestCanvasPersistence:
    async def test_canvas_survives_new_session(
        self, client_config, sync_config, api_client, sqlite_store, factory
    ):
        repository = SnapshotRepository(sqlite_store)
        scheduler = ManualScheduler()
        session = ChatSession(
            client_config=client_config,
            sync_config=sync_config,
            api=api_client,
            repository=repository,
            scheduler=scheduler,
            connection_factory=factory,
        )
        await _open(session)
        conn = factory.latest
        await conn.push(
            "canvas:update",
            {"chatInstanceId": "chat-1", "canvasId": "plan", "title": "Plan", "content": "a\nb\nc"},
        )
        await conn.push(
            "canvas:line-update",
            {
                "chatInstanceId": "chat-1",
                "canvasId": "plan",
                "updates": [
                    {"lineNumber": 1, "oldContent": "b", "newContent": "B"},
                    {"lineNumber": 3, "oldContent": "c", "newContent": "C"},
                ],
            },
        )
        await session.close()

        restored = ChatSession(
            client_config=client_config,
            sync_config=sync_config,
            api=api_client,
            repository=repository,
            scheduler=ManualScheduler(),
            connection_factory=factory,
        )
        await _open(restored)
        assert restored.canvas.get("plan").lines == ["a", "B", "C"]
        assert restored.canvas.active_id == "plan"
        await restored.close()


class TestIdentityUpgrade:
    async def test_upgrade_reconnects_and_attributes_messages(
        self, chat_session, factory, scheduler, wire_message
    ):
        await _open(chat_session)
        await factory.latest.push(
            "otp-login",
            {
                "chatInstanceId": "chat-1",
                "user": {"id": "user-carol", "email": "carol@example.com", "name": "Carol"},
                "token": "tok-1",
            },
        )
        await scheduler.advance(0)

        assert factory.latest.handshake.user_id == "user-carol"
        assert chat_session.status == ConnectionStatus.CONNECTED

        carol = Identity(id="user-carol", email="carol@example.com")
        await factory.latest.push("chat-message", _push(wire_message("srv-1", "hey", author=carol)))
        assert chat_session.state.messages[0].is_sent is True
