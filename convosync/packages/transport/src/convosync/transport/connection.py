"""实时连接 -- LiveConnection Protocol + websockets 实现

连接以事件名注册处理函数。除服务端推送的事件外，还会派发三个生命周期事件：
    connect        连接建立
    disconnect     连接关闭（payload 为原因字符串）
    connect_error  连接失败（payload 为异常）
帧格式为 JSON 对象 {"event": <事件名>, "data": <payload>}。
"""

import asyncio
import inspect
import json
from collections import defaultdict
from collections.abc import Awaitable, Callable
from typing import Any, Protocol
from urllib.parse import urlencode

import structlog
import websockets
from pydantic import BaseModel, Field
from websockets.exceptions import ConnectionClosed, WebSocketException

from .exceptions import FrameDecodeError, NotConnectedError

log = structlog.get_logger()

Handler = Callable[[Any], Awaitable[None] | None]

CONNECT = "connect"
DISCONNECT = "disconnect"
CONNECT_ERROR = "connect_error"


class Handshake(BaseModel):
    """建立连接时携带的会话与身份信息"""

    chat_instance_id: str = Field(description="会话 ID")
    user_id: str = Field(default="", description="用户 ID")
    user_email: str = Field(default="", description="用户邮箱")
    user_name: str = Field(default="", description="用户名")
    token: str | None = Field(default=None, description="认证 token")

    def to_query(self) -> dict[str, str]:
        query = {
            "chatInstanceId": self.chat_instance_id,
            "userId": self.user_id,
            "userEmail": self.user_email,
            "userName": self.user_name,
        }
        if self.token:
            query["token"] = self.token
        return query


class LiveConnection(Protocol):
    """实时连接接口"""

    @property
    def connected(self) -> bool:
        ...

    def on(self, event: str, handler: Handler) -> None:
        """注册事件处理函数"""
        ...

    def remove_all_listeners(self) -> None:
        """注销全部事件处理函数"""
        ...

    async def connect(self) -> None:
        """建立连接；失败通过 connect_error 事件报告，不抛出"""
        ...

    async def emit(self, event: str, data: dict[str, Any]) -> None:
        """发送事件"""
        ...

    async def disconnect(self) -> None:
        """关闭连接（重复调用无副作用）"""
        ...


ConnectionFactory = Callable[[str, Handshake], LiveConnection]


def decode_frame(raw: str | bytes) -> tuple[str, Any]:
    """解析入站帧为 (事件名, payload)"""
    try:
        frame = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise FrameDecodeError(f"帧不是合法 JSON: {e}") from e
    if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
        raise FrameDecodeError("帧缺少 event 字段")
    return frame["event"], frame.get("data")


class WebSocketConnection:
    """基于 websockets 的 LiveConnection 实现

    每个实例只对应一次连接尝试；重连由会话管理器创建新实例完成。
    """

    def __init__(
        self,
        url: str,
        handshake: Handshake,
        open_timeout: float = 10.0,
    ) -> None:
        self._url = url
        self._handshake = handshake
        self._open_timeout = open_timeout
        self._handlers: dict[str, list[Handler]] = defaultdict(list)
        self._ws: Any = None
        self._reader: asyncio.Task | None = None
        self._closing = False

    @property
    def url(self) -> str:
        separator = "&" if "?" in self._url else "?"
        return f"{self._url}{separator}{urlencode(self._handshake.to_query())}"

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._closing

    def on(self, event: str, handler: Handler) -> None:
        self._handlers[event].append(handler)

    def remove_all_listeners(self) -> None:
        self._handlers.clear()

    async def _dispatch(self, event: str, data: Any) -> None:
        for handler in list(self._handlers.get(event, [])):
            try:
                result = handler(data)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                log.error("live_handler_failed", event_name=event, error=str(e))

    async def connect(self) -> None:
        try:
            self._ws = await websockets.connect(self.url, open_timeout=self._open_timeout)
        except (OSError, TimeoutError, WebSocketException) as e:
            log.warning("live_connect_failed", url=self._url, error=str(e))
            await self._dispatch(CONNECT_ERROR, e)
            return

        log.info("live_connected", chat_instance_id=self._handshake.chat_instance_id)
        await self._dispatch(CONNECT, None)
        if self._ws is not None and not self._closing:
            self._reader = asyncio.ensure_future(self._read_loop())

    async def _read_loop(self) -> None:
        reason = "transport close"
        try:
            async for raw in self._ws:
                try:
                    event, data = decode_frame(raw)
                except FrameDecodeError as e:
                    log.warning("live_frame_invalid", error=str(e))
                    continue
                await self._dispatch(event, data)
        except ConnectionClosed as e:
            reason = str(e) or reason
        finally:
            if not self._closing:
                self._ws = None
                await self._dispatch(DISCONNECT, reason)

    async def emit(self, event: str, data: dict[str, Any]) -> None:
        if not self.connected:
            raise NotConnectedError(event)
        await self._ws.send(json.dumps({"event": event, "data": data}))

    async def disconnect(self) -> None:
        if self._closing:
            return
        self._closing = True
        reader, self._reader = self._reader, None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except (OSError, WebSocketException) as e:
                log.warning("live_close_failed", error=str(e))


def websocket_factory(url: str, handshake: Handshake) -> WebSocketConnection:
    """默认连接工厂"""
    return WebSocketConnection(url, handshake)
