"""convosync Transport -- 实时通道连接管理

packages/transport 的公开接口导出。
"""

# 解码
from .codec import INBOUND_EVENTS, decode_event

# 连接
from .connection import (
    CONNECT,
    CONNECT_ERROR,
    DISCONNECT,
    ConnectionFactory,
    Handshake,
    LiveConnection,
    WebSocketConnection,
    decode_frame,
    websocket_factory,
)

# 异常
from .exceptions import FrameDecodeError, NotConnectedError, TransportError

# 会话
from .session import SessionTarget, TransportSessionManager
from .typing_indicator import TypingTracker

__all__ = [
    "INBOUND_EVENTS",
    "decode_event",
    "CONNECT",
    "CONNECT_ERROR",
    "DISCONNECT",
    "ConnectionFactory",
    "Handshake",
    "LiveConnection",
    "WebSocketConnection",
    "decode_frame",
    "websocket_factory",
    "TransportError",
    "NotConnectedError",
    "FrameDecodeError",
    "SessionTarget",
    "TransportSessionManager",
    "TypingTracker",
]
