"""枚举定义

包含 ConnectionStatus 连接状态机、LiveEventType 推送事件名、ChatActionType、
AuthorRole 枚举，以及 VALID_TRANSITIONS 合法流转映射和 TERMINAL_STATES 终态集合。
"""

from enum import StrEnum


class ConnectionStatus(StrEnum):
    """实时通道连接状态机"""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    ERROR = "error"
    # 重连次数耗尽
    FAILED = "failed"


# 合法状态流转
# 任意状态都可以因会话切换 / 前置条件缺失被强制拉回 DISCONNECTED
VALID_TRANSITIONS: dict[ConnectionStatus, set[ConnectionStatus]] = {
    ConnectionStatus.DISCONNECTED: {
        ConnectionStatus.CONNECTING,
        ConnectionStatus.RECONNECTING,
    },
    ConnectionStatus.CONNECTING: {
        ConnectionStatus.CONNECTED,
        ConnectionStatus.ERROR,
        ConnectionStatus.DISCONNECTED,
    },
    ConnectionStatus.CONNECTED: {
        ConnectionStatus.DISCONNECTED,
        ConnectionStatus.ERROR,
        ConnectionStatus.RECONNECTING,
    },
    ConnectionStatus.RECONNECTING: {
        ConnectionStatus.CONNECTED,
        ConnectionStatus.ERROR,
        ConnectionStatus.FAILED,
        ConnectionStatus.DISCONNECTED,
    },
    ConnectionStatus.ERROR: {
        ConnectionStatus.RECONNECTING,
        ConnectionStatus.FAILED,
        ConnectionStatus.DISCONNECTED,
        ConnectionStatus.CONNECTING,
    },
    # FAILED 只能通过显式重新激活（切换会话）离开
    ConnectionStatus.FAILED: {
        ConnectionStatus.DISCONNECTED,
        ConnectionStatus.CONNECTING,
    },
}

TERMINAL_STATES: set[ConnectionStatus] = {
    ConnectionStatus.FAILED,
}


class LiveEventType(StrEnum):
    """实时通道入站事件名（线上协议名称）"""

    NEW_MESSAGE = "chat-message"
    TYPING = "user-typing"
    SUGGESTIONS = "update-suggestions"
    CONVERSATION_STARTERS = "conversation-starters"
    IDENTITY_UPGRADE = "otp-login"
    TOOL_ACTIVITY = "tool-run-start"
    CANVAS_REPLACE = "canvas:update"
    CANVAS_LINE_PATCH = "canvas:line-update"


class ChatActionType(StrEnum):
    """Message Store action 类型"""

    SET_MESSAGES = "SET_MESSAGES"
    ADD_MESSAGE = "ADD_MESSAGE"
    UPDATE_MESSAGE = "UPDATE_MESSAGE"
    RESET_CHAT = "RESET_CHAT"
    UPDATE_TITLE = "UPDATE_TITLE"
    UPDATE_SUGGESTIONS = "UPDATE_SUGGESTIONS"
    UPDATE_NOTIFICATION_COUNT = "UPDATE_NOTIFICATION_COUNT"
    SET_LOADING = "SET_LOADING"


class AuthorRole(StrEnum):
    """作者角色"""

    USER = "USER"
    # BOT 消息永远不归属本地用户
    BOT = "BOT"


def validate_transition(
    from_status: ConnectionStatus, to_status: ConnectionStatus
) -> bool:
    """验证连接状态流转是否合法

    Args:
        from_status: 当前状态
        to_status: 目标状态

    Returns:
        True 如果流转合法，否则 False
    """
    allowed = VALID_TRANSITIONS.get(from_status, set())
    return to_status in allowed
