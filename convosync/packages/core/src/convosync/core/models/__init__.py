"""convosync Core Domain Models -- 公共类型导出

所有公共模型类型从此入口导入。
"""

from .canvas import Canvas, CanvasVersion, LegacyCanvasView, LineUpdate, split_lines
from .enums import (
    TERMINAL_STATES,
    VALID_TRANSITIONS,
    AuthorRole,
    ChatActionType,
    ConnectionStatus,
    LiveEventType,
    validate_transition,
)
from .events import (
    CanvasLinePatchEvent,
    CanvasReplaceEvent,
    ConversationStartersEvent,
    IdentityUpgradeEvent,
    LiveEvent,
    NewMessageEvent,
    SuggestionsEvent,
    ToolActivityEvent,
    TypingEvent,
)
from .message import (
    ConversationSnapshot,
    ConversationStarter,
    HistoryItem,
    Identity,
    Message,
    ToolActivity,
    TypingUser,
    anonymous_identity,
)
from .state import (
    AddMessage,
    ChatAction,
    ChatState,
    ResetChat,
    SetLoading,
    SetMessages,
    UpdateMessage,
    UpdateNotificationCount,
    UpdateSuggestions,
    UpdateTitle,
)

__all__ = [
    # 枚举
    "ConnectionStatus",
    "LiveEventType",
    "ChatActionType",
    "AuthorRole",
    # 状态机
    "VALID_TRANSITIONS",
    "TERMINAL_STATES",
    "validate_transition",
    # Message
    "Identity",
    "Message",
    "ConversationSnapshot",
    "ConversationStarter",
    "TypingUser",
    "ToolActivity",
    "HistoryItem",
    "anonymous_identity",
    # Canvas
    "Canvas",
    "CanvasVersion",
    "LegacyCanvasView",
    "LineUpdate",
    "split_lines",
    # 实时事件
    "LiveEvent",
    "NewMessageEvent",
    "TypingEvent",
    "SuggestionsEvent",
    "ConversationStartersEvent",
    "IdentityUpgradeEvent",
    "ToolActivityEvent",
    "CanvasReplaceEvent",
    "CanvasLinePatchEvent",
    # State / actions
    "ChatState",
    "ChatAction",
    "SetMessages",
    "AddMessage",
    "UpdateMessage",
    "ResetChat",
    "UpdateTitle",
    "UpdateSuggestions",
    "UpdateNotificationCount",
    "SetLoading",
]
