"""实时通道入站事件 -- 封闭的 tagged union

每种事件携带经过校验的 payload，在传输层边界解码后才进入
Message Store / Canvas Patch Engine。type 字段取线上事件名。
所有事件都带 conversation_id，供会话过滤使用。
"""

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .canvas import LineUpdate
from .message import ConversationStarter, Identity, Message, ToolActivity, TypingUser


class _LiveEventBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    conversation_id: str = Field(alias="chatInstanceId", description="事件所属会话 ID")


class NewMessageEvent(_LiveEventBase):
    """新消息"""

    type: Literal["chat-message"] = "chat-message"
    message: Message


class TypingEvent(_LiveEventBase):
    """输入状态"""

    type: Literal["user-typing"] = "user-typing"
    user_id: str = Field(alias="userId")
    user_name: str = Field(default="", alias="userName")
    is_typing: bool = Field(default=False, alias="isTyping")

    def to_typing_user(self) -> TypingUser:
        return TypingUser(
            user_id=self.user_id,
            user_name=self.user_name,
            is_typing=self.is_typing,
        )


class SuggestionsEvent(_LiveEventBase):
    """建议回复更新"""

    type: Literal["update-suggestions"] = "update-suggestions"
    suggestions: list[str] = Field(default_factory=list)


class ConversationStartersEvent(_LiveEventBase):
    """会话开场白"""

    type: Literal["conversation-starters"] = "conversation-starters"
    conversation_starters: list[ConversationStarter] = Field(
        default_factory=list,
        alias="conversationStarters",
    )


class IdentityUpgradeEvent(_LiveEventBase):
    """匿名 -> 已认证 身份升级

    user 与 token 任一缺失即视为不完整 payload。
    """

    type: Literal["otp-login"] = "otp-login"
    user: Identity | None = None
    token: str | None = None

    @property
    def is_complete(self) -> bool:
        return self.user is not None and bool(self.token)


class ToolActivityEvent(_LiveEventBase):
    """工具调用开始"""

    type: Literal["tool-run-start"] = "tool-run-start"
    tool: ToolActivity = Field(default_factory=ToolActivity)


class CanvasReplaceEvent(_LiveEventBase):
    """Canvas 整体替换；canvas_id 缺失时作用于当前激活 canvas"""

    type: Literal["canvas:update"] = "canvas:update"
    canvas_id: str | None = Field(default=None, alias="canvasId")
    title: str = ""
    content: str = ""

    @field_validator("content", mode="before")
    @classmethod
    def _join_legacy_lines(cls, value: Any) -> Any:
        # 旧版 payload 以行数组传输
        if isinstance(value, list):
            return "\n".join(str(line) for line in value)
        return value


class CanvasLinePatchEvent(_LiveEventBase):
    """Canvas 行级补丁"""

    type: Literal["canvas:line-update"] = "canvas:line-update"
    canvas_id: str = Field(alias="canvasId")
    updates: list[LineUpdate] = Field(default_factory=list)


LiveEvent = Annotated[
    NewMessageEvent
    | TypingEvent
    | SuggestionsEvent
    | ConversationStartersEvent
    | IdentityUpgradeEvent
    | ToolActivityEvent
    | CanvasReplaceEvent
    | CanvasLinePatchEvent,
    Field(discriminator="type"),
]
