"""ChatState 与 Message Store actions

ChatState 只能通过 chat_reducer 应用 action 产生新实例，不就地修改。
"""

from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field

from .message import Identity, Message


class ChatState(BaseModel):
    """单个活跃会话的消息日志与元数据"""

    model_config = ConfigDict(frozen=True)

    conversation_id: str | None = Field(default=None, description="当前日志所属会话")
    messages: list[Message] = Field(default_factory=list, description="按 created_at 升序")
    title: str = Field(default="💬", description="会话标题")
    suggestions: list[str] = Field(default_factory=list, description="建议回复")
    notification_count: int = Field(default=0, ge=0, description="未读通知数")
    loading: bool = Field(default=False, description="请求进行中")


class SetMessages(BaseModel):
    """批量替换或合并；current_user 覆盖本次 is_sent 计算所用身份"""

    type: Literal["SET_MESSAGES"] = "SET_MESSAGES"
    conversation_id: str
    messages: list[Message]
    reset: bool = False
    current_user: Identity | None = None


class AddMessage(BaseModel):
    """经去重策略准入后追加单条消息"""

    type: Literal["ADD_MESSAGE"] = "ADD_MESSAGE"
    message: Message


class UpdateMessage(BaseModel):
    """按 ID 更新（保留未指定字段），不存在则追加"""

    type: Literal["UPDATE_MESSAGE"] = "UPDATE_MESSAGE"
    message: Message


class ResetChat(BaseModel):
    type: Literal["RESET_CHAT"] = "RESET_CHAT"
    conversation_id: str


class UpdateTitle(BaseModel):
    type: Literal["UPDATE_TITLE"] = "UPDATE_TITLE"
    title: str = ""


class UpdateSuggestions(BaseModel):
    type: Literal["UPDATE_SUGGESTIONS"] = "UPDATE_SUGGESTIONS"
    suggestions: list[str] = Field(default_factory=list)


class UpdateNotificationCount(BaseModel):
    type: Literal["UPDATE_NOTIFICATION_COUNT"] = "UPDATE_NOTIFICATION_COUNT"
    count: int = 0


class SetLoading(BaseModel):
    type: Literal["SET_LOADING"] = "SET_LOADING"
    loading: bool = False


ChatAction = Annotated[
    SetMessages
    | AddMessage
    | UpdateMessage
    | ResetChat
    | UpdateTitle
    | UpdateSuggestions
    | UpdateNotificationCount
    | SetLoading,
    Field(discriminator="type"),
]
