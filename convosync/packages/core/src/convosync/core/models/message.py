"""Message Domain Model

会话消息、作者身份以及会话级元数据（快照、开场白、输入状态、工具活动）。
线上字段名（chatInstanceId / created_at / isLocallyCreated / user）通过 alias 兼容，
内部统一使用 snake_case 字段名。
"""

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .enums import AuthorRole


def _ensure_utc(value: datetime) -> datetime:
    """无时区的时间戳统一视为 UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class Identity(BaseModel):
    """用户 / 作者身份描述"""

    model_config = ConfigDict(populate_by_name=True)

    id: str | None = Field(default=None, description="用户 ID")
    email: str = Field(default="", description="邮箱")
    name: str = Field(default="", description="显示名")
    image: str = Field(default="", description="头像")
    role: str | None = Field(default=None, description="角色，BOT 表示机器人")
    token: str | None = Field(default=None, description="认证 token，仅当前用户持有")

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        # 服务端可能返回数字 ID
        if isinstance(value, int):
            return str(value)
        return value

    @property
    def is_bot(self) -> bool:
        return self.role == AuthorRole.BOT


def anonymous_identity() -> Identity:
    """构造匿名占位身份（每个会话实例各自持有一份）"""
    return Identity(id="anonymous", email="anonymous@example.com", name="Anonymous")


class Message(BaseModel):
    """会话消息

    id 为不透明字符串；本地临时 ID 以保留前缀区分于服务端 ID。
    is_sent 为派生字段，由去重策略根据作者与当前用户重新计算。
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(description="消息 ID")
    text: str = Field(default="", description="文本内容")
    conversation_id: str = Field(
        default="",
        alias="chatInstanceId",
        description="所属会话 ID",
    )
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="创建时间",
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="更新时间",
    )
    locally_created: bool = Field(
        default=False,
        alias="isLocallyCreated",
        description="乐观插入、尚未被服务端确认",
    )
    author: Identity | None = Field(default=None, alias="user", description="作者")
    is_sent: bool = Field(default=False, alias="isSent", description="是否为本地用户发出")

    @field_validator("created_at", "updated_at")
    @classmethod
    def _normalize_ts(cls, value: datetime) -> datetime:
        return _ensure_utc(value)

    @property
    def author_id(self) -> str | None:
        return self.author.id if self.author else None


class ConversationSnapshot(BaseModel):
    """单个会话的持久化快照"""

    conversation_id: str = Field(description="会话 ID")
    title: str = Field(default="", description="会话标题")
    messages: list[Message] = Field(default_factory=list, description="消息列表")
    last_updated: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="最后写入时间",
    )


class ConversationStarter(BaseModel):
    """会话开场白（CTA）"""

    icon: str = ""
    title: str = ""
    description: str = ""
    message: str = ""


class TypingUser(BaseModel):
    """正在输入的用户"""

    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId", description="用户 ID")
    user_name: str = Field(default="", alias="userName", description="用户名")
    is_typing: bool = Field(default=False, alias="isTyping")


class ToolActivity(BaseModel):
    """服务端工具调用活动"""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    name: str = Field(default="", description="工具名称")
    status: str = Field(default="running", description="运行状态")


class HistoryItem(BaseModel):
    """会话索引条目（会话列表）"""

    id: str = Field(description="会话 ID")
    title: str = Field(default="", description="会话标题")
    last_updated: datetime = Field(default_factory=lambda: datetime.now(UTC))
