"""去重策略 -- 纯函数，无 I/O

给定候选消息与现有日志，决定准入 / 拒绝 / 替换本地占位消息；
并负责 is_sent 的派生计算。消息来自三个通道：
本地乐观发送、API 拉取、实时推送。
"""

from collections.abc import Sequence
from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field

from .config import SyncConfig
from .models.message import Identity, Message


class Verdict(StrEnum):
    """准入判定结果"""

    ADMIT = "admit"
    REJECT = "reject"
    REPLACE = "replace"


class Admission(BaseModel):
    """准入判定：REPLACE 时 index 指向被替换的本地占位消息"""

    verdict: Verdict
    index: int | None = Field(default=None, description="被替换消息在日志中的位置")
    reason: str = Field(default="", description="判定原因（日志用）")


def is_temporary(message: Message, config: SyncConfig) -> bool:
    """本地乐观创建的消息：带 locally_created 标记或临时 ID 前缀"""
    return message.locally_created or message.id.startswith(config.temp_id_prefix)


def is_anonymous(identity: Identity | None, config: SyncConfig) -> bool:
    """是否为匿名占位身份"""
    if identity is None:
        return False
    return (
        identity.id == config.anonymous.id
        or identity.email == config.anonymous.email
    )


def same_author(a: Message, b: Message) -> bool:
    return a.author_id == b.author_id


def _within(a: datetime, b: datetime, window_ms: int) -> bool:
    return abs((a - b).total_seconds()) * 1000 < window_ms


def compute_is_sent(
    message: Message,
    current_user: Identity | None,
    config: SyncConfig,
) -> bool:
    """计算消息是否由本地用户发出

    BOT 消息永远为 False；否则以下任一成立即为 True：
    无作者、作者为匿名占位身份、作者与当前用户 ID / 邮箱一致。
    """
    author = message.author
    if author is not None and author.is_bot:
        return False
    if author is None or is_anonymous(author, config):
        return True
    if current_user is None:
        return False
    if (
        current_user.id
        and current_user.id != config.anonymous.id
        and author.id == current_user.id
    ):
        return True
    return bool(current_user.email) and author.email == current_user.email


def resolve_is_sent(
    message: Message,
    current_user: Identity | None,
    config: SyncConfig,
    carried: bool = False,
) -> Message:
    """返回 is_sent 重新计算后的消息副本

    carried 为从占位副本继承的标记；BOT 排除优先于继承。
    """
    if message.author is not None and message.author.is_bot:
        is_sent = False
    else:
        is_sent = compute_is_sent(message, current_user, config) or carried
    if is_sent == message.is_sent:
        return message
    return message.model_copy(update={"is_sent": is_sent})


def _placeholder_compatible(local: Message, candidate: Message, config: SyncConfig) -> bool:
    """本地占位消息与远端候选消息的作者是否兼容"""
    if local.author_id == candidate.author_id:
        return True
    if not is_anonymous(local.author, config):
        return False
    # 本地匿名占位：候选同为匿名，或候选不是合成 AI 作者
    return is_anonymous(candidate.author, config) or candidate.author_id != config.ai_author_id


def admit(
    candidate: Message,
    log: Sequence[Message],
    config: SyncConfig,
) -> Admission:
    """对单条候选消息做准入判定

    Args:
        candidate: 候选消息
        log: 现有消息日志
        config: 去重窗口与临时 ID 前缀配置

    Returns:
        Admission 判定结果
    """
    if any(existing.id == candidate.id for existing in log):
        return Admission(verdict=Verdict.REJECT, reason="duplicate_id")

    if not is_temporary(candidate, config):
        # 远端消息（API / 推送）：优先替换本地占位
        for index, existing in enumerate(log):
            if (
                is_temporary(existing, config)
                and existing.text == candidate.text
                and _placeholder_compatible(existing, candidate, config)
            ):
                return Admission(
                    verdict=Verdict.REPLACE,
                    index=index,
                    reason="placeholder_confirmed",
                )

        for existing in log:
            if (
                not is_temporary(existing, config)
                and existing.text == candidate.text
                and same_author(existing, candidate)
                and _within(
                    existing.created_at,
                    candidate.created_at,
                    config.remote_duplicate_window_ms,
                )
            ):
                return Admission(verdict=Verdict.REJECT, reason="remote_duplicate")
    else:
        # 本地消息：拦截快速重复提交
        for existing in log:
            if (
                is_temporary(existing, config)
                and existing.text == candidate.text
                and same_author(existing, candidate)
                and _within(
                    existing.created_at,
                    candidate.created_at,
                    config.local_duplicate_window_ms,
                )
            ):
                return Admission(verdict=Verdict.REJECT, reason="local_duplicate")

    return Admission(verdict=Verdict.ADMIT)


def merge_batch(
    existing: Sequence[Message],
    incoming: Sequence[Message],
    current_user: Identity | None,
    config: SyncConfig,
) -> list[Message]:
    """合并一批消息到现有日志

    远端消息替换文本与作者一致的本地占位消息（继承 is_sent）；
    没有远端对应的本地消息保留。结果按 created_at 排序并截断到上限。
    对同一批次重复应用是幂等的。
    """
    merged: dict[str, Message] = {msg.id: msg for msg in existing}

    for msg in incoming:
        if not is_temporary(msg, config):
            placeholder = next(
                (
                    candidate
                    for candidate in merged.values()
                    if is_temporary(candidate, config)
                    and candidate.text == msg.text
                    and same_author(candidate, msg)
                ),
                None,
            )
            carried = msg.is_sent
            if placeholder is not None:
                del merged[placeholder.id]
                carried = carried or placeholder.is_sent
            merged[msg.id] = resolve_is_sent(msg, current_user, config, carried=carried)
        else:
            has_confirmed = any(
                not is_temporary(candidate, config)
                and candidate.text == msg.text
                and same_author(candidate, msg)
                for candidate in merged.values()
            )
            if not has_confirmed and msg.id not in merged:
                merged[msg.id] = resolve_is_sent(msg, current_user, config)

    return cap_messages(sort_messages(merged.values()), config)


def sort_messages(messages) -> list[Message]:
    """按 created_at 升序（稳定排序）"""
    return sorted(messages, key=lambda m: m.created_at)


def cap_messages(messages: list[Message], config: SyncConfig) -> list[Message]:
    """保留最近 message_cap 条，从头部淘汰"""
    if len(messages) <= config.message_cap:
        return messages
    return messages[-config.message_cap :]
