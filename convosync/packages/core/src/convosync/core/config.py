"""SyncConfig -- 同步核心配置

每个会话实例显式构造并传入，不存在进程级单例。
可通过环境变量覆盖部分策略参数（去重窗口、日志上限、防抖时长、重连次数）。
"""

import os
from collections.abc import Callable
from pathlib import Path
from typing import Any

import structlog
from pydantic import BaseModel, Field, ValidationError

from .models.message import Identity, anonymous_identity

log = structlog.get_logger()


class ReconnectPolicy(BaseModel):
    """重连策略：指数退避，有限次数"""

    max_attempts: int = Field(default=5, ge=0, description="最大重连次数，0 表示不重连")
    base_delay_s: float = Field(default=1.0, ge=0.0, description="首次重连延迟（秒）")
    max_delay_s: float = Field(default=30.0, ge=0.0, description="最大重连延迟（秒）")

    def delay_for(self, attempt: int) -> float:
        """计算第 attempt 次重连（0 起）的延迟"""
        return min(self.base_delay_s * (2**attempt), self.max_delay_s)


class SyncConfig(BaseModel):
    """同步核心配置

    环境变量:
        CONVOSYNC_MESSAGE_CAP: 日志保留条数（默认 50）
        CONVOSYNC_LOCAL_DUP_WINDOW_MS: 本地重复提交窗口（默认 500）
        CONVOSYNC_REMOTE_DUP_WINDOW_MS: 跨通道重复窗口（默认 10000）
        CONVOSYNC_PERSIST_DEBOUNCE_S: 快照写入防抖（默认 0.5）
        CONVOSYNC_RECONNECT_ATTEMPTS: 最大重连次数（默认 5）
    """

    message_cap: int = Field(default=50, ge=1, description="消息日志上限")
    temp_id_prefix: str = Field(default="temp-", description="本地临时 ID 前缀")
    local_duplicate_window_ms: int = Field(
        default=500,
        ge=0,
        description="本地重复提交（双击）抑制窗口（毫秒）",
    )
    remote_duplicate_window_ms: int = Field(
        default=10_000,
        ge=0,
        description="API 响应与推送重复投递抑制窗口（毫秒）",
    )
    ai_author_id: str = Field(default="ai", description="合成 AI 作者 ID")

    persist_debounce_s: float = Field(default=0.5, ge=0.0, description="消息快照写入防抖")
    typing_debounce_s: float = Field(default=0.5, ge=0.0, description="输入状态防抖")
    canvas_version_debounce_s: float = Field(
        default=0.5,
        ge=0.0,
        description="Canvas 版本历史写入防抖",
    )

    canvas_history_depth: int = Field(default=10, ge=1, description="Canvas 版本保留深度")
    canvas_fuzzy_window: int = Field(default=5, ge=0, description="行补丁模糊匹配半径")
    canvas_substring_min_length: int = Field(
        default=10,
        ge=0,
        description="启用子串匹配的 old_content 最小长度",
    )

    default_title: str = Field(default="💬", description="空会话标题")
    title_max_length: int = Field(default=50, ge=1, description="自动标题截断长度")

    reconnect: ReconnectPolicy = Field(default_factory=ReconnectPolicy)
    anonymous: Identity = Field(
        default_factory=anonymous_identity,
        description="匿名占位身份",
    )


def _reconnect_attempts(raw: str) -> ReconnectPolicy:
    return ReconnectPolicy(max_attempts=int(raw))


# (环境变量, SyncConfig 字段, 解析函数)
_ENV_OVERRIDES: tuple[tuple[str, str, Callable[[str], Any]], ...] = (
    ("CONVOSYNC_MESSAGE_CAP", "message_cap", int),
    ("CONVOSYNC_LOCAL_DUP_WINDOW_MS", "local_duplicate_window_ms", int),
    ("CONVOSYNC_REMOTE_DUP_WINDOW_MS", "remote_duplicate_window_ms", int),
    ("CONVOSYNC_PERSIST_DEBOUNCE_S", "persist_debounce_s", float),
    ("CONVOSYNC_RECONNECT_ATTEMPTS", "reconnect", _reconnect_attempts),
)


def load_sync_config() -> SyncConfig:
    """从环境变量加载 SyncConfig

    非法值记录 warning 并回退默认值，不阻塞启动。

    Returns:
        SyncConfig 实例
    """
    kwargs: dict[str, Any] = {}

    for env_var, field, parse in _ENV_OVERRIDES:
        raw = os.environ.get(env_var)
        if not raw:
            continue
        try:
            value = parse(raw)
            # 逐项校验取值范围
            SyncConfig(**{field: value})
        except (ValueError, ValidationError) as e:
            log.warning(
                "invalid_sync_config",
                env_var=env_var,
                value=raw,
                error=str(e),
            )
            continue
        kwargs[field] = value

    return SyncConfig(**kwargs)


def get_db_path() -> str:
    """获取 SQLite 快照数据库路径"""
    return os.environ.get(
        "CONVOSYNC_DB_PATH",
        str(Path(os.environ.get("CONVOSYNC_DATA_DIR", "data")) / "sqlite" / "convosync.db"),
    )
