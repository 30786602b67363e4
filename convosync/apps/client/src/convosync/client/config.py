"""ClientConfig -- 端点配置加载

从环境变量加载 REST / 实时通道端点与应用 token，不硬编码部署地址。
"""

import os
from collections.abc import Callable
from typing import TypeVar

import structlog
from pydantic import BaseModel, Field, SecretStr

log = structlog.get_logger()

T = TypeVar("T", int, float)


class ClientConfig(BaseModel):
    """客户端端点配置 -- 从环境变量加载

    环境变量:
        CONVOSYNC_API_URL: REST API 基础 URL（默认 http://localhost:3000）
        CONVOSYNC_WS_URL: 实时通道 URL（默认 ws://localhost:3000/live）
        CONVOSYNC_API_TOKEN: 应用 token
        CONVOSYNC_MODEL_ID: 聊天模型 ID
        CONVOSYNC_LANG: 会话语言（默认 en）
        CONVOSYNC_ADMIN: 管理员模式（true/false）
        CONVOSYNC_HTTP_TIMEOUT_S: HTTP 请求超时（默认 30）
        CONVOSYNC_HISTORY_LIMIT: 会话索引保留条数（默认 50）
    """

    api_url: str = Field(default="http://localhost:3000", description="REST API 基础 URL")
    ws_url: str = Field(default="ws://localhost:3000/live", description="实时通道 URL")
    api_token: SecretStr = Field(default=SecretStr(""), description="应用 token")
    model_id: str = Field(default="", description="聊天模型 ID")
    lang: str = Field(default="en", description="会话语言")
    admin: bool = Field(default=False, description="管理员模式（独立的会话命名空间）")
    timeout_s: float = Field(default=30.0, gt=0, description="HTTP 请求超时（秒）")
    history_limit: int = Field(default=50, ge=1, description="会话索引保留条数")


def _read_positive(env_var: str, parse: Callable[[str], T]) -> T | None:
    """读取正数配置；无法解析或不为正时记录 warning 并返回 None"""
    val = os.environ.get(env_var)
    if not val:
        return None
    try:
        parsed = parse(val)
    except ValueError:
        parsed = None
    if parsed is None or not parsed > 0:
        log.warning("invalid_client_config", env_var=env_var, value=val)
        return None
    return parsed


def load_client_config() -> ClientConfig:
    """从环境变量加载客户端配置

    Returns:
        ClientConfig 实例
    """
    kwargs: dict = {}

    if val := os.environ.get("CONVOSYNC_API_URL"):
        kwargs["api_url"] = val.rstrip("/")

    if val := os.environ.get("CONVOSYNC_WS_URL"):
        kwargs["ws_url"] = val

    if val := os.environ.get("CONVOSYNC_API_TOKEN"):
        kwargs["api_token"] = SecretStr(val)

    if val := os.environ.get("CONVOSYNC_MODEL_ID"):
        kwargs["model_id"] = val

    if val := os.environ.get("CONVOSYNC_LANG"):
        kwargs["lang"] = val

    if val := os.environ.get("CONVOSYNC_ADMIN"):
        kwargs["admin"] = val.lower() in ("1", "true", "yes")

    if (timeout := _read_positive("CONVOSYNC_HTTP_TIMEOUT_S", float)) is not None:
        kwargs["timeout_s"] = timeout

    if (limit := _read_positive("CONVOSYNC_HISTORY_LIMIT", int)) is not None:
        kwargs["history_limit"] = limit

    return ClientConfig(**kwargs)
