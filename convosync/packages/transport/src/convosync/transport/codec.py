"""入站事件解码 -- 传输层边界

线上事件名 + 原始 payload -> 经过校验的 LiveEvent。
结构不符的 payload 记录 warning 后丢弃，不进入 Message Store / Canvas 引擎。
"""

from typing import Any

import structlog
from convosync.core.models import LiveEvent, LiveEventType
from pydantic import TypeAdapter, ValidationError

log = structlog.get_logger()

_LIVE_EVENT = TypeAdapter(LiveEvent)

INBOUND_EVENTS: frozenset[str] = frozenset(LiveEventType)


def _normalize(name: str, data: dict[str, Any]) -> dict[str, Any]:
    payload = {**data, "type": name}
    # 工具活动 payload 即工具本身
    if name == LiveEventType.TOOL_ACTIVITY and "tool" not in data:
        tool = {k: v for k, v in data.items() if k != "chatInstanceId"}
        payload = {"type": name, "chatInstanceId": data.get("chatInstanceId"), "tool": tool}
    return payload


def decode_event(name: str, data: Any) -> LiveEvent | None:
    """解码单个入站事件

    Args:
        name: 线上事件名
        data: 原始 payload

    Returns:
        LiveEvent 或 None（未知事件 / 非法 payload）
    """
    if name not in INBOUND_EVENTS:
        log.debug("live_event_unknown", event_name=name)
        return None
    if not isinstance(data, dict):
        log.warning("live_event_invalid", event_name=name, reason="payload_not_object")
        return None
    try:
        return _LIVE_EVENT.validate_python(_normalize(name, data))
    except ValidationError as e:
        log.warning(
            "live_event_invalid",
            event_name=name,
            error_count=e.error_count(),
            errors=[err["loc"] for err in e.errors()],
        )
        return None
