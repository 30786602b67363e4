"""chat_reducer -- ChatState 的唯一变更入口

纯函数：(state, action) -> state。与 projection 的 apply_event 相同，
逐个 action 应用；不同的是 ChatState 不可变，每次返回新实例，
未识别或无效果的 action 原样返回同一对象。
"""

import structlog

from .config import SyncConfig
from .dedup import Verdict, admit, cap_messages, merge_batch, resolve_is_sent, sort_messages
from .models.message import Identity, Message
from .models.state import (
    AddMessage,
    ChatState,
    ResetChat,
    SetLoading,
    SetMessages,
    UpdateMessage,
    UpdateNotificationCount,
    UpdateSuggestions,
    UpdateTitle,
)

log = structlog.get_logger()


def _replace_all(
    messages: list[Message],
    current_user: Identity | None,
    config: SyncConfig,
) -> list[Message]:
    resolved = [resolve_is_sent(msg, current_user, config) for msg in messages]
    return cap_messages(sort_messages(resolved), config)


def _set_messages(
    state: ChatState,
    action: SetMessages,
    config: SyncConfig,
    current_user: Identity | None,
) -> ChatState:
    if not action.conversation_id:
        return state

    user = action.current_user or current_user

    if action.reset:
        return state.model_copy(
            update={
                "conversation_id": action.conversation_id,
                "messages": _replace_all(action.messages, user, config),
            }
        )

    switching = (
        state.conversation_id is not None
        and state.conversation_id != action.conversation_id
        and bool(state.messages)
    )
    if switching:
        # 会话切换：新批次即为新会话内容（可能为空）
        return state.model_copy(
            update={
                "conversation_id": action.conversation_id,
                "messages": _replace_all(action.messages, user, config),
            }
        )

    if not action.messages:
        if state.messages:
            return state
        if state.conversation_id == action.conversation_id:
            return state
        return state.model_copy(update={"conversation_id": action.conversation_id})

    if not state.messages:
        return state.model_copy(
            update={
                "conversation_id": action.conversation_id,
                "messages": _replace_all(action.messages, user, config),
            }
        )

    merged = merge_batch(state.messages, action.messages, user, config)
    return state.model_copy(
        update={"conversation_id": action.conversation_id, "messages": merged}
    )


def _add_message(
    state: ChatState,
    action: AddMessage,
    config: SyncConfig,
    current_user: Identity | None,
) -> ChatState:
    candidate = action.message
    admission = admit(candidate, state.messages, config)

    if admission.verdict == Verdict.REJECT:
        log.debug(
            "message_rejected",
            message_id=candidate.id,
            reason=admission.reason,
        )
        return state

    messages = list(state.messages)
    if admission.verdict == Verdict.REPLACE and admission.index is not None:
        placeholder = messages[admission.index]
        messages[admission.index] = resolve_is_sent(
            candidate,
            current_user,
            config,
            carried=placeholder.is_sent or candidate.is_sent,
        )
        log.debug(
            "placeholder_replaced",
            temp_id=placeholder.id,
            message_id=candidate.id,
        )
        return state.model_copy(update={"messages": messages})

    resolved = resolve_is_sent(candidate, current_user, config, carried=candidate.is_sent)
    # 按 created_at 插入，保持升序（同时间戳追加在后）
    position = len(messages)
    while position > 0 and messages[position - 1].created_at > resolved.created_at:
        position -= 1
    messages.insert(position, resolved)
    return state.model_copy(update={"messages": cap_messages(messages, config)})


def _update_message(
    state: ChatState,
    action: UpdateMessage,
    config: SyncConfig,
    current_user: Identity | None,
) -> ChatState:
    patch = action.message
    # 只有补丁显式给出的 is_sent 才参与继承，BOT 排除仍优先
    carried = "is_sent" in patch.model_fields_set and patch.is_sent
    messages = list(state.messages)
    for index, existing in enumerate(messages):
        if existing.id == patch.id:
            merged = Message.model_validate(
                {
                    **existing.model_dump(),
                    **patch.model_dump(exclude_unset=True),
                }
            )
            messages[index] = resolve_is_sent(merged, current_user, config, carried=carried)
            break
    else:
        messages.append(resolve_is_sent(patch, current_user, config, carried=carried))

    return state.model_copy(update={"messages": cap_messages(sort_messages(messages), config)})


def chat_reducer(
    state: ChatState,
    action: object,
    config: SyncConfig,
    current_user: Identity | None = None,
) -> ChatState:
    """将单个 action 应用到 ChatState

    Args:
        state: 当前状态（不会被修改）
        action: ChatAction 之一；其他对象视为未知 action
        config: 同步配置
        current_user: 计算 is_sent 所用的当前用户

    Returns:
        新的 ChatState；未知 action 返回同一对象
    """
    match action:
        case SetMessages():
            return _set_messages(state, action, config, current_user)
        case AddMessage():
            return _add_message(state, action, config, current_user)
        case UpdateMessage():
            return _update_message(state, action, config, current_user)
        case ResetChat():
            return state.model_copy(
                update={
                    "conversation_id": action.conversation_id,
                    "messages": [],
                    "title": config.default_title,
                }
            )
        case UpdateTitle():
            title = action.title or config.default_title
            if title == state.title:
                return state
            return state.model_copy(update={"title": title})
        case UpdateSuggestions():
            return state.model_copy(update={"suggestions": list(action.suggestions)})
        case UpdateNotificationCount():
            return state.model_copy(update={"notification_count": max(action.count, 0)})
        case SetLoading():
            if action.loading == state.loading:
                return state
            return state.model_copy(update={"loading": action.loading})
        case _:
            return state
