"""Client 异常体系

HTTP 协作方的失败以异常形式抛出，由 ChatSession 转化为 error 状态。
"""

from convosync.core.exceptions import ConvoSyncError


class ClientError(ConvoSyncError):
    """客户端基础异常"""


class HistoryFetchError(ClientError):
    """历史拉取失败（非 2xx 或响应不是合法 JSON）"""

    def __init__(self, conversation_id: str, reason: str) -> None:
        super().__init__(f"历史消息拉取失败: {conversation_id} -- {reason}")
        self.conversation_id = conversation_id
        self.reason = reason


class RateLimitedError(ClientError):
    """服务端限流（HTTP 429）

    user_message 可直接展示给用户。
    """

    def __init__(self, user_message: str = "Too many requests. Please wait before trying again.") -> None:
        super().__init__(user_message)
        self.user_message = user_message


class SendError(ClientError):
    """消息发送失败"""

    def __init__(self, reason: str, status_code: int | None = None) -> None:
        super().__init__(f"消息发送失败: {reason}")
        self.reason = reason
        self.status_code = status_code
