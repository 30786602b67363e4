"""Transport 异常体系

传输层异常只在连接实现与会话管理器之间传递，
TransportSessionManager 会把它们转化为连接状态，不向调用方抛出。
"""

from convosync.core.exceptions import ConvoSyncError


class TransportError(ConvoSyncError):
    """传输层基础异常"""


class NotConnectedError(TransportError):
    """连接未建立时尝试发送"""

    def __init__(self, event: str) -> None:
        super().__init__(f"连接未建立，无法发送事件: {event}")
        self.event = event


class FrameDecodeError(TransportError):
    """入站帧无法解析"""

    def __init__(self, message: str) -> None:
        super().__init__(message, recoverable=True)
