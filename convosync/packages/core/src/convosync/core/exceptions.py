"""Core 异常体系

瞬时 I/O 故障（存储、网络、连接）在组件边界被捕获并转化为状态；
这里定义的只是调用方契约违规，必须显式抛出。
"""


class ConvoSyncError(Exception):
    """convosync 基础异常"""

    def __init__(self, message: str, recoverable: bool = True) -> None:
        """
        Args:
            message: 错误描述
            recoverable: 是否可通过重试恢复
        """
        super().__init__(message)
        self.recoverable = recoverable


class CanvasNotFoundError(ConvoSyncError):
    """引用了未知的 canvas ID"""

    def __init__(self, canvas_id: str) -> None:
        super().__init__(f"Canvas 不存在: {canvas_id}", recoverable=False)
        self.canvas_id = canvas_id


class CanvasRangeError(ConvoSyncError):
    """行范围越界或非法"""

    def __init__(self, message: str) -> None:
        super().__init__(message, recoverable=False)


class CanvasVersionError(ConvoSyncError):
    """版本索引不存在"""

    def __init__(self, canvas_id: str, index: int) -> None:
        super().__init__(
            f"Canvas {canvas_id} 不存在索引为 {index} 的版本",
            recoverable=False,
        )
        self.canvas_id = canvas_id
        self.index = index
