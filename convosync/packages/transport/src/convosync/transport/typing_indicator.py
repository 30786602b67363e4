"""TypingTracker -- 按用户防抖的输入状态集合"""

from collections.abc import Callable

from convosync.core.config import SyncConfig
from convosync.core.models import TypingUser
from convosync.core.scheduler import TimerScheduler


def typing_job_key(user_id: str) -> str:
    return f"typing:{user_id}"


class TypingTracker:
    """正在输入的用户集合

    同一用户的连续更新在防抖窗口内合并，只应用最后一次。
    """

    def __init__(
        self,
        scheduler: TimerScheduler,
        config: SyncConfig,
        on_change: Callable[[list[TypingUser]], None] | None = None,
    ) -> None:
        self._scheduler = scheduler
        self._config = config
        self._on_change = on_change
        self._users: dict[str, TypingUser] = {}
        self._pending: dict[str, TypingUser] = {}

    @property
    def users(self) -> list[TypingUser]:
        return list(self._users.values())

    def update(self, user: TypingUser) -> None:
        self._pending[user.user_id] = user
        self._scheduler.arm(
            typing_job_key(user.user_id),
            self._config.typing_debounce_s,
            lambda: self._apply(user.user_id),
        )

    def _apply(self, user_id: str) -> None:
        user = self._pending.pop(user_id, None)
        if user is None:
            return
        if user.is_typing:
            self._users[user_id] = user
        elif self._users.pop(user_id, None) is None:
            return
        if self._on_change is not None:
            self._on_change(self.users)

    def clear(self) -> None:
        for user_id in list(self._pending):
            self._scheduler.cancel(typing_job_key(user_id))
        self._pending.clear()
        self._users.clear()
