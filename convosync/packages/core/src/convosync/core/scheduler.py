"""定时任务调度器 -- 按 key 防抖

每个 key 至多一个待执行任务：重复 arm 同一 key 会替换前一个（尾沿防抖）。
AsyncioScheduler 基于事件循环真实计时；ManualScheduler 使用虚拟时钟，
测试中通过 advance() 推进时间，无需真实等待。
"""

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from typing import Protocol

import structlog

log = structlog.get_logger()

Job = Callable[[], Awaitable[None] | None]


async def _run_job(key: str, job: Job) -> None:
    """执行任务，异常仅记录不传播"""
    try:
        result = job()
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        log.error("scheduled_job_failed", key=key, error=str(e), error_type=type(e).__name__)


class TimerScheduler(Protocol):
    """调度器接口"""

    def arm(self, key: str, delay_s: float, job: Job) -> None:
        """安排 delay_s 秒后执行 job；替换同 key 的待执行任务"""
        ...

    def cancel(self, key: str) -> None:
        """取消同 key 的待执行任务（不存在时无操作）"""
        ...

    def is_pending(self, key: str) -> bool:
        ...

    async def flush(self) -> None:
        """立即执行全部待执行任务"""
        ...


class AsyncioScheduler:
    """基于 loop.call_later 的调度器

    到期任务以 Task 形式运行并被跟踪，close()/flush() 时等待其完成。
    """

    def __init__(self) -> None:
        self._handles: dict[str, asyncio.TimerHandle] = {}
        self._jobs: dict[str, Job] = {}
        self._running: set[asyncio.Task] = set()

    def arm(self, key: str, delay_s: float, job: Job) -> None:
        self.cancel(key)
        loop = asyncio.get_running_loop()
        self._jobs[key] = job
        self._handles[key] = loop.call_later(max(delay_s, 0.0), self._fire, key)

    def cancel(self, key: str) -> None:
        handle = self._handles.pop(key, None)
        if handle is not None:
            handle.cancel()
        self._jobs.pop(key, None)

    def is_pending(self, key: str) -> bool:
        return key in self._jobs

    def _fire(self, key: str) -> None:
        self._handles.pop(key, None)
        job = self._jobs.pop(key, None)
        if job is None:
            return
        task = asyncio.ensure_future(_run_job(key, job))
        self._running.add(task)
        task.add_done_callback(self._running.discard)

    async def flush(self) -> None:
        for key in list(self._jobs):
            job = self._jobs.get(key)
            self.cancel(key)
            if job is not None:
                await _run_job(key, job)
        if self._running:
            await asyncio.gather(*list(self._running), return_exceptions=True)

    async def close(self) -> None:
        """取消全部待执行任务并等待运行中的任务结束"""
        for key in list(self._jobs):
            self.cancel(key)
        if self._running:
            await asyncio.gather(*list(self._running), return_exceptions=True)


class ManualScheduler:
    """虚拟时钟调度器（测试用）

    任务只在 advance() / flush() 中执行，按到期时间顺序。
    """

    def __init__(self) -> None:
        self.now = 0.0
        self._seq = 0
        self._jobs: dict[str, tuple[float, int, Job]] = {}

    def arm(self, key: str, delay_s: float, job: Job) -> None:
        self._seq += 1
        self._jobs[key] = (self.now + max(delay_s, 0.0), self._seq, job)

    def cancel(self, key: str) -> None:
        self._jobs.pop(key, None)

    def is_pending(self, key: str) -> bool:
        return key in self._jobs

    @property
    def pending_keys(self) -> list[str]:
        return sorted(self._jobs, key=lambda k: self._jobs[k][:2])

    def _next_due(self, deadline: float) -> str | None:
        due = [k for k, (at, _, _) in self._jobs.items() if at <= deadline]
        if not due:
            return None
        return min(due, key=lambda k: self._jobs[k][:2])

    async def advance(self, seconds: float = 0.0) -> None:
        """推进虚拟时钟并执行期间到期的任务

        任务执行中新 arm 的任务若在截止时间内到期，同样会被执行。
        """
        deadline = self.now + seconds
        while (key := self._next_due(deadline)) is not None:
            at, _, job = self._jobs.pop(key)
            self.now = max(self.now, at)
            await _run_job(key, job)
        self.now = deadline

    async def flush(self) -> None:
        for key in self.pending_keys:
            entry = self._jobs.pop(key, None)
            if entry is not None:
                await _run_job(key, entry[2])
