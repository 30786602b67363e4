"""Canvas Patch Engine -- 多 canvas 文档 + 行级补丁

- apply_line_updates: 纯函数，按行号降序应用补丁；行号漂移时依次尝试
  0 基 / 1 基精确匹配、窗口内模糊匹配、末尾追加、截断兜底，永不抛出
- CanvasPatchEngine: 维护 canvas 集合与激活项，行范围操作做边界校验，
  每次修改立即持久化，版本历史防抖持久化
"""

from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

import structlog

from .config import SyncConfig
from .exceptions import CanvasNotFoundError, CanvasRangeError, CanvasVersionError
from .models.canvas import Canvas, CanvasVersion, LegacyCanvasView, LineUpdate, split_lines
from .scheduler import TimerScheduler
from .store.snapshots import SnapshotRepository

log = structlog.get_logger()


def _locate(lines: list[str], update: LineUpdate, config: SyncConfig) -> int | None:
    """定位补丁目标行，找不到返回 None"""
    count = len(lines)
    zero_based = update.line_number
    one_based = update.line_number - 1
    old = update.old_content

    for index in (zero_based, one_based):
        if 0 <= index < count and (not old or lines[index] == old):
            return index

    if not old:
        return None

    window = config.canvas_fuzzy_window
    start = max(0, min(zero_based, one_based) - window)
    end = min(count - 1, max(zero_based, one_based) + window)
    stripped = old.strip()
    substring_ok = len(old) > config.canvas_substring_min_length

    for index in range(start, end + 1):
        line = lines[index]
        if line == old or line.strip() == stripped:
            return index
        if substring_ok and stripped in line:
            return index
    return None


def apply_line_updates(
    lines: list[str],
    updates: Iterable[LineUpdate],
    config: SyncConfig,
    canvas_id: str = "",
) -> list[str]:
    """将一批行补丁应用到行数组

    Args:
        lines: 原始行（不会被修改）
        updates: 无序补丁列表
        config: 模糊匹配参数
        canvas_id: 仅用于日志

    Returns:
        新的行数组
    """
    result = list(lines)
    ordered = sorted(updates, key=lambda u: u.line_number, reverse=True)

    for update in ordered:
        target = _locate(result, update, config)
        if target is not None:
            result[target] = update.new_content
            continue

        if update.line_number == len(result):
            result.append(update.new_content)
            continue

        fallback = min(update.line_number, len(result) - 1)
        if fallback < 0:
            log.error(
                "canvas_patch_out_of_bounds",
                canvas_id=canvas_id,
                line_number=update.line_number,
            )
            continue

        log.warning(
            "canvas_patch_mismatch",
            canvas_id=canvas_id,
            line_number=update.line_number,
            expected=update.old_content,
            found=result[fallback],
            applied_at=fallback,
        )
        result[fallback] = update.new_content

    return result


def canvas_job_key(conversation_id: str) -> str:
    return f"canvas:{conversation_id}"


def canvas_versions_job_key(conversation_id: str) -> str:
    return f"canvas-versions:{conversation_id}"


class CanvasPatchEngine:
    """会话级 canvas 集合

    持久化命名空间由 (model_id, conversation_id) 决定，通过 bind() 切换。
    """

    def __init__(
        self,
        repository: SnapshotRepository,
        scheduler: TimerScheduler,
        config: SyncConfig,
        model_id: str = "",
        conversation_id: str = "",
    ) -> None:
        self._repository = repository
        self._scheduler = scheduler
        self._config = config
        self._model_id = model_id
        self._conversation_id = conversation_id
        self._canvases: dict[str, Canvas] = {}
        self._active_id: str | None = None
        self._versions: dict[str, list[CanvasVersion]] = {}

    # ---- 查询 ----

    @property
    def canvases(self) -> list[Canvas]:
        return list(self._canvases.values())

    @property
    def active_id(self) -> str | None:
        return self._active_id

    @property
    def active(self) -> Canvas | None:
        if self._active_id is None:
            return None
        return self._canvases.get(self._active_id)

    @property
    def legacy_view(self) -> LegacyCanvasView:
        """旧版单 canvas 视图：标题取激活 canvas 的 ID"""
        canvas = self.active
        if canvas is None:
            return LegacyCanvasView()
        return LegacyCanvasView(title=canvas.id, content=list(canvas.lines))

    def get(self, canvas_id: str) -> Canvas | None:
        return self._canvases.get(canvas_id)

    def numbered_lines(self, start: int = 1) -> list[str]:
        """激活 canvas 的带行号文本，行号右对齐"""
        lines = self.legacy_view.content
        width = len(str(len(lines) + start - 1))
        return [f"{str(start + i).rjust(width)}: {line}" for i, line in enumerate(lines)]

    def to_text(self) -> str:
        return "\n\n".join(self.legacy_view.content)

    # ---- 持久化 ----

    async def bind(self, model_id: str, conversation_id: str) -> None:
        """切换持久化命名空间并从存储恢复"""
        await self._scheduler.flush()
        self._model_id = model_id
        self._conversation_id = conversation_id
        self._canvases = {}
        self._active_id = None
        self._versions = {}
        await self.load()

    async def load(self) -> None:
        """从存储恢复 canvas 集合与版本历史；无激活项时激活第一个"""
        if not self._conversation_id:
            return
        stored = await self._repository.load_canvases(self._model_id, self._conversation_id)
        self._canvases = {canvas.id: canvas for canvas in stored}
        self._versions = await self._repository.load_canvas_versions(
            self._model_id, self._conversation_id
        )
        if self._active_id not in self._canvases:
            self._active_id = stored[0].id if stored else None
        log.debug(
            "canvases_restored",
            conversation_id=self._conversation_id,
            canvas_count=len(stored),
        )

    def _persist(self) -> None:
        if not self._conversation_id:
            return
        model_id, cid = self._model_id, self._conversation_id
        canvases = self.canvases
        self._scheduler.arm(
            canvas_job_key(cid),
            0,
            lambda: self._repository.save_canvases(model_id, cid, canvases),
        )

    def _persist_versions(self) -> None:
        if not self._conversation_id:
            return
        model_id, cid = self._model_id, self._conversation_id
        versions = {key: list(value) for key, value in self._versions.items()}
        self._scheduler.arm(
            canvas_versions_job_key(cid),
            self._config.canvas_version_debounce_s,
            lambda: self._repository.save_canvas_versions(model_id, cid, versions),
        )

    def _store(self, canvas: Canvas) -> Canvas:
        self._canvases[canvas.id] = canvas
        self.record_version(canvas.id)
        self._persist()
        return canvas

    # ---- 集合级操作 ----

    def load_all(self, canvases: Iterable[Canvas | dict[str, Any]]) -> None:
        """以权威数据整体替换 canvas 集合"""
        loaded = [c if isinstance(c, Canvas) else Canvas.model_validate(c) for c in canvases]
        self._canvases = {canvas.id: canvas for canvas in loaded}
        if self._active_id is None and loaded:
            self._active_id = loaded[0].id
        for canvas in loaded:
            self.record_version(canvas.id)
        self._persist()
        log.debug("canvases_loaded", canvas_count=len(loaded), active_id=self._active_id)

    def add(self, canvas: Canvas | dict[str, Any]) -> Canvas:
        """追加 canvas；首个 canvas 自动激活"""
        item = canvas if isinstance(canvas, Canvas) else Canvas.model_validate(canvas)
        if not self._canvases:
            self._active_id = item.id
        return self._store(item)

    def switch_active(self, canvas_id: str) -> None:
        if canvas_id not in self._canvases:
            raise CanvasNotFoundError(canvas_id)
        self._active_id = canvas_id

    def replace(self, canvas_id: str | None, title: str, content: str) -> Canvas | None:
        """整体替换 canvas 内容

        canvas_id 为空时作用于激活 canvas；未知 ID 视为新增。
        """
        target_id = canvas_id or self._active_id
        if target_id is None:
            log.warning("canvas_replace_without_target", title=title)
            return None
        existing = self._canvases.get(target_id)
        if existing is None:
            return self.add(Canvas(id=target_id, title=title, lines=split_lines(content)))
        return self._store(
            existing.model_copy(
                update={"title": title or existing.title, "lines": split_lines(content)}
            )
        )

    def apply_live_patch(self, canvas_id: str, updates: Iterable[LineUpdate]) -> Canvas | None:
        """应用实时通道的行级补丁；未知 canvas 记录 warning 后忽略"""
        canvas = self._canvases.get(canvas_id)
        if canvas is None:
            log.warning("canvas_patch_unknown_canvas", canvas_id=canvas_id)
            return None
        lines = apply_line_updates(canvas.lines, updates, self._config, canvas_id=canvas_id)
        return self._store(canvas.model_copy(update={"lines": lines}))

    # ---- 激活 canvas 的行范围操作 ----

    def _active_or_none(self, operation: str) -> Canvas | None:
        canvas = self.active
        if canvas is None:
            log.warning("canvas_no_active", operation=operation)
        return canvas

    def update_range(self, start: int, end: int, new_lines: list[str]) -> Canvas | None:
        """覆盖 [start, end] 行；new_lines 超出部分丢弃，不足部分保留原行"""
        if start < 0 or end < start:
            raise CanvasRangeError(f"非法行范围: start={start}, end={end}")
        canvas = self._active_or_none("update_range")
        if canvas is None:
            return None
        if end >= len(canvas.lines):
            raise CanvasRangeError(f"行范围超出 canvas 长度: end={end}, length={len(canvas.lines)}")

        lines = list(canvas.lines)
        for offset, line in enumerate(new_lines[: end - start + 1]):
            lines[start + offset] = line
        return self._store(canvas.model_copy(update={"lines": lines}))

    def insert_at(self, index: int, text: str) -> Canvas | None:
        if index < 0:
            raise CanvasRangeError(f"行索引不能为负: {index}")
        canvas = self._active_or_none("insert_at")
        if canvas is None:
            return None
        if index > len(canvas.lines):
            raise CanvasRangeError(f"行索引超出 canvas 长度: index={index}, length={len(canvas.lines)}")

        lines = list(canvas.lines)
        lines.insert(index, text)
        return self._store(canvas.model_copy(update={"lines": lines}))

    def delete_range(self, start: int, end: int) -> Canvas | None:
        if start < 0 or end < start:
            raise CanvasRangeError(f"非法行范围: start={start}, end={end}")
        canvas = self._active_or_none("delete_range")
        if canvas is None:
            return None
        if end >= len(canvas.lines):
            raise CanvasRangeError(f"行范围超出 canvas 长度: end={end}, length={len(canvas.lines)}")

        lines = canvas.lines[:start] + canvas.lines[end + 1 :]
        return self._store(canvas.model_copy(update={"lines": lines}))

    # ---- 版本历史 ----

    def versions(self, canvas_id: str) -> list[CanvasVersion]:
        """最近优先的版本列表"""
        return list(self._versions.get(canvas_id, []))

    def record_version(self, canvas_id: str) -> bool:
        """记录当前内容为新版本；与最近版本相同则跳过

        Returns:
            是否追加了新版本
        """
        canvas = self._canvases.get(canvas_id)
        if canvas is None:
            raise CanvasNotFoundError(canvas_id)
        history = self._versions.get(canvas_id, [])
        if history and history[0].lines == canvas.lines and history[0].title == canvas.title:
            return False

        version = CanvasVersion(canvas_id=canvas_id, title=canvas.title, lines=list(canvas.lines))
        self._versions[canvas_id] = [version, *history][: self._config.canvas_history_depth]
        self._persist_versions()
        return True

    def restore_version(self, canvas_id: str, index: int) -> Canvas:
        """恢复到第 index 个版本（0 为最近），丢弃更新的版本"""
        history = self._versions.get(canvas_id, [])
        if canvas_id not in self._canvases:
            raise CanvasNotFoundError(canvas_id)
        if index < 0 or index >= len(history):
            raise CanvasVersionError(canvas_id, index)

        restored = history[index].model_copy(update={"saved_at": datetime.now(UTC)})
        self._versions[canvas_id] = [restored, *history[index + 1 :]]
        canvas = self._canvases[canvas_id].model_copy(
            update={"title": restored.title, "lines": list(restored.lines)}
        )
        self._canvases[canvas_id] = canvas
        self._persist()
        self._persist_versions()
        return canvas
