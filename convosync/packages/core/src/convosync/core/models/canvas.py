"""Canvas Domain Model

Canvas 是按行组织的文本文档。lines 为唯一可变表示，
content（换行拼接字符串）是派生字段，保证两者在任何修改后一致。
"""

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator, model_validator


def split_lines(content: str) -> list[str]:
    """拆分 content 为行数组（空字符串对应空文档）"""
    return content.split("\n") if content else []


class Canvas(BaseModel):
    """命名文本文档

    入站数据只带 content 字符串时自动拆分为 lines。
    """

    id: str = Field(description="Canvas ID")
    title: str = Field(default="", description="标题")
    lines: list[str] = Field(default_factory=list, description="按行内容")

    @model_validator(mode="before")
    @classmethod
    def _lines_from_content(cls, data: Any) -> Any:
        if isinstance(data, dict) and "lines" not in data:
            content = data.get("content")
            if isinstance(content, str):
                return {**data, "lines": split_lines(content)}
        return data

    @computed_field  # type: ignore[prop-decorator]
    @property
    def content(self) -> str:
        return "\n".join(self.lines)

    @classmethod
    def from_content(cls, canvas_id: str, content: str, title: str = "") -> "Canvas":
        return cls(id=canvas_id, title=title, lines=split_lines(content))


class LineUpdate(BaseModel):
    """单行补丁（来自实时通道）

    line_number 的基数（0 或 1）不确定，由引擎两种解释都尝试。
    """

    model_config = ConfigDict(populate_by_name=True)

    line_number: int = Field(alias="lineNumber", description="行号")
    old_content: str = Field(default="", alias="oldContent", description="期望的旧内容")
    new_content: str = Field(default="", alias="newContent", description="新内容")

    @field_validator("old_content", "new_content", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value


class CanvasVersion(BaseModel):
    """Canvas 历史版本快照"""

    canvas_id: str
    title: str = ""
    lines: list[str] = Field(default_factory=list)
    saved_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class LegacyCanvasView(BaseModel):
    """旧版单 canvas 视图（由当前激活 canvas 派生，只读）"""

    title: str = ""
    content: list[str] = Field(default_factory=list)
