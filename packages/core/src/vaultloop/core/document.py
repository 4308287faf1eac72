"""文档编解码 -- YAML frontmatter + Markdown 正文

文档格式：

    ---
    <YAML 元数据>
    ---

    <正文>

另外提供正文中 checkbox 列表（`- [ ] ...` / `- [x] ...`）的解析与按位置修改。
checkbox 以出现顺序定位，不做重新编号。
"""

import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

from .exceptions import DocumentParseError
from .filelock import atomic_write_text

FRONTMATTER_DELIMITER = "---"

CHECKBOX_PATTERN = re.compile(r"^(\s*-\s*\[)([ xX])(\]\s*)(.*)$")
STEP_NUMBER_PATTERN = re.compile(r"^(\d+)\.\s*(.*)$")
H1_PATTERN = re.compile(r"^#\s+(.+?)\s*$")

MAX_TITLE_LENGTH = 100
DEFAULT_TITLE = "Untitled Task"


class ParsedDocument(BaseModel):
    """解析后的文档"""

    metadata: dict[str, Any] = Field(default_factory=dict)
    body: str = ""


class Checkbox(BaseModel):
    """正文中的一个 checkbox 条目"""

    position: int = Field(description="在所有 checkbox 中的序号（0 起）")
    line_index: int = Field(description="在正文中的行号（0 起）")
    checked: bool
    text: str


def parse_document(text: str, path: Path | str | None = None) -> ParsedDocument:
    """解析文档文本

    没有 frontmatter 的文档视为元数据为空；frontmatter 未闭合、YAML 非法
    或不是映射时抛出 DocumentParseError。
    """
    lines = text.splitlines(keepends=True)
    if not lines or lines[0].strip() != FRONTMATTER_DELIMITER:
        return ParsedDocument(metadata={}, body=text)

    for index in range(1, len(lines)):
        if lines[index].strip() == FRONTMATTER_DELIMITER:
            header = "".join(lines[1:index])
            body = "".join(lines[index + 1 :])
            break
    else:
        raise DocumentParseError(path, "frontmatter 缺少闭合分隔符")

    try:
        metadata = yaml.safe_load(header) if header.strip() else {}
    except yaml.YAMLError as e:
        raise DocumentParseError(path, f"YAML 解析失败: {e}") from e

    if not isinstance(metadata, dict):
        raise DocumentParseError(path, "frontmatter 不是键值映射")

    return ParsedDocument(metadata=metadata, body=body.lstrip("\n"))


def render_document(metadata: dict[str, Any], body: str) -> str:
    header = yaml.safe_dump(
        metadata,
        sort_keys=False,
        allow_unicode=True,
        default_flow_style=False,
    )
    return f"{FRONTMATTER_DELIMITER}\n{header}{FRONTMATTER_DELIMITER}\n\n{body}"


def read_document(path: Path) -> ParsedDocument:
    return parse_document(path.read_text(encoding="utf-8"), path)


def write_document(path: Path, metadata: dict[str, Any], body: str) -> None:
    atomic_write_text(path, render_document(metadata, body))


def extract_title(content: str) -> str:
    """从内容中提取标题

    优先第一个一级标题，其次第一个非空行（截断到 100 字符），都没有时返回默认标题。
    """
    for line in content.splitlines():
        if match := H1_PATTERN.match(line):
            return match.group(1)[:MAX_TITLE_LENGTH]

    for line in content.splitlines():
        stripped = line.strip()
        if stripped:
            return stripped[:MAX_TITLE_LENGTH]

    return DEFAULT_TITLE


def parse_checkboxes(body: str) -> list[Checkbox]:
    """按出现顺序返回正文中的所有 checkbox"""
    boxes: list[Checkbox] = []
    for line_index, line in enumerate(body.split("\n")):
        match = CHECKBOX_PATTERN.match(line)
        if match is None:
            continue
        boxes.append(
            Checkbox(
                position=len(boxes),
                line_index=line_index,
                checked=match.group(2).lower() == "x",
                text=match.group(4).strip(),
            )
        )
    return boxes


def count_checkboxes(body: str) -> tuple[int, int]:
    """返回 (已勾选数, 总数)"""
    boxes = parse_checkboxes(body)
    return sum(1 for box in boxes if box.checked), len(boxes)


def set_checkbox(body: str, position: int, checked: bool) -> str:
    """修改第 position 个 checkbox 的勾选状态

    Raises:
        IndexError: position 超出范围
    """
    boxes = parse_checkboxes(body)
    if position < 0 or position >= len(boxes):
        raise IndexError(f"checkbox position out of range: {position}")

    lines = body.split("\n")
    line_index = boxes[position].line_index
    mark = "x" if checked else " "
    lines[line_index] = CHECKBOX_PATTERN.sub(rf"\g<1>{mark}\g<3>\g<4>", lines[line_index], count=1)
    return "\n".join(lines)


def extract_step_number(text: str) -> int | None:
    """`3. Verify results` -> 3"""
    if match := STEP_NUMBER_PATTERN.match(text.strip()):
        return int(match.group(1))
    return None


def strip_step_number(text: str) -> str:
    if match := STEP_NUMBER_PATTERN.match(text.strip()):
        return match.group(2).strip()
    return text.strip()


def note_lines_after(body: str, position: int) -> tuple[int, int]:
    """第 position 个 checkbox 之后紧跟的缩进子行范围 [start, end)"""
    boxes = parse_checkboxes(body)
    lines = body.split("\n")
    start = boxes[position].line_index + 1
    end = start
    while end < len(lines):
        line = lines[end]
        if not line.strip() or not line[0].isspace() or CHECKBOX_PATTERN.match(line):
            break
        end += 1
    return start, end


def insert_note_after(body: str, position: int, note: str) -> str:
    """在第 position 个 checkbox 下方插入一条缩进子行"""
    boxes = parse_checkboxes(body)
    lines = body.split("\n")
    lines.insert(boxes[position].line_index + 1, f"  - {note}")
    return "\n".join(lines)


def remove_notes_after(body: str, position: int, prefix: str) -> str:
    """删除第 position 个 checkbox 下方以 prefix 开头的子行"""
    start, end = note_lines_after(body, position)
    lines = body.split("\n")
    kept = [line for line in lines[start:end] if not line.strip().startswith(f"- {prefix}")]
    return "\n".join(lines[:start] + kept + lines[end:])
