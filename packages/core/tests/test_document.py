"""文档编解码单元测试

测试内容：
1. frontmatter 解析与渲染
2. 非法文档抛出 DocumentParseError
3. 标题提取
4. checkbox 按位置解析与修改、子行插入与删除
"""

from pathlib import Path

import pytest
from vaultloop.core.document import (
    DEFAULT_TITLE,
    count_checkboxes,
    extract_step_number,
    extract_title,
    insert_note_after,
    note_lines_after,
    parse_checkboxes,
    parse_document,
    read_document,
    remove_notes_after,
    render_document,
    set_checkbox,
    strip_step_number,
    write_document,
)
from vaultloop.core.exceptions import DocumentParseError

PLAN_BODY = """# Plan: Example

## Steps

- [ ] 1. Gather context
- [x] 2. Draft response
  - Completed: drafted (2026-01-01T00:00:00+00:00)
- [ ] 3. Verify results

## Risk Assessment
"""


class TestParseDocument:
    def test_frontmatter_and_body(self):
        text = "---\nid: abc\ncount: 3\n---\n\n# Title\n\nBody\n"
        doc = parse_document(text)
        assert doc.metadata == {"id": "abc", "count": 3}
        assert doc.body == "# Title\n\nBody\n"

    def test_no_frontmatter(self):
        doc = parse_document("just text\n")
        assert doc.metadata == {}
        assert doc.body == "just text\n"

    def test_empty_frontmatter(self):
        doc = parse_document("---\n---\nbody")
        assert doc.metadata == {}
        assert doc.body == "body"

    def test_unclosed_frontmatter(self):
        with pytest.raises(DocumentParseError):
            parse_document("---\nid: abc\n\nbody")

    def test_invalid_yaml(self):
        with pytest.raises(DocumentParseError):
            parse_document("---\nid: [unclosed\n---\nbody")

    def test_non_mapping_frontmatter(self):
        with pytest.raises(DocumentParseError) as exc_info:
            parse_document("---\n- a\n- b\n---\nbody", "x.md")
        assert exc_info.value.path == Path("x.md")

    def test_render_then_parse(self):
        metadata = {"id": "abc", "title": "审批任务", "tags": ["a", "b"]}
        text = render_document(metadata, "# Body\n")
        assert text.startswith("---\n")
        doc = parse_document(text)
        assert doc.metadata == metadata
        assert doc.body == "# Body\n"

    def test_write_and_read(self, tmp_path: Path):
        path = tmp_path / "doc.md"
        write_document(path, {"id": "x"}, "hello\n")
        doc = read_document(path)
        assert doc.metadata == {"id": "x"}
        assert doc.body == "hello\n"


class TestExtractTitle:
    def test_h1_preferred(self):
        assert extract_title("intro line\n# Real Title\nmore") == "Real Title"

    def test_first_non_empty_line(self):
        assert extract_title("\n\n  First line  \nsecond") == "First line"

    def test_truncated(self):
        assert len(extract_title("x" * 300)) == 100

    def test_default(self):
        assert extract_title("   \n\n") == DEFAULT_TITLE


class TestCheckboxes:
    def test_parse_by_position(self):
        boxes = parse_checkboxes(PLAN_BODY)
        assert [b.position for b in boxes] == [0, 1, 2]
        assert [b.checked for b in boxes] == [False, True, False]
        assert boxes[2].text == "3. Verify results"

    def test_count(self):
        assert count_checkboxes(PLAN_BODY) == (1, 3)

    def test_uppercase_x_counts_as_checked(self):
        assert count_checkboxes("- [X] done\n- [ ] todo") == (1, 2)

    def test_set_checkbox(self):
        body = set_checkbox(PLAN_BODY, 2, True)
        assert count_checkboxes(body) == (2, 3)
        assert "- [x] 3. Verify results" in body
        body = set_checkbox(body, 1, False)
        assert "- [ ] 2. Draft response" in body

    def test_set_checkbox_out_of_range(self):
        with pytest.raises(IndexError):
            set_checkbox(PLAN_BODY, 3, True)

    def test_step_number_helpers(self):
        assert extract_step_number("3. Verify results") == 3
        assert extract_step_number("Verify results") is None
        assert strip_step_number("12. Do it ") == "Do it"
        assert strip_step_number("No number") == "No number"


class TestNotes:
    def test_note_range(self):
        start, end = note_lines_after(PLAN_BODY, 1)
        assert end - start == 1

    def test_insert_note(self):
        body = insert_note_after(PLAN_BODY, 0, "Completed: ok (now)")
        lines = body.split("\n")
        index = lines.index("- [ ] 1. Gather context")
        assert lines[index + 1] == "  - Completed: ok (now)"

    def test_remove_notes(self):
        body = remove_notes_after(PLAN_BODY, 1, "Completed:")
        assert "Completed: drafted" not in body
        assert count_checkboxes(body) == (1, 3)
