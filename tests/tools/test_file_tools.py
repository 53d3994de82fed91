"""Tests for tools.file_tools -- read, write, edit, list."""

import pytest

from agent.errors import ToolExecutionFailed
from tools.file_tools import (
    edit_file_handler,
    list_directory_handler,
    read_file_handler,
    write_file_handler,
)
from tools.registry import default_registry


class TestReadFile:
    @pytest.mark.asyncio
    async def test_numbered_lines(self, tmp_path):
        f = tmp_path / "a.txt"
        f.write_text("one\ntwo\nthree\n", encoding="utf-8")
        out = await read_file_handler({"path": str(f)}, None)
        assert out.splitlines() == ["     1\tone", "     2\ttwo", "     3\tthree"]

    @pytest.mark.asyncio
    async def test_offset_and_limit_report_remaining(self, tmp_path):
        f = tmp_path / "a.txt"
        f.write_text("\n".join(str(i) for i in range(1, 11)), encoding="utf-8")
        out = await read_file_handler({"path": str(f), "offset": 3, "limit": 2}, None)
        assert "     3\t3" in out and "     4\t4" in out
        assert "[6 more lines; continue with offset=5]" in out

    @pytest.mark.asyncio
    async def test_missing_file(self, tmp_path):
        with pytest.raises(ToolExecutionFailed, match="not found"):
            await read_file_handler({"path": str(tmp_path / "nope")}, None)

    @pytest.mark.asyncio
    async def test_bad_limit(self, tmp_path):
        with pytest.raises(ToolExecutionFailed, match="integer"):
            await read_file_handler({"path": str(tmp_path), "limit": "many"}, None)


class TestWriteAndEdit:
    @pytest.mark.asyncio
    async def test_write_creates_parents(self, tmp_path):
        target = tmp_path / "sub" / "dir" / "f.txt"
        out = await write_file_handler({"path": str(target), "content": "hello"}, None)
        assert target.read_text(encoding="utf-8") == "hello"
        assert "5 characters" in out

    @pytest.mark.asyncio
    async def test_edit_unique_match(self, tmp_path):
        f = tmp_path / "f.py"
        f.write_text("x = 1\ny = 2\n", encoding="utf-8")
        await edit_file_handler({"path": str(f), "old_string": "y = 2", "new_string": "y = 3"}, None)
        assert f.read_text(encoding="utf-8") == "x = 1\ny = 3\n"

    @pytest.mark.asyncio
    async def test_edit_ambiguous_match_is_refused(self, tmp_path):
        f = tmp_path / "f.py"
        f.write_text("a\na\n", encoding="utf-8")
        with pytest.raises(ToolExecutionFailed, match="occurs 2 times"):
            await edit_file_handler({"path": str(f), "old_string": "a", "new_string": "b"}, None)
        assert f.read_text(encoding="utf-8") == "a\na\n"

    @pytest.mark.asyncio
    async def test_edit_replace_all(self, tmp_path):
        f = tmp_path / "f.py"
        f.write_text("a\na\n", encoding="utf-8")
        out = await edit_file_handler(
            {"path": str(f), "old_string": "a", "new_string": "b", "replace_all": True}, None)
        assert f.read_text(encoding="utf-8") == "b\nb\n"
        assert "2 occurrence" in out

    @pytest.mark.asyncio
    async def test_edit_missing_string(self, tmp_path):
        f = tmp_path / "f.py"
        f.write_text("abc", encoding="utf-8")
        with pytest.raises(ToolExecutionFailed, match="not found"):
            await edit_file_handler({"path": str(f), "old_string": "zzz", "new_string": "y"}, None)


class TestListDirectory:
    @pytest.mark.asyncio
    async def test_lists_sorted_with_dir_markers(self, tmp_path):
        (tmp_path / "b.txt").write_text("", encoding="utf-8")
        (tmp_path / "a").mkdir()
        out = await list_directory_handler({"path": str(tmp_path)}, None)
        assert out.splitlines() == ["a/", "b.txt"]

    @pytest.mark.asyncio
    async def test_empty_directory(self, tmp_path):
        assert await list_directory_handler({"path": str(tmp_path)}, None) == "(empty directory)"


def test_default_registry_has_local_tools():
    reg = default_registry()
    assert reg.names() == ["edit_file", "list_directory", "read_file", "terminal", "write_file"]
    assert reg.names(kind="mcp") == []
    schema = reg.get("terminal").to_openai_schema()
    assert schema["function"]["parameters"]["required"] == ["command"]
