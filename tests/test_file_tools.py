"""Built-in file, shell and search tools."""

import asyncio
import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from mosaic.models import AgentContext
from mosaic.tools import create_default_registry
from mosaic.tools.file_tools import apply_line_updates


@pytest.fixture
def workspace(tmp_path):
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "app.py").write_text("import os\n\ndef main():\n    return 1\n")
    (tmp_path / "README.md").write_text("# Demo\n")
    return tmp_path


@pytest.fixture
def call(workspace):
    registry = create_default_registry()
    context = AgentContext(working_directory=workspace)

    def _call(name, **params):
        return asyncio.run(registry.execute(name, params, context))
    return _call


class TestApplyLineUpdates:

    def test_single_range(self):
        content, changed = apply_line_updates("a\nb\nc\n", [{"start_line": 2, "end_line": 2, "new_content": "B"}])
        assert content == "a\nB\nc\n"
        assert changed == 1

    def test_multiple_ranges_keep_original_numbering(self):
        updates = [
            {"start_line": 1, "end_line": 1, "new_content": "first\nextra"},
            {"start_line": 3, "end_line": 3, "new_content": "third"},
        ]
        content, _ = apply_line_updates("1\n2\n3\n", updates)
        assert content == "first\nextra\n2\nthird\n"

    def test_camel_case_keys(self):
        content, _ = apply_line_updates("x\ny", [{"startLine": 2, "endLine": 2, "newContent": "z"}])
        assert content == "x\nz"

    def test_empty_content_deletes_lines(self):
        content, _ = apply_line_updates("a\nb\nc\n", [{"start_line": 2, "end_line": 3, "new_content": ""}])
        assert content == "a\n"

    def test_insert_with_empty_range(self):
        content, _ = apply_line_updates("a\nc\n", [{"start_line": 2, "end_line": 1, "new_content": "b"}])
        assert content == "a\nb\nc\n"

    @pytest.mark.parametrize("updates,message", [
        ([{"start_line": 0, "end_line": 1}], "Invalid line range"),
        ([{"start_line": 2, "end_line": 9}], "Invalid line range"),
        ([{"start_line": "1", "end_line": 1}], "must be integers"),
        ([{"start_line": 1, "end_line": 2}, {"start_line": 2, "end_line": 3}], "overlap"),
        (["nope"], "must be an object"),
    ])
    def test_invalid_updates(self, updates, message):
        with pytest.raises(ValueError, match=message):
            apply_line_updates("1\n2\n3\n", updates)


class TestFileTools:

    def test_read(self, call):
        result = call("read_file", path="src/app.py")
        assert result.success
        assert "def main" in result.data
        assert result.metadata["total_lines"] == 4

    def test_read_window(self, call):
        result = call("read_file", path="src/app.py", offset=2, limit=1)
        assert result.data == "def main():\n"

    def test_read_missing(self, call):
        result = call("read_file", path="nope.py")
        assert not result.success
        assert "File not found" in result.error

    def test_write_creates_parents(self, call, workspace):
        result = call("write_file", path="pkg/sub/mod.py", content="x = 1\n")
        assert result.success
        assert result.metadata["created"] is True
        assert (workspace / "pkg" / "sub" / "mod.py").read_text() == "x = 1\n"

    def test_update(self, call, workspace):
        result = call("update_file", path="src/app.py",
                      updates=[{"start_line": 4, "end_line": 4, "new_content": "    return 2"}])
        assert result.success
        assert (workspace / "src" / "app.py").read_text().endswith("    return 2\n")

    def test_update_bad_range_leaves_file(self, call, workspace):
        before = (workspace / "src" / "app.py").read_text()
        result = call("update_file", path="src/app.py",
                      updates=[{"start_line": 10, "end_line": 12, "new_content": "x"}])
        assert not result.success
        assert (workspace / "src" / "app.py").read_text() == before

    def test_delete(self, call, workspace):
        assert call("delete_file", path="README.md").success
        assert not (workspace / "README.md").exists()
        assert not call("delete_file", path="src").success

    def test_list_directory(self, call):
        result = call("list_directory", path=".")
        assert [e["name"] for e in result.data] == ["README.md", "src"]
        recursive = call("list_directory", path=".", recursive=True, pattern="*.py")
        assert [e["name"] for e in recursive.data] == [os.path.join("src", "app.py")]

    def test_create_directory_and_exists(self, call):
        assert call("create_directory", path="a/b").success
        assert call("file_exists", path="a/b").data == {"exists": True, "type": "directory"}
        assert call("file_exists", path="a/c").data == {"exists": False, "type": None}

    @pytest.mark.parametrize("tool,params", [
        ("read_file", {"path": "../outside.txt"}),
        ("write_file", {"path": "/etc/mosaic-test", "content": "x"}),
        ("list_directory", {"path": ".."}),
        ("search_code", {"pattern": "x", "directory": ".."}),
    ])
    def test_paths_outside_workspace_are_refused(self, call, tool, params):
        result = call(tool, **params)
        assert not result.success
        assert "outside the workspace" in result.error


class TestSearchAndShell:

    def test_search(self, call, workspace):
        (workspace / "node_modules").mkdir()
        (workspace / "node_modules" / "dep.py").write_text("def main(): pass\n")
        result = call("search_code", pattern=r"def \w+\(")
        assert result.success
        assert [(m["file"], m["line"]) for m in result.data] == [(os.path.join("src", "app.py"), 3)]

    def test_search_invalid_regex_is_literal(self, call, workspace):
        (workspace / "notes.txt").write_text("call foo( now\n")
        result = call("search_code", pattern="foo(")
        assert [m["file"] for m in result.data] == ["notes.txt"]

    @pytest.mark.skipif(sys.platform == "win32", reason="posix shell")
    def test_shell(self, call):
        result = call("execute_shell", command="echo hello")
        assert result.success
        assert result.data["stdout"].strip() == "hello"
        failed = call("execute_shell", command="exit 3")
        assert not failed.success
        assert failed.data["return_code"] == 3

    @pytest.mark.skipif(sys.platform == "win32", reason="posix shell")
    def test_shell_timeout(self, call):
        result = call("execute_shell", command="sleep 5", timeout=0.2)
        assert not result.success
        assert result.data["timed_out"] is True
