"""Tests for codebox.dispatcher and codebox.workspace_tools."""

import os
import time

import pytest

from codebox.config import CodeboxConfig, ToolConfig
from codebox.dispatcher import ToolContext, ToolDispatcher, extract_text
from codebox.workspace_tools import run_shell_command


@pytest.fixture
def dispatcher(context, config):
    return ToolDispatcher(context, config)


class TestCatalog:
    """Test the tool catalog offered to the model."""

    def test_tool_names(self, dispatcher):
        assert set(dispatcher.tool_names) == {
            "read_file",
            "write_file",
            "list_directory",
            "search_files",
            "grep_search",
            "run_command",
            "run_sql",
            "get_warehouse_info",
            "list_warehouses",
        }

    def test_catalog_shape(self, dispatcher):
        for entry in dispatcher.catalog():
            assert set(entry) == {"name", "description", "input_schema"}
            assert entry["input_schema"]["type"] == "object"
            assert entry["description"]

    def test_run_sql_schema(self, dispatcher):
        entry = next(e for e in dispatcher.catalog() if e["name"] == "run_sql")
        schema = entry["input_schema"]
        assert schema["required"] == ["query"]
        assert schema["properties"]["size"]["enum"] == ["2xs", "xs", "s"]
        assert schema["properties"]["max_rows"]["maximum"] == 10000

    def test_as_mcp_server(self, dispatcher):
        server = dispatcher.as_mcp_server()
        assert server["type"] == "sdk"
        assert server["name"] == "codebox-tools"


class TestExtractText:
    def test_string_passthrough(self):
        assert extract_text("hello") == "hello"

    def test_content_blocks_joined(self):
        result = {"content": [{"type": "text", "text": "a"}, {"type": "image"}, {"type": "text", "text": "b"}]}
        assert extract_text(result) == "a\nb"

    def test_other_values_stringified(self):
        assert extract_text(42) == "42"


class TestFileTools:
    """Test file tools through the dispatcher."""

    @pytest.mark.asyncio
    async def test_read_file(self, dispatcher):
        result = await dispatcher.execute("read_file", {"path": "src/utils.py"})
        assert "return 42" in result

    @pytest.mark.asyncio
    async def test_read_file_truncated(self, context, config, project_path):
        config.tools.max_read_chars = 10
        with open(os.path.join(project_path, "big.txt"), "w") as f:
            f.write("x" * 50)
        result = await ToolDispatcher(context, config).execute("read_file", {"path": "big.txt"})
        assert result.startswith("x" * 10 + "\n\n[truncated: file has 50 characters")

    @pytest.mark.asyncio
    async def test_read_missing_file_is_error_text(self, dispatcher):
        result = await dispatcher.execute("read_file", {"path": "nope.txt"})
        assert result.startswith("Error:")

    @pytest.mark.asyncio
    async def test_read_outside_workspace(self, dispatcher):
        result = await dispatcher.execute("read_file", {"path": "../../etc/passwd"})
        assert result == "Error: Path outside workspace: ../../etc/passwd"

    @pytest.mark.asyncio
    async def test_write_then_read(self, dispatcher, project_path):
        result = await dispatcher.execute("write_file", {"path": "notes.md", "content": "# Notes\n"})
        assert result == "File written successfully: notes.md"
        with open(os.path.join(project_path, "notes.md")) as f:
            assert f.read() == "# Notes\n"

    @pytest.mark.asyncio
    async def test_write_outside_workspace_rejected(self, dispatcher, tmp_path):
        result = await dispatcher.execute("write_file", {"path": "../escape.txt", "content": "x"})
        assert "Path outside workspace" in result
        assert not (tmp_path / "escape.txt").exists()

    @pytest.mark.asyncio
    async def test_list_directory(self, dispatcher):
        result = await dispatcher.execute("list_directory", {"path": "."})
        lines = result.splitlines()
        assert "[DIR] src" in lines
        assert "[DIR] tests" in lines
        assert "[FILE] pyproject.toml" in lines
        assert lines == sorted(lines, key=lambda line: line.split(" ", 1)[1])

    @pytest.mark.asyncio
    async def test_list_empty_directory(self, dispatcher, project_path):
        os.mkdir(os.path.join(project_path, "empty"))
        assert await dispatcher.execute("list_directory", {"path": "empty"}) == "Empty directory"


class TestSearchTools:
    """Test glob and grep search."""

    @pytest.mark.asyncio
    async def test_search_files_glob(self, dispatcher):
        result = await dispatcher.execute("search_files", {"pattern": "**/*.py"})
        assert result.splitlines() == ["src/main.py", "src/utils.py", "tests/test_main.py"]

    @pytest.mark.asyncio
    async def test_search_files_ignores_node_modules(self, dispatcher, project_path):
        os.makedirs(os.path.join(project_path, "node_modules", "pkg"))
        with open(os.path.join(project_path, "node_modules", "pkg", "index.py"), "w") as f:
            f.write("")
        result = await dispatcher.execute("search_files", {"pattern": "**/*.py"})
        assert "node_modules" not in result

    @pytest.mark.asyncio
    async def test_search_files_no_match(self, dispatcher):
        assert await dispatcher.execute("search_files", {"pattern": "*.rs"}) == "No files found"

    @pytest.mark.asyncio
    async def test_grep_search(self, dispatcher):
        result = await dispatcher.execute("grep_search", {"pattern": "def helper"})
        assert "src/utils.py:1:def helper():" in result

    @pytest.mark.asyncio
    async def test_grep_search_in_subdir(self, dispatcher):
        result = await dispatcher.execute("grep_search", {"pattern": "def", "path": "tests"})
        assert "tests/test_main.py" in result
        assert "src/" not in result

    @pytest.mark.asyncio
    async def test_grep_no_matches(self, dispatcher):
        assert await dispatcher.execute("grep_search", {"pattern": "zzz_not_here"}) == "No matches found"

    @pytest.mark.asyncio
    async def test_grep_outside_workspace(self, dispatcher):
        result = await dispatcher.execute("grep_search", {"pattern": "root", "path": "../.."})
        assert "Path outside workspace" in result


class TestRunCommand:
    """Test shell command execution."""

    @pytest.mark.asyncio
    async def test_runs_in_workspace(self, dispatcher, project_path):
        assert await dispatcher.execute("run_command", {"command": "pwd"}) == os.path.realpath(project_path)

    @pytest.mark.asyncio
    async def test_blocked_command(self, dispatcher, project_path):
        result = await dispatcher.execute("run_command", {"command": "rm -rf src"})
        assert result == "Error: Command blocked for security reasons"
        assert os.path.isdir(os.path.join(project_path, "src"))

    @pytest.mark.asyncio
    async def test_nonzero_exit(self, dispatcher):
        result = await dispatcher.execute("run_command", {"command": "echo oops >&2; exit 3"})
        assert result.startswith("Error executing command: exit code 3")
        assert "oops" in result

    @pytest.mark.asyncio
    async def test_timeout(self, project_path):
        result = await run_shell_command("sleep 5", project_path, timeout=0.2, max_output_bytes=1024)
        assert result == "Error executing command: timed out after 0.2s"

    @pytest.mark.asyncio
    async def test_output_cap(self, project_path):
        result = await run_shell_command("yes", project_path, timeout=5, max_output_bytes=1000)
        assert result == "Error executing command: output exceeded 1000 bytes"

    @pytest.mark.asyncio
    async def test_timeout_covers_compound_command(self, project_path):
        started = time.monotonic()
        result = await run_shell_command("sleep 4; echo done", project_path, timeout=0.5, max_output_bytes=1024)
        assert result == "Error executing command: timed out after 0.5s"
        assert time.monotonic() - started < 2.5

    @pytest.mark.asyncio
    async def test_timeout_with_background_child_holding_output(self, project_path):
        started = time.monotonic()
        result = await run_shell_command("sleep 30 & echo started", project_path, timeout=0.5, max_output_bytes=1024)
        assert result == "Error executing command: timed out after 0.5s"
        assert time.monotonic() - started < 2.5

    @pytest.mark.asyncio
    async def test_output_cap_on_pipeline(self, project_path):
        started = time.monotonic()
        result = await run_shell_command(
            "yes | head -c 100000000", project_path, timeout=10, max_output_bytes=1000
        )
        assert result == "Error executing command: output exceeded 1000 bytes"
        assert time.monotonic() - started < 5


class TestExecuteIsTotal:
    """``execute`` returns text for any name and input."""

    @pytest.mark.asyncio
    async def test_unknown_tool(self, dispatcher):
        assert await dispatcher.execute("format_disk", {}) == "Unknown tool: format_disk"

    @pytest.mark.asyncio
    async def test_missing_parameter(self, dispatcher):
        assert await dispatcher.execute("read_file", {}) == "Error: Missing required parameter 'path'"

    @pytest.mark.parametrize("tool_input", [None, "path", 3, ["a"]])
    @pytest.mark.asyncio
    async def test_non_object_input(self, dispatcher, tool_input):
        result = await dispatcher.execute("read_file", tool_input)
        assert result == "Error: Invalid input for read_file: expected an object"

    @pytest.mark.parametrize(
        "name,tool_input",
        [
            ("read_file", {"path": 12}),
            ("read_file", {"path": "src"}),
            ("write_file", {"path": "src", "content": "x"}),
            ("list_directory", {"path": "src/main.py"}),
            ("search_files", {"pattern": ""}),
            ("grep_search", {"pattern": "["}),
            ("run_sql", {"query": "SELECT 1"}),
            ("run_sql", {}),
            ("list_warehouses", {}),
        ],
    )
    @pytest.mark.asyncio
    async def test_failures_become_text(self, dispatcher, name, tool_input):
        result = await dispatcher.execute(name, tool_input)
        assert isinstance(result, str)
        assert result

    @pytest.mark.asyncio
    async def test_custom_tool_config(self, project_path):
        context = ToolContext(workspace_path=project_path)
        config = CodeboxConfig(tools=ToolConfig(max_output_bytes=5))
        result = await ToolDispatcher(context, config).execute("run_command", {"command": "echo 1234567890"})
        assert result == "Error executing command: output exceeded 5 bytes"
