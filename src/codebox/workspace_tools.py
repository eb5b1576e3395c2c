"""Workspace tools: file I/O, search and shell commands inside a session directory.

Every path argument passes through the sandbox guard first. Handlers raise
on failure; ``ToolDispatcher`` turns exceptions into tool-result text.
"""

import asyncio
import fnmatch
import logging
import os
import signal
from pathlib import Path

from claude_agent_sdk import SdkMcpTool, tool

from codebox.config import ToolConfig
from codebox.sandbox import is_command_allowed, validate_path

logger = logging.getLogger(__name__)

READ_CHUNK = 64 * 1024
KILL_WAIT_SECONDS = 5.0


def _text(text: str) -> dict:
    return {"content": [{"type": "text", "text": text}]}


def _is_ignored(relative: str, patterns: list[str]) -> bool:
    return any(fnmatch.fnmatch(relative, p) for p in patterns)


async def _read_capped(stream: asyncio.StreamReader, limit: int) -> tuple[bytes, bool]:
    """Read until EOF or until more than ``limit`` bytes arrived."""
    chunks: list[bytes] = []
    total = 0
    while True:
        chunk = await stream.read(READ_CHUNK)
        if not chunk:
            return b"".join(chunks), False
        chunks.append(chunk)
        total += len(chunk)
        if total > limit:
            return b"".join(chunks)[:limit], True


async def _kill_process_group(proc: asyncio.subprocess.Process) -> None:
    """SIGKILL the whole process group so children holding the pipe die too."""
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    except OSError as e:
        logger.warning("Failed to kill process group %s: %s", proc.pid, e)
    if proc.returncode is not None:
        return
    try:
        await asyncio.wait_for(proc.wait(), timeout=KILL_WAIT_SECONDS)
    except asyncio.TimeoutError:
        logger.warning("Process %s did not exit after SIGKILL", proc.pid)


async def run_shell_command(
    command: str,
    cwd: str,
    *,
    timeout: float,
    max_output_bytes: int,
) -> str:
    """Run a shell command with a wall-clock timeout and an output cap.

    stderr is merged into stdout. The shell leads its own process group.
    Exceeding either bound kills the whole group, pipeline members and
    background children included, and returns an error string.
    """
    proc = await asyncio.create_subprocess_shell(
        command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
        stdin=asyncio.subprocess.DEVNULL,
        cwd=cwd,
        start_new_session=True,
    )

    async def _collect() -> tuple[bytes, bool]:
        output, overflow = await _read_capped(proc.stdout, max_output_bytes)
        if not overflow:
            await proc.wait()
        return output, overflow

    try:
        output, overflow = await asyncio.wait_for(_collect(), timeout=timeout)
        if overflow:
            await _kill_process_group(proc)
            return f"Error executing command: output exceeded {max_output_bytes} bytes"
    except asyncio.TimeoutError:
        await _kill_process_group(proc)
        return f"Error executing command: timed out after {timeout:g}s"
    finally:
        if proc.returncode is None:
            await _kill_process_group(proc)

    text = output.decode("utf-8", errors="replace").strip()
    if proc.returncode != 0:
        return f"Error executing command: exit code {proc.returncode}\n{text}".rstrip()
    return text


def create_workspace_tools(workspace_path: str, config: ToolConfig | None = None) -> list[SdkMcpTool]:
    """Build the file and shell tools bound to one workspace directory."""
    config = config or ToolConfig()
    root = os.path.abspath(workspace_path)

    @tool(
        "read_file",
        "Read the contents of a file at the specified path",
        {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "The path to the file to read"},
            },
            "required": ["path"],
        },
    )
    async def read_file(args: dict) -> dict:
        file_path = Path(validate_path(root, args["path"]))
        text = file_path.read_text(encoding="utf-8", errors="replace")
        if len(text) > config.max_read_chars:
            text = (
                text[: config.max_read_chars]
                + f"\n\n[truncated: file has {len(text)} characters, showing first {config.max_read_chars}]"
            )
        return _text(text)

    @tool(
        "write_file",
        "Write content to a file at the specified path",
        {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "The path to the file to write"},
                "content": {"type": "string", "description": "The content to write to the file"},
            },
            "required": ["path", "content"],
        },
    )
    async def write_file(args: dict) -> dict:
        file_path = Path(validate_path(root, args["path"]))
        file_path.write_text(str(args["content"]), encoding="utf-8")
        return _text(f"File written successfully: {args['path']}")

    @tool(
        "list_directory",
        "List files and directories at the specified path",
        {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "The directory path to list"},
            },
            "required": ["path"],
        },
    )
    async def list_directory(args: dict) -> dict:
        dir_path = Path(validate_path(root, args.get("path") or "."))
        entries = sorted(dir_path.iterdir(), key=lambda p: p.name)
        lines = [f"{'[DIR]' if p.is_dir() else '[FILE]'} {p.name}" for p in entries]
        return _text("\n".join(lines) or "Empty directory")

    @tool(
        "search_files",
        "Search for files using glob patterns",
        {
            "type": "object",
            "properties": {
                "pattern": {
                    "type": "string",
                    "description": 'The glob pattern to search for files (e.g., "**/*.ts")',
                },
            },
            "required": ["pattern"],
        },
    )
    async def search_files(args: dict) -> dict:
        pattern = str(args["pattern"])
        matches: list[str] = []
        for path in Path(root).glob(pattern):
            if not path.is_file():
                continue
            # glob patterns may carry ".." segments
            resolved = validate_path(root, path)
            relative = Path(os.path.relpath(resolved, root)).as_posix()
            if _is_ignored(relative, config.search_ignore):
                continue
            matches.append(relative)
        matches.sort()
        return _text("\n".join(matches) if matches else "No files found")

    @tool(
        "grep_search",
        "Search for text within files using grep",
        {
            "type": "object",
            "properties": {
                "pattern": {"type": "string", "description": "The text pattern to search for"},
                "path": {
                    "type": "string",
                    "description": "The path to search in (defaults to current directory)",
                },
            },
            "required": ["pattern"],
        },
    )
    async def grep_search(args: dict) -> dict:
        search_path = validate_path(root, args["path"]) if args.get("path") else root
        relative = os.path.relpath(search_path, root)
        proc = await asyncio.create_subprocess_exec(
            "grep", "-r", "-n", "-I", "-e", str(args["pattern"]), "--", relative,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
            cwd=root,
            start_new_session=True,
        )
        try:
            output, overflow = await asyncio.wait_for(
                _read_capped(proc.stdout, config.max_output_bytes),
                timeout=config.command_timeout_seconds,
            )
        except asyncio.TimeoutError:
            await _kill_process_group(proc)
            return _text(f"Error: grep timed out after {config.command_timeout_seconds:g}s")
        if overflow:
            await _kill_process_group(proc)
        else:
            await proc.wait()
        text = output.decode("utf-8", errors="replace").strip()
        if overflow:
            text += f"\n[truncated at {config.max_output_bytes} bytes]"
        return _text(text or "No matches found")

    @tool(
        "run_command",
        "Execute a shell command (restricted for security)",
        {
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "The shell command to execute"},
            },
            "required": ["command"],
        },
    )
    async def run_command(args: dict) -> dict:
        command = str(args["command"])
        if not is_command_allowed(command):
            logger.info("Blocked command: %s", command[:200])
            return _text("Error: Command blocked for security reasons")
        result = await run_shell_command(
            command,
            root,
            timeout=config.command_timeout_seconds,
            max_output_bytes=config.max_output_bytes,
        )
        return _text(result)

    return [read_file, write_file, list_directory, search_files, grep_search, run_command]
