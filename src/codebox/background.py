"""Fire-and-forget background work and best-effort workspace sync.

Background tasks never affect the caller's control flow: failures are
logged and dropped. Task references are held until completion so they are
not garbage collected mid-flight.
"""

import asyncio
import logging
import shutil
from typing import Coroutine

logger = logging.getLogger(__name__)

_background_tasks: set[asyncio.Task] = set()

SYNC_EXCLUDES = [
    ".claude.json.corrupted.*",
    "debug/*",
    "telemetry/*",
    "shell-snapshots/*",
    "*.pyc",
    "__pycache__",
    "node_modules/*",
    ".turbo/*",
]


def _log_outcome(label: str):
    def _done(task: asyncio.Task) -> None:
        _background_tasks.discard(task)
        if task.cancelled():
            logger.info("Background task cancelled: %s", label)
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Background task failed (%s): %s", label, exc)

    return _done


def spawn_background(coro: Coroutine, label: str) -> asyncio.Task:
    """Schedule ``coro`` without awaiting it; failures are only logged."""
    task = asyncio.create_task(coro, name=label)
    _background_tasks.add(task)
    task.add_done_callback(_log_outcome(label))
    return task


def pending_background_tasks() -> int:
    return len(_background_tasks)


async def _run_databricks(*args: str, timeout: int = 300) -> dict:
    """Execute a databricks CLI command and return its output."""
    databricks_bin = shutil.which("databricks")
    if not databricks_bin:
        raise FileNotFoundError("databricks CLI not found on PATH")
    proc = await asyncio.create_subprocess_exec(
        databricks_bin, *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise
    return {
        "exit_code": proc.returncode,
        "stdout": stdout.decode(errors="replace").strip(),
        "stderr": stderr.decode(errors="replace").strip(),
    }


async def workspace_pull(workspace_path: str, local_path: str, overwrite: bool = False) -> bool:
    """Export a remote workspace directory into ``local_path``."""
    args = ["workspace", "export-dir", workspace_path, local_path]
    if overwrite:
        args.append("--overwrite")
    logger.info("[workspace_pull] %s -> %s (overwrite: %s)", workspace_path, local_path, overwrite)
    try:
        result = await _run_databricks(*args)
    except Exception as e:
        logger.error("[workspace_pull] Error: %s", e)
        return False
    if result["exit_code"] != 0:
        logger.error("[workspace_pull] Error: %s", result["stderr"] or result["stdout"])
        return False
    logger.info("[workspace_pull] Completed")
    return True


async def workspace_push(local_path: str, workspace_path: str) -> bool:
    """Sync ``local_path`` up to the remote workspace."""
    args = ["sync", local_path, workspace_path, "--output", "json", "--exclude-from", ".gitignore"]
    for pattern in SYNC_EXCLUDES:
        args.extend(["--exclude", pattern])
    logger.info("[workspace_push] %s -> %s", local_path, workspace_path)
    try:
        result = await _run_databricks(*args)
    except Exception as e:
        logger.error("[workspace_push] Error: %s", e)
        return False
    if result["exit_code"] != 0:
        logger.error("[workspace_push] Error: %s", result["stderr"] or result["stdout"])
        return False
    logger.info("[workspace_push] Completed")
    return True
