"""Sandbox guard: path containment and command denylist for workspace tools.

Every filesystem tool input goes through ``validate_path`` before use.
``is_command_allowed`` is a substring heuristic over a fixed denylist. It is
a best-effort guard against obvious accidents, not an isolation boundary:
quoting, variables or indirection trivially bypass it. Known false positive:
``"dd"`` also matches words such as ``git add``.
"""

from __future__ import annotations

import os

# Recursive delete, filesystem format, raw disk write, fork bombs.
BLOCKED_COMMANDS: tuple[str, ...] = ("rm -rf", "mkfs", "dd", ":(){:|:&};:", "fork")


class PathOutOfBounds(PermissionError):
    """Raised when a tool path resolves outside the session workspace."""

    def __init__(self, candidate: str):
        super().__init__(f"Path outside workspace: {candidate}")
        self.candidate = candidate


def validate_path(root: str | os.PathLike, candidate: str | os.PathLike) -> str:
    """Resolve ``candidate`` against ``root`` and return the absolute path.

    Resolution is lexical (``..`` segments collapse, symlinks are not
    followed). The path is rejected when its form relative to ``root``
    starts with a parent-traversal segment or is still absolute.
    """
    root_abs = os.path.abspath(os.fspath(root))
    resolved = os.path.abspath(os.path.join(root_abs, os.fspath(candidate)))
    try:
        relative = os.path.relpath(resolved, root_abs)
    except ValueError:
        # Different drive on Windows
        raise PathOutOfBounds(os.fspath(candidate)) from None

    if relative == os.pardir or relative.startswith(os.pardir + os.sep) or os.path.isabs(relative):
        raise PathOutOfBounds(os.fspath(candidate))
    return resolved


def is_command_allowed(command: str) -> bool:
    """Return False if the command contains any denylisted fragment."""
    return not any(blocked in command for blocked in BLOCKED_COMMANDS)
