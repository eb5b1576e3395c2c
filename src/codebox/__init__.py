"""Codebox: sandboxed agent runs and shared terminals for remote workspaces."""

__version__ = "0.1.0"

from codebox.agent import AgentEvent, RunLimits, run_agent
from codebox.config import CodeboxConfig
from codebox.dispatcher import ToolContext, ToolDispatcher
from codebox.relay import RelayServer
from codebox.sandbox import PathOutOfBounds, is_command_allowed, validate_path
from codebox.terminal import TerminalRegistry

__all__ = [
    "AgentEvent",
    "RunLimits",
    "run_agent",
    "CodeboxConfig",
    "ToolContext",
    "ToolDispatcher",
    "RelayServer",
    "PathOutOfBounds",
    "is_command_allowed",
    "validate_path",
    "TerminalRegistry",
]
