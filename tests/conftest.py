"""Shared test fixtures for Codebox test suite."""

import pytest

from codebox.config import CodeboxConfig, TerminalConfig, ToolConfig
from codebox.dispatcher import ToolContext


@pytest.fixture
def project_path(tmp_path):
    """Provide a temporary project directory with basic structure."""
    project = tmp_path / "test_project"
    project.mkdir()
    (project / "src").mkdir()
    (project / "src" / "main.py").write_text("def main():\n    print('hello')\n")
    (project / "src" / "utils.py").write_text("def helper():\n    return 42\n")
    (project / "tests").mkdir()
    (project / "tests" / "test_main.py").write_text("def test_main():\n    pass\n")
    (project / "pyproject.toml").write_text('[project]\nname = "test"\n')
    (project / "requirements.txt").write_text("flask>=3.0\n")
    return str(project)


@pytest.fixture
def config(tmp_path):
    """Defaults only: no config file, no environment overrides."""
    cfg = CodeboxConfig(
        tools=ToolConfig(command_timeout_seconds=5.0),
        terminal=TerminalConfig(shell="/bin/sh"),
    )
    cfg.server.sessions_base = str(tmp_path / "ws")
    return cfg


@pytest.fixture
def context(project_path):
    return ToolContext(workspace_path=project_path)
