"""Codebox configuration management."""

import json
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path

CODEBOX_HOME = Path(os.environ.get("CODEBOX_HOME") or Path.home() / ".codebox")
CODEBOX_CONFIG = CODEBOX_HOME / "config.json"

WAREHOUSE_SIZES = ("2xs", "xs", "s")

# Never written by save(); supplied through the environment
SECRET_KEYS = {
    "model.api_key": "ANTHROPIC_API_KEY or DATABRICKS_TOKEN",
    "databricks.token": "DATABRICKS_TOKEN",
}


def _default_shell() -> str:
    return os.environ.get("SHELL") or "/bin/bash"


@dataclass
class ModelConfig:
    """Reasoning model endpoint and per-run limits.

    When a Databricks host is configured the Anthropic client is pointed at
    the workspace serving endpoint instead of the public API.
    """

    model: str = "databricks-claude-sonnet-4-5"
    max_tokens_per_call: int = 4096
    max_iterations: int = 20
    api_key: str = ""


@dataclass
class DatabricksConfig:
    """SQL warehouse and REST API access."""

    host: str = ""
    token: str = ""
    warehouse_ids: dict[str, str] = field(default_factory=dict)
    http_timeout_seconds: float = 30.0

    @property
    def serving_base_url(self) -> str | None:
        if not self.host:
            return None
        return f"https://{self.host}/serving-endpoints/anthropic"


@dataclass
class ToolConfig:
    """Limits applied by the workspace tools."""

    command_timeout_seconds: float = 30.0
    max_output_bytes: int = 10 * 1024 * 1024
    max_read_chars: int = 200_000
    search_ignore: list[str] = field(
        default_factory=lambda: ["node_modules/**", ".git/**", "dist/**"]
    )


@dataclass
class TerminalConfig:
    """Interactive shell defaults."""

    shell: str = field(default_factory=_default_shell)
    term: str = "xterm-256color"
    cols: int = 80
    rows: int = 24


@dataclass
class ServerConfig:
    """Relay server settings."""

    host: str = "127.0.0.1"
    port: int = 8765
    sessions_base: str = str(Path.home() / "ws")
    workspace_sync: bool = False
    workspace_root: str = ""  # remote workspace prefix used by sync


@dataclass
class CodeboxConfig:
    """Top-level Codebox configuration."""

    model: ModelConfig = field(default_factory=ModelConfig)
    databricks: DatabricksConfig = field(default_factory=DatabricksConfig)
    tools: ToolConfig = field(default_factory=ToolConfig)
    terminal: TerminalConfig = field(default_factory=TerminalConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    @classmethod
    def load(cls, path: Path | None = None) -> "CodeboxConfig":
        """Load config from disk or return defaults.

        Env vars override file config for credentials, endpoints and
        warehouse ids.
        """
        config = cls()
        config_path = path or CODEBOX_CONFIG
        if config_path.exists():
            data = json.loads(config_path.read_text())
            for section in ("model", "databricks", "tools", "terminal", "server"):
                if section in data:
                    target = getattr(config, section)
                    for k, v in data[section].items():
                        if hasattr(target, k):
                            setattr(target, k, v)

        host = os.environ.get("DATABRICKS_HOST")
        token = os.environ.get("DATABRICKS_TOKEN")
        model = os.environ.get("ANTHROPIC_MODEL")

        if host:
            config.databricks.host = host
        if token:
            config.databricks.token = token
        if model:
            config.model.model = model
        config.databricks.host = strip_scheme(config.databricks.host)

        for size in WAREHOUSE_SIZES:
            warehouse_id = os.environ.get(f"WAREHOUSE_ID_{size.upper()}")
            if warehouse_id:
                config.databricks.warehouse_ids[size] = warehouse_id

        # Databricks token doubles as the model credential behind the proxy
        config.model.api_key = (
            token
            or os.environ.get("ANTHROPIC_API_KEY")
            or config.model.api_key
            or config.databricks.token
        )
        return config

    def save(self, path: Path | None = None) -> None:
        """Persist config to disk, leaving credentials out."""
        config_path = path or CODEBOX_CONFIG
        config_path.parent.mkdir(parents=True, exist_ok=True)
        model = asdict(self.model)
        model.pop("api_key", None)
        databricks = asdict(self.databricks)
        databricks.pop("token", None)
        data = {
            "model": model,
            "databricks": databricks,
            "tools": asdict(self.tools),
            "terminal": asdict(self.terminal),
            "server": asdict(self.server),
        }
        config_path.write_text(json.dumps(data, indent=2))

    def set_value(self, key: str, raw_value: str) -> None:
        """Set ``section.field`` from a string, coercing to the field's type."""
        if key in SECRET_KEYS:
            raise ValueError(f"{key} is a credential and is not stored in the config file; set {SECRET_KEYS[key]} instead")
        section_name, _, field_name = key.partition(".")
        section = getattr(self, section_name, None)
        if section is None or not field_name or not hasattr(section, field_name):
            raise KeyError(f"Unknown config key: {key}")
        current = getattr(section, field_name)
        if isinstance(current, bool):
            value = raw_value.strip().lower() in ("1", "true", "yes", "on")
        elif isinstance(current, int):
            value = int(raw_value)
        elif isinstance(current, float):
            value = float(raw_value)
        elif isinstance(current, (list, dict)):
            value = json.loads(raw_value)
        else:
            value = raw_value
        setattr(section, field_name, value)


def strip_scheme(host: str) -> str:
    """Drop a leading http(s):// and trailing slash from a host string."""
    host = (host or "").strip()
    for prefix in ("https://", "http://"):
        if host.startswith(prefix):
            host = host[len(prefix):]
    return host.rstrip("/")


def ensure_codebox_home() -> None:
    """Create Codebox home directory."""
    CODEBOX_HOME.mkdir(parents=True, exist_ok=True)
