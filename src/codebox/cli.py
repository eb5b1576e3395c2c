"""Codebox CLI: run the relay server or drive the agent loop locally.

Usage:
    codebox serve                              # Relay server (foreground)
    codebox serve --port 9000 --log-level DEBUG
    codebox run "list files, then read the first one"
    codebox run --cwd ./project -n 5 "fix the failing test"
    codebox new-session                        # Create a session, print its endpoints
    codebox tools                              # Show the tool catalog
    codebox config server.port=9000            # Set configuration
"""

import asyncio
import json
import logging
import os
import sys

import click
from rich.console import Console
from rich.table import Table

from codebox.agent import (
    EVENT_COMPLETE,
    EVENT_ERROR,
    EVENT_RESPONSE,
    EVENT_TOOL_RESULT,
    EVENT_TOOL_USE,
    RunLimits,
    run_agent,
)
from codebox.config import CodeboxConfig, ensure_codebox_home
from codebox.dispatcher import ToolContext, ToolDispatcher
from codebox.relay import RelayServer
from codebox.sessions import SessionDraft, ensure_local_dir

console = Console()


def _run_async(coro):
    """Run async function from sync context."""
    return asyncio.run(coro)


@click.group()
def cli():
    """Codebox: sandboxed agent runs and shared terminals over WebSockets."""
    pass


@cli.command()
@click.option("--host", default=None, help="Bind address (default from config)")
@click.option("--port", type=int, default=None, help="Port (default from config)")
@click.option("--log-level", default="INFO", show_default=True)
def serve(host, port, log_level):
    """Run the relay server in the foreground."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )
    config = CodeboxConfig.load()
    if host:
        config.server.host = host
    if port is not None:
        config.server.port = port
    console.print(
        f"[bold blue]Codebox relay[/] on ws://{config.server.host}:{config.server.port}"
    )
    try:
        _run_async(RelayServer(config).serve_forever())
    except KeyboardInterrupt:
        console.print("[dim]stopped[/]")


@cli.command()
@click.argument("message", nargs=-1, required=True)
@click.option("--cwd", default=None, help="Working directory for tools (default: current)")
@click.option("--max-iterations", "-n", type=int, default=None, help="Iteration cap for this run")
def run(message, cwd, max_iterations):
    """Run one agent loop against a local directory.

    Examples:
        codebox run "list files, then read the first one"
    """
    config = CodeboxConfig.load()
    limits = RunLimits.from_config(config.model)
    if max_iterations is not None:
        limits = RunLimits(max_iterations=max_iterations, max_tokens_per_call=limits.max_tokens_per_call)
    context = ToolContext(workspace_path=os.path.abspath(cwd or os.getcwd()))
    text = " ".join(message)
    console.print(f"\n[bold blue]Codebox[/] [dim]{context.workspace_path}[/]: [italic]{text}[/]\n")

    ok = _run_async(_print_run(text, context, config, limits))
    if not ok:
        sys.exit(1)


async def _print_run(text: str, context: ToolContext, config: CodeboxConfig, limits: RunLimits) -> bool:
    ok = False
    async for event in run_agent(text, context, config=config, limits=limits):
        if event.type == EVENT_RESPONSE:
            console.print(f"[green]{event.content}[/]")
        elif event.type == EVENT_TOOL_USE:
            console.print(
                f"  -> {event.tool_name} {json.dumps(event.tool_input, default=str)[:200]}",
                style="dim",
                markup=False,
            )
        elif event.type == EVENT_TOOL_RESULT:
            result = event.tool_result or ""
            if len(result) > 200:
                result = result[:200] + "..."
            console.print(f"  <- {result}", style="dim", markup=False)
        elif event.type == EVENT_COMPLETE:
            console.print("\n[bold green]Complete[/]")
            ok = True
        elif event.type == EVENT_ERROR:
            console.print(f"\n[bold red]Error ({event.error_kind}):[/] {event.error}")
    return ok


@cli.command(name="new-session")
def new_session():
    """Create a session directory and print its relay endpoints."""
    cfg = CodeboxConfig.load()
    draft = SessionDraft.create()
    path = ensure_local_dir(draft, cfg.server.sessions_base)
    base = f"ws://{cfg.server.host}:{cfg.server.port}/sessions/{draft.id}"
    console.print(f"[bold]{draft.id}[/]")
    console.print(f"  dir:      {path}", markup=False, soft_wrap=True)
    console.print(f"  terminal: {base}/terminal/ws", markup=False, soft_wrap=True)
    console.print(f"  agent:    {base}/agent/ws", markup=False, soft_wrap=True)


@cli.command()
def tools():
    """Show the tool catalog offered to the model."""
    dispatcher = ToolDispatcher(ToolContext(workspace_path=os.getcwd()), CodeboxConfig.load())
    table = Table(title="Tools")
    table.add_column("Name", style="cyan")
    table.add_column("Description")
    table.add_column("Required")
    for entry in dispatcher.catalog():
        required = ", ".join(entry["input_schema"].get("required", []))
        table.add_row(entry["name"], entry["description"], required)
    console.print(table)


@cli.command()
@click.argument("assignment")
def config(assignment):
    """Set a configuration value (section.key=value)."""
    if "=" not in assignment:
        console.print("[red]Expected section.key=value[/]")
        sys.exit(1)
    key, value = assignment.split("=", 1)
    ensure_codebox_home()
    cfg = CodeboxConfig.load()
    try:
        cfg.set_value(key.strip(), value.strip())
    except (KeyError, ValueError) as e:
        console.print(f"[red]{e}[/]")
        sys.exit(1)
    cfg.save()
    console.print(f"[green]Set {key.strip()} = {value.strip()}[/]")


def main():
    """Entry point."""
    cli()


if __name__ == "__main__":
    main()
