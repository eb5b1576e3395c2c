"""WebSocket relay: streams agent runs and shared terminals to clients.

Endpoints (JSON text frames):
    /sessions/<id>/terminal/ws   client: input, resize
                                 server: connected, output, exit, error
    /sessions/<id>/agent/ws      client: message (or a bare text frame)
                                 server: response, tool_use, tool_result,
                                         error, complete

Each connection gets its own relay object. Messages are sent as soon as
they are produced. A closed connection stops emission to that connection
only; other viewers of the same terminal are unaffected.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any, AsyncIterator, Callable, Protocol
from urllib.parse import urlsplit

from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.exceptions import ConnectionClosed

from codebox.agent import AgentEvent, create_model_client, run_agent
from codebox.background import spawn_background, workspace_push
from codebox.config import CodeboxConfig
from codebox.dispatcher import ToolContext
from codebox.sessions import Session, SessionDirectory, working_dir
from codebox.sql_tools import WarehouseCredentials
from codebox.terminal import TerminalRegistry

logger = logging.getLogger(__name__)

TERMINAL_ROUTE = re.compile(r"^/sessions/(?P<session_id>[^/]+)/terminal/ws/?$")
AGENT_ROUTE = re.compile(r"^/sessions/(?P<session_id>[^/]+)/agent/ws/?$")
VIEWER_QUEUE_SIZE = 1024


class SessionResolver(Protocol):
    async def get_session(self, session_id: str) -> Session | None: ...


def _dumps(message: dict) -> str:
    return json.dumps(message, default=str)


async def _send_error_and_close(ws: ServerConnection, error: str) -> None:
    try:
        await ws.send(_dumps({"type": "error", "error": error}))
        await ws.close()
    except ConnectionClosed:
        pass


class TerminalViewer:
    """Terminal subscriber for one connection.

    ``deliver`` only enqueues; a pump task writes frames in order, so a slow
    or broken connection never blocks the shell or the other viewers. A
    viewer whose backlog reaches ``max_queue`` frames is disconnected.
    """

    def __init__(self, websocket: ServerConnection, max_queue: int = VIEWER_QUEUE_SIZE):
        self._ws = websocket
        self._queue: asyncio.Queue[str | None] = asyncio.Queue(maxsize=max_queue)
        self.closed = False
        self._pump_task = asyncio.create_task(self._pump())

    def deliver(self, message: dict) -> None:
        if self.closed:
            return
        try:
            self._queue.put_nowait(_dumps(message))
        except asyncio.QueueFull:
            logger.warning("Terminal viewer fell %d frames behind, disconnecting", self._queue.maxsize)
            self.closed = True
            self._pump_task.cancel()
            spawn_background(
                self._ws.close(code=1008, reason="terminal output backlog"),
                "terminal-viewer-close",
            )

    async def _pump(self) -> None:
        while True:
            frame = await self._queue.get()
            if frame is None:
                return
            try:
                await self._ws.send(frame)
            except ConnectionClosed:
                self.closed = True
                return
            except Exception as e:
                logger.warning("Failed to send terminal output: %s", e)
                self.closed = True
                return

    async def close(self, timeout: float = 1.0) -> None:
        """Stop accepting output and flush what is already queued."""
        self.closed = True
        if not self._pump_task.done():
            try:
                self._queue.put_nowait(None)
            except asyncio.QueueFull:
                self._pump_task.cancel()
        await asyncio.wait([self._pump_task], timeout=timeout)
        if not self._pump_task.done():
            self._pump_task.cancel()


class AgentRelay:
    """Streams one run at a time from the agent loop to a connection.

    Closing the relay stops emission at the next event. A tool that is
    already executing is not interrupted; it finishes on its own schedule
    and its result is discarded.
    """

    def __init__(self, websocket: ServerConnection):
        self._ws = websocket
        self._task: asyncio.Task | None = None
        self.closed = False

    @property
    def busy(self) -> bool:
        return self._task is not None and not self._task.done()

    async def send(self, message: dict) -> bool:
        if self.closed:
            return False
        try:
            await self._ws.send(_dumps(message))
            return True
        except ConnectionClosed:
            self.closed = True
            return False

    def start(
        self,
        events: AsyncIterator[AgentEvent],
        on_finished: Callable[[], Any] | None = None,
        label: str = "agent-run",
    ) -> asyncio.Task:
        self._task = spawn_background(self._pump(events, on_finished), label)
        return self._task

    async def _pump(self, events: AsyncIterator[AgentEvent], on_finished) -> None:
        try:
            async for event in events:
                if not await self.send(event.to_dict()):
                    logger.info("Client gone, dropping the rest of the run")
                    break
        finally:
            await events.aclose()
            if on_finished is not None:
                on_finished()

    async def wait(self) -> None:
        if self._task is not None:
            await asyncio.shield(self._task)

    def close(self) -> None:
        self.closed = True


def _parse_user_message(raw: str | bytes) -> str | None:
    text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return text.strip() or None
    if isinstance(data, str):
        return data.strip() or None
    if not isinstance(data, dict) or data.get("type", "message") != "message":
        return None
    content = data.get("content", data.get("message"))
    if not isinstance(content, str) or not content.strip():
        return None
    return content


class RelayServer:
    """WebSocket server for agent runs and shared terminals."""

    def __init__(
        self,
        config: CodeboxConfig | None = None,
        *,
        sessions: SessionResolver | None = None,
        terminals: TerminalRegistry | None = None,
        model_client: Any = None,
        run_factory: Callable[..., AsyncIterator[AgentEvent]] | None = None,
    ):
        self.config = config or CodeboxConfig.load()
        self.sessions = sessions if sessions is not None else SessionDirectory(
            self.config.server.sessions_base,
            self.config.server.workspace_root,
            sync=self.config.server.workspace_sync,
        )
        self.terminals = terminals if terminals is not None else TerminalRegistry(self.config.terminal)
        self._model_client = model_client
        self._run_factory = run_factory or run_agent
        self._clients: set[ServerConnection] = set()
        self._server: Server | None = None

    @property
    def port(self) -> int | None:
        if self._server is None:
            return None
        for sock in self._server.sockets:
            return sock.getsockname()[1]
        return None

    async def start(self, host: str | None = None, port: int | None = None) -> None:
        host = host or self.config.server.host
        port = self.config.server.port if port is None else port
        self._server = await serve(self._handler, host, port)
        logger.info("Relay server listening on ws://%s:%s", host, self.port)

    async def stop(self) -> None:
        """Close the server, its connections and every terminal."""
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
            logger.info("Relay server stopped")
        await self.terminals.shutdown()

    async def serve_forever(self) -> None:
        await self.start()
        try:
            await asyncio.Future()
        finally:
            await self.stop()

    async def _handler(self, ws: ServerConnection) -> None:
        path = urlsplit(ws.request.path).path if ws.request else ""
        self._clients.add(ws)
        logger.info("Client connected: %s %s", ws.remote_address, path)
        try:
            match = TERMINAL_ROUTE.match(path)
            if match:
                await self._handle_terminal(ws, match["session_id"])
                return
            match = AGENT_ROUTE.match(path)
            if match:
                await self._handle_agent(ws, match["session_id"])
                return
            await _send_error_and_close(ws, f"Unknown endpoint: {path}")
        except ConnectionClosed:
            pass
        except Exception as e:
            logger.exception("Connection handler error (%s): %s", path, e)
            await _send_error_and_close(ws, str(e))
        finally:
            self._clients.discard(ws)
            logger.info("Client disconnected: %s %s", ws.remote_address, path)

    async def _resolve(self, ws: ServerConnection, session_id: str) -> Session | None:
        session = await self.sessions.get_session(session_id)
        if session is None:
            await _send_error_and_close(ws, "Session not found")
        return session

    async def _handle_terminal(self, ws: ServerConnection, session_id: str) -> None:
        session = await self._resolve(ws, session_id)
        if session is None:
            return
        cwd = working_dir(session, self.config.server.sessions_base)
        viewer = TerminalViewer(ws)
        try:
            result = await self.terminals.attach(session_id, cwd, viewer)
        except Exception as e:
            logger.error("Failed to spawn PTY for session %s: %s", session_id, e)
            await viewer.close()
            await _send_error_and_close(ws, f"Failed to start terminal: {e}")
            return

        viewer.deliver({"type": "connected", "cwd": result.cwd})
        try:
            async for raw in ws:
                try:
                    data = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning("Terminal message is not JSON (session %s)", session_id)
                    continue
                if not isinstance(data, dict):
                    continue
                msg_type = data.get("type")
                if msg_type == "input" and isinstance(data.get("data"), str):
                    self.terminals.input(session_id, viewer, data["data"])
                elif msg_type == "resize":
                    self.terminals.resize(session_id, viewer, data.get("cols"), data.get("rows"))
        except ConnectionClosed:
            pass
        finally:
            self.terminals.detach(session_id, viewer)
            await viewer.close()

    def _tool_context(self, session: Session) -> ToolContext:
        return ToolContext(
            workspace_path=working_dir(session, self.config.server.sessions_base),
            credentials=WarehouseCredentials.from_config(self.config.databricks),
            metadata={"session_id": session.id},
        )

    def _after_run(self, session: Session) -> Callable[[], None] | None:
        workspace_path = getattr(session, "workspace_path", None)
        if not (self.config.server.workspace_sync and workspace_path):
            return None
        local = working_dir(session, self.config.server.sessions_base)

        def _sync() -> None:
            spawn_background(workspace_push(local, workspace_path), f"workspace-push:{session.id}")

        return _sync

    async def _handle_agent(self, ws: ServerConnection, session_id: str) -> None:
        session = await self._resolve(ws, session_id)
        if session is None:
            return
        if self._model_client is None:
            self._model_client = create_model_client(self.config)

        relay = AgentRelay(ws)
        try:
            async for raw in ws:
                message = _parse_user_message(raw)
                if message is None:
                    await relay.send({"type": "error", "error": "Invalid message"})
                    continue
                if relay.busy:
                    await relay.send({"type": "error", "error": "A run is already in progress"})
                    continue
                events = self._run_factory(
                    message,
                    self._tool_context(session),
                    client=self._model_client,
                    config=self.config,
                )
                relay.start(events, on_finished=self._after_run(session), label=f"agent-run:{session_id}")
        except ConnectionClosed:
            pass
        finally:
            relay.close()
