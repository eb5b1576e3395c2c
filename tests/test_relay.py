"""Tests for codebox.relay: WebSocket endpoints end to end."""

import asyncio
import contextlib
import json

import pytest
from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed

from fakes import CollectingViewer, FakeModelClient, FakeSpawner, text_turn, tool_turn

from codebox.agent import AgentEvent
from codebox.relay import RelayServer, TerminalViewer, _parse_user_message
from codebox.sessions import SessionDirectory, new_session_id
from codebox.terminal import TerminalRegistry


@contextlib.asynccontextmanager
async def running(server: RelayServer):
    await server.start("127.0.0.1", 0)
    try:
        yield f"ws://127.0.0.1:{server.port}"
    finally:
        await server.stop()


async def recv_json(ws, timeout: float = 5.0) -> dict:
    return json.loads(await asyncio.wait_for(ws.recv(), timeout=timeout))


async def recv_until(ws, event_type: str) -> list[dict]:
    frames = []
    while True:
        frame = await recv_json(ws)
        frames.append(frame)
        if frame["type"] == event_type:
            return frames


async def eventually(predicate, timeout: float = 5.0) -> None:
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_poll(), timeout=timeout)


@pytest.fixture
def spawner():
    return FakeSpawner()


@pytest.fixture
def session_id():
    return new_session_id()


class TestConstruction:
    def test_uses_injected_empty_registry(self, config, spawner):
        terminals = TerminalRegistry(config.terminal, spawner=spawner)
        assert len(terminals) == 0
        assert RelayServer(config, terminals=terminals).terminals is terminals

    def test_uses_injected_sessions(self, config):
        sessions = SessionDirectory(config.server.sessions_base)
        assert RelayServer(config, sessions=sessions).sessions is sessions


class SlowConnection:
    """A connection whose sends never complete."""

    def __init__(self):
        self.close_calls = []
        self._never = asyncio.Event()

    async def send(self, frame):
        await self._never.wait()

    async def close(self, code=1000, reason=""):
        self.close_calls.append((code, reason))


class TestTerminalViewer:
    @pytest.mark.asyncio
    async def test_backlog_disconnects_slow_viewer(self):
        ws = SlowConnection()
        viewer = TerminalViewer(ws, max_queue=2)
        for i in range(3):
            viewer.deliver({"type": "output", "data": str(i)})
        assert viewer.closed
        await asyncio.sleep(0.01)
        assert ws.close_calls == [(1008, "terminal output backlog")]
        viewer.deliver({"type": "output", "data": "ignored"})
        await viewer.close(timeout=0.1)

    @pytest.mark.asyncio
    async def test_slow_viewer_does_not_affect_others(self, config, spawner, tmp_path):
        terminals = TerminalRegistry(config.terminal, spawner=spawner)
        slow = TerminalViewer(SlowConnection(), max_queue=2)
        other = CollectingViewer()
        await terminals.attach("s1", str(tmp_path), slow)
        await terminals.attach("s1", str(tmp_path), other)
        for i in range(10):
            spawner.spawned[0].emit(str(i))
        assert slow.closed
        assert other.outputs() == "0123456789"
        assert spawner.spawned[0].kills == []
        await slow.close(timeout=0.1)


class TestRouting:
    @pytest.mark.asyncio
    async def test_unknown_endpoint(self, config):
        async with running(RelayServer(config)) as base:
            async with connect(f"{base}/nope") as ws:
                assert await recv_json(ws) == {"type": "error", "error": "Unknown endpoint: /nope"}
                with pytest.raises(ConnectionClosed):
                    await ws.recv()

    @pytest.mark.asyncio
    async def test_session_not_found(self, config):
        async with running(RelayServer(config)) as base:
            async with connect(f"{base}/sessions/bogus/terminal/ws") as ws:
                assert await recv_json(ws) == {"type": "error", "error": "Session not found"}
                with pytest.raises(ConnectionClosed):
                    await ws.recv()


class TestTerminalEndpoint:
    """Test shared terminals over WebSockets."""

    @pytest.mark.asyncio
    async def test_two_viewers_share_one_shell(self, config, spawner, session_id):
        terminals = TerminalRegistry(config.terminal, spawner=spawner)
        server = RelayServer(config, terminals=terminals)
        path = f"/sessions/{session_id}/terminal/ws"

        async with running(server) as base:
            async with connect(base + path) as first, connect(base + path) as second:
                connected = await recv_json(first)
                assert connected["type"] == "connected"
                assert connected["cwd"].startswith(config.server.sessions_base)
                assert (await recv_json(second))["type"] == "connected"
                assert len(spawner.spawned) == 1

                spawner.spawned[0].emit("$ ")
                assert await recv_json(first) == {"type": "output", "data": "$ "}
                assert await recv_json(second) == {"type": "output", "data": "$ "}

                await first.send(json.dumps({"type": "input", "data": "ls\n"}))
                await first.send(json.dumps({"type": "resize", "cols": 132, "rows": 43}))
                await eventually(lambda: spawner.spawned[0].resizes == [(132, 43)])
                assert spawner.spawned[0].writes == ["ls\n"]

                await first.close()
                await eventually(lambda: len(terminals.get(session_id).viewers) == 1)
                assert spawner.spawned[0].kills == []

            await eventually(lambda: terminals.get(session_id) is None)
            assert spawner.spawned[0].kills

    @pytest.mark.asyncio
    async def test_bad_frames_ignored(self, config, spawner, session_id):
        server = RelayServer(config, terminals=TerminalRegistry(config.terminal, spawner=spawner))
        async with running(server) as base:
            async with connect(f"{base}/sessions/{session_id}/terminal/ws") as ws:
                await recv_json(ws)
                await ws.send("not json")
                await ws.send(json.dumps(["input"]))
                await ws.send(json.dumps({"type": "resize", "cols": "wide", "rows": 0}))
                await ws.send(json.dumps({"type": "input", "data": "ok\n"}))
                await eventually(lambda: spawner.spawned[0].writes == ["ok\n"])
                assert spawner.spawned[0].resizes == []

    @pytest.mark.asyncio
    async def test_shell_exit_is_reported(self, config, spawner, session_id):
        server = RelayServer(config, terminals=TerminalRegistry(config.terminal, spawner=spawner))
        async with running(server) as base:
            async with connect(f"{base}/sessions/{session_id}/terminal/ws") as ws:
                await recv_json(ws)
                spawner.spawned[0].exit(0)
                assert await recv_json(ws) == {"type": "exit", "exitCode": 0, "signal": None}

    @pytest.mark.asyncio
    async def test_spawn_failure(self, config, session_id):
        terminals = TerminalRegistry(config.terminal, spawner=FakeSpawner(fail=OSError("pty exhausted")))
        async with running(RelayServer(config, terminals=terminals)) as base:
            async with connect(f"{base}/sessions/{session_id}/terminal/ws") as ws:
                assert await recv_json(ws) == {"type": "error", "error": "Failed to start terminal: pty exhausted"}
                with pytest.raises(ConnectionClosed):
                    await ws.recv()


class TestAgentEndpoint:
    """Test agent runs streamed over WebSockets."""

    @pytest.mark.asyncio
    async def test_run_streams_events(self, config, session_id):
        client = FakeModelClient([
            tool_turn(("t1", "write_file", {"path": "hello.txt", "content": "hi"})),
            text_turn("Wrote hello.txt"),
        ])
        server = RelayServer(config, model_client=client)
        async with running(server) as base:
            async with connect(f"{base}/sessions/{session_id}/agent/ws") as ws:
                await ws.send(json.dumps({"type": "message", "content": "write a file"}))
                frames = await recv_until(ws, "complete")

        assert [f["type"] for f in frames] == ["tool_use", "tool_result", "response", "complete"]
        assert frames[0]["toolName"] == "write_file"
        assert frames[0]["toolUseId"] == "t1"
        assert frames[1]["toolResult"] == "File written successfully: hello.txt"
        assert frames[2]["content"] == "Wrote hello.txt"

    @pytest.mark.asyncio
    async def test_plain_text_message(self, config, session_id):
        server = RelayServer(config, model_client=FakeModelClient([text_turn("hello")]))
        async with running(server) as base:
            async with connect(f"{base}/sessions/{session_id}/agent/ws") as ws:
                await ws.send("hi there")
                frames = await recv_until(ws, "complete")
        assert frames[0] == {"type": "response", "content": "hello"}

    @pytest.mark.asyncio
    async def test_invalid_message(self, config, session_id):
        server = RelayServer(config, model_client=FakeModelClient([]))
        async with running(server) as base:
            async with connect(f"{base}/sessions/{session_id}/agent/ws") as ws:
                await ws.send(json.dumps({"type": "ping"}))
                assert await recv_json(ws) == {"type": "error", "error": "Invalid message"}

    @pytest.mark.asyncio
    async def test_second_message_while_running(self, config, session_id):
        gate = asyncio.Event()

        async def blocked_run(message, context, **kwargs):
            yield AgentEvent(type="response", content=f"working on {message}")
            await gate.wait()
            yield AgentEvent(type="complete")

        server = RelayServer(config, model_client=object(), run_factory=blocked_run)
        async with running(server) as base:
            async with connect(f"{base}/sessions/{session_id}/agent/ws") as ws:
                await ws.send("first")
                assert await recv_json(ws) == {"type": "response", "content": "working on first"}
                await ws.send("second")
                assert await recv_json(ws) == {"type": "error", "error": "A run is already in progress"}
                gate.set()
                assert await recv_json(ws) == {"type": "complete"}

    @pytest.mark.asyncio
    async def test_disconnect_closes_the_run(self, config, session_id):
        gate = asyncio.Event()
        closed = asyncio.Event()
        produced = []

        async def run(message, context, **kwargs):
            try:
                yield AgentEvent(type="response", content="one")
                await gate.wait()
                produced.append("two")
                yield AgentEvent(type="response", content="two")
                produced.append("three")
                yield AgentEvent(type="complete")
            finally:
                closed.set()

        server = RelayServer(config, model_client=object(), run_factory=run)
        async with running(server) as base:
            async with connect(f"{base}/sessions/{session_id}/agent/ws") as ws:
                await ws.send("go")
                assert (await recv_json(ws))["content"] == "one"
            gate.set()
            await asyncio.wait_for(closed.wait(), timeout=5)
        assert produced == ["two"]

    @pytest.mark.asyncio
    async def test_context_uses_session_directory(self, config, session_id):
        seen = []

        async def run(message, context, **kwargs):
            seen.append(context)
            yield AgentEvent(type="complete")

        server = RelayServer(config, model_client=object(), run_factory=run)
        async with running(server) as base:
            async with connect(f"{base}/sessions/{session_id}/agent/ws") as ws:
                await ws.send("hi")
                await recv_until(ws, "complete")

        assert seen[0].workspace_path.startswith(config.server.sessions_base)
        assert seen[0].workspace_path.endswith(session_id[-12:])
        assert seen[0].metadata == {"session_id": session_id}


class TestParseUserMessage:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ('{"type": "message", "content": "hi"}', "hi"),
            ('{"message": "hello"}', "hello"),
            ('"quoted"', "quoted"),
            ("bare text", "bare text"),
            (b"bytes text", "bytes text"),
            ('{"type": "ping"}', None),
            ('{"type": "message", "content": ""}', None),
            ("   ", None),
            ("[1, 2]", None),
        ],
    )
    def test_parse(self, raw, expected):
        assert _parse_user_message(raw) == expected
