"""Terminal multiplexer: one pseudo-terminal per session key, many viewers.

``TerminalRegistry`` owns every shell process. Viewers only subscribe to
output (``Viewer.deliver``) and send input through the registry; they never
touch the process handle. Lifecycle:

- the first ``attach`` for a key spawns the shell, later ones join it;
- ``detach`` of the last viewer kills the shell and drops the entry;
- a shell that exits on its own broadcasts ``exit`` to its viewers and its
  entry is dropped, so the next ``attach`` spawns a fresh one.
"""

from __future__ import annotations

import asyncio
import codecs
import fcntl
import logging
import os
import pty
import signal
import struct
import tempfile
import termios
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Protocol

from codebox.config import TerminalConfig

logger = logging.getLogger(__name__)

READ_SIZE = 64 * 1024


class Viewer(Protocol):
    """A subscriber to terminal output. ``deliver`` must not block."""

    def deliver(self, message: dict) -> None: ...


DataCallback = Callable[[str], None]
ExitCallback = Callable[[int | None, int | None], None]


def _set_winsize(fd: int, cols: int, rows: int) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


def _acquire_controlling_tty() -> None:
    # Runs in the child after setsid(); without it the shell has no job control.
    try:
        fcntl.ioctl(0, termios.TIOCSCTTY, 0)
    except OSError:
        pass


class PtyProcess:
    """An interactive shell attached to a pseudo-terminal.

    Output is decoded incrementally as UTF-8 and handed to ``on_data``;
    ``on_exit(exit_code, signal)`` fires once after the remaining output
    has been drained.
    """

    def __init__(
        self,
        proc: asyncio.subprocess.Process,
        master_fd: int,
        on_data: DataCallback,
        on_exit: ExitCallback,
    ):
        self._proc = proc
        self._master_fd = master_fd
        self._on_data = on_data
        self._on_exit = on_exit
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._loop = asyncio.get_running_loop()
        self._reading = True
        self._closed = False
        os.set_blocking(master_fd, False)
        self._loop.add_reader(master_fd, self._on_readable)
        self._wait_task = asyncio.create_task(self._wait())

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode

    def _emit(self, data: bytes, final: bool = False) -> None:
        text = self._decoder.decode(data, final=final)
        if text:
            try:
                self._on_data(text)
            except Exception:
                logger.exception("Terminal data callback failed (pid=%s)", self.pid)

    def _stop_reading(self) -> None:
        if self._reading:
            self._reading = False
            self._loop.remove_reader(self._master_fd)

    def _on_readable(self) -> None:
        try:
            data = os.read(self._master_fd, READ_SIZE)
        except BlockingIOError:
            return
        except OSError:
            # EIO once the slave side is gone
            self._stop_reading()
            return
        if not data:
            self._stop_reading()
            return
        self._emit(data)

    def _drain(self) -> None:
        while True:
            try:
                data = os.read(self._master_fd, READ_SIZE)
            except OSError:
                break
            if not data:
                break
            self._emit(data)
        self._emit(b"", final=True)

    async def _wait(self) -> None:
        returncode = await self._proc.wait()
        self._stop_reading()
        self._drain()
        self._close_fd()
        exit_code = returncode if returncode >= 0 else None
        sig = -returncode if returncode < 0 else None
        try:
            self._on_exit(exit_code, sig)
        except Exception:
            logger.exception("Terminal exit callback failed (pid=%s)", self.pid)

    def _close_fd(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            os.close(self._master_fd)
        except OSError as e:
            logger.warning("Failed to close pty fd for pid %s: %s", self.pid, e)

    def write(self, data: str | bytes) -> None:
        if self._closed:
            return
        payload = data.encode("utf-8") if isinstance(data, str) else data
        view = memoryview(payload)
        while view:
            try:
                written = os.write(self._master_fd, view)
            except BlockingIOError:
                # pty input buffer full; drop the rest like a saturated terminal
                logger.warning("PTY input buffer full for pid %s, dropped %d bytes", self.pid, len(view))
                return
            view = view[written:]

    def resize(self, cols: int, rows: int) -> None:
        if self._closed:
            return
        _set_winsize(self._master_fd, cols, rows)

    def kill(self, sig: int = signal.SIGHUP) -> None:
        """Signal the shell's process group; exit is reported through ``on_exit``."""
        if self._proc.returncode is not None:
            return
        try:
            os.killpg(self._proc.pid, sig)
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.warning("Failed to kill terminal pid %s: %s", self.pid, e)

    async def wait(self) -> None:
        await asyncio.shield(self._wait_task)


async def spawn_pty(
    cwd: str,
    config: TerminalConfig,
    on_data: DataCallback,
    on_exit: ExitCallback,
    env: dict[str, str] | None = None,
) -> PtyProcess:
    """Spawn an interactive shell bound to ``cwd`` on a fresh pty."""
    master_fd, slave_fd = pty.openpty()
    try:
        _set_winsize(slave_fd, config.cols, config.rows)
        merged_env = dict(os.environ)
        if env:
            merged_env.update(env)
        merged_env["TERM"] = config.term
        proc = await asyncio.create_subprocess_exec(
            config.shell,
            stdin=slave_fd,
            stdout=slave_fd,
            stderr=slave_fd,
            cwd=cwd,
            env=merged_env,
            start_new_session=True,
            preexec_fn=_acquire_controlling_tty,
        )
    except BaseException:
        os.close(master_fd)
        raise
    finally:
        os.close(slave_fd)
    return PtyProcess(proc, master_fd, on_data, on_exit)


Spawner = Callable[[str, TerminalConfig, DataCallback, ExitCallback], Awaitable[PtyProcess]]


def resolve_working_dir(candidate: str | None) -> str:
    """Use ``candidate`` if it is a directory, else HOME, else the temp dir."""
    fallbacks = [candidate, os.environ.get("HOME") or str(Path.home()), tempfile.gettempdir()]
    for index, path in enumerate(fallbacks):
        if path and os.path.isdir(path):
            if index > 0:
                logger.warning("Terminal cwd does not exist: %s, falling back to %s", candidate, path)
            return path
    return tempfile.gettempdir()


@dataclass
class TerminalSession:
    """A live shell and the viewers attached to it."""

    session_key: str
    cwd: str
    process: PtyProcess | None = None
    viewers: list[Viewer] = field(default_factory=list)
    exited: bool = False

    def broadcast(self, message: dict) -> None:
        for viewer in list(self.viewers):
            try:
                viewer.deliver(message)
            except Exception as e:
                logger.warning("Failed to send terminal %s to a viewer of %s: %s", message.get("type"), self.session_key, e)


@dataclass
class AttachResult:
    session: TerminalSession
    cwd: str
    created: bool


class TerminalRegistry:
    """Owns at most one live shell per session key."""

    def __init__(self, config: TerminalConfig | None = None, spawner: Spawner | None = None):
        self.config = config or TerminalConfig()
        self._spawner = spawner or spawn_pty
        self._sessions: dict[str, TerminalSession] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._attaching: dict[str, int] = {}

    def get(self, session_key: str) -> TerminalSession | None:
        return self._sessions.get(session_key)

    def __len__(self) -> int:
        return len(self._sessions)

    async def attach(self, session_key: str, working_dir: str | None, viewer: Viewer) -> AttachResult:
        """Join the session's shell, spawning it first if there is none.

        Check-and-spawn runs under a per-key lock so concurrent attaches
        for an unseen key share a single process.
        """
        lock = self._locks.setdefault(session_key, asyncio.Lock())
        self._attaching[session_key] = self._attaching.get(session_key, 0) + 1
        try:
            async with lock:
                session = self._sessions.get(session_key)
                created = False
                if session is None:
                    cwd = resolve_working_dir(working_dir)
                    session = TerminalSession(session_key=session_key, cwd=cwd)
                    session.process = await self._spawner(
                        cwd,
                        self.config,
                        lambda data: session.broadcast({"type": "output", "data": data}),
                        lambda code, sig: self._on_exit(session, code, sig),
                    )
                    self._sessions[session_key] = session
                    created = True
                    logger.info("Spawned terminal for session %s (pid=%s, cwd=%s)", session_key, session.process.pid, cwd)
                if viewer not in session.viewers:
                    session.viewers.append(viewer)
        finally:
            self._attaching[session_key] -= 1
            if not self._attaching[session_key]:
                del self._attaching[session_key]
                self._prune_lock(session_key)
        return AttachResult(session=session, cwd=session.cwd, created=created)

    def _attached(self, session_key: str, viewer: Viewer) -> TerminalSession | None:
        session = self._sessions.get(session_key)
        if session is None or session.process is None or viewer not in session.viewers:
            return None
        return session

    def input(self, session_key: str, viewer: Viewer, data: str | bytes) -> bool:
        """Forward input from an attached viewer; anyone else is ignored."""
        session = self._attached(session_key, viewer)
        if session is None:
            return False
        session.process.write(data)
        return True

    def resize(self, session_key: str, viewer: Viewer, cols, rows) -> bool:
        """Forward a resize; anything but two positive integers is ignored."""
        for value in (cols, rows):
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                return False
        session = self._attached(session_key, viewer)
        if session is None:
            return False
        try:
            session.process.resize(cols, rows)
        except OSError as e:
            logger.warning("Failed to resize terminal %s: %s", session_key, e)
            return False
        return True

    def detach(self, session_key: str, viewer: Viewer) -> bool:
        """Remove a viewer; returns True if this killed the shell."""
        session = self._sessions.get(session_key)
        if session is None:
            return False
        try:
            session.viewers.remove(viewer)
        except ValueError:
            return False
        if session.viewers:
            return False
        logger.info("Killing terminal for session %s (no connections)", session_key)
        self._remove(session)
        if session.process is not None:
            session.process.kill()
        return True

    def _remove(self, session: TerminalSession) -> None:
        if self._sessions.get(session.session_key) is session:
            del self._sessions[session.session_key]
            self._prune_lock(session.session_key)

    def _prune_lock(self, session_key: str) -> None:
        # Kept while a shell is registered or an attach is in flight
        if session_key not in self._sessions and session_key not in self._attaching:
            self._locks.pop(session_key, None)

    def _on_exit(self, session: TerminalSession, exit_code: int | None, sig: int | None) -> None:
        logger.info("Terminal exited for session %s: code=%s, signal=%s", session.session_key, exit_code, sig)
        session.exited = True
        session.broadcast({"type": "exit", "exitCode": exit_code, "signal": sig})
        self._remove(session)

    async def shutdown(self) -> None:
        """Kill every shell and wait for them to exit."""
        sessions = list(self._sessions.values())
        for session in sessions:
            self._remove(session)
            if session.process is not None:
                session.process.kill()
        for session in sessions:
            if session.process is not None:
                try:
                    await asyncio.wait_for(session.process.wait(), timeout=5)
                except asyncio.TimeoutError:
                    logger.warning("Terminal for session %s did not exit, sending SIGKILL", session.session_key)
                    session.process.kill(signal.SIGKILL)
