"""Session identity: draft and persisted sessions as a tagged union.

Session ids look like ``session_01h455vb4pex5vsknk084sn02q`` (prefix plus a
26-char Crockford base32 UUIDv7). The local directory and the remote
workspace path are derived from the id.
"""

from __future__ import annotations

import os
import re
import secrets
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Union

from codebox.background import workspace_pull

SESSION_PREFIX = "session"
_ALPHABET = "0123456789abcdefghjkmnpqrstvwxyz"
_SUFFIX_RE = re.compile(r"^[0-7][0-9a-hjkmnp-tv-z]{25}$")


def _uuid7_int() -> int:
    millis = time.time_ns() // 1_000_000
    value = (millis & ((1 << 48) - 1)) << 80
    value |= 0x7 << 76  # version
    value |= secrets.randbits(12) << 64
    value |= 0b10 << 62  # variant
    value |= secrets.randbits(62)
    return value


def _encode_base32(value: int) -> str:
    chars = []
    for _ in range(26):
        chars.append(_ALPHABET[value & 0x1F])
        value >>= 5
    return "".join(reversed(chars))


def new_session_id() -> str:
    return f"{SESSION_PREFIX}_{_encode_base32(_uuid7_int())}"


def is_valid_session_id(session_id: str) -> bool:
    prefix, sep, suffix = session_id.rpartition("_")
    return sep == "_" and prefix == SESSION_PREFIX and bool(_SUFFIX_RE.match(suffix))


def _require_valid(session_id: str) -> None:
    if not is_valid_session_id(session_id):
        raise ValueError(f"Invalid session ID: {session_id!r}")


@dataclass(frozen=True)
class SessionDraft:
    """A session that has not been persisted yet."""

    id: str
    kind: Literal["draft"] = "draft"

    @classmethod
    def create(cls) -> "SessionDraft":
        return cls(id=new_session_id())


@dataclass(frozen=True)
class PersistedSession:
    """A stored session, optionally carrying the remote agent session id."""

    id: str
    agent_session_id: str | None = None
    agent_local_path: str | None = None
    workspace_path: str | None = None
    kind: Literal["persisted"] = "persisted"

    def __post_init__(self):
        _require_valid(self.id)


Session = Union[SessionDraft, PersistedSession]


def suffix(session: Session) -> str:
    return session.id.rpartition("_")[2]


def short_suffix(session: Session) -> str:
    """Last 12 base32 chars (~60 bits); names the local and remote directories."""
    return suffix(session)[-12:]


def local_path(session: Session, sessions_base: str | os.PathLike) -> str:
    return str(Path(sessions_base).expanduser() / short_suffix(session))


def working_dir(session: Session, sessions_base: str | os.PathLike) -> str:
    """Where tools and terminals operate for this session."""
    if isinstance(session, PersistedSession) and session.agent_local_path:
        return session.agent_local_path
    return local_path(session, sessions_base)


def ensure_local_dir(session: Session, sessions_base: str | os.PathLike) -> str:
    path = local_path(session, sessions_base)
    Path(path).mkdir(parents=True, exist_ok=True)
    return path


class SessionDirectory:
    """Resolves session ids to sessions rooted under a base directory.

    Stand-in for the session store: any well-formed id resolves to a
    persisted session whose working directory is derived from the id.
    With ``sync`` on, a session directory created here is first filled
    from its remote workspace (best effort; a failed pull is only logged).
    """

    def __init__(self, sessions_base: str | os.PathLike, workspace_root: str = "", sync: bool = False):
        self.sessions_base = str(Path(sessions_base).expanduser())
        self.workspace_root = workspace_root.rstrip("/")
        self.sync = sync

    async def get_session(self, session_id: str) -> PersistedSession | None:
        if not is_valid_session_id(session_id):
            return None
        draft = SessionDraft(id=session_id)
        workspace_path = None
        if self.workspace_root:
            workspace_path = f"{self.workspace_root}/{short_suffix(draft)}"
        is_new = not os.path.isdir(local_path(draft, self.sessions_base))
        agent_local_path = ensure_local_dir(draft, self.sessions_base)
        if is_new and self.sync and workspace_path:
            await workspace_pull(workspace_path, agent_local_path)
        return PersistedSession(
            id=session_id,
            agent_local_path=agent_local_path,
            workspace_path=workspace_path,
        )
