from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from ..agents.base import CancellationToken

log = logging.getLogger("relay")

SESSION_FILE_NAME = ".claude-sessions.json"

_FENCE_RE = re.compile(r"^```\n?|\n?```$")
_BACKTICKS_RE = re.compile(r"^`+|`+$")


def clean_session_id(raw: str) -> str:
    """Strip whitespace, backticks, code fences and line breaks from a session id."""
    cleaned = raw.strip()
    cleaned = _BACKTICKS_RE.sub("", cleaned)
    cleaned = _FENCE_RE.sub("", cleaned)
    cleaned = cleaned.replace("\r", "").replace("\n", "")
    return cleaned.strip()


def _folder_name(channel_key: str, label: str | None) -> str:
    name = (label or "").strip().replace("/", "-").replace("\\", "-")
    if name in ("", ".", ".."):
        return channel_key
    return name


class ChannelState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"


@dataclass
class QueuedInput:
    prompt: str
    new_session: bool = False
    continue_conversation: bool = False
    queued_at: float = field(default_factory=time.monotonic)


@dataclass
class ChannelSession:
    """Per-channel state. Mutated only by the registry and the ChannelRunner."""

    channel_key: str
    working_dir: Path
    label: str | None = None
    session_id: str | None = None
    state: ChannelState = ChannelState.IDLE
    token: CancellationToken | None = None
    queue: deque[QueuedInput] = field(default_factory=deque)
    drain_task: asyncio.Task | None = None

    def to_dict(self) -> dict:
        return {
            "channel_key": self.channel_key,
            "label": self.label,
            "session_id": self.session_id,
            "working_dir": str(self.working_dir),
            "busy": self.state is ChannelState.RUNNING,
            "queued": len(self.queue),
        }


@dataclass
class SavedSession:
    session_id: str
    label: str | None = None


class SessionFile:
    """Flat JSON map of channel key -> resumption token, overwritten in place."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def read_all(self) -> dict[str, SavedSession]:
        try:
            raw = json.loads(self.path.read_text())
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as exc:
            log.warning("could not read session state %s: %s", self.path, exc)
            return {}
        if not isinstance(raw, dict):
            log.warning("ignoring session state %s: expected an object", self.path)
            return {}
        saved: dict[str, SavedSession] = {}
        for channel_key, entry in raw.items():
            if not isinstance(entry, dict):
                continue
            sid = entry.get("sessionId")
            if not isinstance(sid, str) or not clean_session_id(sid):
                continue
            label = entry.get("channelName")
            saved[channel_key] = SavedSession(
                session_id=clean_session_id(sid),
                label=label if isinstance(label, str) else None,
            )
        return saved

    def write_all(self, sessions: dict[str, SavedSession]) -> None:
        state = {
            channel_key: {"sessionId": s.session_id, "channelName": s.label}
            for channel_key, s in sessions.items()
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(state, indent=2))


class SessionRegistry:
    def __init__(self, work_dir: Path, store: SessionFile | None = None) -> None:
        self.work_dir = work_dir
        self.store = store or SessionFile(work_dir / SESSION_FILE_NAME)
        self._sessions: dict[str, ChannelSession] = {}

    def get_or_create(self, channel_key: str, label: str | None = None) -> ChannelSession:
        session = self._sessions.get(channel_key)
        if session is None:
            session = ChannelSession(
                channel_key=channel_key,
                working_dir=self.work_dir / _folder_name(channel_key, label),
                label=label or channel_key,
            )
            self._sessions[channel_key] = session
            log.debug("[%s] new channel session dir=%s", channel_key, session.working_dir)
        return session

    def get(self, channel_key: str) -> ChannelSession | None:
        return self._sessions.get(channel_key)

    def sessions(self) -> list[ChannelSession]:
        return list(self._sessions.values())

    def snapshot(self) -> dict[str, SavedSession]:
        return {
            key: SavedSession(session_id=s.session_id, label=s.label)
            for key, s in self._sessions.items()
            if s.session_id
        }

    async def load(self) -> int:
        """Restore resumption tokens from disk. Returns the number restored."""
        try:
            saved = await asyncio.to_thread(self.store.read_all)
        except Exception:
            log.exception("failed to load session state from %s", self.store.path)
            return 0
        for channel_key, entry in saved.items():
            session = self.get_or_create(channel_key, entry.label)
            session.session_id = entry.session_id
            log.info("restored session for channel %s: %s", session.label, entry.session_id)
        return len(saved)

    async def save(self) -> bool:
        """Persist resumption tokens. Failures are logged, never raised."""
        try:
            await asyncio.to_thread(self.store.write_all, self.snapshot())
        except Exception as exc:
            log.warning("could not save session state to %s: %s", self.store.path, exc)
            return False
        return True
