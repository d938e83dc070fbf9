from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterable, AsyncIterator, Callable
from dataclasses import dataclass, replace
from pathlib import Path

from .events import TaskEvent

log = logging.getLogger("relay")

_DIAGNOSTIC_EXCERPT_CHARS = 500


def diagnostic_excerpt(text: str, limit: int = _DIAGNOSTIC_EXCERPT_CHARS) -> str:
    if not text:
        return ""
    return text.strip()[:limit]


class TaskError(Exception):
    """A streaming task ended without completing."""

    kind = "other"

    def __init__(self, message: str, diagnostics: str = "") -> None:
        super().__init__(message)
        self.message = message
        self.diagnostics = diagnostics


class TaskAborted(TaskError):
    """Raised when a task stops because its token was aborted."""

    kind = "aborted"

    def __init__(self, message: str = "Request was cancelled", diagnostics: str = "") -> None:
        super().__init__(message, diagnostics)


class AbnormalExit(TaskError):
    kind = "abnormal_exit"

    def __init__(self, code: int, diagnostics: str = "", message: str | None = None) -> None:
        super().__init__(message or f"Claude Code process exited with code {code}", diagnostics)
        self.code = code


class TaskFailed(TaskError):
    kind = "other"


class StartupTimeout(TaskError):
    kind = "startup_timeout"


class ActivityTimeout(TaskError):
    kind = "activity_timeout"


class CancellationToken:
    """Cooperative abort signal for one in-flight task.

    Callbacks registered with ``on_abort`` run once, synchronously, the first
    time ``abort`` is called. A callback registered after the abort runs
    immediately.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._callbacks: list[Callable[[], None]] = []
        self.reason: str | None = None

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    def abort(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                log.exception("abort callback failed")

    def on_abort(self, callback: Callable[[], None]) -> None:
        if self._event.is_set():
            callback()
            return
        self._callbacks.append(callback)

    async def wait(self) -> None:
        await self._event.wait()


@dataclass(frozen=True)
class TaskOptions:
    resume_session_id: str | None = None
    continue_conversation: bool = False
    model: str | None = None

    def without_resume(self) -> TaskOptions:
        return replace(self, resume_session_id=None, continue_conversation=False)


class TaskStream:
    """Async sequence of TaskEvent plus access to the task's captured stderr."""

    def __init__(
        self,
        events: AsyncIterable[TaskEvent],
        diagnostics: Callable[[], str] | None = None,
    ) -> None:
        self._events = events
        self._diagnostics = diagnostics

    def __aiter__(self) -> AsyncIterator[TaskEvent]:
        return aiter(self._events)

    def diagnostics(self) -> str:
        if self._diagnostics is None:
            return ""
        return self._diagnostics()


class TaskClient(ABC):
    """Starts external assistant runs."""

    @abstractmethod
    def start(
        self,
        working_dir: Path,
        prompt: str,
        token: CancellationToken,
        options: TaskOptions,
    ) -> TaskStream:
        """Return the event stream of a new run. The process starts on first iteration."""
