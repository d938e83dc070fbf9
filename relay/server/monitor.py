from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator

from ..agents.base import (
    ActivityTimeout,
    CancellationToken,
    StartupTimeout,
    TaskStream,
    diagnostic_excerpt,
)
from ..agents.events import TaskEvent

log = logging.getLogger("relay")

DEFAULT_STARTUP_TIMEOUT = 30.0
DEFAULT_ACTIVITY_TIMEOUT = 5 * 60.0

STARTUP_TIMEOUT_REASON = "startup timeout"
ACTIVITY_TIMEOUT_REASON = "activity timeout"
TIMEOUT_REASONS = frozenset({STARTUP_TIMEOUT_REASON, ACTIVITY_TIMEOUT_REASON})


class LivenessMonitor:
    """Startup and rolling activity deadlines for one task's event stream.

    Until the first event only the startup deadline is armed; after it, each
    event re-arms the activity deadline. On expiry the token is aborted, the
    stream is closed and StartupTimeout / ActivityTimeout is raised.
    """

    def __init__(
        self,
        startup_timeout: float = DEFAULT_STARTUP_TIMEOUT,
        activity_timeout: float = DEFAULT_ACTIVITY_TIMEOUT,
    ) -> None:
        self.startup_timeout = startup_timeout
        self.activity_timeout = activity_timeout

    async def watch(self, stream: TaskStream, token: CancellationToken) -> AsyncIterator[TaskEvent]:
        iterator = aiter(stream)
        received = 0
        while True:
            limit = self.activity_timeout if received else self.startup_timeout
            try:
                async with asyncio.timeout(limit):
                    event = await anext(iterator)
            except StopAsyncIteration:
                return
            except TimeoutError:
                token.abort(ACTIVITY_TIMEOUT_REASON if received else STARTUP_TIMEOUT_REASON)
                await self._close(iterator)
                diagnostics = diagnostic_excerpt(stream.diagnostics())
                if received:
                    log.error(
                        "activity timeout: no events for %.0fs after %d events", limit, received,
                    )
                    raise ActivityTimeout(
                        f"No output from Claude Code for {limit:.0f}s after {received} events",
                        diagnostics,
                    ) from None
                log.error("startup timeout: no events after %.0fs stderr: %s", limit, diagnostics)
                raise StartupTimeout(
                    f"Claude Code produced no output within {limit:.0f}s",
                    diagnostics,
                ) from None
            if received == 0:
                log.info("first event received (%s)", type(event).__name__)
            received += 1
            yield event

    @staticmethod
    async def _close(iterator: AsyncIterator[TaskEvent]) -> None:
        aclose = getattr(iterator, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception:
            log.debug("stream close after timeout failed", exc_info=True)
