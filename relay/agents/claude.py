from __future__ import annotations

import asyncio
import logging
import os
import shutil
import signal
from collections.abc import AsyncIterator
from pathlib import Path

from .base import (
    AbnormalExit,
    CancellationToken,
    TaskAborted,
    TaskClient,
    TaskFailed,
    TaskOptions,
    TaskStream,
)
from .events import TaskEvent
from .stream import ClaudeStreamDecoder

log = logging.getLogger("relay")

_CLAUDE_BASE_FLAGS = [
    "--verbose",
    "--output-format", "stream-json",
    "--dangerously-skip-permissions",
]

# SIGTERM as a shell exit status and as an asyncio returncode.
_TERMINATED_CODES = frozenset({143, -signal.SIGTERM})
_STDERR_FLUSH_TIMEOUT = 2.0


class ClaudeClient(TaskClient):
    """Runs ``claude -p`` as a subprocess and streams its stream-json output."""

    def __init__(
        self,
        executable: str = "claude",
        terminate_grace: float = 5.0,
        extra_env: dict[str, str] | None = None,
    ) -> None:
        self.executable = executable
        self.terminate_grace = terminate_grace
        self.extra_env = extra_env

    def _build_args(self, prompt: str, options: TaskOptions) -> list[str]:
        args = [self.executable, "-p", prompt, *_CLAUDE_BASE_FLAGS]
        if options.continue_conversation:
            args.append("--continue")
        elif options.resume_session_id:
            args.extend(["--resume", options.resume_session_id])
        if options.model:
            args.extend(["--model", options.model])
        return args

    def start(
        self,
        working_dir: Path,
        prompt: str,
        token: CancellationToken,
        options: TaskOptions,
    ) -> TaskStream:
        stderr_lines: list[str] = []
        events = self._run(working_dir, prompt, token, options, stderr_lines)
        return TaskStream(events, lambda: "".join(stderr_lines))

    async def _run(
        self,
        working_dir: Path,
        prompt: str,
        token: CancellationToken,
        options: TaskOptions,
        stderr_lines: list[str],
    ) -> AsyncIterator[TaskEvent]:
        if token.aborted:
            raise TaskAborted()
        args = self._build_args(prompt, options)
        if shutil.which(args[0]) is None:
            raise TaskFailed(
                f"Claude Code requires '{args[0]}' but it was not found on PATH. "
                "Install it or set CLAUDE_PATH."
            )

        if options.continue_conversation:
            mode = "continue"
        elif options.resume_session_id:
            mode = f"resume {options.resume_session_id}"
        else:
            mode = "new session"
        log.info("[claude] starting model=%s mode=%s cwd=%s", options.model or "default", mode, working_dir)

        env = None
        if self.extra_env:
            env = {**os.environ, **self.extra_env}
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            stdin=asyncio.subprocess.DEVNULL,
            cwd=str(working_dir),
            env=env,
            limit=10 * 1024 * 1024,  # stream-json lines can be large
        )
        stderr_task = asyncio.create_task(self._drain_stderr(proc, stderr_lines))
        token.on_abort(lambda: self._terminate(proc))

        decoder = ClaudeStreamDecoder()
        try:
            assert proc.stdout is not None
            async for raw_line in proc.stdout:
                line = raw_line.decode(errors="replace")
                log.debug("[claude] stdout: %s", line.rstrip()[:500])
                for event in decoder.decode(line):
                    yield event
            await proc.wait()
            try:
                await asyncio.wait_for(stderr_task, timeout=_STDERR_FLUSH_TIMEOUT)
            except asyncio.TimeoutError:
                log.debug("[claude] stderr still open after exit")
        finally:
            if proc.returncode is None:
                await self._stop(proc)
            if not stderr_task.done():
                stderr_task.cancel()

        diagnostics = "".join(stderr_lines)
        if token.aborted or proc.returncode in _TERMINATED_CODES:
            log.info("[claude] process terminated by abort signal")
            raise TaskAborted(diagnostics=diagnostics)
        if proc.returncode != 0:
            log.warning("[claude] exit %d stderr: %s", proc.returncode, diagnostics.rstrip()[-400:])
            raise AbnormalExit(proc.returncode, diagnostics)
        log.info("[claude] finished session_id=%s", decoder.session_id or "none")

    async def _drain_stderr(self, proc: asyncio.subprocess.Process, sink: list[str]) -> None:
        """Read stderr in the background to prevent pipe buffer deadlock."""
        assert proc.stderr is not None
        try:
            async for raw_line in proc.stderr:
                line = raw_line.decode(errors="replace")
                sink.append(line)
                log.debug("[claude] stderr: %s", line.rstrip())
        except (OSError, ValueError) as exc:
            log.debug("[claude] stderr drain stopped: %s", exc)

    def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        log.info("[claude] terminating pid=%s", proc.pid)
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        asyncio.get_running_loop().call_later(self.terminate_grace, self._kill, proc)

    @staticmethod
    def _kill(proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is None:
            log.warning("[claude] pid=%s ignored SIGTERM, killing", proc.pid)
            try:
                proc.kill()
            except ProcessLookupError:
                pass

    async def _stop(self, proc: asyncio.subprocess.Process) -> None:
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.terminate_grace)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
