from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass
from importlib.metadata import PackageNotFoundError, version as pkg_version
from typing import Any

from ..agents.base import (
    CancellationToken,
    TaskAborted,
    TaskClient,
    TaskError,
    TaskFailed,
    TaskOptions,
)
from ..agents.events import AssistantText, ResultSummary, SessionIdAnnounced
from ..chat.events import (
    TaskCancelled,
    TaskCompleted,
    TaskErrored,
    TaskNotice,
    TaskStarted,
)
from .delivery import DeliveryItem, DeliverySink
from .monitor import TIMEOUT_REASONS, LivenessMonitor
from .policy import FallbackPolicy
from .sessions import ChannelSession, ChannelState, QueuedInput, SessionRegistry, clean_session_id
from .settings import DEFAULTS, SettingsStore

log = logging.getLogger("relay")
_SERVICE_NAME = "channel-relay"

try:
    _SERVICE_VERSION = pkg_version(_SERVICE_NAME)
except PackageNotFoundError:
    _SERVICE_VERSION = "dev"

_CANCEL_SETTLE_TIMEOUT = 5.0


@dataclass(frozen=True)
class SubmitResult:
    status: str  # "queued" | "dispatched"
    position: int = 0

    @property
    def queued(self) -> bool:
        return self.status == "queued"


@dataclass(frozen=True)
class CancelResult:
    cancelled: bool
    discarded: int


@dataclass
class TaskOutcome:
    status: str  # "completed" | "failed" | "aborted"
    model: str | None = None
    session_id: str | None = None
    summary: ResultSummary | None = None
    error: TaskError | None = None
    retried: bool = False
    text: str = ""


class ChannelRunner:
    """Per-channel executor: one task at a time, FIFO queue for the rest.

    A channel is RUNNING from the moment a message is dispatched until its
    queue is empty and the last task has settled. Only this class sets or
    clears ``ChannelSession.token``, ``state`` and ``queue``.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        client: TaskClient,
        sink: DeliverySink,
        *,
        monitor: LivenessMonitor | None = None,
        policy: FallbackPolicy | None = None,
        settings: SettingsStore | None = None,
        overrides: dict[str, Any] | None = None,
        cancel_settle_timeout: float = _CANCEL_SETTLE_TIMEOUT,
    ) -> None:
        self.registry = registry
        self.client = client
        self.sink = sink
        self.monitor = monitor
        self.policy = policy
        self.settings = settings
        self.overrides = overrides or {}
        self.cancel_settle_timeout = cancel_settle_timeout

    def is_busy(self, channel_key: str) -> bool:
        session = self.registry.get(channel_key)
        return session is not None and session.state is ChannelState.RUNNING

    def _log_metric(self, name: str, **fields: object) -> None:
        payload = {
            "metric": name,
            "ts": time.time(),
            "service": _SERVICE_NAME,
            "version": _SERVICE_VERSION,
            **fields,
        }
        log.info("metric %s", json.dumps(payload, separators=(",", ":"), sort_keys=True))

    def _config(self) -> dict[str, Any]:
        """Effective settings for the next dispatch."""
        if self.settings is not None:
            return self.settings.get_effective(self.overrides)
        config = dict(DEFAULTS)
        config.update({k: v for k, v in self.overrides.items() if v is not None})
        return config

    def _monitor(self, config: dict[str, Any]) -> LivenessMonitor:
        if self.monitor is not None:
            return self.monitor
        return LivenessMonitor(
            startup_timeout=float(config["timeouts.startup"]),
            activity_timeout=float(config["timeouts.activity"]),
        )

    def _policy(self, config: dict[str, Any]) -> FallbackPolicy:
        if self.policy is not None:
            return self.policy
        return FallbackPolicy(fallback_model=config["claude.fallback_model"])

    def submit(
        self,
        channel_key: str,
        label: str | None,
        prompt: str,
        *,
        new_session: bool = False,
        continue_conversation: bool = False,
    ) -> SubmitResult:
        session = self.registry.get_or_create(channel_key, label)
        item = QueuedInput(
            prompt=prompt,
            new_session=new_session,
            continue_conversation=continue_conversation,
        )
        if session.state is ChannelState.RUNNING:
            session.queue.append(item)
            position = len(session.queue)
            log.info("[%s] busy, queued message at position %d", channel_key, position)
            return SubmitResult("queued", position)

        session.state = ChannelState.RUNNING
        session.token = CancellationToken()
        session.drain_task = asyncio.create_task(
            self._drain(session, item, session.token),
            name=f"channel-{channel_key}",
        )
        return SubmitResult("dispatched")

    async def join(self, channel_key: str) -> None:
        """Wait until the channel's current drain loop has finished."""
        session = self.registry.get(channel_key)
        task = session.drain_task if session else None
        if task is not None:
            await task

    async def cancel(self, channel_key: str) -> CancelResult:
        session = self.registry.get(channel_key)
        if session is None or session.state is ChannelState.IDLE:
            return CancelResult(cancelled=False, discarded=0)

        discarded = len(session.queue)
        session.queue.clear()
        if session.token is not None:
            session.token.abort("cancelled")
        session.session_id = None
        log.info("[%s] cancelled, discarded %d queued message(s)", channel_key, discarded)

        task = session.drain_task
        if task is not None and task is not asyncio.current_task():
            done, _ = await asyncio.wait({task}, timeout=self.cancel_settle_timeout)
            if not done:
                log.warning("[%s] task still settling %.1fs after cancel", channel_key, self.cancel_settle_timeout)
        await self.registry.save()
        return CancelResult(cancelled=True, discarded=discarded)

    async def reset(self, channel_key: str) -> CancelResult:
        """Start a new session: abort any running task, drop the queue and the resumption token."""
        if self.is_busy(channel_key):
            return await self.cancel(channel_key)
        session = self.registry.get(channel_key)
        if session is not None and session.session_id is not None:
            session.session_id = None
            await self.registry.save()
        return CancelResult(cancelled=False, discarded=0)

    async def shutdown(self, timeout: float = 10.0) -> None:
        """Abort every running task and wait for the drain loops to settle."""
        tasks: list[asyncio.Task] = []
        for session in self.registry.sessions():
            session.queue.clear()
            if session.token is not None:
                session.token.abort("shutdown")
            if session.drain_task is not None:
                tasks.append(session.drain_task)
        if tasks:
            log.info("shutdown: waiting for %d running channel(s)", len(tasks))
            await asyncio.wait(tasks, timeout=timeout)

    async def _deliver(self, channel_key: str, batch: Sequence[DeliveryItem]) -> None:
        try:
            await self.sink.deliver(channel_key, batch)
        except Exception as exc:
            log.warning("[%s] delivery failed: %s", channel_key, exc)

    async def _drain(self, session: ChannelSession, item: QueuedInput, token: CancellationToken) -> None:
        try:
            while True:
                try:
                    await self._process(session, item, token)
                except Exception as exc:
                    log.exception("[%s] task crashed before settling: %s", session.channel_key, exc)
                    session.token = None
                    await self._deliver(session.channel_key, [TaskErrored(
                        channel_key=session.channel_key,
                        kind=TaskFailed.kind,
                        message=str(exc) or type(exc).__name__,
                    )])
                if not session.queue:
                    break
                # Token is in place before the next await so cancel can always reach it.
                item = session.queue.popleft()
                token = CancellationToken()
                session.token = token
        finally:
            session.token = None
            session.state = ChannelState.IDLE
            session.drain_task = None

    async def _process(self, session: ChannelSession, item: QueuedInput, token: CancellationToken) -> None:
        key = session.channel_key
        started = time.monotonic()
        try:
            outcome = await self._run_task(session, item, token)
        finally:
            session.token = None

        if outcome.status == "completed":
            sid = clean_session_id(outcome.session_id) if outcome.session_id else None
            session.session_id = sid or None
            await self.registry.save()
            notification = TaskCompleted(
                channel_key=key,
                session_id=session.session_id,
                model=outcome.model or "default",
                cost_usd=outcome.summary.cost_usd if outcome.summary else None,
                duration_ms=outcome.summary.duration_ms if outcome.summary else None,
                cwd=str(session.working_dir),
                retried=outcome.retried,
                text=outcome.text or "No response received",
            )
        elif outcome.status == "aborted":
            notification = TaskCancelled(channel_key=key, reason=token.reason or "cancelled")
        else:
            if outcome.error is None:
                outcome.error = TaskFailed("Task failed without an error report")
            notification = TaskErrored(
                channel_key=key,
                kind=outcome.error.kind,
                message=outcome.error.message,
                diagnostics=outcome.error.diagnostics,
                retried=outcome.retried,
            )
        await self._deliver(key, [notification])

        latency_ms = (time.monotonic() - started) * 1000
        log.info("[%s] task %s in %.0fms", key, outcome.status, latency_ms)
        self._log_metric(
            "task_settled",
            channel=key,
            status=outcome.status,
            kind=outcome.error.kind if outcome.error else None,
            model=outcome.model or "default",
            retried=outcome.retried,
            latency_ms=round(latency_ms),
            queued=len(session.queue),
        )

    async def _run_task(
        self,
        session: ChannelSession,
        item: QueuedInput,
        token: CancellationToken,
    ) -> TaskOutcome:
        key = session.channel_key
        try:
            config = self._config()
            monitor = self._monitor(config)
            policy = self._policy(config)
        except Exception as exc:
            log.exception("[%s] could not read settings: %s", key, exc)
            return TaskOutcome("failed", error=TaskFailed(f"Could not read settings: {exc}"))
        resume = None if (item.new_session or item.continue_conversation) else session.session_id
        options = TaskOptions(
            resume_session_id=resume,
            continue_conversation=item.continue_conversation,
            model=config["claude.model"],
        )

        try:
            await asyncio.to_thread(session.working_dir.mkdir, parents=True, exist_ok=True)
        except OSError as exc:
            return TaskOutcome("failed", model=options.model, error=TaskFailed(f"Could not create working directory: {exc}"))

        await self._deliver(key, [TaskStarted(
            channel_key=key,
            prompt=item.prompt,
            model=options.model,
            resumed=bool(resume) or item.continue_conversation,
        )])

        attempt = 0
        first_error: TaskError | None = None
        while True:
            session_id: str | None = None
            summary: ResultSummary | None = None
            text = ""
            try:
                stream = self.client.start(session.working_dir, item.prompt, token, options)
                async for event in monitor.watch(stream, token):
                    if isinstance(event, AssistantText):
                        text += event.text
                    elif isinstance(event, SessionIdAnnounced):
                        session_id = event.session_id
                    elif isinstance(event, ResultSummary):
                        summary = event
                        session_id = event.session_id or session_id
                        text = event.text or text
                    await self._deliver(key, [event])
            except TaskAborted:
                return TaskOutcome("aborted", model=options.model, retried=attempt > 0)
            except TaskError as exc:
                # A cancel settled by a deadline is still a cancel.
                if token.aborted and token.reason not in TIMEOUT_REASONS:
                    return TaskOutcome("aborted", model=options.model, retried=attempt > 0)
                error = exc
            except Exception as exc:
                log.exception("[%s] task error: %s", key, exc)
                if token.aborted:
                    return TaskOutcome("aborted", model=options.model, retried=attempt > 0)
                error = TaskFailed(str(exc) or type(exc).__name__)
            else:
                if token.aborted:
                    return TaskOutcome("aborted", model=options.model, retried=attempt > 0)
                return TaskOutcome(
                    "completed",
                    model=options.model,
                    session_id=session_id,
                    summary=summary,
                    retried=attempt > 0,
                    text=text,
                )

            if first_error is not None:
                return TaskOutcome(
                    "failed", model=options.model, error=policy.combine(first_error, error), retried=True,
                )
            if not policy.should_retry(error, attempt):
                log.warning("[%s] task failed (%s): %s", key, error.kind, error.message)
                return TaskOutcome("failed", model=options.model, error=error, retried=attempt > 0)

            first_error = error
            attempt += 1
            options = policy.retry_options(options)
            log.info("[%s] %s, retrying with %s without session resume", key, error.message, options.model)
            self._log_metric("task_fallback_retry", channel=key, model=options.model, kind=error.kind)
            await self._deliver(key, [TaskNotice(
                channel_key=key,
                message=f"{error.message}. Retrying with {options.model} without session resume.",
            )])
