import asyncio

import pytest

from relay.agents.base import ActivityTimeout, CancellationToken, StartupTimeout, TaskStream
from relay.agents.events import AssistantText
from relay.server.monitor import LivenessMonitor


class _Source:
    def __init__(self, first_delay: float, then_delay: float, count: int = 3, stderr: str = "") -> None:
        self.first_delay = first_delay
        self.then_delay = then_delay
        self.count = count
        self.stderr = stderr
        self.closed = False

    async def events(self):
        try:
            for i in range(self.count):
                await asyncio.sleep(self.first_delay if i == 0 else self.then_delay)
                yield AssistantText(text=str(i))
        finally:
            self.closed = True

    def stream(self) -> TaskStream:
        return TaskStream(self.events(), lambda: self.stderr)


@pytest.mark.asyncio
async def test_passes_events_through():
    source = _Source(0, 0)
    token = CancellationToken()
    monitor = LivenessMonitor(startup_timeout=1.0, activity_timeout=1.0)

    events = [e async for e in monitor.watch(source.stream(), token)]

    assert [e.text for e in events] == ["0", "1", "2"]
    assert not token.aborted


@pytest.mark.asyncio
async def test_startup_timeout_aborts_and_carries_stderr():
    source = _Source(5, 0, stderr="  Error: invalid API key\n" + "x" * 1000)
    token = CancellationToken()
    monitor = LivenessMonitor(startup_timeout=0.05, activity_timeout=5)

    with pytest.raises(StartupTimeout) as exc_info:
        [e async for e in monitor.watch(source.stream(), token)]

    assert token.aborted
    assert token.reason == "startup timeout"
    assert exc_info.value.kind == "startup_timeout"
    assert exc_info.value.diagnostics.startswith("Error: invalid API key")
    assert len(exc_info.value.diagnostics) == 500
    assert source.closed


@pytest.mark.asyncio
async def test_activity_timeout_after_first_event():
    source = _Source(0, 5)
    token = CancellationToken()
    monitor = LivenessMonitor(startup_timeout=5, activity_timeout=0.05)

    received = []
    with pytest.raises(ActivityTimeout):
        async for event in monitor.watch(source.stream(), token):
            received.append(event)

    assert [e.text for e in received] == ["0"]
    assert token.reason == "activity timeout"
    assert source.closed


@pytest.mark.asyncio
async def test_activity_deadline_rearms_on_each_event():
    # Total runtime exceeds the activity timeout, the gaps do not.
    source = _Source(0, 0.03, count=6)
    token = CancellationToken()
    monitor = LivenessMonitor(startup_timeout=1.0, activity_timeout=0.1)

    events = [e async for e in monitor.watch(source.stream(), token)]

    assert len(events) == 6
    assert not token.aborted


@pytest.mark.asyncio
async def test_startup_deadline_does_not_apply_after_first_event():
    source = _Source(0, 0.1, count=2)
    token = CancellationToken()
    monitor = LivenessMonitor(startup_timeout=0.05, activity_timeout=1.0)

    events = [e async for e in monitor.watch(source.stream(), token)]

    assert len(events) == 2
