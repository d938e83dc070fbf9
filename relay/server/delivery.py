from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Sequence

from fastapi import WebSocket

from ..agents.events import TaskEvent
from ..chat.events import ChatEvent
from .protocol import batch_to_dict

log = logging.getLogger("relay")

DeliveryItem = TaskEvent | ChatEvent


class DeliverySink(ABC):
    """Renders ordered batches of task output for one channel."""

    @abstractmethod
    async def deliver(self, channel_key: str, batch: Sequence[DeliveryItem]) -> None:
        """Deliver one batch. May raise; callers log and carry on."""


class WebSocketSink(DeliverySink):
    """Fans each batch out to every WebSocket subscribed to the channel."""

    def __init__(self, send_timeout: float = 120.0) -> None:
        self.send_timeout = send_timeout
        self._subscribers: dict[str, set[WebSocket]] = {}
        self.send_failures = 0

    def subscribe(self, channel_key: str, ws: WebSocket) -> None:
        self._subscribers.setdefault(channel_key, set()).add(ws)

    def unsubscribe(self, channel_key: str, ws: WebSocket) -> None:
        subs = self._subscribers.get(channel_key)
        if subs:
            subs.discard(ws)
            if not subs:
                self._subscribers.pop(channel_key, None)

    def subscriber_count(self, channel_key: str) -> int:
        return len(self._subscribers.get(channel_key, ()))

    async def deliver(self, channel_key: str, batch: Sequence[DeliveryItem]) -> None:
        await self.broadcast(channel_key, batch_to_dict(channel_key, batch))

    async def broadcast(self, channel_key: str, data: dict) -> int:
        subs = self._subscribers.get(channel_key)
        if not subs:
            log.debug("broadcast dropped (no subscribers): %s", channel_key)
            return 0
        snapshot = list(subs)

        async def _send(ws: WebSocket) -> None:
            await asyncio.wait_for(ws.send_json(data), timeout=self.send_timeout)

        results = await asyncio.gather(*[_send(ws) for ws in snapshot], return_exceptions=True)
        sent = 0
        for ws, result in zip(snapshot, results):
            if isinstance(result, Exception):
                log.warning("broadcast failed channel=%s type=%s error=%s", channel_key, data.get("type"), result)
                self.send_failures += 1
                subs.discard(ws)
            else:
                sent += 1
        if not subs:
            self._subscribers.pop(channel_key, None)
        if sent == 0:
            log.warning("broadcast delivered to 0 subscribers channel=%s type=%s", channel_key, data.get("type"))
        return sent
