"""Per-conversation realtime topics for multi-device mirroring."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import httpx

from ..config import PlatformSettings, get_settings

logger = logging.getLogger(__name__)

MESSAGE_CHUNK = "message_chunk"
MESSAGE_COMPLETE = "message_complete"


def conversation_topic(conversation_id: str) -> str:
    return f"conversation:{conversation_id}:messages"


class RealtimeHub:
    """In-process topic fan-out. Each subscriber gets its own bounded queue."""

    def __init__(self, queue_size: int = 256) -> None:
        self._queue_size = queue_size
        self._subscribers: dict[str, set[asyncio.Queue[dict[str, Any]]]] = defaultdict(set)

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscribers.get(topic, ()))

    @asynccontextmanager
    async def subscribe(self, topic: str) -> AsyncIterator[asyncio.Queue[dict[str, Any]]]:
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers[topic].add(queue)
        try:
            yield queue
        finally:
            subscribers = self._subscribers.get(topic)
            if subscribers is not None:
                subscribers.discard(queue)
                if not subscribers:
                    del self._subscribers[topic]

    def publish(self, topic: str, event: str, payload: dict[str, Any]) -> int:
        message = {"event": event, "payload": payload}
        delivered = 0
        for queue in list(self._subscribers.get(topic, ())):
            if queue.full():
                # Slow subscriber: keep the newest events.
                queue.get_nowait()
                logger.warning("Realtime subscriber on %s fell behind; dropped oldest event", topic)
            queue.put_nowait(message)
            delivered += 1
        return delivered


class RealtimeBroadcaster:
    """Publishes conversation events locally and, when enabled, to the platform broadcast API."""

    def __init__(
        self,
        settings: PlatformSettings,
        hub: RealtimeHub,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings
        self._hub = hub
        self._client = client or httpx.AsyncClient(timeout=10.0)

    @property
    def hub(self) -> RealtimeHub:
        return self._hub

    @property
    def forwards_to_platform(self) -> bool:
        return bool(self._settings.broadcast_enabled and self._settings.url and self._settings.service_role_key)

    async def close(self) -> None:
        await self._client.aclose()

    async def broadcast(self, conversation_id: str, event: str, payload: dict[str, Any]) -> None:
        """Raise on platform failure; callers treat broadcasts as secondary bookkeeping."""
        topic = conversation_topic(conversation_id)
        self._hub.publish(topic, event, payload)
        if not self.forwards_to_platform:
            return
        key = self._settings.service_role_key
        response = await self._client.post(
            self._settings.broadcast_url,
            json={"messages": [{"topic": topic, "event": event, "payload": payload}]},
            headers={"apikey": key, "Authorization": f"Bearer {key}"},
        )
        response.raise_for_status()


_hub: RealtimeHub | None = None
_broadcaster: RealtimeBroadcaster | None = None


def get_realtime_hub() -> RealtimeHub:
    global _hub
    if _hub is None:
        _hub = RealtimeHub()
    return _hub


def get_broadcaster() -> RealtimeBroadcaster:
    global _broadcaster
    if _broadcaster is None:
        _broadcaster = RealtimeBroadcaster(get_settings().platform, get_realtime_hub())
    return _broadcaster


async def shutdown_realtime() -> None:
    global _hub, _broadcaster
    if _broadcaster is not None:
        await _broadcaster.close()
    _broadcaster = None
    _hub = None
