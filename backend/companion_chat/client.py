"""Async client for consuming a chat stream, one turn at a time.

:class:`ChatStreamClient` posts a turn to the stream producer (or the chat
route, which speaks the same frames), reports the cumulative text through
callbacks and can be stopped at any point. Connection failures are turned into
readable diagnostics; nothing is retried automatically.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional
from urllib.parse import urlparse

import httpx

from .services.sse import iter_frames

logger = logging.getLogger(__name__)

CLIENT_INFO = "companion-chat-client/0.1.0"
LOCAL_HOSTS = {"localhost", "127.0.0.1", "0.0.0.0", "::1"}


class StreamState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    DONE = "done"
    ERROR = "error"


@dataclass
class ChatMessage:
    id: Optional[str]
    role: str
    content: str


@dataclass
class StreamCallbacks:
    """Handlers for one turn. Each may be a plain function or a coroutine function."""

    on_content_delta: Callable[[str], Any]
    on_complete: Callable[[ChatMessage], Any]
    on_error: Callable[[str], Any]


def is_local_url(url: str) -> bool:
    return (urlparse(url).hostname or "") in LOCAL_HOSTS


def describe_connection_error(status: Optional[int], body: str, url: str, *, connecting: bool) -> str:
    """Turn a failed connection into an actionable message for the user."""

    if status == 404:
        if is_local_url(url):
            return (
                f"Stream producer not found at {url}.\n\n"
                "For local development, start the API server:\n"
                "  uvicorn companion_chat.main:create_app --factory --reload\n\n"
                "Then refresh this page."
            )
        return f"Stream producer not found at {url}. Check if it is deployed."
    if status in (401, 403):
        return "Authentication failed. Please log in again."
    if status == 500:
        detail = "Unknown"
        try:
            parsed = json.loads(body) if body else None
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, dict) and parsed.get("error"):
            detail = str(parsed["error"])
        elif body:
            detail = body[:100]
        return f"Server error: {detail}. Check the stream producer logs."
    if not status:
        if connecting:
            if is_local_url(url):
                return (
                    f"Cannot connect to the stream producer at {url}.\n\n"
                    "The server is not running locally. Start it and refresh this page."
                )
            return (
                f"Cannot connect to the stream producer at {url}. "
                "Check your network connection and that the service is deployed."
            )
        return "Connection closed. Check if the stream producer is running."
    return "Connection error. Please try again."


class _StreamTurn:
    def __init__(self) -> None:
        self.aborted = False
        self.task: Optional[asyncio.Task[None]] = None


class ChatStreamClient:
    """Holds at most one open stream; starting a new turn stops the previous one."""

    def __init__(
        self,
        base_url: str,
        *,
        access_token: Optional[str] = None,
        anon_key: Optional[str] = None,
        path: str = "/functions/v1/chat-stream",
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._access_token = access_token
        self._anon_key = anon_key
        self._path = path
        self._client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(10.0, read=None))
        self._turn: Optional[_StreamTurn] = None
        self._state = StreamState.IDLE

    @property
    def url(self) -> str:
        return f"{self._base_url}{self._path}"

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def active(self) -> bool:
        return self._turn is not None

    async def aclose(self) -> None:
        self.stop_stream()
        await self._client.aclose()

    async def start_stream(self, payload: dict[str, Any], callbacks: StreamCallbacks) -> None:
        """Run one turn to completion, error or :meth:`stop_stream`."""
        self.stop_stream()
        turn = _StreamTurn()
        self._turn = turn
        turn.task = asyncio.create_task(self._run(turn, payload, callbacks))
        try:
            await turn.task
        except asyncio.CancelledError:
            if not turn.aborted:
                raise
        finally:
            if self._turn is turn:
                self._turn = None
                self._state = StreamState.IDLE

    def stop_stream(self) -> None:
        """Close the active stream. Safe to call when nothing is streaming."""
        turn = self._turn
        if turn is None:
            return
        self._turn = None
        turn.aborted = True
        if turn.task is not None and not turn.task.done():
            turn.task.cancel()
        self._state = StreamState.IDLE

    async def _emit(self, turn: _StreamTurn, handler: Callable[[Any], Any], value: Any) -> None:
        if turn.aborted:
            return
        result = handler(value)
        if inspect.isawaitable(result):
            await result

    async def _fail(self, turn: _StreamTurn, callbacks: StreamCallbacks, message: str) -> None:
        if turn.aborted:
            return
        self._state = StreamState.ERROR
        await self._emit(turn, callbacks.on_error, message)

    async def _run(self, turn: _StreamTurn, payload: dict[str, Any], callbacks: StreamCallbacks) -> None:
        if not self._access_token:
            await self._fail(turn, callbacks, "Not authenticated. Please log in.")
            return
        if not self._base_url:
            await self._fail(turn, callbacks, "Stream producer URL not configured.")
            return
        if not self._anon_key:
            await self._fail(turn, callbacks, "Platform anon key not configured.")
            return

        headers = {
            "Authorization": f"Bearer {self._access_token}",
            "apikey": self._anon_key,
            "x-client-info": CLIENT_INFO,
            "Accept": "text/event-stream",
        }
        self._state = StreamState.CONNECTING
        logger.debug("Connecting to %s", self.url)
        try:
            async with self._client.stream("POST", self.url, json=payload, headers=headers) as response:
                if response.is_error:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    logger.error("Stream request failed: HTTP %s %s", response.status_code, body[:500])
                    await self._fail(
                        turn, callbacks, describe_connection_error(response.status_code, body, self.url, connecting=False)
                    )
                    return

                self._state = StreamState.STREAMING
                full_content = ""
                message_id: Optional[str] = None
                async for frame in iter_frames(response.aiter_lines()):
                    if turn.aborted:
                        return
                    if frame.kind == "done":
                        self._state = StreamState.DONE
                        await self._emit(turn, callbacks.on_complete, ChatMessage(message_id, "assistant", full_content))
                        return
                    if frame.kind != "json":
                        continue
                    data = frame.data or {}
                    frame_type = data.get("type")
                    if frame_type == "content_delta":
                        full_content += data.get("content") or ""
                        message_id = data.get("message_id") or message_id
                        await self._emit(turn, callbacks.on_content_delta, full_content)
                    elif frame_type == "done":
                        self._state = StreamState.DONE
                        message = ChatMessage(
                            id=message_id or data.get("message_id"),
                            role="assistant",
                            content=data.get("content") or full_content,
                        )
                        await self._emit(turn, callbacks.on_complete, message)
                        return
                    elif frame_type == "error" or data.get("error"):
                        await self._fail(turn, callbacks, str(data.get("error") or "Failed to get response"))
                        return
                await self._fail(turn, callbacks, describe_connection_error(None, "", self.url, connecting=False))
        except httpx.HTTPError as exc:
            logger.error("Stream connection error: %s", exc)
            connecting = self._state == StreamState.CONNECTING
            await self._fail(turn, callbacks, describe_connection_error(None, "", self.url, connecting=connecting))
