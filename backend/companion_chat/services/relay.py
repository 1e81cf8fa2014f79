"""Relay between the chat route and the stream producer."""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Optional

import httpx

from ..config import PlatformSettings, get_settings
from .bookkeeping import DeadLetterLog, get_dead_letter_log, run_secondary
from .conversations import finalize_message
from .personas import record_response_id
from .sse import DONE_FRAME, encode_frame, error_frame, iter_frames

logger = logging.getLogger(__name__)

CLIENT_INFO = "companion-chat-relay/0.1.0"


def downstream_error(response: httpx.Response, default: str = "Failed to get response from the stream producer") -> str:
    try:
        body = response.json()
    except ValueError:
        return default
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return default


class StreamProducerClient:
    """HTTP client for the stream producer endpoint."""

    def __init__(self, settings: PlatformSettings, client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        # No read timeout: a turn lasts as long as the provider keeps streaming.
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(10.0, read=None))

    async def close(self) -> None:
        await self._client.aclose()

    async def open(self, body: dict[str, Any]) -> httpx.Response:
        """Send the turn and return the response with its body still unread."""
        key = self._settings.anon_key
        request = self._client.build_request(
            "POST",
            self._settings.function_url,
            json=body,
            headers={
                "Authorization": f"Bearer {key}",
                "apikey": key,
                "x-client-info": CLIENT_INFO,
            },
        )
        return await self._client.send(request, stream=True)


class ChatRelay:
    """Re-emits producer frames to the browser and records the final assistant text.

    The message to finalize is the one named by ``message_id`` in the
    producer's frames, never a lookup of the conversation's latest row.
    """

    def __init__(self, dead_letters: DeadLetterLog) -> None:
        self._dead_letters = dead_letters

    async def frames(
        self,
        response: Optional[httpx.Response],
        *,
        conversation_id: Optional[str] = None,
        persona_id: Optional[str] = None,
        failure: Optional[str] = None,
    ) -> AsyncIterator[str]:
        """Yield SSE frames ending in exactly one ``[DONE]``.

        ``failure`` short-circuits to a single error frame when the producer
        could not be reached at all.
        """
        if response is None:
            yield error_frame(failure or "Stream producer unavailable")
            yield DONE_FRAME
            return

        accumulated: list[str] = []
        message_id: Optional[str] = None
        response_id: Optional[str] = None
        terminal: Optional[str] = None
        final_content: Optional[str] = None
        try:
            async for frame in iter_frames(response.aiter_lines()):
                if frame.kind == "malformed":
                    continue
                if frame.kind == "done":
                    terminal = "done"
                    break
                if frame.kind == "text":
                    accumulated.append(frame.raw)
                    yield encode_frame(
                        {
                            "type": "content_delta",
                            "content": frame.raw,
                            "message_id": message_id,
                            "conversation_id": conversation_id,
                        }
                    )
                    continue

                data = frame.data or {}
                message_id = data.get("message_id") or message_id
                conversation_id = data.get("conversation_id") or conversation_id
                frame_type = data.get("type")
                if frame_type == "error" or (frame_type is None and data.get("error")):
                    terminal = "error"
                    yield error_frame(str(data.get("error") or "Streaming error"), message_id=message_id)
                    break
                if frame_type == "done":
                    terminal = "done"
                    final_content = data.get("content") or "".join(accumulated)
                    response_id = data.get("response_id")
                    yield encode_frame(data)
                    break
                if frame_type == "content_delta":
                    accumulated.append(data.get("content") or "")
                yield encode_frame(data)
        except httpx.HTTPError as exc:
            logger.warning("Lost connection to stream producer: %s", exc)
            terminal = "error"
            yield error_frame(f"Connection to the stream producer was lost: {exc}", message_id=message_id)
        finally:
            await response.aclose()

        if terminal is None:
            yield error_frame("The response ended before it completed", message_id=message_id)
        elif terminal == "done" and message_id:
            await run_secondary(
                "relay_finalize_message",
                self._finalize(message_id, final_content if final_content is not None else "".join(accumulated)),
                self._dead_letters,
                message_id=message_id,
                conversation_id=conversation_id,
            )
            if persona_id and response_id:
                await run_secondary(
                    "record_response_id",
                    record_response_id(persona_id, response_id),
                    self._dead_letters,
                    persona_id=persona_id,
                )
        yield DONE_FRAME

    @staticmethod
    async def _finalize(message_id: str, content: str) -> None:
        if not await finalize_message(message_id, content):
            raise LookupError(f"Assistant message {message_id} not found")


_producer_client: StreamProducerClient | None = None


def get_producer_client() -> StreamProducerClient:
    global _producer_client
    if _producer_client is None:
        _producer_client = StreamProducerClient(get_settings().platform)
    return _producer_client


def get_chat_relay() -> ChatRelay:
    return ChatRelay(get_dead_letter_log())


async def shutdown_producer_client() -> None:
    global _producer_client
    if _producer_client is not None:
        await _producer_client.close()
        _producer_client = None
