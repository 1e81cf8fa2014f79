"""Service for interacting with an OpenAI-compatible LLM API with streaming responses."""

from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Optional

import httpx

from ..config import LLMSettings, get_settings
from ..errors import ProviderError
from .sse import parse_line

logger = logging.getLogger(__name__)

RESPONSE_ROLES = ("user", "assistant", "system", "developer")
UNEXECUTED_TOOLS = "The model asked to call tools, which this relay does not execute"


@dataclass
class CompletionRequest:
    """Everything the provider needs for one assistant turn.

    ``stateful`` turns go through the Responses endpoint, which keeps the
    conversation server-side. With ``previous_response_id`` only the latest
    user message is sent and the provider supplies the earlier context.
    """

    instructions: str
    messages: list[dict[str, str]]
    model: str
    temperature: float
    tools: list[dict[str, Any]] = field(default_factory=list)
    stateful: bool = False
    previous_response_id: Optional[str] = None


@dataclass
class CompletionChunk:
    content: str = ""
    response_id: Optional[str] = None
    done: bool = False


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str) and error:
            return error
    return f"Provider returned HTTP {response.status_code}"


def _event_error(event: dict[str, Any]) -> str:
    error = event.get("error") or (event.get("response") or {}).get("error") or {}
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    return str(event.get("message") or "Response generation failed")


class LLMClient:
    """Client for chat completions from OpenAI or OpenAI-compatible endpoints."""

    def __init__(self, settings: LLMSettings, client: httpx.AsyncClient | None = None) -> None:
        self._base_url = settings.host.rstrip("/")
        self._api_key = settings.api_key
        self._client = client or httpx.AsyncClient(timeout=settings.timeout, follow_redirects=True)

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    async def close(self) -> None:
        await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._api_key}"}

    def _payload(self, request: CompletionRequest, stream: bool) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": request.model,
            "messages": [{"role": "system", "content": request.instructions}] + request.messages,
            "temperature": request.temperature,
            "stream": stream,
        }
        if request.tools:
            payload["tools"] = request.tools
        return payload

    def _responses_payload(self, request: CompletionRequest) -> dict[str, Any]:
        messages = [message for message in request.messages if message["role"] in RESPONSE_ROLES]
        if request.previous_response_id:
            messages = [message for message in messages if message["role"] == "user"][-1:]
        payload: dict[str, Any] = {
            "model": request.model,
            "instructions": request.instructions,
            "input": [{"role": message["role"], "content": message["content"]} for message in messages],
            "temperature": request.temperature,
            "stream": True,
            "store": True,
        }
        if request.previous_response_id:
            payload["previous_response_id"] = request.previous_response_id
        if request.tools:
            payload["tools"] = request.tools
        return payload

    async def _events(
        self,
        url: str,
        payload: dict[str, Any],
        cancel: asyncio.Event | None,
    ) -> AsyncIterator[dict[str, Any]]:
        """Yield decoded ``data:`` objects until ``[DONE]``, the end of the body, or cancellation."""
        try:
            async with self._client.stream("POST", url, json=payload, headers=self._headers()) as response:
                if response.is_error:
                    await response.aread()
                    raise ProviderError(_error_message(response))
                async for raw_line in response.aiter_lines():
                    if cancel is not None and cancel.is_set():
                        logger.info("LLM stream abandoned after cancellation")
                        return
                    frame = parse_line(raw_line)
                    if frame is None or frame.kind in ("text", "malformed"):
                        continue
                    if frame.kind == "done":
                        return
                    yield frame.data or {}
        except httpx.HTTPError as exc:
            raise ProviderError(f"Provider request failed: {exc}") from exc

    async def stream_chat(
        self,
        request: CompletionRequest,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[CompletionChunk]:
        """Yield text deltas until the provider finishes or ``cancel`` is set.

        Leaving the loop closes the upstream response, so a cancelled turn stops
        consuming provider output. Tool calls are not executed; a turn that
        produces only tool calls fails with :class:`ProviderError`.
        """
        if request.stateful:
            pieces = self._stream_response_events(request, cancel)
        else:
            pieces = self._stream_chat_completions(request, cancel)
        async with aclosing(pieces) as chunks:
            async for chunk in chunks:
                yield chunk
        if cancel is not None and cancel.is_set():
            return
        yield CompletionChunk(done=True)

    async def _stream_chat_completions(
        self, request: CompletionRequest, cancel: asyncio.Event | None
    ) -> AsyncIterator[CompletionChunk]:
        url = f"{self._base_url}/v1/chat/completions"
        logger.debug("LLM request model=%s messages=%d", request.model, len(request.messages))
        produced = False
        tool_calls = False
        async with aclosing(self._events(url, self._payload(request, stream=True), cancel)) as events:
            async for chunk in events:
                if chunk.get("error"):
                    error = chunk["error"]
                    raise ProviderError(error.get("message", str(error)) if isinstance(error, dict) else str(error))
                choices = chunk.get("choices") or []
                if not choices:
                    continue
                delta = choices[0].get("delta") or {}
                if delta.get("tool_calls") and not tool_calls:
                    tool_calls = True
                    logger.warning("Model %s requested tool calls; they are not executed", request.model)
                content_piece = delta.get("content") or ""
                if content_piece:
                    produced = True
                    yield CompletionChunk(content=content_piece, response_id=chunk.get("id"))
        if tool_calls and not produced and not (cancel is not None and cancel.is_set()):
            raise ProviderError(UNEXECUTED_TOOLS)

    async def _stream_response_events(
        self, request: CompletionRequest, cancel: asyncio.Event | None
    ) -> AsyncIterator[CompletionChunk]:
        url = f"{self._base_url}/v1/responses"
        logger.debug(
            "LLM response request model=%s continuing=%s", request.model, bool(request.previous_response_id)
        )
        response_id: Optional[str] = None
        produced = False
        tool_calls = False
        async with aclosing(self._events(url, self._responses_payload(request), cancel)) as events:
            async for event in events:
                kind = event.get("type")
                if kind == "response.created":
                    response_id = (event.get("response") or {}).get("id") or response_id
                elif kind == "response.output_text.delta":
                    delta = event.get("delta") or ""
                    if delta:
                        produced = True
                        yield CompletionChunk(content=delta, response_id=response_id)
                elif kind == "response.output_item.added":
                    if (event.get("item") or {}).get("type") == "function_call" and not tool_calls:
                        tool_calls = True
                        logger.warning("Model %s requested tool calls; they are not executed", request.model)
                elif kind == "response.completed":
                    response_id = (event.get("response") or {}).get("id") or response_id
                    break
                elif kind in ("error", "response.failed", "response.error", "response.incomplete"):
                    raise ProviderError(_event_error(event))
        if tool_calls and not produced and not (cancel is not None and cancel.is_set()):
            raise ProviderError(UNEXECUTED_TOOLS)
        if response_id:
            yield CompletionChunk(response_id=response_id)

    async def complete(self, request: CompletionRequest) -> CompletionChunk:
        url = f"{self._base_url}/v1/chat/completions"
        try:
            response = await self._client.post(url, json=self._payload(request, stream=False), headers=self._headers())
        except httpx.HTTPError as exc:
            raise ProviderError(f"Provider request failed: {exc}") from exc
        if response.is_error:
            raise ProviderError(_error_message(response))
        data = response.json()
        choices = data.get("choices") or []
        message = choices[0].get("message", {}) if choices else {}
        return CompletionChunk(content=message.get("content") or "", response_id=data.get("id"), done=True)


_llm_client: LLMClient | None = None


async def get_llm_client() -> LLMClient:
    global _llm_client
    if _llm_client is None:
        _llm_client = LLMClient(get_settings().llm)
    return _llm_client


async def shutdown_llm_client() -> None:
    global _llm_client
    if _llm_client is not None:
        await _llm_client.close()
        _llm_client = None
