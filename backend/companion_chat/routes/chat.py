"""Chat ingress for companion conversations."""

from __future__ import annotations

import logging
from typing import Union

import httpx
from fastapi import APIRouter, BackgroundTasks, Depends
from fastapi.responses import JSONResponse, StreamingResponse

from ..config import AppSettings, get_settings
from ..errors import ConfigurationError, NotFound, ValidationFailed
from ..schemas import ChatRequest, RealtimeAck
from ..services.conversations import get_owned_conversation
from ..services.llm import CompletionRequest
from ..services.personas import PersonaConfig, resolve_persona
from ..services.relay import ChatRelay, StreamProducerClient, downstream_error, get_chat_relay, get_producer_client
from ..services.sse import SSE_HEADERS
from ..services.streaming import StreamProducer, get_stream_producer
from ..utils import append_file_references
from .deps import get_current_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/companions", tags=["chat"])


def _history(body: ChatRequest, message: str) -> list[dict[str, str]]:
    return [{"role": item.role, "content": item.content} for item in body.history] + [
        {"role": "user", "content": message}
    ]


@router.post("/chat", response_model=None)
async def chat(
    body: ChatRequest,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_current_user),
    settings: AppSettings = Depends(get_settings),
    producer: StreamProducer = Depends(get_stream_producer),
    producer_client: StreamProducerClient = Depends(get_producer_client),
    relay: ChatRelay = Depends(get_chat_relay),
) -> Union[RealtimeAck, JSONResponse, StreamingResponse]:
    """Send one user message to a companion.

    With ``realtime`` the rows are created up front and the reply is generated
    in the background, arriving on the conversation's realtime topic. Otherwise
    the stream producer's SSE frames are relayed to the caller.
    """

    message = (body.message or "").strip()
    if not message:
        raise ValidationFailed("Message is required")
    message = body.message or ""

    persona = await resolve_persona(body.kinkster_id, user_id, settings)

    if body.realtime:
        return await _start_realtime_turn(body, message, user_id, persona, producer, background_tasks)

    if not settings.platform.url or not settings.platform.anon_key:
        raise ConfigurationError("Stream producer configuration missing")

    payload = {
        "user_id": user_id,
        "conversation_id": body.conversation_id,
        "messages": _history(body, message),
        "agent_name": persona.agent_name,
        "agent_instructions": persona.instructions,
        "model": persona.model,
        "temperature": persona.temperature,
        "file_urls": body.file_urls,
        "stream": True,
        "stateful": persona.stateful,
        "previous_response_id": persona.last_response_id,
    }
    try:
        response = await producer_client.open(payload)
    except httpx.HTTPError as exc:
        logger.warning("Stream producer unreachable: %s", exc)
        return StreamingResponse(
            relay.frames(None, failure=f"Could not reach the stream producer: {exc}"),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    if response.is_error:
        await response.aread()
        await response.aclose()
        return JSONResponse({"error": downstream_error(response)}, status_code=response.status_code)

    return StreamingResponse(
        relay.frames(response, conversation_id=body.conversation_id, persona_id=persona.persona_id),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


async def _start_realtime_turn(
    body: ChatRequest,
    message: str,
    user_id: str,
    persona: PersonaConfig,
    producer: StreamProducer,
    background_tasks: BackgroundTasks,
) -> RealtimeAck:
    producer.ensure_configured()
    messages = _history(body, append_file_references(message, body.file_urls))
    request = CompletionRequest(
        instructions=persona.instructions,
        messages=messages,
        model=persona.model,
        temperature=persona.temperature,
        stateful=persona.stateful,
        previous_response_id=persona.last_response_id,
    )
    prepared = await producer.open_turn(
        user_id=user_id,
        conversation_id=body.conversation_id,
        user_content=message,
        agent_name=persona.agent_name,
        agent_config=persona.agent_config(),
        request=request,
        file_urls=body.file_urls,
    )
    assert prepared.message_id is not None
    background_tasks.add_task(producer.drain, prepared, persona.persona_id)
    return RealtimeAck(conversationId=prepared.conversation_id, messageId=prepared.message_id)


@router.post("/chat/{message_id}/cancel")
async def cancel_turn(
    message_id: str,
    user_id: str = Depends(get_current_user),
    producer: StreamProducer = Depends(get_stream_producer),
) -> dict[str, str]:
    """Ask the producer to stop generating ``message_id``."""

    turn = producer.turns.find(message_id)
    if turn is None or await get_owned_conversation(turn.conversation_id, user_id) is None:
        raise NotFound("No response in progress for this message")
    producer.turns.cancel(message_id)
    return {"status": "cancelling", "messageId": message_id}
