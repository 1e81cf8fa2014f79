"""Stream producer: owns persistence and the provider call for one assistant turn."""

from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Optional

from sqlalchemy.exc import SQLAlchemyError

from ..config import AppSettings, get_settings
from ..errors import ConfigurationError, NotFound, PersistenceError, RelayError, ValidationFailed
from ..schemas import TurnPayload
from ..utils import append_file_references, estimate_tokens
from .bookkeeping import DeadLetterLog, get_dead_letter_log, run_secondary
from .conversations import (
    add_attachments,
    add_message,
    clear_streaming,
    create_conversation,
    create_streaming_placeholder,
    fail_message,
    finalize_message,
    get_owned_conversation,
)
from .llm import CompletionRequest, LLMClient, get_llm_client
from .personas import record_response_id
from .realtime import MESSAGE_CHUNK, MESSAGE_COMPLETE, RealtimeBroadcaster, get_broadcaster
from .sse import encode_frame
from .turns import ActiveTurn, TurnRegistry, get_turn_registry

logger = logging.getLogger(__name__)

DEFAULT_AGENT_NAME = "Assistant"
DEFAULT_INSTRUCTIONS = "You are a helpful assistant."


@dataclass
class StreamingChunk:
    """Represents a chunk of streamed data."""

    type: str
    data: dict[str, Any]

    def to_frame(self) -> str:
        return encode_frame({"type": self.type, **self.data})


@dataclass
class PreparedTurn:
    """A turn whose rows exist and whose provider request is ready to send."""

    conversation_id: str
    user_message_id: str
    request: CompletionRequest
    turn: ActiveTurn
    message_id: Optional[str] = None
    attachment_outcomes: list[Any] = field(default_factory=list)


class StreamProducer:
    """Coordinates conversation rows, the LLM stream and realtime broadcasts."""

    def __init__(
        self,
        settings: AppSettings,
        llm: LLMClient,
        broadcaster: RealtimeBroadcaster,
        turns: TurnRegistry,
        dead_letters: DeadLetterLog,
    ) -> None:
        self._settings = settings
        self._llm = llm
        self._broadcaster = broadcaster
        self._turns = turns
        self._dead_letters = dead_letters

    @property
    def turns(self) -> TurnRegistry:
        return self._turns

    def ensure_configured(self) -> None:
        if not self._llm.configured:
            raise ConfigurationError("OpenAI API key not configured")

    def build_request(self, payload: TurnPayload) -> tuple[str, CompletionRequest]:
        """Validate a producer payload and return the latest user text and the provider request."""
        if not payload.user_id or not payload.messages:
            raise ValidationFailed("user_id and messages are required")
        user_indexes = [index for index, message in enumerate(payload.messages) if message.role == "user"]
        if not user_indexes:
            raise ValidationFailed("No user message found")
        self.ensure_configured()

        last_user = user_indexes[-1]
        user_text = payload.messages[last_user].content
        messages = [{"role": message.role, "content": message.content} for message in payload.messages]
        messages[last_user]["content"] = append_file_references(user_text, payload.file_urls)
        request = CompletionRequest(
            instructions=payload.agent_instructions or DEFAULT_INSTRUCTIONS,
            messages=messages,
            model=payload.model or self._settings.llm.model,
            temperature=payload.temperature if payload.temperature is not None else self._settings.llm.temperature,
            tools=payload.tools,
            stateful=payload.stateful or bool(payload.previous_response_id),
            previous_response_id=payload.previous_response_id,
        )
        return user_text, request

    async def prepare(self, payload: TurnPayload, *, placeholder: bool = True) -> PreparedTurn:
        user_text, request = self.build_request(payload)
        assert payload.user_id is not None
        return await self.open_turn(
            user_id=payload.user_id,
            conversation_id=payload.conversation_id,
            user_content=user_text,
            agent_name=payload.agent_name or DEFAULT_AGENT_NAME,
            agent_config={
                "instructions": payload.agent_instructions,
                "tools": payload.tools or None,
                "model": request.model,
                "temperature": request.temperature,
            },
            request=request,
            file_urls=payload.file_urls,
            placeholder=placeholder,
        )

    async def open_turn(
        self,
        *,
        user_id: str,
        conversation_id: Optional[str],
        user_content: str,
        agent_name: str,
        agent_config: dict[str, Any],
        request: CompletionRequest,
        file_urls: list[str],
        placeholder: bool = True,
    ) -> PreparedTurn:
        """Create or reuse the conversation, reserve the turn and persist the user message.

        With ``placeholder`` an empty assistant row marked streaming is created
        and its id bound to the turn; every later write targets that id.
        """
        if conversation_id:
            conversation = await get_owned_conversation(conversation_id, user_id)
            if conversation is None:
                raise NotFound("Conversation not found")
        else:
            try:
                conversation = await create_conversation(user_id, user_content, agent_name, agent_config)
            except SQLAlchemyError as exc:
                raise PersistenceError("Failed to create conversation") from exc
            logger.info("Created conversation %s for user %s", conversation.id, user_id)

        turn = self._turns.begin(conversation.id)
        try:
            orphan, turn.replaced = turn.replaced, None
            if orphan is not None and orphan.message_id:
                await run_secondary(
                    "settle_reclaimed_message",
                    clear_streaming(orphan.message_id),
                    self._dead_letters,
                    message_id=orphan.message_id,
                )
            user_message = await add_message(conversation.id, role="user", content=user_content)
            prepared = PreparedTurn(
                conversation_id=conversation.id,
                user_message_id=user_message.id,
                request=request,
                turn=turn,
            )
            if file_urls:
                prepared.attachment_outcomes.append(
                    await run_secondary(
                        "save_attachments",
                        add_attachments(user_message.id, file_urls),
                        self._dead_letters,
                        message_id=user_message.id,
                        file_urls=file_urls,
                    )
                )
            if placeholder:
                assistant = await create_streaming_placeholder(conversation.id, request.model)
                prepared.message_id = assistant.id
                self._turns.bind(turn, assistant.id)
        except SQLAlchemyError as exc:
            self._turns.release(turn)
            raise PersistenceError("Failed to save chat message") from exc
        except BaseException:
            self._turns.release(turn)
            raise
        return prepared

    async def stream(self, prepared: PreparedTurn) -> AsyncIterator[StreamingChunk]:
        """Yield ``content_delta`` chunks followed by exactly one ``done`` or ``error`` chunk."""
        if prepared.message_id is None:
            raise ValueError("stream() needs a turn prepared with a placeholder message")
        message_id = prepared.message_id
        conversation_id = prepared.conversation_id
        turn = prepared.turn
        buffer: list[str] = []
        response_id: Optional[str] = None
        finished = False
        try:
            chunk_index = 0
            async with aclosing(self._llm.stream_chat(prepared.request, cancel=turn.cancel)) as pieces:
                async for piece in pieces:
                    if piece.response_id:
                        response_id = piece.response_id
                    if piece.done:
                        break
                    if not piece.content:
                        continue
                    buffer.append(piece.content)
                    chunk_index += 1
                    yield StreamingChunk(
                        type="content_delta",
                        data={
                            "content": piece.content,
                            "message_id": message_id,
                            "conversation_id": conversation_id,
                            "chunk_index": chunk_index,
                        },
                    )
                    await self._broadcast(
                        conversation_id,
                        MESSAGE_CHUNK,
                        {"message_id": message_id, "chunk": piece.content, "chunk_index": chunk_index},
                    )

            full_content = "".join(buffer)
            if not await finalize_message(message_id, full_content):
                raise PersistenceError(f"Assistant message {message_id} no longer exists")
            finished = True
            await self._broadcast(
                conversation_id,
                MESSAGE_COMPLETE,
                {"message_id": message_id, "content": full_content},
            )
            done: dict[str, Any] = {
                "message_id": message_id,
                "conversation_id": conversation_id,
                "content": full_content,
                "response_id": response_id,
            }
            if turn.cancelled:
                done["cancelled"] = True
            yield StreamingChunk(type="done", data=done)
        except (asyncio.CancelledError, GeneratorExit):
            if not finished:
                logger.info("Client left during message %s; keeping %d chunks", message_id, len(buffer))
                await asyncio.shield(self._abandon(message_id, "".join(buffer)))
            raise
        except Exception as exc:  # noqa: BLE001
            logger.exception("Streaming error for message %s", message_id)
            error_text = exc.message if isinstance(exc, RelayError) else (str(exc) or "Streaming error")
            finished = True
            await run_secondary(
                "record_stream_error",
                fail_message(message_id, f"Error: {error_text}"),
                self._dead_letters,
                message_id=message_id,
            )
            yield StreamingChunk(type="error", data={"error": error_text, "message_id": message_id})
        finally:
            self._turns.release(turn)

    async def drain(self, prepared: PreparedTurn, persona_id: Optional[str] = None) -> Optional[StreamingChunk]:
        """Run a turn with no SSE consumer; subscribers follow it on the realtime topic.

        Returns the terminal ``done`` or ``error`` chunk.
        """
        terminal: Optional[StreamingChunk] = None
        try:
            async with aclosing(self.stream(prepared)) as chunks:
                async for chunk in chunks:
                    if chunk.type == "error":
                        logger.warning("Realtime turn %s failed: %s", prepared.message_id, chunk.data.get("error"))
                        terminal = chunk
                    elif chunk.type == "done":
                        terminal = chunk
        finally:
            await self.settle(prepared)
        response_id = terminal.data.get("response_id") if terminal and terminal.type == "done" else None
        if persona_id and response_id:
            await run_secondary(
                "record_response_id",
                record_response_id(persona_id, response_id),
                self._dead_letters,
                persona_id=persona_id,
            )
        return terminal

    async def settle(self, prepared: PreparedTurn) -> None:
        """Release a turn whose stream never ran and clear its placeholder's streaming flag.

        Runs after the response is sent; a turn that ``stream`` already
        finished is left alone.
        """
        if not self._turns.holds(prepared.turn):
            return
        self._turns.release(prepared.turn)
        if prepared.message_id is None:
            return
        logger.warning("Turn for message %s ended without streaming; settling placeholder", prepared.message_id)
        await run_secondary(
            "settle_message",
            clear_streaming(prepared.message_id),
            self._dead_letters,
            message_id=prepared.message_id,
        )

    async def complete(self, payload: TurnPayload) -> dict[str, Any]:
        """Non-streaming turn: one provider call, one finished assistant row."""
        prepared = await self.prepare(payload, placeholder=False)
        try:
            result = await self._llm.complete(prepared.request)
            try:
                await add_message(
                    prepared.conversation_id,
                    role="assistant",
                    content=result.content,
                    model=prepared.request.model,
                    token_count=estimate_tokens(result.content),
                )
            except SQLAlchemyError as exc:
                raise PersistenceError("Failed to save assistant message") from exc
        finally:
            self._turns.release(prepared.turn)
        return {"conversation_id": prepared.conversation_id, "message": result.content}

    async def _broadcast(self, conversation_id: str, event: str, payload: dict[str, Any]) -> None:
        await run_secondary(
            f"broadcast:{event}",
            self._broadcaster.broadcast(conversation_id, event, payload),
            self._dead_letters,
            conversation_id=conversation_id,
        )

    async def _abandon(self, message_id: str, partial: str) -> None:
        await run_secondary(
            "abandon_message",
            finalize_message(message_id, partial),
            self._dead_letters,
            message_id=message_id,
        )


_stream_producer: StreamProducer | None = None


async def get_stream_producer() -> StreamProducer:
    global _stream_producer
    if _stream_producer is None:
        _stream_producer = StreamProducer(
            get_settings(),
            await get_llm_client(),
            get_broadcaster(),
            get_turn_registry(),
            get_dead_letter_log(),
        )
    return _stream_producer


def reset_stream_producer() -> None:
    global _stream_producer
    _stream_producer = None
