"""Tests for the stream producer service and its HTTP endpoint."""

import json

import pytest
from starlette.requests import Request

from companion_chat.errors import NotFound, TurnInProgress, ValidationFailed
from companion_chat.routes.functions import chat_stream
from companion_chat.schemas import TurnPayload
from companion_chat.services.conversations import create_conversation, get_conversation_with_messages, get_message
from companion_chat.services.llm import CompletionChunk
from companion_chat.services.realtime import MESSAGE_CHUNK, MESSAGE_COMPLETE, RealtimeBroadcaster, conversation_topic
from companion_chat.services.streaming import StreamProducer, get_stream_producer
from companion_chat.services.turns import TurnRegistry

from .conftest import USER_ID, FakeLLM, sse_payloads


STREAM_URL = "/functions/v1/chat-stream"


def _payload(**overrides):
    payload = {
        "user_id": USER_ID,
        "messages": [{"role": "user", "content": "hello"}],
        "agent_name": "Vale",
        "agent_instructions": "Stay in character.",
    }
    payload.update(overrides)
    return payload


class TestBuildRequest:
    """Tests for StreamProducer.build_request."""

    @pytest.mark.asyncio
    async def test_requires_user_and_messages(self, producer):
        with pytest.raises(ValidationFailed, match="user_id and messages are required"):
            producer.build_request(TurnPayload(user_id=USER_ID, messages=[]))

    @pytest.mark.asyncio
    async def test_requires_user_message(self, producer):
        payload = TurnPayload.model_validate(_payload(messages=[{"role": "assistant", "content": "hi"}]))
        with pytest.raises(ValidationFailed, match="No user message found"):
            producer.build_request(payload)

    @pytest.mark.asyncio
    async def test_appends_file_references_to_last_user_message(self, producer):
        payload = TurnPayload.model_validate(
            _payload(
                messages=[
                    {"role": "user", "content": "first"},
                    {"role": "assistant", "content": "reply"},
                    {"role": "user", "content": "look at this"},
                ],
                file_urls=["https://cdn.test/a.png"],
            )
        )
        user_text, request = producer.build_request(payload)
        assert user_text == "look at this"
        assert request.messages[0]["content"] == "first"
        assert request.messages[-1]["content"] == "look at this\n\n[Image 1: https://cdn.test/a.png]"
        assert request.instructions == "Stay in character."

    @pytest.mark.asyncio
    async def test_defaults(self, producer, settings):
        payload = TurnPayload.model_validate(_payload(agent_instructions=None))
        _, request = producer.build_request(payload)
        assert request.instructions == "You are a helpful assistant."
        assert request.model == settings.llm.model
        assert request.temperature == settings.llm.temperature
        assert not request.stateful
        assert request.previous_response_id is None

    @pytest.mark.asyncio
    async def test_continues_from_previous_response(self, producer):
        payload = TurnPayload.model_validate(_payload(stateful=True, previous_response_id="resp_prev"))
        _, request = producer.build_request(payload)
        assert request.stateful
        assert request.previous_response_id == "resp_prev"


class TestStream:
    """Tests for StreamProducer.stream."""

    @pytest.mark.asyncio
    async def test_deltas_concatenate_to_final_content(self, producer, hub):
        prepared = await producer.prepare(TurnPayload.model_validate(_payload()))
        placeholder = await get_message(prepared.message_id)
        assert placeholder.is_streaming
        assert placeholder.content == ""

        async with hub.subscribe(conversation_topic(prepared.conversation_id)) as queue:
            chunks = [chunk async for chunk in producer.stream(prepared)]
            events = [queue.get_nowait() for _ in range(queue.qsize())]

        deltas = [chunk for chunk in chunks if chunk.type == "content_delta"]
        assert [chunk.data["chunk_index"] for chunk in deltas] == [1, 2, 3]
        assert {chunk.data["message_id"] for chunk in deltas} == {prepared.message_id}
        assert chunks[-1].type == "done"
        assert chunks[-1].data["content"] == "".join(chunk.data["content"] for chunk in deltas) == "Hello, world"
        assert chunks[-1].data["response_id"] == "resp_123"

        message = await get_message(prepared.message_id)
        assert message.content == "Hello, world"
        assert not message.is_streaming
        assert message.token_count == 3

        assert [event["event"] for event in events] == [MESSAGE_CHUNK] * 3 + [MESSAGE_COMPLETE]
        assert events[-1]["payload"] == {"message_id": prepared.message_id, "content": "Hello, world"}
        assert not producer.turns.is_busy(prepared.conversation_id)

    @pytest.mark.asyncio
    async def test_provider_failure_mid_stream(self, settings, db, hub, dead_letters):
        broadcaster = RealtimeBroadcaster(settings.platform, hub)
        failing = StreamProducer(settings, FakeLLM(fail_after=1), broadcaster, TurnRegistry(), dead_letters)
        prepared = await failing.prepare(TurnPayload.model_validate(_payload()))

        chunks = [chunk async for chunk in failing.stream(prepared)]

        assert [chunk.type for chunk in chunks] == ["content_delta", "error"]
        assert chunks[-1].data == {"error": "provider exploded", "message_id": prepared.message_id}
        message = await get_message(prepared.message_id)
        assert message.content == "Error: provider exploded"
        assert not message.is_streaming
        assert not failing.turns.is_busy(prepared.conversation_id)
        await broadcaster.close()

    @pytest.mark.asyncio
    async def test_cancellation_keeps_partial_text(self, producer):
        prepared = await producer.prepare(TurnPayload.model_validate(_payload()))
        chunks = []
        async for chunk in producer.stream(prepared):
            chunks.append(chunk)
            if chunk.type == "content_delta":
                assert producer.turns.cancel(prepared.message_id)

        assert [chunk.type for chunk in chunks] == ["content_delta", "done"]
        assert chunks[-1].data["content"] == "Hello"
        assert chunks[-1].data["cancelled"] is True
        message = await get_message(prepared.message_id)
        assert message.content == "Hello"
        assert not message.is_streaming

    @pytest.mark.asyncio
    async def test_provider_stream_closed_at_done(self, settings, db, hub, dead_letters):
        class TrailingLLM(FakeLLM):
            closed = False

            async def stream_chat(self, request, cancel=None):
                try:
                    yield CompletionChunk(content="Hi")
                    yield CompletionChunk(done=True)
                    yield CompletionChunk(content="never read")
                finally:
                    self.closed = True

        llm = TrailingLLM()
        broadcaster = RealtimeBroadcaster(settings.platform, hub)
        trailing = StreamProducer(settings, llm, broadcaster, TurnRegistry(), dead_letters)
        prepared = await trailing.prepare(TurnPayload.model_validate(_payload()))

        chunks = [chunk async for chunk in trailing.stream(prepared)]

        assert chunks[-1].data["content"] == "Hi"
        assert llm.closed
        await broadcaster.close()

    @pytest.mark.asyncio
    async def test_consumer_leaving_finalizes_partial_text(self, producer):
        prepared = await producer.prepare(TurnPayload.model_validate(_payload()))
        stream = producer.stream(prepared)
        first = await stream.__anext__()
        await stream.aclose()

        assert first.data["content"] == "Hello"
        message = await get_message(prepared.message_id)
        assert message.content == "Hello"
        assert not message.is_streaming
        assert not producer.turns.is_busy(prepared.conversation_id)


class TestSettle:
    """Tests for StreamProducer.settle and reclaimed turns."""

    @pytest.mark.asyncio
    async def test_unstarted_stream_is_settled(self, producer):
        prepared = await producer.prepare(TurnPayload.model_validate(_payload()))

        await producer.settle(prepared)

        assert not producer.turns.is_busy(prepared.conversation_id)
        message = await get_message(prepared.message_id)
        assert not message.is_streaming
        assert message.content == ""

    @pytest.mark.asyncio
    async def test_finished_stream_is_left_alone(self, producer):
        prepared = await producer.prepare(TurnPayload.model_validate(_payload()))
        chunks = [chunk async for chunk in producer.stream(prepared)]
        assert chunks[-1].type == "done"

        await producer.settle(prepared)

        assert (await get_message(prepared.message_id)).content == "Hello, world"

    @pytest.mark.asyncio
    async def test_orphaned_turn_is_reclaimed(self, settings, db, hub, dead_letters):
        broadcaster = RealtimeBroadcaster(settings.platform, hub)
        reclaiming = StreamProducer(settings, FakeLLM(), broadcaster, TurnRegistry(stale_after=0), dead_letters)
        first = await reclaiming.prepare(TurnPayload.model_validate(_payload()))

        second = await reclaiming.prepare(TurnPayload.model_validate(_payload(conversation_id=first.conversation_id)))

        assert first.turn.cancelled
        assert reclaiming.turns.holds(second.turn)
        assert not (await get_message(first.message_id)).is_streaming
        assert (await get_message(second.message_id)).is_streaming
        await broadcaster.close()


class TestOpenTurn:
    """Tests for turn reservation and conversation ownership."""

    @pytest.mark.asyncio
    async def test_unknown_conversation(self, producer):
        with pytest.raises(NotFound, match="Conversation not found"):
            await producer.prepare(TurnPayload.model_validate(_payload(conversation_id="missing")))

    @pytest.mark.asyncio
    async def test_other_users_conversation(self, producer):
        conversation = await create_conversation("someone-else", "hi", "Assistant", {})
        with pytest.raises(NotFound):
            await producer.prepare(TurnPayload.model_validate(_payload(conversation_id=conversation.id)))

    @pytest.mark.asyncio
    async def test_concurrent_turn_rejected_without_writes(self, producer):
        conversation = await create_conversation(USER_ID, "hi", "Assistant", {})
        producer.turns.begin(conversation.id)
        with pytest.raises(TurnInProgress):
            await producer.prepare(TurnPayload.model_validate(_payload(conversation_id=conversation.id)))
        transcript = await get_conversation_with_messages(conversation.id, USER_ID)
        assert transcript["messages"] == []

    @pytest.mark.asyncio
    async def test_new_conversation_title_and_attachments(self, producer):
        long_text = "x" * 150
        prepared = await producer.prepare(
            TurnPayload.model_validate(
                _payload(messages=[{"role": "user", "content": long_text}], file_urls=["https://cdn.test/u/a.png"])
            )
        )
        transcript = await get_conversation_with_messages(prepared.conversation_id, USER_ID)
        assert transcript["title"] == "x" * 100
        assert transcript["agent_name"] == "Vale"
        user_message, placeholder = transcript["messages"]
        assert user_message["content"] == long_text
        assert user_message["attachments"][0]["type"] == "image"
        assert user_message["attachments"][0]["file_name"] == "a.png"
        assert placeholder["is_streaming"] is True
        assert prepared.attachment_outcomes[0].ok


class TestChatStreamEndpoint:
    """Tests for POST /functions/v1/chat-stream."""

    @pytest.mark.asyncio
    async def test_streams_frames(self, api, producer_headers):
        response = await api.post(STREAM_URL, json=_payload(), headers=producer_headers)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.headers["access-control-allow-origin"] == "*"
        frames = sse_payloads(response.text)
        assert [frame["type"] for frame in frames] == ["content_delta"] * 3 + ["done"]
        assert frames[-1]["content"] == "Hello, world"

    @pytest.mark.asyncio
    async def test_get_not_allowed(self, api):
        response = await api.get(STREAM_URL)
        assert response.status_code == 405

    @pytest.mark.asyncio
    async def test_empty_body(self, api, producer_headers):
        response = await api.post(STREAM_URL, content=b"", headers=producer_headers)
        assert response.status_code == 400
        assert response.json()["error"] == "Request body is empty. Expected JSON payload."

    @pytest.mark.asyncio
    async def test_invalid_json(self, api, producer_headers):
        response = await api.post(STREAM_URL, content=b"{nope", headers=producer_headers)
        assert response.status_code == 400
        assert response.json()["error"] == "Invalid JSON in request body"

    @pytest.mark.asyncio
    async def test_missing_fields(self, api, producer_headers):
        response = await api.post(STREAM_URL, json={"messages": []}, headers=producer_headers)
        assert response.status_code == 400
        assert response.json()["error"] == "user_id and messages are required"

    @pytest.mark.asyncio
    async def test_no_user_message(self, api, producer_headers):
        body = _payload(messages=[{"role": "system", "content": "rules"}])
        response = await api.post(STREAM_URL, json=body, headers=producer_headers)
        assert response.status_code == 400
        assert response.json()["error"] == "No user message found"

    @pytest.mark.asyncio
    async def test_rejects_unknown_key(self, api):
        response = await api.post(STREAM_URL, json=_payload(), headers={"apikey": "wrong"})
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_missing_provider_key(self, api, app, settings, db, hub, dead_letters, producer_headers):
        unconfigured = StreamProducer(
            settings, FakeLLM(configured=False), RealtimeBroadcaster(settings.platform, hub), TurnRegistry(), dead_letters
        )
        app.dependency_overrides[get_stream_producer] = lambda: unconfigured
        response = await api.post(STREAM_URL, json=_payload(), headers=producer_headers)
        assert response.status_code == 500
        assert response.json()["error"] == "OpenAI API key not configured"

    @pytest.mark.asyncio
    async def test_conversation_busy(self, api, producer, producer_headers):
        conversation = await create_conversation(USER_ID, "hi", "Assistant", {})
        producer.turns.begin(conversation.id)
        response = await api.post(STREAM_URL, json=_payload(conversation_id=conversation.id), headers=producer_headers)
        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_response_never_sent_releases_turn(self, producer, settings):
        conversation = await create_conversation(USER_ID, "hi", "Assistant", {})
        body = json.dumps(_payload(conversation_id=conversation.id)).encode()

        async def receive():
            return {"type": "http.request", "body": body, "more_body": False}

        scope = {
            "type": "http",
            "method": "POST",
            "path": STREAM_URL,
            "headers": [(b"apikey", b"anon-test")],
            "query_string": b"",
        }
        response = await chat_stream(Request(scope, receive), producer, settings)
        assert producer.turns.is_busy(conversation.id)

        await response.background()

        assert not producer.turns.is_busy(conversation.id)
        transcript = await get_conversation_with_messages(conversation.id, USER_ID)
        assistant = [message for message in transcript["messages"] if message["role"] == "assistant"]
        assert [message["is_streaming"] for message in assistant] == [False]

    @pytest.mark.asyncio
    async def test_non_streaming_turn(self, api, producer_headers):
        response = await api.post(STREAM_URL, json=_payload(stream=False), headers=producer_headers)
        assert response.status_code == 200
        body = response.json()
        assert body["message"] == "Hello, world"

        transcript = await get_conversation_with_messages(body["conversation_id"], USER_ID)
        assert [message["role"] for message in transcript["messages"]] == ["user", "assistant"]
        assert transcript["messages"][1]["is_streaming"] is False
