"""Shared fixtures: isolated settings, a temporary database, a fake LLM and the ASGI app."""

import asyncio
import json

import httpx
import pytest
import pytest_asyncio

from companion_chat.config import AppSettings, LLMSettings, PlatformSettings, override_settings
from companion_chat.errors import ProviderError
from companion_chat.main import create_app
from companion_chat.services.auth import issue_session
from companion_chat.services.bookkeeping import DeadLetterLog, reset_dead_letter_log
from companion_chat.services.llm import CompletionChunk, shutdown_llm_client
from companion_chat.services.realtime import RealtimeBroadcaster, RealtimeHub, shutdown_realtime
from companion_chat.services.relay import StreamProducerClient, get_producer_client, shutdown_producer_client
from companion_chat.services.streaming import StreamProducer, get_stream_producer, reset_stream_producer
from companion_chat.services.turns import TurnRegistry, reset_turn_registry
from companion_chat.storage import Persona, get_db_manager, shutdown_database


USER_ID = "user-alice"
OTHER_USER_ID = "user-bob"


class FakeLLM:
    """Stands in for the provider: yields fixed chunks, optionally failing part way."""

    def __init__(self, chunks=("Hello", ", ", "world"), fail_after=None, response_id="resp_123", configured=True):
        self.chunks = list(chunks)
        self.fail_after = fail_after
        self.response_id = response_id
        self.configured = configured
        self.requests = []

    async def stream_chat(self, request, cancel=None):
        self.requests.append(request)
        for index, chunk in enumerate(self.chunks):
            if self.fail_after is not None and index == self.fail_after:
                raise ProviderError("provider exploded")
            if cancel is not None and cancel.is_set():
                return
            yield CompletionChunk(content=chunk, response_id=self.response_id)
            await asyncio.sleep(0)
        yield CompletionChunk(done=True)

    async def complete(self, request):
        self.requests.append(request)
        return CompletionChunk(content="".join(self.chunks), response_id=self.response_id, done=True)


def sse_payloads(text):
    """Return the ``data:`` payloads of an SSE body, decoding JSON where possible."""
    payloads = []
    for line in text.splitlines():
        if not line.startswith("data: "):
            continue
        value = line[len("data: "):]
        payloads.append(value if value == "[DONE]" else json.loads(value))
    return payloads


@pytest.fixture
def settings(tmp_path):
    app_settings = AppSettings(
        llm=LLMSettings(host="http://llm.test", api_key="sk-test"),
        platform=PlatformSettings(url="http://testserver", anon_key="anon-test", service_role_key="service-test"),
        database_path=tmp_path / "chat.db",
        media_root=tmp_path / "media",
        dead_letter_path=tmp_path / "dead_letters.jsonl",
    )
    override_settings(app_settings)
    yield app_settings
    override_settings(None)


@pytest_asyncio.fixture
async def db(settings):
    manager = await get_db_manager()
    yield manager
    await shutdown_producer_client()
    await shutdown_realtime()
    await shutdown_llm_client()
    reset_stream_producer()
    reset_turn_registry()
    reset_dead_letter_log()
    await shutdown_database()


@pytest.fixture
def fake_llm():
    return FakeLLM()


@pytest.fixture
def hub():
    return RealtimeHub()


@pytest.fixture
def dead_letters(settings):
    return DeadLetterLog(settings.dead_letter_path)


@pytest_asyncio.fixture
async def producer(settings, db, fake_llm, hub, dead_letters):
    broadcaster = RealtimeBroadcaster(settings.platform, hub)
    yield StreamProducer(settings, fake_llm, broadcaster, TurnRegistry(), dead_letters)
    await broadcaster.close()


@pytest_asyncio.fixture
async def app(settings, producer):
    application = create_app()
    inner = httpx.AsyncClient(transport=httpx.ASGITransport(app=application))
    application.dependency_overrides[get_stream_producer] = lambda: producer
    application.dependency_overrides[get_producer_client] = lambda: StreamProducerClient(settings.platform, inner)
    yield application
    await inner.aclose()


@pytest_asyncio.fixture
async def api(app):
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver") as client:
        yield client


@pytest_asyncio.fixture
async def auth_headers(db):
    token = await issue_session(USER_ID)
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture
async def other_auth_headers(db):
    token = await issue_session(OTHER_USER_ID)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def producer_headers():
    return {"apikey": "anon-test", "Authorization": "Bearer anon-test"}


@pytest_asyncio.fixture
async def persona(db):
    async with db.session() as session:
        record = Persona(
            user_id=USER_ID,
            name="Mistress Vale",
            display_name="Vale",
            model="gpt-4o-mini",
            bio="A strict but caring mentor.",
            personality_traits=["confident", "warm"],
        )
        session.add(record)
        await session.flush()
        await session.refresh(record)
        return record
