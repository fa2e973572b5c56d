import asyncio
import json

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from ghostwriter.config import Settings
from ghostwriter.db import get_db
from ghostwriter.main import app
from ghostwriter.models import Base
from ghostwriter.realtime.errors import ChannelClosed
from ghostwriter.realtime.lifecycle import RealtimeSessionController
from ghostwriter.realtime.registry import SessionRegistry
from ghostwriter.realtime.transport import RealtimeCredentials, RealtimeTransport
from ghostwriter.schemas.projects import REQUIRED_BLUEPRINT_FIELDS, VoiceGuardrails
from ghostwriter.services.stores import build_collaborators

CREDENTIALS = RealtimeCredentials(
    api_key="test-key",
    model="gpt-realtime",
    url="wss://realtime.test/v1/realtime",
)

DRAFT_REPLY = {
    "markdown": "# Opening\n\nThe garage where it started.",
    "sections": [{"heading": "Opening", "content": "The garage where it started.", "status": "drafting"}],
    "summary": "Drafted the opening scene",
}


class FakeLLMClient:
    def __init__(self, response: dict | None = None, error: Exception | None = None):
        self.response = response or DRAFT_REPLY
        self.error = error
        self.calls: list[list[dict]] = []

    async def complete(self, messages, schema):
        self.calls.append(messages)
        if self.error is not None:
            raise self.error
        return schema.model_validate(self.response)


class FakeChannel:
    """Stands in for the realtime control channel; records what was sent."""

    def __init__(self):
        self.sent: list[dict] = []
        self.fail = False

    async def wait_open(self, timeout: float = 5.0) -> None:
        if self.fail:
            raise ChannelClosed("Realtime control channel is closed")

    async def send(self, payload: dict) -> None:
        if self.fail:
            raise ChannelClosed("Realtime control channel is closed")
        self.sent.append(payload)

    def types(self) -> list[str]:
        return [message["type"] for message in self.sent]


class FakeRealtimeSocket:
    """Remote end of the realtime WebSocket. Frames fed in are read by the channel."""

    def __init__(self, greet: bool = True):
        self.sent: list[dict] = []
        self.closed = False
        self._frames: asyncio.Queue = asyncio.Queue()
        if greet:
            self.feed({"type": "session.created", "session": {"id": "sess_remote_1"}})

    def feed(self, event) -> None:
        self._frames.put_nowait(json.dumps(event) if isinstance(event, dict) else event)

    def hang_up(self) -> None:
        self._frames.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        frame = await self._frames.get()
        if frame is None:
            raise StopAsyncIteration
        return frame

    async def send(self, data: str) -> None:
        self.sent.append(json.loads(data))

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._frames.put_nowait(None)

    def sent_types(self) -> list[str]:
        return [message["type"] for message in self.sent]


class FakeConnector:
    """Replacement for ``websockets.connect``."""

    def __init__(self, greet: bool = True):
        self.greet = greet
        self.error: Exception | None = None
        self.sockets: list[FakeRealtimeSocket] = []
        self.calls: list[tuple[str, dict]] = []

    async def __call__(self, url: str, **kwargs):
        self.calls.append((url, kwargs))
        if self.error is not None:
            raise self.error
        socket = FakeRealtimeSocket(greet=self.greet)
        self.sockets.append(socket)
        return socket

    @property
    def socket(self) -> FakeRealtimeSocket:
        return self.sockets[-1]


async def wait_until(predicate, timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


# 1. A file-backed database per test, so every short-lived store session sees the same rows
@pytest.fixture
async def test_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/test.db", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def sessionmaker(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(sessionmaker):
    async with sessionmaker() as session:
        yield session


# 2. Realtime collaborators and fakes
@pytest.fixture
def test_settings():
    return Settings(
        instructions_debounce_seconds=0.0,
        channel_open_timeout_seconds=0.5,
        media_grant_timeout_seconds=0.5,
        draft_retry_delay_seconds=0.0,
    )


@pytest.fixture
def fake_llm():
    return FakeLLMClient()


@pytest.fixture
def collaborators(sessionmaker, fake_llm):
    return build_collaborators(sessionmaker, fake_llm)


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def make_controller(collaborators, connector, test_settings):
    def factory() -> RealtimeSessionController:
        transport = RealtimeTransport(connect=connector, open_timeout=0.5)
        return RealtimeSessionController(collaborators, transport, CREDENTIALS, test_settings)

    return factory


@pytest.fixture
def eventually():
    return wait_until


@pytest.fixture
async def project(collaborators):
    return await collaborators.projects.create_project(title="Founder memoir", content_type="book_chapter")


@pytest.fixture
async def ready_project(collaborators, project):
    """A project whose blueprint has every required field, so sessions start in ghostwriting mode."""
    bundle = project
    for field in REQUIRED_BLUEPRINT_FIELDS:
        value = VoiceGuardrails(tone="warm, direct") if field == "voiceGuardrails" else f"{field} answer"
        bundle = await collaborators.projects.sync_blueprint_field(bundle.project_id, field=field, value=value)
    return bundle


# 3. Override the app's get_db dependency and session registry
@pytest.fixture
async def client(db_session, make_controller):
    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.state.registry = SessionRegistry(make_controller, media_timeout=0.5)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    await app.state.registry.close_all()
    app.dependency_overrides.clear()
