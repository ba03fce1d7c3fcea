"""
Shared test fixtures and configuration.
"""

import asyncio
import itertools
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Union

import pytest

# Set test environment variables before importing persona_chat modules
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("LOG_FILE_ENABLED", "false")
os.environ.setdefault("LOG_HTTP_REQUESTS", "false")

from persona_chat.core.backoff import BackoffController
from persona_chat.core.errors import SessionNotFound
from persona_chat.core.memory_manager import MemoryCleanupManager
from persona_chat.core.render_strategy import RenderStrategySelector
from persona_chat.core.session_store import SessionStore
from persona_chat.models import ChatSession
from persona_chat.transport.base import ChatRequest, ChatTransport, CreateSessionRequest

Chunk = Union[str, bytes, asyncio.Event, Exception]


class FakeTransport(ChatTransport):
    """
    In-memory backend.

    Each queued reply is a list of chunks or an exception raised on connect.
    Inside a reply, an ``asyncio.Event`` pauses the stream until it is set
    and an exception is raised mid-stream.
    """

    def __init__(self):
        self.replies: List[Union[List[Chunk], Exception]] = []
        self.requests: List[ChatRequest] = []
        self.request_failures: List[Exception] = []
        self.sessions: Dict[str, ChatSession] = {}
        self.messages: Dict[str, Any] = {}
        self.streams_closed = 0
        self._ids = itertools.count(1)

    def queue_reply(self, *chunks: Chunk) -> None:
        self.replies.append(list(chunks))

    def queue_failure(self, error: Exception) -> None:
        self.replies.append(error)

    def add_session(self, session_id: str, messages: Any = None, **fields) -> ChatSession:
        session = ChatSession(id=session_id, **fields)
        self.sessions[session_id] = session
        self.messages[session_id] = [] if messages is None else messages
        return session

    @asynccontextmanager
    async def open_chat_stream(self, request: ChatRequest):
        self.requests.append(request)
        reply = self.replies.pop(0) if self.replies else ["data: [DONE]\n\n"]
        if isinstance(reply, Exception):
            raise reply
        try:
            yield self._chunks(reply)
        finally:
            self.streams_closed += 1

    async def _chunks(self, chunks: List[Chunk]):
        for chunk in chunks:
            if isinstance(chunk, asyncio.Event):
                await chunk.wait()
                continue
            if isinstance(chunk, Exception):
                raise chunk
            await asyncio.sleep(0)
            yield chunk

    def _maybe_fail(self) -> None:
        if self.request_failures:
            raise self.request_failures.pop(0)

    async def list_sessions(self) -> List[ChatSession]:
        self._maybe_fail()
        return list(self.sessions.values())

    async def get_session(self, session_id: str) -> ChatSession:
        self._maybe_fail()
        if session_id not in self.sessions:
            raise SessionNotFound(session_id)
        return self.sessions[session_id]

    async def get_session_messages(self, session_id: str) -> Any:
        self._maybe_fail()
        if session_id not in self.sessions:
            raise SessionNotFound(session_id)
        return self.messages.get(session_id)

    async def create_session(self, request: CreateSessionRequest) -> ChatSession:
        self._maybe_fail()
        return self.add_session(
            f"session-{next(self._ids)}",
            name=request.name,
            persona_id=request.persona_id,
            persona_snapshot=request.persona_snapshot,
        )

    async def rename_session(self, session_id: str, name: str) -> ChatSession:
        self._maybe_fail()
        if session_id not in self.sessions:
            raise SessionNotFound(session_id)
        renamed = self.sessions[session_id].model_copy(update={"name": name})
        self.sessions[session_id] = renamed
        return renamed

    async def delete_session(self, session_id: str) -> None:
        self._maybe_fail()
        if self.sessions.pop(session_id, None) is None:
            raise SessionNotFound(session_id)
        self.messages.pop(session_id, None)


async def wait_until(predicate, attempts: int = 200) -> None:
    """Yield to the event loop until ``predicate()`` holds."""
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def persona() -> Dict[str, Any]:
    return {
        "id": "persona-1",
        "name": "Ada",
        "occupation": "Engineer",
        "personality": "curious and precise",
    }


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def memory_manager() -> MemoryCleanupManager:
    return MemoryCleanupManager(max_sessions=10, max_messages_per_session=10)


@pytest.fixture
def clipboard():
    from unittest.mock import MagicMock
    return MagicMock()


def make_store(
    transport: ChatTransport,
    memory_manager: Optional[MemoryCleanupManager] = None,
    api_retries: int = 3,
    stream_retries: int = 5,
    clipboard=None,
) -> SessionStore:
    """Store with zero backoff delays and predictable message ids."""
    counter = itertools.count(1)
    return SessionStore(
        transport=transport,
        memory_manager=memory_manager or MemoryCleanupManager(),
        render_strategy=RenderStrategySelector(),
        api_backoff_controller=BackoffController(0, 2, api_retries, name="api"),
        stream_backoff_controller=BackoffController(0, 1.5, stream_retries, name="stream"),
        clipboard=clipboard,
        id_factory=lambda role: f"{role}-{next(counter)}",
    )


@pytest.fixture
def store(fake_transport, memory_manager, clipboard) -> SessionStore:
    return make_store(fake_transport, memory_manager, clipboard=clipboard)
