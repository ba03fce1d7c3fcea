"""
Tests for the HTTP transport against an in-process FastAPI backend.
"""

import json
import logging
from typing import Any, Dict, List

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse

from persona_chat.config import Settings
from persona_chat.core.errors import ErrorKind, SessionNotFound, TransportError
from persona_chat.models import Message
from persona_chat.stream.decoder import Delta, Done, Final, decode_stream
from persona_chat.transport import ChatRequest, CreateSessionRequest, HttpChatTransport, create_transport
from persona_chat.transport.logging_hooks import extract_error_reason

BASE_URL = "http://testserver/api"


class FakeBackend:
    """Minimal persona chat backend recording what it receives."""

    def __init__(self):
        self.chat_bodies: List[Dict[str, Any]] = []
        self.headers: List[Dict[str, str]] = []
        self.sessions: Dict[str, Dict[str, Any]] = {
            "s1": {"id": "s1", "name": "First", "persona_id": "p1", "message_count": 1},
        }
        self.messages: Dict[str, Any] = {
            "s1": [{"id": "m1", "role": "user", "content": "Hi", "timestamp": "2024-01-01T00:00:00Z"}],
        }
        self.app = self._build()

    def _build(self) -> FastAPI:
        app = FastAPI()

        @app.post("/api/chat")
        async def chat(request: Request):
            body = await request.json()
            self.chat_bodies.append(body)
            self.headers.append(dict(request.headers))
            mode = body["persona"].get("mode")
            if mode == "fail":
                raise HTTPException(status_code=500, detail="model backend unavailable")
            if mode == "json":
                return JSONResponse({"content": "Whole reply", "done": True})

            async def events():
                yield 'data: {"content": "Hel"}\n\n'
                yield 'data: {"content": "lo"}\n\n'
                yield "data: [DONE]\n\n"

            return StreamingResponse(events(), media_type="text/event-stream")

        @app.get("/api/sessions")
        async def list_sessions():
            return {"sessions": list(self.sessions.values())}

        @app.get("/api/sessions/{session_id}")
        async def get_session(session_id: str):
            if session_id not in self.sessions:
                raise HTTPException(status_code=404, detail="Session not found")
            return self.sessions[session_id]

        @app.get("/api/sessions/{session_id}/messages")
        async def get_messages(session_id: str):
            if session_id not in self.sessions:
                raise HTTPException(status_code=404, detail="Session not found")
            return {"messages": self.messages.get(session_id)}

        @app.post("/api/sessions")
        async def create_session(request: Request):
            body = await request.json()
            session_id = f"s{len(self.sessions) + 1}"
            self.sessions[session_id] = {"id": session_id, **body}
            self.messages[session_id] = []
            return self.sessions[session_id]

        @app.patch("/api/sessions/{session_id}")
        async def rename_session(session_id: str, request: Request):
            if session_id not in self.sessions:
                raise HTTPException(status_code=404, detail="Session not found")
            body = await request.json()
            self.sessions[session_id]["name"] = body["name"]
            return self.sessions[session_id]

        @app.delete("/api/sessions/{session_id}")
        async def delete_session(session_id: str):
            if self.sessions.pop(session_id, None) is None:
                raise HTTPException(status_code=404, detail="Session not found")
            return Response(status_code=204)

        return app


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest_asyncio.fixture
async def transport(backend):
    client_transport = HttpChatTransport(
        base_url=BASE_URL,
        api_key="secret-token",
        transport=httpx.ASGITransport(app=backend.app),
    )
    yield client_transport
    await client_transport.aclose()


def chat_request(**persona) -> ChatRequest:
    return ChatRequest(
        messages=[Message(id="u1", role="user", content="Hi")],
        persona={"name": "Ada", **persona},
    )


class TrackingTransport(HttpChatTransport):
    """Records when the chunk generators it hands out are closed."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.closed: List[str] = []

    async def _iter_chunks(self, response):
        try:
            async for chunk in super()._iter_chunks(response):
                yield chunk
        finally:
            self.closed.append("chunks")

    async def _reframe_json(self, body):
        try:
            async for chunk in super()._reframe_json(body):
                yield chunk
        finally:
            self.closed.append("json")


async def collect(transport, request):
    async with transport.open_chat_stream(request) as chunks:
        return [event async for event in decode_stream(chunks)]


class TestChatStream:
    """Tests for POST /chat."""

    @pytest.mark.asyncio
    async def test_streamed_reply(self, transport, backend):
        events = await collect(transport, chat_request())

        assert events == [Delta("Hel"), Delta("lo"), Done()]
        body = backend.chat_bodies[0]
        assert body["stream"] is True
        assert body["persona"]["name"] == "Ada"
        assert body["messages"][0]["role"] == "user"
        assert body["messages"][0]["content"] == "Hi"
        assert "persona_snapshot" not in body["messages"][0]

    @pytest.mark.asyncio
    async def test_json_reply_is_reframed(self, transport):
        events = await collect(transport, chat_request(mode="json"))

        assert events == [Final("Whole reply"), Done()]

    @pytest.mark.asyncio
    async def test_server_error_raises_transport_error(self, transport):
        with pytest.raises(TransportError) as exc_info:
            await collect(transport, chat_request(mode="fail"))

        assert exc_info.value.status_code == 500
        assert exc_info.value.kind is ErrorKind.SERVER
        assert exc_info.value.retryable is True
        assert "model backend unavailable" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_bearer_token_is_sent(self, transport, backend):
        await collect(transport, chat_request())

        assert backend.headers[0]["authorization"] == "Bearer secret-token"

    @pytest.mark.asyncio
    async def test_connection_failure_raises_transport_error(self):
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        transport = HttpChatTransport(BASE_URL, log_requests=False, transport=httpx.MockTransport(refuse))
        try:
            with pytest.raises(TransportError, match="connection refused") as exc_info:
                await collect(transport, chat_request())
            assert exc_info.value.kind is ErrorKind.NETWORK
            with pytest.raises(TransportError):
                await transport.list_sessions()
        finally:
            await transport.aclose()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("mode", [None, "json"])
    async def test_chunk_source_closed_when_reader_stops_at_done(self, backend, mode):
        transport = TrackingTransport(
            BASE_URL, log_requests=False, transport=httpx.ASGITransport(app=backend.app)
        )
        try:
            events = await collect(transport, chat_request(mode=mode))
        finally:
            await transport.aclose()

        assert isinstance(events[-1], Done)
        assert transport.closed == ["json" if mode else "chunks"]

    @pytest.mark.asyncio
    async def test_malformed_reply_is_a_server_error(self):
        def garbage(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=b"{not json", headers={"content-type": "application/json"})

        transport = HttpChatTransport(BASE_URL, log_requests=False, transport=httpx.MockTransport(garbage))
        try:
            with pytest.raises(TransportError) as exc_info:
                await collect(transport, chat_request())
        finally:
            await transport.aclose()

        assert exc_info.value.kind is ErrorKind.SERVER

    @pytest.mark.asyncio
    async def test_requests_are_logged(self, transport, caplog):
        with caplog.at_level(logging.INFO, logger="persona_chat.transport.logging_hooks"):
            await collect(transport, chat_request())

        assert "Request completed: POST /api/chat - 200" in caplog.text
        assert "secret-token" not in caplog.text


class TestSessionEndpoints:
    """Tests for the session CRUD endpoints."""

    @pytest.mark.asyncio
    async def test_list_sessions(self, transport):
        sessions = await transport.list_sessions()

        assert [s.id for s in sessions] == ["s1"]
        assert sessions[0].name == "First"

    @pytest.mark.asyncio
    async def test_get_session_and_messages(self, transport):
        session = await transport.get_session("s1")
        raw = await transport.get_session_messages("s1")

        assert session.persona_id == "p1"
        assert raw[0]["content"] == "Hi"

    @pytest.mark.asyncio
    async def test_messages_are_returned_unvalidated(self, transport, backend):
        backend.messages["s1"] = None

        assert await transport.get_session_messages("s1") is None

    @pytest.mark.asyncio
    async def test_unknown_session_raises_session_not_found(self, transport):
        with pytest.raises(SessionNotFound) as exc_info:
            await transport.get_session("missing")
        assert exc_info.value.session_id == "missing"

        with pytest.raises(SessionNotFound):
            await transport.delete_session("missing")

    @pytest.mark.asyncio
    async def test_create_rename_delete(self, transport, backend):
        created = await transport.create_session(CreateSessionRequest(
            persona_snapshot={"name": "Ada"},
            name="Chat with AI",
            persona_id="p2",
        ))
        assert created.name == "Chat with AI"
        assert created.persona_snapshot == {"name": "Ada"}

        renamed = await transport.rename_session(created.id, "Renamed")
        assert renamed.name == "Renamed"

        await transport.delete_session(created.id)
        assert created.id not in backend.sessions


class TestHelpers:
    """Tests for the factory and error reason extraction."""

    def test_create_transport_from_settings(self):
        transport = create_transport(Settings(api_base_url="http://backend:9000/api/", api_key="k"))

        assert isinstance(transport, HttpChatTransport)
        assert transport.base_url == "http://backend:9000/api"
        assert transport.api_key == "k"

    def test_create_transport_requires_url(self):
        with pytest.raises(ValueError):
            create_transport(Settings(api_base_url=""))

    @pytest.mark.parametrize("body,expected", [
        (json.dumps({"detail": "bad persona"}), "bad persona"),
        (json.dumps({"message": "nope"}), "nope"),
        (json.dumps({"error": "boom"}), "boom"),
        ("plain text failure", "plain text failure"),
        ("", None),
    ])
    def test_extract_error_reason(self, body, expected):
        assert extract_error_reason(body) == expected
