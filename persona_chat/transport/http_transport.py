"""
HTTP Chat Transport - httpx client for the chat backend.

``POST /chat`` answers either with a ``data: <json>`` line stream or with a
single JSON object. A JSON answer is re-framed as one ``data:`` line plus
``[DONE]`` so the session store decodes both shapes the same way.
"""

import json
import logging
import time
from contextlib import aclosing, asynccontextmanager
from typing import Any, AsyncGenerator, AsyncIterator, Dict, List, Optional

import httpx
from pydantic import ValidationError

from ..core.errors import ErrorKind, SessionNotFound, TransportError
from ..models import ChatSession, SessionList
from .base import ChatRequest, ChatTransport, ChunkStream, CreateSessionRequest
from .logging_hooks import HttpLoggingHooks, extract_error_reason

logger = logging.getLogger(__name__)


class HttpChatTransport(ChatTransport):
    """
    Transport for the persona chat backend over HTTP.
    Holds one pooled AsyncClient; call ``aclose()`` when done.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 120.0,
        log_requests: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the transport.

        Args:
            base_url: Backend root, e.g. ``http://localhost:8000/api``
            api_key: Optional bearer token
            timeout: Timeout in seconds for connect and each read
            log_requests: Attach request/response logging hooks
            transport: Custom httpx transport (e.g. ``httpx.ASGITransport``)
        """
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        event_hooks = HttpLoggingHooks().as_event_hooks() if log_requests else None
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=self._get_headers(),
            timeout=timeout,
            event_hooks=event_hooks,
            transport=transport,
        )

    def _get_headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _raise_for_status(
        self,
        response: httpx.Response,
        action: str,
        session_id: Optional[str] = None,
    ) -> None:
        if response.status_code < 400:
            return
        if response.status_code == 404 and session_id is not None:
            raise SessionNotFound(session_id)
        await response.aread()
        reason = extract_error_reason(response.text) or response.reason_phrase
        raise TransportError(f"{action} failed: {reason}", status_code=response.status_code)

    async def _request_json(
        self,
        method: str,
        path: str,
        action: str,
        session_id: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Any:
        try:
            response = await self._client.request(method, path, json=payload)
        except httpx.HTTPError as e:
            logger.error(
                f"{action} failed: {e}",
                exc_info=True,
                extra={"extra_fields": {"method": method, "path": path, "error": str(e)}}
            )
            raise TransportError(f"{action} failed: {e}") from e

        await self._raise_for_status(response, action, session_id)
        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise TransportError(
                f"{action} returned invalid JSON", status_code=response.status_code, kind=ErrorKind.SERVER
            ) from e

    @asynccontextmanager
    async def open_chat_stream(self, request: ChatRequest) -> AsyncIterator[ChunkStream]:
        start_time = time.time()
        payload = request.to_payload()
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(f"Chat stream starting: {len(request.messages)} messages")

        try:
            async with self._client.stream("POST", "/chat", json=payload) as response:
                await self._raise_for_status(response, "Chat request")
                content_type = response.headers.get("content-type", "")
                if content_type.startswith("application/json"):
                    body = await response.aread()
                    chunks = self._reframe_json(body)
                else:
                    chunks = self._iter_chunks(response)
                # Closed here even when the reader stops at [DONE]
                async with aclosing(chunks):
                    yield chunks
        except httpx.HTTPError as e:
            duration_ms = (time.time() - start_time) * 1000
            logger.error(
                f"Chat request failed: {e}",
                exc_info=True,
                extra={"extra_fields": {"duration_ms": round(duration_ms, 2), "error": str(e)}}
            )
            raise TransportError(f"Chat request failed: {e}") from e

        duration_ms = (time.time() - start_time) * 1000
        logger.info(
            "Chat stream closed",
            extra={"extra_fields": {"duration_ms": round(duration_ms, 2)}}
        )

    async def _iter_chunks(self, response: httpx.Response) -> AsyncGenerator[bytes, None]:
        try:
            async for chunk in response.aiter_bytes():
                yield chunk
        except httpx.HTTPError as e:
            logger.error(f"Chat stream read failed: {e}", exc_info=True)
            raise TransportError(f"Stream read failed: {e}") from e

    async def _reframe_json(self, body: bytes) -> AsyncGenerator[str, None]:
        try:
            envelope = json.loads(body)
        except json.JSONDecodeError as e:
            raise TransportError(f"Chat response is not valid JSON: {e.msg}", kind=ErrorKind.SERVER) from e
        yield f"data: {json.dumps(envelope, ensure_ascii=False)}\n\n"
        yield "data: [DONE]\n\n"

    async def list_sessions(self) -> List[ChatSession]:
        data = await self._request_json("GET", "/sessions", "Load sessions")
        sessions = data.get("sessions", []) if isinstance(data, dict) else data
        try:
            return SessionList.model_validate({"sessions": sessions or []}).sessions
        except ValidationError as e:
            raise TransportError("Session list is malformed", kind=ErrorKind.SERVER) from e

    async def get_session(self, session_id: str) -> ChatSession:
        data = await self._request_json("GET", f"/sessions/{session_id}", "Load session", session_id)
        try:
            return ChatSession.model_validate(data)
        except ValidationError as e:
            raise TransportError(f"Session {session_id} metadata is malformed", kind=ErrorKind.SERVER) from e

    async def get_session_messages(self, session_id: str) -> Any:
        data = await self._request_json(
            "GET", f"/sessions/{session_id}/messages", "Load messages", session_id
        )
        return data.get("messages") if isinstance(data, dict) else None

    async def create_session(self, request: CreateSessionRequest) -> ChatSession:
        data = await self._request_json("POST", "/sessions", "Create session", payload=request.to_payload())
        try:
            return ChatSession.model_validate(data)
        except ValidationError as e:
            raise TransportError("Created session is malformed", kind=ErrorKind.SERVER) from e

    async def rename_session(self, session_id: str, name: str) -> ChatSession:
        data = await self._request_json(
            "PATCH", f"/sessions/{session_id}", "Rename session", session_id, payload={"name": name}
        )
        try:
            return ChatSession.model_validate(data)
        except ValidationError as e:
            raise TransportError(f"Renamed session {session_id} is malformed", kind=ErrorKind.SERVER) from e

    async def delete_session(self, session_id: str) -> None:
        await self._request_json("DELETE", f"/sessions/{session_id}", "Delete session", session_id)
