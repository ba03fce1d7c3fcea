"""
Session Store - state container for the live chat session.

Owns the current session, the ordered message log, and the streaming
state machine. All mutation goes through the public commands below, and
every mutation is followed by a notification to subscribers carrying an
immutable ``ChatSnapshot``.

Per exchange: Idle -> Connecting -> Connected -> Idle, or -> Error on any
failure. Errors are never retried automatically; ``retry()`` re-runs the
last failed operation through the matching backoff controller.
"""

import asyncio
import logging
import uuid
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Sequence, Tuple, TypeVar

from ..models import ChatSession, ConnectionStatus, Message, StreamingState
from ..stream.decoder import Delta, Done, Final, ParseSkip, StreamError, decode_stream
from ..transport.base import ChatRequest, ChatTransport, CreateSessionRequest
from .backoff import BackoffController, api_backoff, stream_backoff
from .errors import (
    ChatRuntimeError,
    MessageNotFound,
    NoActiveSession,
    NoPriorUserMessage,
    NothingToRetry,
    SessionNotFound,
    StreamInProgress,
    StreamSignaledError,
    TransportError,
)
from .logging_config import SessionLoggerAdapter
from .memory_manager import MemoryCleanupManager
from .render_strategy import RenderStrategySelector
from .session_export import export_json, export_markdown, parse_json_export, parse_message_list

logger = logging.getLogger(__name__)

T = TypeVar("T")
Persona = Dict[str, Any]
ExportFormat = Literal["json", "markdown"]


@dataclass(frozen=True)
class ChatSnapshot:
    """Read-only view of the store handed to subscribers."""
    current_session: Optional[ChatSession]
    messages: Tuple[Message, ...]
    sessions: Tuple[ChatSession, ...]
    streaming: StreamingState
    is_loading: bool
    is_sending_message: bool
    error: Optional[str]


Listener = Callable[[ChatSnapshot], None]


@dataclass
class _FailedOperation:
    kind: Literal["stream", "request"]
    description: str
    run: Callable[[], Awaitable[Any]]


class SessionStore:
    """
    Orchestrates one chat session: message log, reply streaming and retries.

    Only one reply may stream at a time. ``send_message`` during a stream is
    rejected with ``StreamInProgress``. A failed reply keeps the user message
    and the partial assistant message in the log.
    """

    def __init__(
        self,
        transport: ChatTransport,
        memory_manager: Optional[MemoryCleanupManager] = None,
        render_strategy: Optional[RenderStrategySelector] = None,
        api_backoff_controller: Optional[BackoffController] = None,
        stream_backoff_controller: Optional[BackoffController] = None,
        clipboard: Optional[Callable[[str], None]] = None,
        id_factory: Optional[Callable[[str], str]] = None,
    ):
        """
        Initialize the store.

        Args:
            transport: Backend transport
            memory_manager: Side cache told about visited sessions
            render_strategy: Selector told about every log change
            api_backoff_controller: Backoff for retrying failed requests
            stream_backoff_controller: Backoff for retrying failed reply streams
            clipboard: Callable receiving text for copy_message
            id_factory: Builds message ids from a role prefix
        """
        self.transport = transport
        self.memory_manager = memory_manager or MemoryCleanupManager()
        self.render_strategy = render_strategy or RenderStrategySelector()
        self._api_backoff = api_backoff_controller or BackoffController(1000, 2, 3, name="api")
        self._stream_backoff = stream_backoff_controller or BackoffController(2000, 1.5, 5, name="stream")
        if self._api_backoff is self._stream_backoff:
            raise ValueError("api and stream backoff controllers must be separate instances")
        self._clipboard = clipboard
        self._id_factory = id_factory or (lambda role: f"{role}-{uuid.uuid4().hex}")

        self._current_session: Optional[ChatSession] = None
        self._messages: List[Message] = []
        self._sessions: List[ChatSession] = []
        self._streaming = StreamingState()
        self._is_loading = False
        self._is_sending = False
        self._error: Optional[str] = None

        self._listeners: List[Listener] = []
        self._stream_task: Optional[asyncio.Task] = None
        self._retry_task: Optional[asyncio.Task] = None
        self._last_failed: Optional[_FailedOperation] = None
        self._log = SessionLoggerAdapter(logger)

    @classmethod
    def from_settings(cls, config, transport: Optional[ChatTransport] = None, **kwargs) -> "SessionStore":
        """Build a store with every collaborator configured from settings."""
        if transport is None:
            from ..transport.factory import create_transport
            transport = create_transport(config)
        return cls(
            transport=transport,
            memory_manager=MemoryCleanupManager.from_settings(config),
            render_strategy=RenderStrategySelector.from_settings(config),
            api_backoff_controller=api_backoff(config),
            stream_backoff_controller=stream_backoff(config),
            **kwargs,
        )

    # Observation

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def snapshot(self) -> ChatSnapshot:
        return ChatSnapshot(
            current_session=self._current_session.model_copy() if self._current_session else None,
            messages=tuple(m.model_copy() for m in self._messages),
            sessions=tuple(s.model_copy() for s in self._sessions),
            streaming=self._streaming.model_copy(),
            is_loading=self._is_loading,
            is_sending_message=self._is_sending,
            error=self._error,
        )

    @property
    def current_session(self) -> Optional[ChatSession]:
        return self._current_session.model_copy() if self._current_session else None

    @property
    def messages(self) -> Tuple[Message, ...]:
        return tuple(m.model_copy() for m in self._messages)

    @property
    def streaming(self) -> StreamingState:
        return self._streaming.model_copy()

    @property
    def error(self) -> Optional[str]:
        return self._error

    @property
    def api_backoff(self) -> BackoffController:
        return self._api_backoff

    @property
    def stream_backoff(self) -> BackoffController:
        return self._stream_backoff

    def _notify(self) -> None:
        if not self._listeners:
            return
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                self._log.error(f"State listener failed: {e}", exc_info=True)

    def _publish_log(self, streaming_index: Optional[int] = None) -> None:
        self._notify()
        self.render_strategy.on_log_changed(len(self._messages), streaming_index)

    # Lookups

    def _index_of(self, message_id: str) -> Optional[int]:
        for i, message in enumerate(self._messages):
            if message.id == message_id:
                return i
        return None

    def _require_session(self) -> ChatSession:
        if self._current_session is None:
            raise NoActiveSession()
        return self._current_session

    def _require_idle(self) -> None:
        if self._streaming.is_streaming:
            raise StreamInProgress(self._streaming.streaming_message_id)

    # Lifecycle

    def _ensure_sweep(self) -> None:
        """Start the memory cleanup sweep on the first async command."""
        if not self.memory_manager.running:
            self.memory_manager.start()

    async def aclose(self) -> None:
        """Cancel in-flight work, stop the cleanup sweep and close the transport."""
        self._cancel_inflight()
        await self.memory_manager.stop()
        await self.transport.aclose()
        self._log.info("Session store closed")

    # Request plumbing

    async def _request(
        self,
        action: str,
        call: Callable[[], Awaitable[T]],
        retry_op: Callable[[], Awaitable[Any]],
    ) -> T:
        self._ensure_sweep()
        self._is_loading = True
        self._error = None
        self._notify()
        try:
            result = await call()
        except ChatRuntimeError as e:
            self._is_loading = False
            self._error = str(e)
            if isinstance(e, TransportError):
                self._last_failed = _FailedOperation("request", action, retry_op)
            self._log.error(
                f"{action} failed: {e}",
                extra={"extra_fields": {"action": action, "error_type": type(e).__name__}}
            )
            self._notify()
            raise

        self._is_loading = False
        pending = self._last_failed
        # Another failed request keeps its retry budget until it succeeds itself
        if pending is None or pending.kind != "request" or pending.description == action:
            self._api_backoff.reset()
            if pending is not None and pending.kind == "request":
                self._last_failed = None
        return result

    def _cancel_inflight(self) -> None:
        """Cancel the reply stream and any pending retry delay."""
        task, self._stream_task = self._stream_task, None
        if task is not None and not task.done():
            task.cancel()
            self._log.info("Cancelled in-flight reply stream")
        retry_task, self._retry_task = self._retry_task, None
        if retry_task is not None and not retry_task.done():
            retry_task.cancel()
            self._log.info("Cancelled pending retry")

    def _enter_session(self, session: ChatSession, messages: Sequence[Message]) -> None:
        self._cancel_inflight()
        self._current_session = session
        self._messages = list(messages)
        self._streaming = StreamingState()
        self._is_sending = False
        self._stream_backoff.reset()
        if self._last_failed is not None and self._last_failed.kind == "stream":
            self._last_failed = None
        self._log.bind(session.id)

        self.memory_manager.set_active_session(session.id)
        self.memory_manager.register_session(session.id, self._messages)
        self._publish_log()

    # Session management

    async def create_session(self, persona: Persona, name: Optional[str] = None) -> ChatSession:
        """Create a backend session for the persona and make it current."""
        persona_id = persona.get("id") or persona.get("schema_version")
        request = CreateSessionRequest(
            persona_snapshot=persona,
            persona_id=str(persona_id) if persona_id is not None else None,
            name=name or f"Chat with {persona.get('occupation') or 'AI'}",
        )
        session = await self._request(
            "Create session",
            lambda: self.transport.create_session(request),
            lambda: self.create_session(persona, name),
        )
        self._enter_session(session, [])
        self._log.info(f"Session created: {session.id}")

        try:
            await self.load_sessions()
        except TransportError as e:
            self._log.warning(f"Session list refresh after create failed: {e}")
        return session

    async def load_session(self, session_id: str) -> ChatSession:
        """Fetch a session and its log, then replace the current ones in one step."""
        async def fetch() -> Tuple[ChatSession, List[Message]]:
            session = await self.transport.get_session(session_id)
            raw_messages = await self.transport.get_session_messages(session_id)
            return session, parse_message_list(raw_messages)

        session, messages = await self._request(
            "Load session", fetch, lambda: self.load_session(session_id)
        )
        self._enter_session(session, messages)
        self._log.info(f"Session loaded with {len(messages)} messages")
        return session

    async def load_sessions(self) -> List[ChatSession]:
        sessions = await self._request("Load sessions", self.transport.list_sessions, self.load_sessions)
        self._sessions = list(sessions)
        self._notify()
        return list(sessions)

    async def delete_session(self, session_id: str) -> None:
        await self._request(
            "Delete session",
            lambda: self.transport.delete_session(session_id),
            lambda: self.delete_session(session_id),
        )
        self._sessions = [s for s in self._sessions if s.id != session_id]
        if self._current_session is not None and self._current_session.id == session_id:
            self.clear_session()
        else:
            self.memory_manager.unregister_session(session_id)
            self._notify()

    async def rename_session(self, session_id: str, name: str) -> ChatSession:
        updated = await self._request(
            "Rename session",
            lambda: self.transport.rename_session(session_id, name),
            lambda: self.rename_session(session_id, name),
        )
        self._sessions = [updated if s.id == session_id else s for s in self._sessions]
        if self._current_session is not None and self._current_session.id == session_id:
            self._current_session = updated
        self._notify()
        return updated

    def clear_session(self) -> None:
        """Leave the current session and reset log and streaming state."""
        self._cancel_inflight()
        if self._current_session is not None:
            self.memory_manager.unregister_session(self._current_session.id)
        self._current_session = None
        self._messages = []
        self._streaming = StreamingState()
        self._is_sending = False
        self._stream_backoff.reset()
        if self._last_failed is not None and self._last_failed.kind == "stream":
            self._last_failed = None
        self._log.bind(None)
        self._publish_log()

    def clear_messages(self) -> None:
        self._require_idle()
        self._messages = []
        self._publish_log()

    def clear_error(self) -> None:
        self._error = None
        self._notify()

    # Messages

    async def send_message(self, content: str, persona: Persona) -> Optional[Message]:
        """
        Append a user message and stream the assistant reply into a placeholder.

        Returns:
            Copy of the completed assistant message, or None when the session
            was left while the reply was streaming

        Raises:
            NoActiveSession: no current session (nothing is mutated)
            StreamInProgress: a reply is already streaming (nothing is mutated)
            TransportError: the request or stream failed; the log keeps both messages
        """
        self._require_session()
        self._require_idle()

        user_message = Message(id=self._id_factory("user"), role="user", content=content)
        self._messages.append(user_message)
        self._is_sending = True
        self._error = None
        self._publish_log()

        return await self._stream_reply(user_message, persona)

    async def _stream_reply(self, user_message: Message, persona: Persona) -> Optional[Message]:
        session = self._require_session()
        self._ensure_sweep()
        placeholder = Message(
            id=self._id_factory("assistant"),
            role="assistant",
            content="",
            persona_snapshot=persona,
        )
        self._messages.append(placeholder)
        self._start_streaming(placeholder.id)

        # Everything up to and including the user message, without the placeholder
        request = ChatRequest(messages=[m.model_copy() for m in self._messages[:-1]], persona=persona)
        task = asyncio.get_running_loop().create_task(self._run_stream(request, placeholder.id))
        self._stream_task = task
        try:
            await task
        except asyncio.CancelledError:
            if self._stream_task is not task:
                # Session was left while streaming; state was already reset
                self._log.info("Reply stream abandoned")
                return None
            self._finish_streaming(ConnectionStatus.DISCONNECTED)
            self._is_sending = False
            self._notify()
            raise
        except Exception as e:
            if self._stream_task is not task:
                return None
            self._fail_stream(e, user_message, placeholder.id, persona)
            raise
        finally:
            if self._stream_task is task:
                self._stream_task = None

        return self._complete_stream(session, user_message, placeholder.id)

    async def _run_stream(self, request: ChatRequest, message_id: str) -> None:
        async with self.transport.open_chat_stream(request) as chunks:
            self._set_connection_status(ConnectionStatus.CONNECTED)
            async with aclosing(decode_stream(chunks)) as events:
                async for event in events:
                    if isinstance(event, Delta):
                        self._fold(message_id, event.text, replace=False)
                    elif isinstance(event, Final):
                        self._fold(message_id, event.text, replace=True)
                    elif isinstance(event, ParseSkip):
                        self._log.debug(f"Skipped stream line: {event.reason}")
                    elif isinstance(event, StreamError):
                        raise StreamSignaledError(event.message)
                    elif isinstance(event, Done):
                        break

    def _start_streaming(self, message_id: str) -> None:
        index = self._index_of(message_id)
        if index is None or self._messages[index].role != "assistant":
            raise MessageNotFound(message_id, "is not an assistant message in the log")
        self._streaming = self._streaming.model_copy(update={
            "is_streaming": True,
            "streaming_message_id": message_id,
            "current_stream_content": "",
            "connection_status": ConnectionStatus.CONNECTING,
            "last_error": None,
        })
        self._publish_log()

    def _set_connection_status(self, status: ConnectionStatus) -> None:
        self._streaming = self._streaming.model_copy(update={"connection_status": status})
        self._notify()

    def _fold(self, message_id: str, text: str, replace: bool) -> None:
        if self._streaming.streaming_message_id != message_id:
            return
        index = self._index_of(message_id)
        if index is None:
            return
        message = self._messages[index]
        message.content = text if replace else message.content + text
        self._streaming = self._streaming.model_copy(update={
            "current_stream_content": message.content,
            "connection_status": ConnectionStatus.CONNECTED,
        })
        self._publish_log(streaming_index=index)

    def _finish_streaming(self, status: ConnectionStatus) -> None:
        self._streaming = self._streaming.model_copy(update={
            "is_streaming": False,
            "streaming_message_id": None,
            "current_stream_content": "",
            "connection_status": status,
        })

    def _complete_stream(self, session: ChatSession, user_message: Message, message_id: str) -> Optional[Message]:
        self._finish_streaming(ConnectionStatus.CONNECTED)
        self._stream_backoff.reset()
        self._streaming = self._streaming.model_copy(update={"reconnect_attempts": 0, "last_error": None})
        self._is_sending = False
        if self._last_failed is not None and self._last_failed.kind == "stream":
            self._last_failed = None

        index = self._index_of(message_id)
        reply = self._messages[index] if index is not None else None
        if reply is not None:
            self.memory_manager.update_session(session.id, [user_message, reply])
            self._log.info(
                "Reply completed",
                extra={"extra_fields": {"message_id": message_id, "content_length": len(reply.content)}}
            )
        self._notify()
        return reply.model_copy() if reply is not None else None

    def _fail_stream(self, error: Exception, user_message: Message, message_id: str, persona: Persona) -> None:
        self._finish_streaming(ConnectionStatus.ERROR)
        self._streaming = self._streaming.model_copy(update={
            "reconnect_attempts": self._stream_backoff.attempt,
            "last_error": str(error),
        })
        self._is_sending = False
        self._error = str(error)
        self._last_failed = _FailedOperation(
            "stream",
            "Send message",
            lambda: self._retry_stream(user_message, message_id, persona),
        )
        self._log.error(
            f"Reply stream failed: {error}",
            exc_info=not isinstance(error, TransportError),
            extra={"extra_fields": {"message_id": message_id, "error_type": type(error).__name__}}
        )
        self._notify()

    async def _retry_stream(self, user_message: Message, failed_message_id: str, persona: Persona) -> Optional[Message]:
        self._require_session()
        self._require_idle()
        if self._index_of(user_message.id) is None:
            raise MessageNotFound(user_message.id, "was removed before the retry")

        failed_index = self._index_of(failed_message_id)
        if failed_index is not None:
            del self._messages[failed_index]
        self._is_sending = True
        self._error = None
        self._publish_log()
        return await self._stream_reply(user_message, persona)

    async def regenerate_message(self, message_id: str, persona: Persona) -> Optional[Message]:
        """Drop an assistant reply and send its nearest preceding user message again."""
        self._require_session()
        self._require_idle()

        index = self._index_of(message_id)
        if index is None or self._messages[index].role != "assistant":
            raise MessageNotFound(message_id, "is not an assistant message in the log")

        prior_user = next(
            (m for m in reversed(self._messages[:index]) if m.role == "user"), None
        )
        if prior_user is None:
            raise NoPriorUserMessage(message_id)

        del self._messages[index]
        self._publish_log()
        return await self.send_message(prior_user.content, persona)

    def delete_message(self, message_id: str) -> None:
        """Remove a message by id; unknown ids are ignored."""
        if self._streaming.streaming_message_id == message_id:
            raise StreamInProgress(message_id)
        index = self._index_of(message_id)
        if index is None:
            return
        del self._messages[index]
        self._publish_log()

    def copy_message(self, message_id: str) -> None:
        """Send a message's content to the clipboard. Failures are only logged."""
        index = self._index_of(message_id)
        if index is None:
            self._log.warning(f"Failed to copy message: {message_id} not found")
            return
        if self._clipboard is None:
            self._log.warning("Failed to copy message: no clipboard available")
            return
        try:
            self._clipboard(self._messages[index].content)
        except Exception as e:
            self._log.warning(f"Failed to copy message: {e}")

    # Retry

    async def retry(self) -> Any:
        """
        Re-run the last failed operation after its backoff delay.

        Raises:
            NothingToRetry: no failed operation is recorded
            StreamInProgress: a reply is streaming
            RetryExhausted: the matching backoff controller has no retries left
        """
        failed = self._last_failed
        if failed is None:
            raise NothingToRetry()
        self._require_idle()

        backoff = self._stream_backoff if failed.kind == "stream" else self._api_backoff
        if failed.kind == "stream":
            self._streaming = self._streaming.model_copy(update={
                "connection_status": ConnectionStatus.CONNECTING,
                "reconnect_attempts": backoff.attempt + 1,
            })
            self._notify()

        task = asyncio.get_running_loop().create_task(backoff.wait())
        self._retry_task = task
        try:
            await task
        except asyncio.CancelledError:
            if self._retry_task is not task:
                self._log.info(f"Retry of '{failed.description}' abandoned")
                return None
            if failed.kind == "stream":
                self._set_connection_status(ConnectionStatus.ERROR)
            raise
        except ChatRuntimeError as e:
            self._error = str(e)
            if failed.kind == "stream":
                self._streaming = self._streaming.model_copy(update={
                    "connection_status": ConnectionStatus.ERROR,
                    "reconnect_attempts": backoff.attempt,
                })
            self._notify()
            raise
        finally:
            if self._retry_task is task:
                self._retry_task = None

        self._log.info(f"Retrying '{failed.description}' (attempt {backoff.attempt})")
        self._last_failed = None
        return await failed.run()

    # Export / import

    async def export_session(self, session_id: str, fmt: ExportFormat = "json") -> str:
        """Render a session as a JSON envelope or a Markdown transcript."""
        if fmt not in ("json", "markdown"):
            raise ValueError(f"Unsupported export format: {fmt}")

        if self._current_session is not None and self._current_session.id == session_id:
            session = self._current_session
            messages: Sequence[Message] = self._messages
        else:
            session = next((s for s in self._sessions if s.id == session_id), None)
            if session is None:
                raise SessionNotFound(session_id)
            messages = parse_message_list(await self.transport.get_session_messages(session_id))

        if fmt == "json":
            return export_json(session, messages)
        return export_markdown(session, messages)

    def import_session(self, data: str) -> ChatSession:
        """Make an exported JSON session the current one."""
        try:
            session, messages = parse_json_export(data)
        except ChatRuntimeError as e:
            self._error = str(e)
            self._notify()
            raise
        self._error = None
        self._enter_session(session, messages)
        self._log.info(f"Session imported with {len(messages)} messages")
        return session.model_copy()
