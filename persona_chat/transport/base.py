"""
Chat Transport Base - Abstract interface to the chat backend.

The session store talks to the backend only through this interface, so the
HTTP client can be swapped for an in-process fake in tests.
"""

from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Union

from ..models import ChatSession, Message


@dataclass
class ChatRequest:
    """Body of a ``POST /chat`` call."""
    messages: List[Message]
    persona: Dict[str, Any]
    stream: bool = True

    def to_payload(self) -> Dict[str, Any]:
        return {
            "messages": [m.to_wire() for m in self.messages],
            "persona": self.persona,
            "stream": self.stream,
        }


@dataclass
class CreateSessionRequest:
    """Body of a ``POST /sessions`` call."""
    persona_snapshot: Dict[str, Any]
    name: Optional[str] = None
    persona_id: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "persona_id": self.persona_id,
            "name": self.name,
            "persona_snapshot": self.persona_snapshot,
        }
        payload.update(self.extra)
        return payload


ChunkStream = AsyncIterator[Union[str, bytes]]


class ChatTransport(ABC):
    """
    Abstract base class for backend transports.

    Implementations raise ``TransportError`` for connection and HTTP failures
    and ``SessionNotFound`` for unknown session ids.
    """

    @abstractmethod
    def open_chat_stream(self, request: ChatRequest) -> AbstractAsyncContextManager[ChunkStream]:
        """
        Submit a chat request and open its reply stream.

        Entering the context performs the request and fails if the backend
        rejects it. The yielded iterator produces raw transport chunks.
        Leaving the context, including by cancellation, releases the stream.
        """
        pass

    @abstractmethod
    async def list_sessions(self) -> List[ChatSession]:
        pass

    @abstractmethod
    async def get_session(self, session_id: str) -> ChatSession:
        pass

    @abstractmethod
    async def get_session_messages(self, session_id: str) -> Any:
        """
        Fetch the raw message list of a session.

        Returns the ``messages`` value unvalidated so the caller can tell a
        corrupted list apart from a transport failure.
        """
        pass

    @abstractmethod
    async def create_session(self, request: CreateSessionRequest) -> ChatSession:
        pass

    @abstractmethod
    async def rename_session(self, session_id: str, name: str) -> ChatSession:
        pass

    @abstractmethod
    async def delete_session(self, session_id: str) -> None:
        pass

    async def aclose(self) -> None:
        """Release pooled connections, if any."""
        return None
