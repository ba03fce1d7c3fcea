"""Transport module - provides the backend interface used by the session store."""

from .base import ChatTransport, ChatRequest, CreateSessionRequest, ChunkStream
from .http_transport import HttpChatTransport
from .factory import create_transport

__all__ = [
    'ChatTransport',
    'ChatRequest',
    'CreateSessionRequest',
    'ChunkStream',
    'HttpChatTransport',
    'create_transport',
]
