"""Models module."""

from .chat import Message, MessageRole
from .session import ChatSession, SessionList
from .streaming import ConnectionStatus, StreamingState

__all__ = [
    'Message', 'MessageRole',
    'ChatSession', 'SessionList',
    'ConnectionStatus', 'StreamingState',
]
