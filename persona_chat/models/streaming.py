"""
Streaming State Models - Connection and in-flight reply state.
"""

from enum import Enum
from typing import Optional
from pydantic import BaseModel


class ConnectionStatus(str, Enum):
    """Transport state for the current exchange."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class StreamingState(BaseModel):
    """
    State of the assistant reply currently streaming, if any.

    ``is_streaming`` is False exactly when ``streaming_message_id`` is None,
    and then ``current_stream_content`` is empty.
    """
    is_streaming: bool = False
    streaming_message_id: Optional[str] = None
    current_stream_content: str = ""
    connection_status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    reconnect_attempts: int = 0
    last_error: Optional[str] = None
