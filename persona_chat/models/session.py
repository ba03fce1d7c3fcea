"""
Session Models - Defines structures for chat sessions.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional, List
from pydantic import BaseModel, ConfigDict, Field


class ChatSession(BaseModel):
    """Chat session metadata as returned by the backend."""
    model_config = ConfigDict(extra="ignore")

    id: str
    name: Optional[str] = None
    persona_id: Optional[str] = None
    persona_snapshot: Optional[Dict[str, Any]] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    message_count: int = 0


class SessionList(BaseModel):
    """List of session metadata."""
    sessions: List[ChatSession] = Field(default_factory=list)
