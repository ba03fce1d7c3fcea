"""
Chat Message Models - Defines the entries of a session's message log.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field


MessageRole = Literal["user", "assistant"]


class Message(BaseModel):
    """One entry in the message log."""
    model_config = ConfigDict(extra="ignore")

    id: str
    role: MessageRole
    content: str = ""  # only changes while its stream is active
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    persona_snapshot: Optional[Dict[str, Any]] = None

    def to_wire(self) -> Dict[str, Any]:
        """Serialize for the backend request body."""
        return self.model_dump(mode="json", exclude_none=True)
