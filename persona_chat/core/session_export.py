"""
Session export and import.

Produces the JSON envelope and Markdown transcript offered as downloads,
and reads JSON envelopes and backend message lists back into models.
"""

import json
from datetime import datetime, timezone
from typing import Any, List, Optional, Sequence, Tuple

from pydantic import TypeAdapter, ValidationError

from ..models import ChatSession, Message
from .errors import CorruptedSessionData

EXPORT_VERSION = "1.0"

_message_list = TypeAdapter(List[Message])


def parse_message_list(raw: Any) -> List[Message]:
    """
    Validate a message list received from the backend or an export file.

    Raises:
        CorruptedSessionData: if ``raw`` is null, not a list, or holds invalid messages
    """
    if raw is None:
        raise CorruptedSessionData("Session message list is missing")
    if not isinstance(raw, list):
        raise CorruptedSessionData(
            f"Session message list has unexpected type {type(raw).__name__}"
        )
    try:
        return _message_list.validate_python(raw)
    except ValidationError as e:
        raise CorruptedSessionData(
            f"Session message list is malformed: {e.error_count()} invalid field(s)"
        ) from e


def export_json(
    session: ChatSession,
    messages: Sequence[Message],
    exported_at: Optional[datetime] = None,
) -> str:
    """Serialize a session and its log as a versioned JSON envelope."""
    exported_at = exported_at or datetime.now(timezone.utc)
    export_data = {
        "version": EXPORT_VERSION,
        "session": session.model_dump(mode="json"),
        "messages": [m.model_dump(mode="json") for m in messages],
        "exported_at": exported_at.isoformat(),
    }
    return json.dumps(export_data, indent=2, ensure_ascii=False)


def export_markdown(session: ChatSession, messages: Sequence[Message]) -> str:
    """Render a session as a Markdown transcript, one section per message."""
    lines = [
        f"# Chat Session: {session.name or 'Untitled'}",
        "",
        f"**Created:** {session.created_at.isoformat()}",
        f"**Messages:** {len(messages)}",
        "",
        "---",
        "",
    ]

    for message in messages:
        lines.append(f"## {'User' if message.role == 'user' else 'Assistant'}")
        lines.append("")
        lines.append(message.content)
        lines.append("")
        lines.append(f"*{message.timestamp.isoformat()}*")
        lines.append("")
        lines.append("---")
        lines.append("")

    return "\n".join(lines)


def parse_json_export(data: str) -> Tuple[ChatSession, List[Message]]:
    """
    Read a JSON export envelope.

    Raises:
        CorruptedSessionData: if the text is not an export envelope
    """
    try:
        payload = json.loads(data)
    except json.JSONDecodeError as e:
        raise CorruptedSessionData(f"Export is not valid JSON: {e.msg}") from e

    if not isinstance(payload, dict) or not payload.get("session") or "messages" not in payload:
        raise CorruptedSessionData("Invalid session data format")

    try:
        session = ChatSession.model_validate(payload["session"])
    except ValidationError as e:
        raise CorruptedSessionData("Exported session metadata is malformed") from e

    return session, parse_message_list(payload["messages"])
