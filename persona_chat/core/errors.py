"""
Error taxonomy for the chat session runtime.

Malformed stream lines are not errors here: the decoder returns them as
``ParseFailure`` values and skips them.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Coarse failure class used to pick what to tell the user."""
    NETWORK = "network"
    VALIDATION = "validation"
    SERVER = "server"
    CLIENT = "client"
    UNKNOWN = "unknown"


ERROR_MESSAGES = {
    ErrorKind.NETWORK: "Network connection failed. Please check your internet connection and try again.",
    ErrorKind.VALIDATION: "Please check your input and try again.",
    ErrorKind.SERVER: "Server error occurred. Please try again in a moment.",
    ErrorKind.CLIENT: "Request failed. Please check your input and try again.",
}

RETRY_RECOMMENDATIONS = {
    ErrorKind.NETWORK: "Check your connection and retry",
    ErrorKind.VALIDATION: "Fix the input and try again",
    ErrorKind.SERVER: "Wait a moment and retry",
    ErrorKind.CLIENT: "Check your request and retry",
    ErrorKind.UNKNOWN: "Try again or start a new session",
}

# Client errors that are worth retrying as-is
RETRYABLE_CLIENT_STATUSES = (408, 429)


class ChatRuntimeError(Exception):
    """Base class for every error surfaced by the session runtime."""

    pass


class NoActiveSession(ChatRuntimeError):
    """Raised when an operation needs a current session and there is none."""

    def __init__(self, message: str = "No active session"):
        super().__init__(message)


class TransportError(ChatRuntimeError):
    """
    Raised when a backend request or stream read fails.

    ``kind`` comes from the HTTP status when there is one: 5xx is a server
    error and 4xx a client error. Without a status the request never got an
    answer, so it is a network error unless the raiser says otherwise.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        kind: Optional[ErrorKind] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self._kind = kind

    @property
    def kind(self) -> ErrorKind:
        if self._kind is not None:
            return self._kind
        if self.status_code is None:
            return ErrorKind.NETWORK
        if self.status_code >= 500:
            return ErrorKind.SERVER
        if self.status_code >= 400:
            return ErrorKind.CLIENT
        return ErrorKind.UNKNOWN

    @property
    def retryable(self) -> bool:
        if self.kind in (ErrorKind.NETWORK, ErrorKind.SERVER):
            return True
        return self.status_code in RETRYABLE_CLIENT_STATUSES


class StreamSignaledError(TransportError):
    """Raised when the backend sends an explicit error envelope mid-stream."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message, status_code, kind=ErrorKind.SERVER)


class SessionNotFound(ChatRuntimeError):
    """Raised when a session id is unknown to the backend or the session list."""

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class MessageNotFound(ChatRuntimeError):
    """Raised when a message id does not name a suitable message in the log."""

    def __init__(self, message_id: str, reason: str = "not in the message log"):
        super().__init__(f"Message {message_id} {reason}")
        self.message_id = message_id


class NoPriorUserMessage(ChatRuntimeError):
    """Raised when regeneration finds no user message before the target."""

    def __init__(self, message_id: str):
        super().__init__(f"No user message found before {message_id} for regeneration")
        self.message_id = message_id


class CorruptedSessionData(ChatRuntimeError):
    """Raised when a loaded or imported session has a null or malformed message list."""

    pass


class StreamInProgress(ChatRuntimeError):
    """Raised when an operation conflicts with the stream currently in flight."""

    def __init__(self, message_id: Optional[str] = None):
        detail = f" (streaming message {message_id})" if message_id else ""
        super().__init__(f"A reply is already streaming{detail}")
        self.message_id = message_id


class RetryExhausted(ChatRuntimeError):
    """Raised when a backoff controller has no retries left."""

    def __init__(self, attempts: int):
        super().__init__(f"Retry limit reached after {attempts} attempts")
        self.attempts = attempts


class NothingToRetry(ChatRuntimeError):
    """Raised when retry() is called with no failed operation recorded."""

    def __init__(self):
        super().__init__("No failed operation to retry")


def classify_error(error: BaseException) -> ErrorKind:
    """Map any runtime error to the kind the user is told about."""
    if isinstance(error, TransportError):
        return error.kind
    if isinstance(error, CorruptedSessionData):
        return ErrorKind.VALIDATION
    if isinstance(error, (SessionNotFound, MessageNotFound, NoActiveSession)):
        return ErrorKind.CLIENT
    return ErrorKind.UNKNOWN


def get_error_message(error: BaseException) -> str:
    """User-facing text for an error; unknown errors keep their own message."""
    kind = classify_error(error)
    if kind in ERROR_MESSAGES:
        return ERROR_MESSAGES[kind]
    return str(error) or "An unexpected error occurred."


def get_retry_recommendation(error: BaseException) -> str:
    return RETRY_RECOMMENDATIONS[classify_error(error)]
