"""
httpx event hooks for logging backend requests and responses.

Hooks never consume a successful response body, so streamed replies pass
through untouched. Error bodies are read to report the failure reason.
Sensitive headers and fields are masked before logging.
"""

import json
import logging
import time
from typing import Dict, Optional

import httpx

from ..core.logging_config import mask_sensitive, truncate_for_log

logger = logging.getLogger(__name__)


REASON_KEYS = ("detail", "message", "error", "reason")
REASON_MAX_LENGTH = 500


def _body_for_log(text: str, max_length: int = 5000) -> str:
    """Mask credentials in a JSON body; plain text bodies are only shortened."""
    try:
        body = mask_sensitive(json.loads(text))
    except json.JSONDecodeError:
        return truncate_for_log(text, max_length=max_length)
    return truncate_for_log(json.dumps(body, ensure_ascii=False), max_length=max_length)


def extract_error_reason(response_text: str) -> Optional[str]:
    """
    Pick a short failure reason out of an error response body.

    Prefers the backend's ``detail``/``message``/``error``/``reason`` field,
    then the whole JSON body, then the raw text. Empty bodies give None.
    """
    if not response_text:
        return None
    try:
        body = json.loads(response_text)
    except json.JSONDecodeError:
        return truncate_for_log(response_text, max_length=REASON_MAX_LENGTH)

    if isinstance(body, dict):
        reason = next((body[k] for k in REASON_KEYS if body.get(k)), None)
        if reason is not None:
            return str(reason)
    if not body:
        return None
    return truncate_for_log(json.dumps(body, ensure_ascii=False), max_length=REASON_MAX_LENGTH)


def _level_for(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


class HttpLoggingHooks:
    """Pair of httpx event hooks that log each backend call and its outcome."""

    def __init__(self):
        self._started: Dict[int, float] = {}

    def as_event_hooks(self) -> dict:
        return {"request": [self.on_request], "response": [self.on_response]}

    async def on_request(self, request: httpx.Request) -> None:
        self._started[id(request)] = time.perf_counter()
        logger.info(
            f"Request started: {request.method} {request.url.path}",
            extra={"extra_fields": {
                "method": request.method,
                "path": request.url.path,
                "headers": mask_sensitive(dict(request.headers)),
            }}
        )
        # Streaming requests have no buffered body to show
        if logger.isEnabledFor(logging.DEBUG) and isinstance(request.stream, httpx.ByteStream) and request.content:
            logger.debug(f"Request body: {_body_for_log(request.content.decode('utf-8', errors='ignore'))}")

    async def on_response(self, response: httpx.Response) -> None:
        request = response.request
        started = self._started.pop(id(request), None)
        duration_ms = (time.perf_counter() - started) * 1000 if started is not None else 0.0

        error_reason = None
        if response.is_error:
            # Error bodies are small; reading here leaves them cached for the caller
            await response.aread()
            error_reason = extract_error_reason(response.text)

        summary = f"{request.method} {request.url.path} - {response.status_code} ({duration_ms:.2f}ms)"
        if error_reason:
            summary += f" | error_reason={error_reason}"

        logger.log(
            _level_for(response.status_code),
            f"Request completed: {summary}",
            extra={"extra_fields": {
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": round(duration_ms, 2),
                "content_type": response.headers.get("content-type"),
                "error_reason": error_reason,
            }}
        )
