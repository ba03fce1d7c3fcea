"""
Stream Decoder - Turns chunked ``data: <json>`` transport text into reply events.

The backend sends lines of the form ``data: {"content": "..."}`` separated
by blank lines and closes with ``data: [DONE]``. Chunks carry no line
alignment, so the decoder keeps the unterminated tail between feeds.
"""

import codecs
import logging
from dataclasses import dataclass
from typing import AsyncGenerator, AsyncIterable, List, Optional, Union

from pydantic import BaseModel, ConfigDict, ValidationError

logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "
DONE_TOKEN = "[DONE]"


class StreamEnvelope(BaseModel):
    """JSON payload of one ``data:`` line."""
    model_config = ConfigDict(extra="ignore")

    content: Optional[str] = None
    done: Optional[bool] = None
    error: Optional[str] = None
    type: Optional[str] = None

    @property
    def is_completion(self) -> bool:
        return self.done is True or self.type == "done"


@dataclass(frozen=True)
class ParseFailure:
    """A ``data:`` payload that is not a valid envelope."""
    payload: str
    reason: str


@dataclass(frozen=True)
class Delta:
    """Content to append to the reply."""
    text: str


@dataclass(frozen=True)
class Final:
    """Server-computed full reply; replaces the accumulated content."""
    text: str


@dataclass(frozen=True)
class ParseSkip:
    """A line that was discarded; the stream continues."""
    line: str
    reason: str


@dataclass(frozen=True)
class StreamError:
    """The backend reported an error; the stream is over."""
    message: str


@dataclass(frozen=True)
class Done:
    """End of stream."""
    pass


StreamEvent = Union[Delta, Final, ParseSkip, StreamError, Done]


def decode_envelope(payload: str) -> Union[StreamEnvelope, ParseFailure]:
    """
    Decode one ``data:`` payload.

    Args:
        payload: Text after the ``data: `` prefix

    Returns:
        StreamEnvelope on success, ParseFailure otherwise (never raises)
    """
    try:
        return StreamEnvelope.model_validate_json(payload)
    except ValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        return ParseFailure(payload=payload, reason=first.get("msg", str(e)))


class StreamDecoder:
    """
    Incremental decoder for one response stream.

    Feed chunks as they arrive and call ``finish()`` at end of input.
    Once ``Done`` or ``StreamError`` has been emitted, further input is ignored.
    """

    def __init__(self):
        self._buffer = ""
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self.finished = False

    def feed(self, chunk: Union[str, bytes]) -> List[StreamEvent]:
        """Add a chunk and return the events for every completed line."""
        if self.finished:
            return []
        if isinstance(chunk, bytes):
            chunk = self._utf8.decode(chunk)
        self._buffer += chunk

        events: List[StreamEvent] = []
        while not self.finished and "\n" in self._buffer:
            line, self._buffer = self._buffer.split("\n", 1)
            events.extend(self._process_line(line))
        return events

    def finish(self) -> List[StreamEvent]:
        """Flush any unterminated last line at end of input."""
        if self.finished:
            return []
        tail = self._buffer + self._utf8.decode(b"", final=True)
        self._buffer = ""
        events = self._process_line(tail) if tail else []
        self.finished = True
        return events

    def _process_line(self, line: str) -> List[StreamEvent]:
        line = line.rstrip("\r")
        if not line.startswith(DATA_PREFIX):
            return []

        payload = line[len(DATA_PREFIX):]
        if payload.strip() == DONE_TOKEN:
            self.finished = True
            return [Done()]

        result = decode_envelope(payload)
        if isinstance(result, ParseFailure):
            logger.debug(f"Skipping malformed stream line: {result.reason}: {payload[:200]}")
            return [ParseSkip(line=line, reason=result.reason)]

        events: List[StreamEvent] = []
        if result.is_completion:
            if result.content:
                events.append(Final(result.content))
            if result.error is None:
                events.append(Done())
                self.finished = True
                return events
        elif result.content:
            events.append(Delta(result.content))

        if result.error is not None:
            events.append(StreamError(result.error))
            self.finished = True
        return events


async def decode_stream(
    chunks: AsyncIterable[Union[str, bytes]],
) -> AsyncGenerator[StreamEvent, None]:
    """
    Lazily decode an async sequence of chunks.

    Stops pulling chunks as soon as the stream is finished.

    Yields:
        StreamEvent: events in arrival order
    """
    decoder = StreamDecoder()
    async for chunk in chunks:
        for event in decoder.feed(chunk):
            yield event
        if decoder.finished:
            return
    for event in decoder.finish():
        yield event
