"""Stream module - decodes the chunked chat reply transport."""

from .decoder import (
    StreamDecoder, StreamEnvelope, ParseFailure, StreamEvent,
    Delta, Final, ParseSkip, StreamError, Done,
    decode_envelope, decode_stream,
)

__all__ = [
    'StreamDecoder', 'StreamEnvelope', 'ParseFailure', 'StreamEvent',
    'Delta', 'Final', 'ParseSkip', 'StreamError', 'Done',
    'decode_envelope', 'decode_stream',
]
