"""
Server-sent event decoding.
"""

from .decoder import DONE_SENTINEL, StreamDecoder, StreamEvent, decode_stream

__all__ = [
    "DONE_SENTINEL",
    "StreamDecoder",
    "StreamEvent",
    "decode_stream",
]
