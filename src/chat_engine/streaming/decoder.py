"""
Incremental decoder for server-sent event streams.

Chunks may split anywhere, including inside a line or inside a multibyte
UTF-8 sequence. Only complete lines are interpreted, so any split of a
well-formed stream produces the same ordered events as decoding it whole.

A data payload that does not parse as JSON is kept and joined with the
following payloads until the join parses. Whatever is still unparsed when the
stream ends is reported as a DecodeError rather than dropped.
"""

import codecs
import json
from dataclasses import dataclass
from typing import Any, AsyncIterable, AsyncIterator

import structlog

from ..errors import DecodeError
from ..llm.base import CancelToken

logger = structlog.get_logger()

DONE_SENTINEL = "[DONE]"

_UNPARSED = object()


@dataclass(frozen=True)
class StreamEvent:
    """One decoded protocol line."""

    delta_content: str | None = None
    tool_call_fragment: str | None = None
    finish_reason: str | None = None

    @classmethod
    def from_payload(cls, payload: Any) -> "StreamEvent":
        """Map an OpenAI-compatible chunk to an event."""
        if not isinstance(payload, dict):
            return cls()

        choices = payload.get("choices") or []
        if not choices or not isinstance(choices[0], dict):
            return cls()

        choice = choices[0]
        delta = choice.get("delta") or {}

        content = delta.get("content")
        fragment = delta.get("tool_call_fragment")
        if fragment is not None and not isinstance(fragment, str):
            fragment = json.dumps(fragment)

        return cls(
            delta_content=content if content else None,
            tool_call_fragment=fragment if fragment else None,
            finish_reason=choice.get("finish_reason"),
        )


class StreamDecoder:
    """Turns raw chunks into StreamEvents. One instance per stream."""

    def __init__(self) -> None:
        self._utf8 = codecs.getincrementaldecoder("utf-8")()
        self._line_buffer = ""
        self._pending: str | None = None
        self._unresolved: list[str] = []
        self._done = False
        self._closed = False

    @property
    def done(self) -> bool:
        """True once the [DONE] sentinel has been seen."""
        return self._done

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Stop emitting events (cancellation). Buffers are discarded."""
        self._closed = True
        self._line_buffer = ""
        self._pending = None
        self._unresolved.clear()

    def feed(self, chunk: bytes | str) -> list[StreamEvent]:
        """Consume a chunk and return the events for every complete line in it."""
        if self._closed or self._done:
            return []

        if isinstance(chunk, bytes):
            try:
                text = self._utf8.decode(chunk)
            except UnicodeDecodeError as e:
                raise DecodeError(f"Stream is not valid UTF-8: {e}") from e
        else:
            text = chunk

        self._line_buffer += text
        *lines, self._line_buffer = self._line_buffer.split("\n")

        events: list[StreamEvent] = []
        for line in lines:
            event = self._process_line(line.rstrip("\r"))
            if event is not None:
                events.append(event)
            if self._done:
                self._line_buffer = ""
                break
        return events

    def finish(self) -> list[StreamEvent]:
        """Signal end of input. Flushes a trailing unterminated line.

        Raises DecodeError if anything is left that never parsed.
        """
        if self._closed:
            return []

        events: list[StreamEvent] = []
        if not self._done:
            try:
                tail = self._utf8.decode(b"", final=True)
            except UnicodeDecodeError as e:
                raise DecodeError(f"Stream ended inside a UTF-8 sequence: {e}") from e
            self._line_buffer += tail
            if self._line_buffer:
                event = self._process_line(self._line_buffer.rstrip("\r"))
                self._line_buffer = ""
                if event is not None:
                    events.append(event)

        leftovers = list(self._unresolved)
        if self._pending is not None:
            leftovers.append(self._pending)
        if leftovers:
            logger.warning("Stream ended with unparsed data", fragments=len(leftovers))
            raise DecodeError(
                f"Stream ended with {len(leftovers)} unparsed data fragment(s)",
                buffered=leftovers,
            )
        return events

    def decode_all(self, chunks: list[bytes | str]) -> list[StreamEvent]:
        """Decode a complete stream held in memory."""
        events: list[StreamEvent] = []
        for chunk in chunks:
            events.extend(self.feed(chunk))
        events.extend(self.finish())
        return events

    def _process_line(self, line: str) -> StreamEvent | None:
        if not line or line.startswith(":"):
            return None

        field_name, sep, value = line.partition(":")
        if not sep or field_name != "data":
            # event:, id:, retry: and anything unknown carry nothing we use
            return None
        if value.startswith(" "):
            value = value[1:]
        if not value.strip():
            return None

        if value.strip() == DONE_SENTINEL and self._pending is None:
            self._done = True
            return None

        return self._process_data(value)

    def _process_data(self, data: str) -> StreamEvent | None:
        if self._pending is not None:
            joined = self._pending + data
            payload = self._try_parse(joined)
            if payload is not _UNPARSED:
                self._pending = None
                return self._emit(payload)

            payload = self._try_parse(data)
            if payload is not _UNPARSED:
                self._unresolved.append(self._pending)
                self._pending = None
                return self._emit(payload)

            if data.strip() == DONE_SENTINEL:
                self._done = True
                return None

            self._pending = joined
            return None

        payload = self._try_parse(data)
        if payload is _UNPARSED:
            self._pending = data
            return None
        return self._emit(payload)

    def _emit(self, payload: Any) -> StreamEvent:
        return StreamEvent.from_payload(payload)

    @staticmethod
    def _try_parse(data: str) -> Any:
        try:
            return json.loads(data)
        except ValueError:
            return _UNPARSED


async def decode_stream(
    chunks: AsyncIterable[bytes | str],
    cancel_token: CancelToken | None = None,
    decoder: StreamDecoder | None = None,
) -> AsyncIterator[StreamEvent]:
    """Lazily decode an async chunk source.

    Stops without further events once the cancel token fires.
    """
    decoder = decoder or StreamDecoder()
    async for chunk in chunks:
        if cancel_token is not None and cancel_token.cancelled:
            decoder.close()
            return
        for event in decoder.feed(chunk):
            if cancel_token is not None and cancel_token.cancelled:
                decoder.close()
                return
            yield event
        if decoder.done:
            break
    # A transport that stopped on the token leaves a partial tail behind
    if cancel_token is not None and cancel_token.cancelled:
        decoder.close()
        return
    for event in decoder.finish():
        yield event

