"""Incremental decoder for the NDJSON chat event stream.

The backend answers a chat request with one JSON object per line:

- ``{"token": "...", "done": false, "model": "...", "total_tokens": 12}``
  is a text token. Objects without a ``type`` (or with an unknown one) are
  treated as text tokens.
- ``{"type": "tool_call", "tool_use_id": ..., "tool_name": ..., "tool_input": {...}}``
- ``{"type": "tool_result", "tool_use_id": ..., "result": ..., "is_error": ...}``

Chunks from the transport can split a line (or a multi-byte character)
anywhere, so the decoder keeps the trailing fragment until the next newline
arrives. Lines that are not valid JSON objects are dropped.
"""

import codecs
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterable, AsyncIterator, Optional, Union

from .core import new_id

logger = logging.getLogger(__name__)


@dataclass
class TokenEvent:
    token: str
    done: bool = False
    model: Optional[str] = None
    total_tokens: Optional[int] = None


@dataclass
class ToolCallEvent:
    correlation_id: str
    tool_name: str
    tool_input: dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolResultEvent:
    correlation_id: str
    result: Optional[str] = None
    is_error: Optional[bool] = None


StreamEvent = Union[TokenEvent, ToolCallEvent, ToolResultEvent]


def _text(value: Any) -> str:
    """Coerce a scalar wire value to text; null and containers become ""."""
    if value is None or isinstance(value, (dict, list)):
        return ""
    return value if isinstance(value, str) else str(value)


def parse_event(data: dict) -> StreamEvent:
    """Convert one decoded wire object into a typed event."""
    kind = data.get("type")

    if kind == "tool_call":
        tool_input = data.get("tool_input")
        if not isinstance(tool_input, dict):
            if tool_input is not None:
                logger.debug("Ignoring non-object tool_input: %r", tool_input)
            tool_input = {}
        return ToolCallEvent(
            correlation_id=_text(data.get("tool_use_id")) or new_id(),
            tool_name=_text(data.get("tool_name")) or "unknown",
            tool_input=tool_input,
        )

    if kind == "tool_result":
        result = data.get("result")
        if result is not None and not isinstance(result, str):
            result = json.dumps(result, ensure_ascii=False)
        is_error = data.get("is_error")
        return ToolResultEvent(
            correlation_id=_text(data.get("tool_use_id")),
            result=result,
            is_error=bool(is_error) if is_error is not None else None,
        )

    total = data.get("total_tokens")
    return TokenEvent(
        token=_text(data.get("token")),
        done=bool(data.get("done", False)),
        model=_text(data.get("model")) or None,
        total_tokens=total if isinstance(total, int) else None,
    )


class NdjsonDecoder:
    """Framing state for one response body.

    ``feed`` accepts raw bytes and returns the events completed by them;
    ``close`` flushes whatever is left once the body has ended.
    """

    def __init__(self):
        self._text = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> list[StreamEvent]:
        self._buffer += self._text.decode(chunk)
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return self._parse_lines(lines)

    def close(self) -> list[StreamEvent]:
        self._buffer += self._text.decode(b"", final=True)
        rest, self._buffer = self._buffer, ""
        return self._parse_lines([rest])

    def _parse_lines(self, lines: list[str]) -> list[StreamEvent]:
        events = []
        for line in lines:
            line = line.strip()
            if not line:
                continue
            try:
                data = json.loads(line)
            except json.JSONDecodeError:
                logger.debug("Skipping unparseable stream line: %r", line[:200])
                continue
            if not isinstance(data, dict):
                logger.debug("Skipping non-object stream line: %r", line[:200])
                continue
            events.append(parse_event(data))
        return events


async def iter_events(chunks: AsyncIterable[bytes]) -> AsyncIterator[StreamEvent]:
    """Yield typed events from an async source of response body chunks.

    Errors raised by the source (including cancellation) propagate to the
    consumer; no further events are produced after them.
    """
    decoder = NdjsonDecoder()
    async for chunk in chunks:
        for event in decoder.feed(chunk):
            yield event
    for event in decoder.close():
        yield event
