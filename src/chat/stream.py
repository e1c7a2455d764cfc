"""Line-buffered ingestion of streamed generation responses.

The wire format is newline-delimited ``data: <json>`` frames closed by a
literal ``data: [DONE]`` line. The parser is transport-agnostic: it is fed
raw byte (or text) chunks of any size and only ever parses complete lines,
so fragment order and content never depend on where the network split the
stream.
"""

from __future__ import annotations

import codecs
import json
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

from pydantic import ValidationError

from src.chat.errors import ApiError, GenerationCancelled
from src.chat.models import StreamFrame

if TYPE_CHECKING:
    from collections.abc import AsyncIterable

logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "
DONE_MARKER = "[DONE]"


class LineBuffer:
    """Held buffer + split-on-newline + carry the trailing partial line."""

    def __init__(self) -> None:
        self._buffer = ""

    @property
    def pending(self) -> str:
        return self._buffer

    def feed(self, text: str) -> list[str]:
        """Add text and return every line that is now complete."""
        self._buffer += text
        *lines, self._buffer = self._buffer.split("\n")
        return [line.removesuffix("\r") for line in lines]

    def flush(self) -> list[str]:
        """Return the held partial line once the transport has ended."""
        rest, self._buffer = self._buffer.removesuffix("\r"), ""
        return [rest] if rest else []

    def clear(self) -> None:
        self._buffer = ""


class FrameParser:
    """Turns raw chunks into ordered ``StreamFrame`` objects.

    After the end marker the parser is ``ended`` and ignores further input.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._lines = LineBuffer()
        self.ended = False

    def feed(self, chunk: bytes | str) -> list[StreamFrame]:
        if self.ended:
            return []
        text = self._decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        return self._parse_lines(self._lines.feed(text))

    def finish(self) -> list[StreamFrame]:
        """Process whatever is left once the transport reports EOF."""
        if self.ended:
            return []
        tail = self._decoder.decode(b"", final=True)
        lines = self._lines.feed(tail) + self._lines.flush()
        return self._parse_lines(lines)

    def discard(self) -> None:
        """Drop buffered data (used on cancellation)."""
        self._lines.clear()
        self._decoder.reset()

    def _parse_lines(self, lines: list[str]) -> list[StreamFrame]:
        frames: list[StreamFrame] = []
        for line in lines:
            if self.ended:
                break
            frame = self._parse_line(line)
            if frame is not None:
                frames.append(frame)
        return frames

    def _parse_line(self, line: str) -> StreamFrame | None:
        if not line.startswith(DATA_PREFIX):
            return None
        data = line[len(DATA_PREFIX) :]
        if data.strip() == DONE_MARKER:
            self.ended = True
            return None
        try:
            payload = json.loads(data)
            if not isinstance(payload, dict):
                logger.debug("Skipping non-object frame: %s", data[:80])
                return None
            return StreamFrame.model_validate(payload)
        except (json.JSONDecodeError, ValidationError):
            logger.debug("Skipping malformed frame: %s", data[:80])
            return None


class CancelToken:
    """Cooperative cancellation handle owned by one streaming attempt."""

    def __init__(self) -> None:
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise GenerationCancelled


class StreamSink(Protocol):
    """Receives ordered updates for the draft assistant message."""

    def on_content(self, full_content: str) -> None:
        """Called with the whole accumulated draft after each content fragment."""
        ...

    def on_metadata(self, fragment: dict[str, Any]) -> None:
        """Called with each metadata fragment to shallow-merge."""
        ...


@dataclass
class StreamResult:
    """Summary of a stream that ran to its end."""

    content: str = ""
    tokens_used: int | None = None
    ended_by_marker: bool = False
    extras: dict[str, Any] = field(default_factory=dict)


async def ingest_stream(
    chunks: AsyncIterable[bytes | str],
    sink: StreamSink,
    token: CancelToken,
) -> StreamResult:
    """Consume a chunked response and push ordered updates into ``sink``.

    Raises ``GenerationCancelled`` as soon as the token is observed (the
    draft already pushed stays in place) and ``ApiError`` when the server
    reports a failure in-band.
    """
    parser = FrameParser()
    result = StreamResult()

    def apply(frames: list[StreamFrame]) -> None:
        for frame in frames:
            if token.cancelled:
                parser.discard()
                raise GenerationCancelled
            if frame.error:
                raise ApiError("GENERATION_FAILED", frame.error)
            if frame.content:
                result.content += frame.content
                sink.on_content(result.content)
            if frame.metadata:
                sink.on_metadata(frame.metadata)
            if frame.done:
                result.tokens_used = frame.tokens_used
                result.extras.update(frame.model_extra or {})

    async for chunk in chunks:
        if token.cancelled:
            parser.discard()
            raise GenerationCancelled
        apply(parser.feed(chunk))
        if parser.ended:
            result.ended_by_marker = True
            break
    else:
        token.raise_if_cancelled()
        apply(parser.finish())
        result.ended_by_marker = parser.ended

    return result
