"""
SSE line decoding and delta accumulation for streaming chat completions.

The byte stream is reassembled into complete lines (LineDecoder), lines are
filtered into data frames (StreamingParser) and each frame's text delta is
folded into the running reply (DeltaAccumulator).
"""

from __future__ import annotations

import codecs
import json
from collections.abc import AsyncGenerator, AsyncIterable
from typing import Any

import structlog

from .models import AccumulatorState, StreamFrame

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"

logger = structlog.get_logger(__name__)


class LineDecoder:
    """
    Incremental bytes-to-lines decoder.

    Keeps one text buffer across reads. A line is only emitted once its
    terminator has arrived; the trailing partial line stays buffered.
    Multi-byte UTF-8 sequences split across reads are carried forward.
    """

    def __init__(self, encoding: str = "utf-8"):
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> list[str]:
        """Append a chunk and return every line it completed."""
        self._buffer += self._decoder.decode(chunk)
        *lines, self._buffer = self._buffer.split("\n")
        return [line.removesuffix("\r") for line in lines]

    def flush(self) -> str:
        """Drain the decoder at end of stream and return the partial line."""
        remainder = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        return remainder.removesuffix("\r")


class StreamingParser:
    """SSE data-line parser."""

    def __init__(self, flush_trailing_line: bool = True):
        self.flush_trailing_line = flush_trailing_line
        self.stats = {
            'lines': 0,
            'frames': 0,
            'ignored_lines': 0,
            'discarded_tail_bytes': 0,
        }

    def parse_line(self, line: str) -> StreamFrame | None:
        """
        Turn one complete line into a frame.

        Blank lines and lines without the data prefix yield None. The
        [DONE] sentinel yields a terminal frame.
        """
        self.stats['lines'] += 1
        stripped = line.strip()
        if not stripped or not line.startswith(DATA_PREFIX):
            self.stats['ignored_lines'] += 1
            return None

        payload = line[len(DATA_PREFIX):]
        self.stats['frames'] += 1
        if payload.strip() == DONE_SENTINEL:
            return StreamFrame(raw_payload=DONE_SENTINEL, terminal=True)
        return StreamFrame(raw_payload=payload)

    async def iter_frames(
        self, byte_chunks: AsyncIterable[bytes]
    ) -> AsyncGenerator[StreamFrame]:
        """Yield frames from an async iterator of raw byte chunks."""
        decoder = LineDecoder()
        async for chunk in byte_chunks:
            for line in decoder.feed(chunk):
                frame = self.parse_line(line)
                if frame is not None:
                    yield frame

        tail = decoder.flush()
        if not tail:
            return
        if not self.flush_trailing_line:
            self.stats['discarded_tail_bytes'] += len(tail.encode("utf-8"))
            logger.debug("Discarding unterminated trailing line", tail=tail[:80])
            return
        frame = self.parse_line(tail)
        if frame is not None:
            yield frame

    def get_stats(self) -> dict[str, int]:
        """Get parser statistics for monitoring."""
        return self.stats.copy()


class DeltaAccumulator:
    """Folds frame deltas into the cumulative reply text."""

    def __init__(self, log: Any = None):
        self.state = AccumulatorState()
        self._log = log or logger

    @property
    def text(self) -> str:
        return self.state.content

    def process_frame(self, frame: StreamFrame) -> str | None:
        """
        Apply one frame.

        Returns the cumulative text when the frame carried a non-empty
        delta, otherwise None. Malformed payloads are logged and skipped.
        """
        if frame.terminal:
            return None
        self.state.frame_count += 1

        try:
            data = json.loads(frame.raw_payload)
            content = self._extract_content(data)
        except (json.JSONDecodeError, TypeError, KeyError, IndexError) as e:
            self.state.malformed_count += 1
            self._log.warning(
                "Skipping malformed stream frame",
                error_type=type(e).__name__,
                error_message=str(e),
                raw_payload=frame.raw_payload[:200],
            )
            return None

        if not content:
            return None
        return self.state.append(content)

    @staticmethod
    def _extract_content(data: Any) -> str | None:
        """Read choices[0].delta.content; wrong shapes raise TypeError."""
        if not isinstance(data, dict):
            raise TypeError(f"Expected JSON object, got {type(data).__name__}")
        choices = data["choices"]
        if not isinstance(choices, list):
            raise TypeError("'choices' is not a list")
        if not choices:
            return None
        choice = choices[0]
        if not isinstance(choice, dict):
            raise TypeError("choice is not an object")
        delta = choice.get("delta") or {}
        if not isinstance(delta, dict):
            raise TypeError("delta is not an object")
        content = delta.get("content")
        return content if isinstance(content, str) else None
