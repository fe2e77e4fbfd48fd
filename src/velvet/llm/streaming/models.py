"""
Streaming-specific dataclasses.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class StreamState(Enum):
    """Lifecycle of a single completion invocation."""
    IDLE = "idle"
    REQUEST_SENT = "request_sent"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class StreamFrame:
    """One data line from the SSE stream, prefix removed."""
    raw_payload: str
    terminal: bool = False


@dataclass
class AccumulatorState:
    """Mutable state for delta accumulation within one invocation."""
    content: str = ""
    frame_count: int = 0
    delta_count: int = 0
    malformed_count: int = 0

    def append(self, fragment: str) -> str:
        """Append a delta and return the cumulative snapshot."""
        self.content += fragment
        self.delta_count += 1
        return self.content


@dataclass(frozen=True)
class CompletionResult:
    """Terminal outcome of one invocation."""
    state: StreamState
    text: str = ""
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.state is StreamState.COMPLETED
