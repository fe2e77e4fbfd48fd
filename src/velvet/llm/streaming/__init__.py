"""
Streaming functionality for LLM clients.

- Incremental byte-to-line decoding
- SSE data frame parsing
- Delta accumulation
"""

from __future__ import annotations

from .models import AccumulatorState, CompletionResult, StreamFrame, StreamState
from .parser import DeltaAccumulator, LineDecoder, StreamingParser

__all__ = [
    "AccumulatorState",
    "CompletionResult",
    "DeltaAccumulator",
    "LineDecoder",
    "StreamFrame",
    "StreamState",
    "StreamingParser",
]
