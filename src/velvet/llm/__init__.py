"""
Streaming chat completion integration.

This package provides:
- Request assembly for OpenAI and OpenRouter chat completions
- Incremental SSE decoding and delta accumulation
- A callback-based streaming client with exactly-once terminal callbacks
"""

from __future__ import annotations

from .client import StreamingCompletionClient, stream_completion
from .exceptions import (
    ConfigurationError,
    LLMError,
    RemoteRejectionError,
    StreamingError,
    TransportError,
)
from .models import (
    CompletionRequest,
    ConversationMessage,
    MessageRole,
    ProviderConfig,
    ProviderType,
)
from .request_builder import build_completion_request
from .streaming.models import CompletionResult, StreamState

__all__ = [
    "CompletionRequest",
    "CompletionResult",
    # Exceptions
    "ConfigurationError",
    "ConversationMessage",
    "LLMError",
    "MessageRole",
    "ProviderConfig",
    "ProviderType",
    "RemoteRejectionError",
    "StreamState",
    # Client
    "StreamingCompletionClient",
    "StreamingError",
    "TransportError",
    "build_completion_request",
    "stream_completion",
]
