"""
Core LLM dataclasses for chat completion requests.

This module provides the foundational dataclasses for LLM interactions:
- Provider types and their endpoint configuration
- Message structures
- The outbound completion request
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

DEFAULT_TEMPERATURE = 0.7


class ProviderType(Enum):
    """Supported LLM providers."""
    OPENAI = "openai"
    OPENROUTER = "openrouter"


class MessageRole(Enum):
    """OpenAI-compatible message roles."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class ConversationMessage:
    """OpenAI-compatible message structure."""
    role: MessageRole
    content: str

    def to_dict(self) -> dict[str, str]:
        """Wire form of the message."""
        return {"role": self.role.value, "content": self.content}


@dataclass(frozen=True)
class ProviderConfig:
    """Endpoint and auxiliary headers for one provider dialect."""
    provider: ProviderType
    endpoint: str
    headers: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class CompletionRequest:
    """Complete outbound streaming completion request."""
    endpoint: str
    headers: Mapping[str, str]
    model: str
    messages: tuple[ConversationMessage, ...]
    stream: bool = True
    temperature: float = DEFAULT_TEMPERATURE

    def payload(self) -> dict[str, Any]:
        """JSON body sent to the provider."""
        return {
            "model": self.model,
            "messages": [message.to_dict() for message in self.messages],
            "stream": self.stream,
            "temperature": self.temperature,
        }


DEFAULT_PROVIDERS: dict[ProviderType, ProviderConfig] = {
    ProviderType.OPENAI: ProviderConfig(
        provider=ProviderType.OPENAI,
        endpoint="https://api.openai.com/v1/chat/completions",
    ),
    ProviderType.OPENROUTER: ProviderConfig(
        provider=ProviderType.OPENROUTER,
        endpoint="https://openrouter.ai/api/v1/chat/completions",
        headers={
            "HTTP-Referer": "https://velvet-app.com",
            "X-Title": "Velvet",
        },
    ),
}
