"""
Outbound request assembly for streaming chat completions.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence

from .exceptions import ConfigurationError
from .models import (
    DEFAULT_PROVIDERS,
    DEFAULT_TEMPERATURE,
    CompletionRequest,
    ConversationMessage,
    MessageRole,
    ProviderConfig,
    ProviderType,
)

MessageLike = ConversationMessage | Mapping[str, str]


def resolve_provider(provider: str | ProviderType) -> ProviderType:
    """Map a provider selector onto a known ProviderType."""
    if isinstance(provider, ProviderType):
        return provider
    try:
        return ProviderType(str(provider).strip().lower())
    except ValueError as e:
        raise ConfigurationError(
            f"Unknown provider '{provider}'", provider=str(provider)
        ) from e


def to_conversation_message(message: MessageLike) -> ConversationMessage:
    """Normalize a message mapping into a ConversationMessage."""
    if isinstance(message, ConversationMessage):
        return message
    try:
        role = MessageRole(message["role"])
    except (KeyError, ValueError) as e:
        raise ConfigurationError(f"Invalid message role in {dict(message)!r}") from e
    content = message.get("content", "")
    if not isinstance(content, str):
        raise ConfigurationError(
            f"Message content must be a string in {dict(message)!r}"
        )
    return ConversationMessage(role=role, content=content)


def build_completion_request(
    api_key: str,
    provider: str | ProviderType,
    model: str,
    messages: Sequence[MessageLike],
    system_prompt: str | None = None,
    providers: Mapping[ProviderType, ProviderConfig] | None = None,
) -> CompletionRequest:
    """
    Build the streaming completion request for one invocation.

    A non-empty system_prompt is prepended as a system message; otherwise
    the transcript is sent unmodified. No I/O happens here.

    Raises:
        ConfigurationError: unknown provider, missing API key or model.
    """
    provider_type = resolve_provider(provider)
    provider_table = providers or DEFAULT_PROVIDERS
    provider_config = provider_table.get(provider_type)
    if provider_config is None:
        raise ConfigurationError(
            f"Provider '{provider_type.value}' is not configured",
            provider=provider_type.value,
            model=model,
        )

    if not api_key or not api_key.strip():
        raise ConfigurationError(
            f"API key is missing for provider '{provider_type.value}'",
            provider=provider_type.value,
            model=model,
        )
    if not model or not model.strip():
        raise ConfigurationError(
            "Model identifier is missing", provider=provider_type.value
        )

    transcript = tuple(to_conversation_message(m) for m in messages)
    if system_prompt:
        transcript = (
            ConversationMessage(role=MessageRole.SYSTEM, content=system_prompt),
            *transcript,
        )

    headers = {
        "Content-Type": "application/json",
        "Authorization": f"Bearer {api_key}",
        **provider_config.headers,
    }

    return CompletionRequest(
        endpoint=provider_config.endpoint,
        headers=headers,
        model=model,
        messages=transcript,
        stream=True,
        temperature=DEFAULT_TEMPERATURE,
    )
