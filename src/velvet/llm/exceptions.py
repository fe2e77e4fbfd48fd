"""
Error handling for streaming completion operations.

Every invocation-fatal failure is represented by an LLMError subclass
carrying a human readable message plus provider context:
- Configuration errors raised before any network attempt
- Transport errors from the HTTP layer
- Protocol errors for unusable response bodies
- Remote rejections with the provider's status code
"""

from __future__ import annotations

from typing import Any

import httpx

from ..logging_utils import logger


class LLMError(Exception):
    """Base LLM error with rich context."""

    def __init__(
        self,
        message: str,
        provider: str = "unknown",
        model: str = "unknown",
        status_code: int | None = None,
        response_data: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.model = model
        self.status_code = status_code
        self.response_data = response_data or {}


class ConfigurationError(LLMError):
    """Invocation could not be built (unknown provider, missing key)."""
    pass


class TransportError(LLMError):
    """The HTTP call failed or the connection dropped mid-stream."""
    pass


class StreamingError(LLMError):
    """Successful status but no readable streaming body."""
    pass


class RemoteRejectionError(LLMError):
    """Provider answered with a non-success HTTP status."""
    pass


class LLMErrorHandler:
    """Maps arbitrary exceptions onto the LLM error taxonomy."""

    @staticmethod
    def classify_error(error: Exception) -> str:
        """
        Classify an error and return its category.

        Args:
            error: The exception to classify

        Returns:
            Error category name
        """
        if isinstance(error, ConfigurationError):
            return "configuration_error"
        if isinstance(error, StreamingError):
            return "protocol_error"
        if isinstance(error, TransportError):
            return "transport_error"
        if isinstance(error, RemoteRejectionError):
            return "remote_rejection"
        if isinstance(error, LLMError):
            return "llm_error"
        if isinstance(error, TimeoutError | httpx.TimeoutException):
            return "timeout_error"
        if isinstance(error, httpx.HTTPError | ConnectionError | OSError):
            return "transport_error"
        if isinstance(error, UnicodeDecodeError):
            return "protocol_error"
        return "unknown_error"

    @staticmethod
    def create_llm_error(
        error: Exception,
        operation: str,
        provider: str = "unknown",
        model: str = "unknown",
        context: dict[str, Any] | None = None,
    ) -> LLMError:
        """
        Wrap an exception as an LLMError and log it with context.

        LLMError instances are returned unchanged.
        """
        error_category = LLMErrorHandler.classify_error(error)

        logger.error(
            "Operation failed",
            operation=operation,
            provider=provider,
            model=model,
            error_type=type(error).__name__,
            error_category=error_category,
            error_message=str(error),
            **(context or {}),
        )

        if isinstance(error, LLMError):
            return error

        message = str(error) or type(error).__name__
        if error_category in ("transport_error", "timeout_error"):
            return TransportError(message, provider=provider, model=model)
        if error_category == "protocol_error":
            return StreamingError(message, provider=provider, model=model)
        return LLMError(message, provider=provider, model=model)
