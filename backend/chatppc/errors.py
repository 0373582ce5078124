"""Domain exceptions for the chat core.

Provider and media errors are raised inside services and converted at the
worker boundary; admission errors surface to request handlers as 4xx.
"""

from __future__ import annotations

from enum import Enum


class ChatCoreError(Exception):
    """Base class for chat core errors."""


class AdmissionError(ChatCoreError):
    """Raised when a request is rejected for quota or capacity reasons."""

    def __init__(self, message: str, status_code: int = 429) -> None:
        super().__init__(message)
        self.status_code = status_code


class ProviderErrorKind(str, Enum):
    CONTEXT_OVERFLOW = "context_overflow"
    SERVER = "server"
    CLIENT = "client"
    TRANSPORT = "transport"
    MALFORMED = "malformed"


class ProviderError(ChatCoreError):
    """Raised when an external generation provider call fails."""

    def __init__(
        self,
        message: str,
        kind: ProviderErrorKind = ProviderErrorKind.CLIENT,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code

    @property
    def is_context_overflow(self) -> bool:
        return self.kind is ProviderErrorKind.CONTEXT_OVERFLOW

    @property
    def is_server_error(self) -> bool:
        return self.kind is ProviderErrorKind.SERVER


class TaggingPayloadError(ChatCoreError):
    """Raised when the classifier returns output that is not a JSON object."""


class MediaValidationError(ChatCoreError):
    """Raised when fetched media is not a real image."""
