"""Typed error taxonomy for the Lumina AI core.

Every failure that can reach the user derives from ``AIError`` and carries
a one-line ``user_message`` suitable for the chat error banner.  ``ParseError``
is the exception: the stream decoder swallows it per frame and it never
propagates past the decoder.
"""

from __future__ import annotations


class AIError(Exception):
    """Base class for all Lumina AI failures."""

    default_message = "The AI request failed."
    # Short banner text; falls back to the exception message when unset.
    friendly: str | None = None

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.default_message)
        self.hint: str | None = None

    @property
    def user_message(self) -> str:
        text = self.friendly or str(self)
        if self.hint:
            text = f"{text} {self.hint}"
        return text


class ConfigurationError(AIError):
    """A credential or provider setting is missing or invalid."""

    default_message = "Missing API key. Please configure it in Settings > AI Models."


# ---------------------------------------------------------------------------
# HTTP failures
# ---------------------------------------------------------------------------

class ProviderHTTPError(AIError):
    """Non-success HTTP response from a provider endpoint."""

    def __init__(self, status_code: int, body: str = "", provider: str = "") -> None:
        self.status_code = status_code
        self.body = body
        self.provider = provider
        label = provider or "API"
        detail = body.strip()[:300]
        message = f"{label} error ({status_code})"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class AuthError(ProviderHTTPError):
    """HTTP 401/403: the credential was rejected."""

    friendly = "Invalid API key. Please check your settings."


class RateLimitError(ProviderHTTPError):
    """HTTP 429: the provider is throttling requests."""

    friendly = "Rate limit exceeded. Please try again later."


class ServerError(ProviderHTTPError):
    """HTTP 5xx from the provider."""

    friendly = "Server error. Please try again later."


class ServiceUnavailableError(ServerError):
    """HTTP 503: the model or service is not available right now."""

    friendly = "The service is not available right now. Please try again later."


def error_for_status(status_code: int, body: str = "", provider: str = "") -> ProviderHTTPError:
    """Map an HTTP status code to the matching typed error."""
    if status_code in (401, 403):
        return AuthError(status_code, body, provider)
    if status_code == 429:
        return RateLimitError(status_code, body, provider)
    if status_code == 503:
        return ServiceUnavailableError(status_code, body, provider)
    if status_code >= 500:
        return ServerError(status_code, body, provider)
    return ProviderHTTPError(status_code, body, provider)


# ---------------------------------------------------------------------------
# Transport / lifecycle failures
# ---------------------------------------------------------------------------

class NetworkError(AIError):
    """Transport-level failure: DNS, connect, reset, read timeout."""

    default_message = "Network error. Please check your internet connection."


class OfflineError(NetworkError):
    """Connectivity was detected as absent before the call was attempted."""

    default_message = "No internet connection. Please check your network."


class CancelledError(AIError):
    """The request was aborted by the user or by a timeout."""

    def __init__(self, message: str = "", *, timed_out: bool = False) -> None:
        self.timed_out = timed_out
        if not message:
            message = "Request timed out." if timed_out else "Request was cancelled."
        super().__init__(message)


class ParseError(AIError):
    """A single protocol frame could not be decoded."""


class EmbeddingError(AIError):
    """The embedding worker reported a failure for a request."""


class ImageGenerationError(AIError):
    """The image endpoint answered but produced no usable image."""
