from typing import Any, Optional


class BridgeError(Exception):
    """Base exception class for AiBridge."""
    pass


class ConfigError(BridgeError):
    """Raised when the bridge configuration is invalid or incomplete."""
    pass


class InvalidRequest(BridgeError):
    """Raised for malformed prompts or options. Never retried."""
    pass


class BackendUnavailable(BridgeError):
    """Raised by a cache backend whose storage cannot be reached."""

    def __init__(self, backend: str, detail: Any) -> None:
        self.backend = backend
        self.detail = detail
        super().__init__(f"{backend} cache unavailable: {detail}")


class ProviderError(BridgeError):
    """Base class for failures surfaced from a provider dispatch."""
    pass


class ProviderExhausted(ProviderError):
    """All dispatch attempts failed without a well-formed response."""

    def __init__(
        self,
        provider: str,
        attempts: int,
        last_error: Optional[BaseException] = None,
        last_response: Any = None,
    ) -> None:
        self.provider = provider
        self.attempts = attempts
        self.last_error = last_error
        self.last_response = last_response
        super().__init__(
            f"{provider}: no valid response after {attempts} attempt(s) "
            f"(last error: {last_error!r}, last response: {last_response!r})"
        )


class ProviderContentError(ProviderError):
    """The provider answered with a well-formed error payload."""

    def __init__(self, provider: str, detail: Any, raw: Any = None) -> None:
        self.provider = provider
        self.detail = detail
        self.raw = raw
        super().__init__(f"{provider} returned an error: {detail}")


class StreamProtocolError(ProviderError):
    """A streaming payload was malformed or truncated."""
    pass
