from typing import Optional


class SpmError(Exception):
    """Base class for all errors surfaced to the CLI. Carries an optional user hint."""

    def __init__(self, message: str, hint: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint


class UsageError(SpmError):
    """Malformed or out-of-range parameters, conflicting options. Never retried."""


class SnapshotConflict(UsageError):
    """Playlist changed remotely between preview and apply."""

    def __init__(self, expected: str, current: str) -> None:
        super().__init__(
            "Playlist was modified since preview was generated.",
            hint="Re-run preview or pass --force to bypass snapshot guard.",
        )
        self.expected = expected
        self.current = current


class TemporaryFailure(SpmError):
    """Transient provider or network failure. Retrying may succeed."""


class RateLimited(TemporaryFailure):
    """Operation was rate limited by provider. Includes suggested wait time in milliseconds."""

    def __init__(self, retry_after_ms: int, message: str = "Rate limited") -> None:
        super().__init__(message, hint="Retry later or reduce request frequency.")
        self.retry_after_ms = retry_after_ms


class PermanentFailure(SpmError):
    """Non-retriable API failure (authorization issues, rejected payloads)."""

    def __init__(self, message: str, status: Optional[int] = None, hint: Optional[str] = None) -> None:
        super().__init__(message, hint=hint)
        self.status = status


class NotFound(SpmError):
    """Requested resource was not found."""


class EndpointUnavailable(SpmError):
    """A feature endpoint answered with a permission or not-found class response.

    Optional sub-steps catch this and degrade; it is never inferred from message text.
    """

    def __init__(self, endpoint: str, status: int) -> None:
        super().__init__(f"Spotify endpoint {endpoint} is unavailable (HTTP {status}).")
        self.endpoint = endpoint
        self.status = status


class FeatureUnavailable(SpmError):
    """The primary endpoint a command depends on is unavailable for this app."""
