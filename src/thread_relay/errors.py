"""Exceptions raised by the relay engine."""

from __future__ import annotations


class RelayError(Exception):
    """Base class for relay failures that are reported, never fatal."""


class ConfigParseError(RelayError):
    """A single mapping entry or endpoint could not be parsed."""

    def __init__(self, entry: str, reason: str) -> None:
        super().__init__(f"{reason}: {entry!r}")
        self.entry = entry
        self.reason = reason


class NotMapped(RelayError):
    """No routing rule exists for the thread."""

    def __init__(self, thread_id: str) -> None:
        super().__init__(f"thread {thread_id} is not mapped")
        self.thread_id = thread_id


class EndpointNotConfigured(RelayError):
    """Identity-preserving delivery was requested without a webhook URL."""

    def __init__(self, thread_id: str) -> None:
        super().__init__(f"thread {thread_id} has no delivery endpoint")
        self.thread_id = thread_id


class DeliveryFailure(RelayError):
    """A single post failed (network error, permissions, bad request)."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class RateLimited(RelayError):
    """Discord asked us to back off for ``retry_after`` seconds."""

    def __init__(self, retry_after: float, *, scope: str | None = None) -> None:
        super().__init__(f"rate limited for {retry_after:.2f}s")
        self.retry_after = max(0.0, float(retry_after))
        self.scope = scope


class BackfillInProgress(RelayError):
    """A backfill of the same thread is already running."""

    def __init__(self, thread_id: str) -> None:
        super().__init__(f"backfill already running for thread {thread_id}")
        self.thread_id = thread_id
