"""Custom exception hierarchy for syncprobe."""

from __future__ import annotations


class SyncProbeError(Exception):
    """Base exception for all syncprobe errors."""


class ConfigError(SyncProbeError):
    """Invalid or missing configuration."""


class StoreError(SyncProbeError):
    """Failure reported by (or while talking to) the realtime store."""

    def __init__(self, message: str, *, path: str = "") -> None:
        self.path = path
        super().__init__(message)


class StoreAuthError(StoreError):
    """Token rejected, revoked, or the session lost its authentication.

    Never retried by the worker that observed it; the owning pool decides
    whether a replacement worker is started.
    """


class NoDataError(StoreError):
    """A read returned no data at the requested path."""


class NoEntitiesError(NoDataError):
    """The snapshot exists but the target collection is empty."""


class TransportError(StoreError):
    """Stream or session fault unrelated to authentication."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        path: str = "",
    ) -> None:
        self.status_code = status_code
        super().__init__(message, path=path)


class WriteError(StoreError):
    """The store did not acknowledge a write."""


class DeliveryTimeoutError(SyncProbeError):
    """Retry budget exhausted without observing the expected value."""

    def __init__(self, message: str, *, elapsed_ms: int) -> None:
        self.elapsed_ms = elapsed_ms
        super().__init__(message)


class WorkerError(SyncProbeError):
    """Invalid worker lifecycle transition (e.g. starting twice)."""
