"""Error taxonomy for the synchronization layer."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(eq=False)
class SyncError(Exception):
    message: str
    code: str = "SYNC_ERROR"
    path: str | None = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        base = f"{self.code}: {self.message}"
        return f"{base} (path={self.path})" if self.path else base


@dataclass(eq=False)
class NetworkFailure(SyncError):
    """Transport error, timeout or server-side failure of a fetch or mutation."""

    code: str = "NETWORK_FAILURE"
    status_code: int | None = None


@dataclass(eq=False)
class ValidationFailure(SyncError):
    """Input rejected locally before any network call."""

    code: str = "VALIDATION_FAILED"


@dataclass(eq=False)
class NotFound(SyncError):
    code: str = "NOT_FOUND"


@dataclass(eq=False)
class StaleWrite(SyncError):
    """A cache write carried an older generation than the stored entry.

    Only ever logged by the store; the entry already holds newer or equal data.
    """

    code: str = "STALE_WRITE"
    generation: int = 0
    current_generation: int = 0
