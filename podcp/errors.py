"""Failure taxonomy for podcp transfers.

Every failure a transfer can end in is one of the subclasses below.  Each
carries the number of bytes moved before the failure and, where known, the
path that triggered it, so callers can decide what to do with a partially
written destination.
"""

from __future__ import annotations


class TransferError(Exception):
    """Base class for all classified transfer failures."""

    kind = "TransferError"

    def __init__(
        self,
        message: str,
        bytes_transferred: int = 0,
        path: str | None = None,
    ) -> None:
        """Initialise with optional progress and path context."""
        super().__init__(message)
        self.message = message
        self.bytes_transferred = bytes_transferred
        self.path = path

    def __str__(self) -> str:
        if self.path and self.path not in self.message:
            return f"{self.message} ({self.path})"
        return self.message


class TargetNotFound(TransferError):
    """The pod or container does not exist, or the container is not running.

    ``reason`` is one of ``"pod"``, ``"container"`` or ``"not-running"``.
    """

    kind = "TargetNotFound"

    def __init__(self, message: str, reason: str = "pod", **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.reason = reason


class TransportFailure(TransferError):
    """The connection to the cluster dropped, failed to open, or timed out."""

    kind = "TransportFailure"

    def __init__(self, message: str, timed_out: bool = False, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.timed_out = timed_out


class RemoteCommandFailed(TransferError):
    """The remote ``tar`` exited non-zero or could not be started."""

    kind = "RemoteCommandFailed"

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        stderr: str = "",
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)
        self.exit_code = exit_code
        self.stderr = stderr


class LocalIOFailure(TransferError):
    """A local read or write failed (missing source, permission, disk full)."""

    kind = "LocalIOFailure"


class ArchiveCorrupt(TransferError):
    """The inbound archive stream was malformed or ended early."""

    kind = "ArchiveCorrupt"


class PathTraversalRejected(TransferError):
    """An archive entry tried to write outside the destination root."""

    kind = "PathTraversalRejected"
