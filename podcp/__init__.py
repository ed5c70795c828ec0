"""podcp - copy files and directory trees in and out of Kubernetes containers.

Transfers run ``tar`` inside the container over an exec session and stream
the archive through this process in bounded chunks.
"""

from __future__ import annotations

__version__ = "0.1.0"

from podcp.connection import KubernetesTransport, PodRef, load_api_client
from podcp.errors import (
    ArchiveCorrupt,
    LocalIOFailure,
    PathTraversalRejected,
    RemoteCommandFailed,
    TargetNotFound,
    TransferError,
    TransportFailure,
)
from podcp.transfer import (
    Direction,
    Transfer,
    TransferResult,
    TransferSpec,
    TransferState,
    copy,
)

__all__ = [
    "ArchiveCorrupt",
    "Direction",
    "KubernetesTransport",
    "LocalIOFailure",
    "PathTraversalRejected",
    "PodRef",
    "RemoteCommandFailed",
    "TargetNotFound",
    "Transfer",
    "TransferError",
    "TransferResult",
    "TransferSpec",
    "TransferState",
    "TransportFailure",
    "copy",
    "load_api_client",
]
