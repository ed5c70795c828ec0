"""Path parsing, normalisation and validation utilities."""

from __future__ import annotations

import logging
import os
import posixpath
import re
from pathlib import Path, PurePosixPath

logger = logging.getLogger(__name__)

# DNS-1123 subdomain, as used for namespace and pod names.
_NAME_RE = re.compile(r"^[a-z0-9]([-a-z0-9.]*[a-z0-9])?$")
_SIZE_UNITS = ("KiB", "MiB", "GiB", "TiB", "PiB")


def human_readable_size(size_bytes: int) -> str:
    """Format a byte count for transfer summaries, e.g. ``"4.2 MiB"``."""
    if size_bytes < 1024:
        return f"{max(size_bytes, 0)} B"
    size = float(size_bytes)
    for unit in _SIZE_UNITS:
        size /= 1024
        if size < 1024:
            break
    return f"{size:.1f} {unit}"


def validate_remote_path(path: str) -> bool:
    """Return True if *path* is safe to hand to the remote ``tar``.

    Rejects empty paths and paths that contain null bytes or path-traversal
    sequences (``..``).
    """
    if not path:
        logger.warning("Remote path rejected — empty")
        return False
    if "\x00" in path:
        logger.warning("Remote path rejected — contains null byte: %r", path)
        return False
    parts = str(PurePosixPath(path)).split("/")
    if ".." in parts:
        logger.warning("Remote path rejected — contains '..': %r", path)
        return False
    return True


def is_valid_name(name: str) -> bool:
    """Return True if *name* is a syntactically valid namespace or pod name."""
    return len(name) <= 253 and bool(_NAME_RE.match(name))


def split_remote_arg(arg: str) -> tuple[str | None, str, str] | None:
    """Split ``[namespace/]pod:path`` into its parts.

    Returns ``(namespace, pod, path)`` or ``None`` when *arg* names a local
    path.  An argument that exists on the local filesystem is always local,
    which keeps names like ``./backup:2024`` usable.
    """
    if ":" not in arg or os.path.exists(arg):
        return None
    target, _, path = arg.partition(":")
    namespace: str | None = None
    if "/" in target:
        namespace, _, target = target.partition("/")
        if not is_valid_name(namespace):
            return None
    if not is_valid_name(target):
        return None
    return namespace, target, path


def normalize_local_path(path: str | os.PathLike[str]) -> Path:
    """Return *path* as an absolute ``pathlib.Path`` without following symlinks."""
    return Path(os.path.abspath(os.path.expanduser(os.fspath(path))))


def remote_basename(path: str) -> str:
    """Return the last component of a remote POSIX path, ignoring a trailing slash."""
    stripped = path.rstrip("/")
    return posixpath.basename(stripped) if stripped else ""


def resolve_upload_target(local_path: str | os.PathLike[str], remote_path: str) -> tuple[str, str]:
    """Work out where an upload lands on the remote side.

    A remote path ending in ``/`` or ``/.`` (or just ``.``) means "into this
    directory" and keeps the local basename.  Otherwise the remote path is
    the full name of the copy.

    Returns:
        ``(remote_dir, arcname)``: the directory ``tar`` extracts into and
        the name the archive root is stored under.
    """
    local_name = normalize_local_path(local_path).name
    parent, name = posixpath.split(remote_path)
    if name in ("", "."):
        return posixpath.normpath(remote_path), local_name
    return parent or ".", name


def resolve_download_target(local_path: str | os.PathLike[str], remote_path: str) -> Path:
    """Return the local path a downloaded remote root is written to.

    An existing local directory, or a local path given with a trailing
    separator, receives the remote basename inside it; any other local path
    is the full name of the copy.
    """
    raw = os.fspath(local_path)
    local = normalize_local_path(raw)
    if local.is_dir() or raw.endswith(("/", os.sep)):
        return local / remote_basename(remote_path)
    return local
