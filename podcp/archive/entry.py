"""Archive entry model shared by the writer and the reader."""

from __future__ import annotations

import logging
import tarfile
from dataclasses import dataclass
from enum import Enum, auto
from pathlib import Path
from typing import BinaryIO, Iterator

from podcp.errors import LocalIOFailure

logger = logging.getLogger(__name__)

BLOCK_SIZE = tarfile.BLOCKSIZE    # 512-byte tar blocks
RECORD_SIZE = tarfile.RECORDSIZE  # archives are padded to 20 blocks
ZERO_BLOCK = bytes(BLOCK_SIZE)
PERMISSION_BITS = 0o777

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class EntryKind(Enum):
    """Kind of filesystem node carried by an archive entry."""

    FILE = auto()
    DIRECTORY = auto()
    SYMLINK = auto()


_TAR_TYPES = {
    EntryKind.FILE: tarfile.REGTYPE,
    EntryKind.DIRECTORY: tarfile.DIRTYPE,
    EntryKind.SYMLINK: tarfile.SYMTYPE,
}


def padding_for(size: int) -> int:
    """Number of zero bytes that round *size* up to a whole block."""
    return -size % BLOCK_SIZE


# ---------------------------------------------------------------------------
# ArchiveEntry
# ---------------------------------------------------------------------------


@dataclass
class ArchiveEntry:
    """One node in an archive stream.

    ``path`` is relative and POSIX-style.  ``size`` and ``source`` apply to
    files only; ``link_target`` to symlinks only.
    """

    kind: EntryKind
    path: str
    mode: int
    size: int = 0
    link_target: str | None = None
    mtime: float = 0.0
    source: Path | None = None
    uid: int = 0
    gid: int = 0
    uname: str = ""
    gname: str = ""

    @property
    def is_dir(self) -> bool:
        return self.kind is EntryKind.DIRECTORY

    def to_tarinfo(self) -> tarfile.TarInfo:
        """Describe this entry as a ``tarfile.TarInfo`` for header encoding."""
        info = tarfile.TarInfo(self.path)
        info.type = _TAR_TYPES[self.kind]
        info.mode = self.mode & PERMISSION_BITS
        info.size = self.size if self.kind is EntryKind.FILE else 0
        info.linkname = self.link_target or ""
        info.mtime = int(self.mtime)
        info.uid = self.uid
        info.gid = self.gid
        info.uname = self.uname
        info.gname = self.gname
        return info

    def header(self) -> bytes:
        """Encode the header block(s), with PAX records for long values."""
        return self.to_tarinfo().tobuf(
            format=tarfile.PAX_FORMAT,
            encoding="utf-8",
            errors="surrogateescape",
        )

    def iter_chunks(self, chunk_size: int, fh: BinaryIO) -> Iterator[bytes]:
        """Yield exactly ``size`` bytes of file content from *fh*, *chunk_size* at a time.

        A file that comes up short fails with :class:`LocalIOFailure`; one
        that has grown is cut at ``size`` with a warning.
        """
        if self.kind is not EntryKind.FILE:
            return
        remaining = self.size
        while remaining > 0:
            try:
                data = fh.read(min(chunk_size, remaining))
            except OSError as exc:
                raise LocalIOFailure(f"Read failed: {exc.strerror}", path=str(self.source)) from exc
            if not data:
                raise LocalIOFailure(
                    f"File shrank while being archived ({remaining} of {self.size} bytes missing)",
                    path=str(self.source),
                )
            remaining -= len(data)
            yield data

        try:
            grew = bool(fh.read(1))
        except OSError:
            grew = False
        if grew:
            logger.warning(
                "%s changed while being archived; stored its first %d bytes",
                self.source,
                self.size,
            )
