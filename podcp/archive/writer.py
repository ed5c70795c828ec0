"""Streaming tar producer for a local file or directory tree.

The tree is walked pre-order (a directory before anything inside it) with
siblings in lexical order, so the same tree always yields the same stream.
Nothing is buffered: headers are built per entry and file content is read
chunk by chunk as the consumer asks for it.
"""

from __future__ import annotations

import logging
import os
import stat
from pathlib import Path
from typing import Iterator

from podcp.archive.entry import (
    BLOCK_SIZE,
    RECORD_SIZE,
    ArchiveEntry,
    EntryKind,
    padding_for,
)
from podcp.errors import LocalIOFailure

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024
_OPEN_FLAGS = os.O_RDONLY | getattr(os, "O_NOFOLLOW", 0) | getattr(os, "O_BINARY", 0)


class ArchiveWriter:
    """Serialises the tree at *root* as a tar stream.

    Args:
        root: Local file or directory to archive.  Symlinks are stored, not
            followed, including when *root* itself is one.
        arcname: Name the root is stored under (defaults to its basename).
        preserve_owner: Record local uid/gid and names instead of root-owned
            entries.

    Raises:
        LocalIOFailure: *root* does not exist or cannot be inspected.
    """

    def __init__(
        self,
        root: str | os.PathLike[str],
        arcname: str | None = None,
        preserve_owner: bool = False,
    ) -> None:
        self.root = Path(os.path.abspath(os.fspath(root)))
        try:
            self._root_stat = os.lstat(self.root)
        except FileNotFoundError as exc:
            raise LocalIOFailure("Source path does not exist", path=str(self.root)) from exc
        except OSError as exc:
            raise LocalIOFailure(f"Cannot access source: {exc.strerror}", path=str(self.root)) from exc

        self.arcname = arcname or self.root.name
        if not self.arcname or "/" in self.arcname or self.arcname in (".", ".."):
            raise ValueError(f"Invalid archive root name: {self.arcname!r}")
        self.preserve_owner = preserve_owner

    # ------------------------------------------------------------------
    # Traversal
    # ------------------------------------------------------------------

    def entries(self) -> Iterator[ArchiveEntry]:
        """Yield entries in pre-order; call again to restart from scratch."""
        yield from self._walk(self.root, self.arcname, self._root_stat)

    def archive_size(self) -> int:
        """Length of the stream :meth:`iter_bytes` will produce.

        Exact unless the tree changes before it is read.
        """
        size = 0
        for entry in self.entries():
            size += len(entry.header())
            if entry.kind is EntryKind.FILE:
                size += entry.size + padding_for(entry.size)
        size += 2 * BLOCK_SIZE
        return size + (-size % RECORD_SIZE)

    def _walk(self, path: Path, arcpath: str, st: os.stat_result) -> Iterator[ArchiveEntry]:
        entry = self._make_entry(path, arcpath, st)
        if entry is None:
            return
        yield entry
        if not entry.is_dir:
            return

        try:
            with os.scandir(path) as it:
                children = sorted(it, key=lambda e: e.name)
        except OSError as exc:
            raise LocalIOFailure(f"Cannot list directory: {exc.strerror}", path=str(path)) from exc

        for child in children:
            try:
                child_stat = child.stat(follow_symlinks=False)
            except FileNotFoundError:
                logger.warning("%s vanished during traversal; skipped", child.path)
                continue
            except OSError as exc:
                raise LocalIOFailure(f"Cannot stat: {exc.strerror}", path=child.path) from exc
            yield from self._walk(Path(child.path), f"{arcpath}/{child.name}", child_stat)

    def _make_entry(self, path: Path, arcpath: str, st: os.stat_result) -> ArchiveEntry | None:
        """Build the entry for one node, or ``None`` for unsupported types."""
        owner: dict = {}
        if self.preserve_owner:
            owner = {
                "uid": st.st_uid,
                "gid": st.st_gid,
                "uname": _user_name(st.st_uid),
                "gname": _group_name(st.st_gid),
            }

        if stat.S_ISDIR(st.st_mode):
            kind = EntryKind.DIRECTORY
        elif stat.S_ISREG(st.st_mode):
            kind = EntryKind.FILE
        elif stat.S_ISLNK(st.st_mode):
            try:
                target = os.readlink(path)
            except OSError as exc:
                raise LocalIOFailure(f"Cannot read symlink: {exc.strerror}", path=str(path)) from exc
            return ArchiveEntry(
                kind=EntryKind.SYMLINK,
                path=arcpath,
                mode=stat.S_IMODE(st.st_mode),
                link_target=target,
                mtime=st.st_mtime,
                **owner,
            )
        else:
            logger.warning("Skipping %s: sockets, FIFOs and device nodes are not copied", path)
            return None

        return ArchiveEntry(
            kind=kind,
            path=arcpath,
            mode=stat.S_IMODE(st.st_mode),
            size=st.st_size if kind is EntryKind.FILE else 0,
            mtime=st.st_mtime,
            source=path if kind is EntryKind.FILE else None,
            **owner,
        )

    # ------------------------------------------------------------------
    # Serialisation
    # ------------------------------------------------------------------

    def iter_bytes(self, chunk_size: int = DEFAULT_CHUNK_SIZE) -> Iterator[bytes]:
        """Yield the archive as a sequence of byte chunks.

        Ends with the two-block end-of-archive marker, padded to a full
        record as ``tar`` expects.
        """
        written = 0
        for entry in self.entries():
            if entry.kind is EntryKind.FILE:
                for data in self._file_bytes(entry, chunk_size):
                    written += len(data)
                    yield data
            else:
                header = entry.header()
                written += len(header)
                yield header

        trailer = bytes(2 * BLOCK_SIZE)
        trailer += bytes(-(written + len(trailer)) % RECORD_SIZE)
        written += len(trailer)
        logger.debug("Archive of %s complete: %d bytes", self.root, written)
        yield trailer

    def _file_bytes(self, entry: ArchiveEntry, chunk_size: int) -> Iterator[bytes]:
        """Header, content and padding for one regular file.

        The size in the header comes from the open descriptor, so it matches
        the bytes actually available at read time.
        """
        try:
            fd = os.open(entry.source, _OPEN_FLAGS)
        except OSError as exc:
            raise LocalIOFailure(f"Cannot open source file: {exc.strerror}", path=str(entry.source)) from exc

        with os.fdopen(fd, "rb") as fh:
            st = os.fstat(fh.fileno())
            if not stat.S_ISREG(st.st_mode):
                raise LocalIOFailure("File was replaced during traversal", path=str(entry.source))
            entry.size = st.st_size
            yield entry.header()
            yield from entry.iter_chunks(chunk_size, fh)
            pad = padding_for(entry.size)
            if pad:
                yield bytes(pad)


def _user_name(uid: int) -> str:
    try:
        import pwd
        return pwd.getpwuid(uid).pw_name
    except (ImportError, KeyError):
        return ""


def _group_name(gid: int) -> str:
    try:
        import grp
        return grp.getgrgid(gid).gr_name
    except (ImportError, KeyError):
        return ""
