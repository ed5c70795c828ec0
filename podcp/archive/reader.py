"""Incremental tar consumer that materialises entries on disk.

:class:`ArchiveReader` is a writable sink: feed it the archive bytes as
they arrive and it creates directories, files and links under a
destination root while the stream is still flowing.  File content goes
straight to disk; the reader itself holds at most one header block and one
extended header.

Every entry path is checked before anything is written.  Absolute paths,
``..`` components, names outside the expected root, and paths that would
resolve outside the destination through a symlink are rejected with
:class:`PathTraversalRejected`.

On a malformed or truncated stream extraction stops with
:class:`ArchiveCorrupt`.  Files written before that point are left in place;
there is no rollback.
"""

from __future__ import annotations

import logging
import os
import tarfile
from dataclasses import dataclass
from enum import Enum, auto
from pathlib import Path
from typing import BinaryIO

from podcp.archive.entry import (
    BLOCK_SIZE,
    PERMISSION_BITS,
    ZERO_BLOCK,
    padding_for,
)
from podcp.errors import ArchiveCorrupt, LocalIOFailure, PathTraversalRejected, TransferError

logger = logging.getLogger(__name__)

MAX_EXTENDED_HEADER = 1024 * 1024
_WRITE_FLAGS = os.O_WRONLY | os.O_CREAT | os.O_TRUNC | getattr(os, "O_NOFOLLOW", 0) | getattr(os, "O_BINARY", 0)

_REGULAR_TYPES = (tarfile.REGTYPE, tarfile.AREGTYPE, tarfile.CONTTYPE)
_EXTENDED_TYPES = (
    tarfile.XHDTYPE,
    tarfile.XGLTYPE,
    tarfile.SOLARIS_XHDTYPE,
    tarfile.GNUTYPE_LONGNAME,
    tarfile.GNUTYPE_LONGLINK,
)


class _State(Enum):
    HEADER = auto()
    EXTENDED = auto()
    DATA = auto()
    PADDING = auto()
    END = auto()


@dataclass
class _Member:
    """The entry currently being received."""

    name: str
    type: bytes
    mode: int
    size: int
    linkname: str
    mtime: float
    target: Path | None = None
    handle: BinaryIO | None = None


class ArchiveReader:
    """Push-style tar extractor rooted at *dest_root*.

    Args:
        dest_root: Directory entries are extracted into.  Created if missing.
        rename_root: ``(old, new)``: entries must live under *old* and are
            written under *new* instead.  Anything outside *old* is rejected.
        preserve_permissions: Apply archived permission bits (setuid, setgid
            and sticky bits are always dropped).

    Raises:
        LocalIOFailure: *dest_root* cannot be created.
    """

    def __init__(
        self,
        dest_root: str | os.PathLike[str],
        rename_root: tuple[str, str] | None = None,
        preserve_permissions: bool = True,
    ) -> None:
        self.dest_root = Path(os.path.abspath(os.fspath(dest_root)))
        try:
            self.dest_root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise LocalIOFailure(f"Cannot create destination: {exc.strerror}", path=str(self.dest_root)) from exc
        self._real_root = os.path.realpath(self.dest_root)
        self.rename_root = rename_root
        self.preserve_permissions = preserve_permissions

        self._state = _State.HEADER
        self._block = bytearray()
        self._extended = bytearray()
        self._extended_type: bytes | None = None
        self._remaining = 0
        self._padding = 0
        self._member: _Member | None = None
        self._pax: dict[str, str] = {}
        self._global_pax: dict[str, str] = {}
        self._long_name: str | None = None
        self._long_link: str | None = None
        self._dir_attrs: list[tuple[Path, int, float]] = []
        self._failed = False
        self._closed = False

        self.bytes_received = 0
        self.entries_written = 0

    # ------------------------------------------------------------------
    # Sink interface
    # ------------------------------------------------------------------

    def write(self, data: bytes) -> int:
        """Consume the next slice of the archive stream.

        Raises:
            ArchiveCorrupt: Malformed header or extended record.
            PathTraversalRejected: An entry would land outside the root.
            LocalIOFailure: Writing to the local disk failed.
        """
        if self._failed or self._closed:
            raise ArchiveCorrupt("Archive reader is no longer accepting data", bytes_transferred=self.bytes_received)
        try:
            self._consume(memoryview(data))
        except TransferError as exc:
            exc.bytes_transferred = self.bytes_received
            self._fail()
            raise
        except OSError as exc:
            path = str(self._member.target) if self._member and self._member.target else None
            self._fail()
            raise LocalIOFailure(
                f"Local write failed: {exc.strerror or exc}",
                bytes_transferred=self.bytes_received,
                path=path or exc.filename,
            ) from exc
        self.bytes_received += len(data)
        return len(data)

    def close(self) -> None:
        """Finish extraction.

        Raises:
            ArchiveCorrupt: The stream ended before the end-of-archive marker.
        """
        if self._closed:
            return
        self._closed = True
        if self._failed:
            return
        if self._state is not _State.END:
            where = f" inside {self._member.name!r}" if self._member else ""
            self._release_handle()
            raise ArchiveCorrupt(
                f"Archive truncated{where}: stream ended after {self.bytes_received} bytes "
                "without an end-of-archive marker",
                bytes_transferred=self.bytes_received,
                path=self._member.name if self._member else None,
            )
        self._apply_directory_attrs()
        logger.info("Extracted %d entries into %s", self.entries_written, self.dest_root)

    def abort(self) -> None:
        """Release any open file without finishing; used on cancellation."""
        self._closed = True
        self._release_handle()

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _consume(self, view: memoryview) -> None:
        pos = 0
        end = len(view)
        while pos < end:
            if self._state is _State.END:
                return  # trailing zero blocks and record padding
            if self._state is _State.HEADER:
                take = min(BLOCK_SIZE - len(self._block), end - pos)
                self._block += view[pos:pos + take]
                pos += take
                if len(self._block) == BLOCK_SIZE:
                    block = bytes(self._block)
                    self._block.clear()
                    self._on_header(block)
            elif self._state is _State.EXTENDED:
                take = min(self._remaining, end - pos)
                self._extended += view[pos:pos + take]
                pos += take
                self._remaining -= take
                if self._remaining == 0:
                    self._on_extended(bytes(self._extended))
                    self._extended.clear()
                    self._after_data()
            elif self._state is _State.DATA:
                take = min(self._remaining, end - pos)
                if self._member is not None and self._member.handle is not None:
                    self._member.handle.write(view[pos:pos + take])
                pos += take
                self._remaining -= take
                if self._remaining == 0:
                    self._finish_member()
                    self._after_data()
            elif self._state is _State.PADDING:
                take = min(self._padding, end - pos)
                pos += take
                self._padding -= take
                if self._padding == 0:
                    self._state = _State.HEADER

    def _after_data(self) -> None:
        self._state = _State.PADDING if self._padding else _State.HEADER

    def _on_header(self, block: bytes) -> None:
        if block == ZERO_BLOCK:
            logger.debug("End-of-archive marker after %d bytes", self.bytes_received)
            self._state = _State.END
            return
        try:
            info = tarfile.TarInfo.frombuf(block, "utf-8", "surrogateescape")
        except tarfile.HeaderError as exc:
            raise ArchiveCorrupt(f"Malformed archive header: {exc}") from exc

        if info.type in _EXTENDED_TYPES:
            if info.size > MAX_EXTENDED_HEADER:
                raise ArchiveCorrupt(f"Extended header too large ({info.size} bytes)")
            self._extended_type = info.type
            self._remaining = info.size
            self._padding = padding_for(info.size)
            if info.size:
                self._state = _State.EXTENDED
            else:
                self._on_extended(b"")
                self._after_data()
            return

        self._start_member(info)

    def _on_extended(self, payload: bytes) -> None:
        kind = self._extended_type
        if kind in (tarfile.GNUTYPE_LONGNAME, tarfile.GNUTYPE_LONGLINK):
            value = payload.split(b"\0", 1)[0].decode("utf-8", "surrogateescape")
            if kind == tarfile.GNUTYPE_LONGNAME:
                self._long_name = value
            else:
                self._long_link = value
        elif kind == tarfile.XGLTYPE:
            self._global_pax.update(_parse_pax(payload))
        else:
            self._pax.update(_parse_pax(payload))

    def _start_member(self, info: tarfile.TarInfo) -> None:
        fields = dict(self._global_pax)
        fields.update(self._pax)
        name = self._long_name or fields.get("path") or info.name
        linkname = self._long_link or fields.get("linkpath") or info.linkname
        try:
            size = int(fields["size"]) if "size" in fields else info.size
            mtime = float(fields["mtime"]) if "mtime" in fields else float(info.mtime)
        except ValueError as exc:
            raise ArchiveCorrupt(f"Invalid numeric field in extended header: {exc}") from exc
        if size < 0:
            raise ArchiveCorrupt(f"Negative size for {name!r}")
        self._pax.clear()
        self._long_name = self._long_link = None

        member = _Member(
            name=name,
            type=info.type,
            mode=info.mode,
            size=size,
            linkname=linkname,
            mtime=mtime,
        )
        self._member = member
        self._materialise(member)

        self._remaining = size
        self._padding = padding_for(size)
        if size:
            self._state = _State.DATA
        else:
            self._finish_member()
            self._after_data()

    # ------------------------------------------------------------------
    # Filesystem actions
    # ------------------------------------------------------------------

    def _materialise(self, member: _Member) -> None:
        """Perform the filesystem action for *member* (files are opened only)."""
        is_dir = member.type == tarfile.DIRTYPE
        target = self._resolve(member.name, allow_root=is_dir)
        member.target = target

        if is_dir:
            self._ensure_directory(target)
            self._dir_attrs.append((target, member.mode, member.mtime))
            logger.debug("mkdir %s", target)
        elif member.type in _REGULAR_TYPES:
            self._prepare_parent(target)
            self._remove_non_directory(target)
            fd = os.open(target, _WRITE_FLAGS, 0o666)
            member.handle = os.fdopen(fd, "wb")
            logger.debug("write %s (%d bytes)", target, member.size)
        elif member.type == tarfile.SYMTYPE:
            self._prepare_parent(target)
            self._remove_non_directory(target)
            os.symlink(member.linkname, target)
            logger.debug("symlink %s -> %s", target, member.linkname)
        elif member.type == tarfile.LNKTYPE:
            source = self._resolve(member.linkname, allow_root=False)
            if not os.path.lexists(source):
                raise LocalIOFailure(f"Hard link source {member.linkname!r} was not extracted", path=str(target))
            self._prepare_parent(target)
            self._remove_non_directory(target)
            os.link(source, target, follow_symlinks=False)
            logger.debug("link %s => %s", target, source)
        else:
            member.target = None
            logger.warning("Skipping %r: unsupported entry type %r", member.name, member.type)

    def _finish_member(self) -> None:
        member = self._member
        if member is None:
            return
        if member.handle is not None:
            member.handle.close()
            member.handle = None
            if member.target is not None:
                if self.preserve_permissions:
                    os.chmod(member.target, member.mode & PERMISSION_BITS)
                os.utime(member.target, (member.mtime, member.mtime))
        if member.target is not None:
            self.entries_written += 1
        self._member = None

    def _release_handle(self) -> None:
        if self._member is not None and self._member.handle is not None:
            try:
                self._member.handle.close()
            except OSError:
                logger.debug("Closing partial file failed", exc_info=True)
            self._member.handle = None

    def _fail(self) -> None:
        self._failed = True
        self._release_handle()

    def _apply_directory_attrs(self) -> None:
        """Set directory modes deepest-first, after their contents exist."""
        for path, mode, mtime in reversed(self._dir_attrs):
            try:
                if self.preserve_permissions:
                    os.chmod(path, mode & PERMISSION_BITS)
                os.utime(path, (mtime, mtime))
            except OSError as exc:
                raise LocalIOFailure(f"Cannot set directory attributes: {exc.strerror}", path=str(path)) from exc

    # ------------------------------------------------------------------
    # Path safety
    # ------------------------------------------------------------------

    def _resolve(self, name: str, allow_root: bool) -> Path:
        """Map an archive name to a checked path under the destination root."""
        if name.startswith("/"):
            raise PathTraversalRejected(f"Absolute path in archive: {name!r}", path=name)
        parts = [p for p in name.replace("\\", "/").split("/") if p not in ("", ".")]
        if ".." in parts:
            raise PathTraversalRejected(f"Parent reference in archive path: {name!r}", path=name)

        if self.rename_root is not None and parts:
            old, new = self.rename_root
            if parts[0] != old:
                raise PathTraversalRejected(
                    f"Entry {name!r} is outside the requested root {old!r}", path=name
                )
            parts[0] = new

        if not parts:
            if allow_root and self.rename_root is None:
                return self.dest_root
            raise PathTraversalRejected(f"Entry {name!r} would replace the destination root", path=name)

        target = self.dest_root.joinpath(*parts)
        if not self._inside_root(os.path.dirname(target)):
            raise PathTraversalRejected(f"Entry {name!r} resolves outside the destination", path=name)
        return target

    def _inside_root(self, path: str | os.PathLike[str]) -> bool:
        real = os.path.realpath(path)
        return real == self._real_root or real.startswith(self._real_root.rstrip(os.sep) + os.sep)

    def _prepare_parent(self, target: Path) -> None:
        parent = target.parent
        if not parent.is_dir():
            self._ensure_directory(parent)

    def _ensure_directory(self, path: Path) -> None:
        if os.path.islink(path):
            if not self._inside_root(path):
                raise PathTraversalRejected(f"Directory {path} is a symlink leading outside the destination", path=str(path))
        path.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _remove_non_directory(target: Path) -> None:
        if os.path.lexists(target) and (os.path.islink(target) or not target.is_dir()):
            target.unlink()


def _parse_pax(payload: bytes) -> dict[str, str]:
    """Parse ``"<len> <key>=<value>\\n"`` records from a PAX header."""
    fields: dict[str, str] = {}
    pos = 0
    while pos < len(payload):
        if payload[pos:pos + 1] == b"\0":
            break
        space = payload.find(b" ", pos)
        if space == -1:
            raise ArchiveCorrupt("Malformed PAX record: missing length")
        try:
            length = int(payload[pos:space])
        except ValueError as exc:
            raise ArchiveCorrupt("Malformed PAX record length") from exc
        record = payload[space + 1:pos + length]
        if length <= 0 or pos + length > len(payload) or not record.endswith(b"\n") or b"=" not in record:
            raise ArchiveCorrupt("Malformed PAX record")
        key, _, value = record[:-1].partition(b"=")
        fields[key.decode("utf-8", "surrogateescape")] = value.decode("utf-8", "surrogateescape")
        pos += length
    return fields
