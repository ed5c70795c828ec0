"""Streaming tar production and extraction."""

from podcp.archive.entry import ArchiveEntry, EntryKind
from podcp.archive.reader import ArchiveReader
from podcp.archive.writer import ArchiveWriter

__all__ = ["ArchiveEntry", "ArchiveReader", "ArchiveWriter", "EntryKind"]
