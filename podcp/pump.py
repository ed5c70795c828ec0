"""Chunked, back-pressured byte copying between streams.

A :class:`StreamPump` reads one chunk, writes it, and only then reads the
next, so it never holds more than one chunk no matter how fast the source
is.  Failures stop the pump immediately; the result records how many bytes
made it across and which side failed.
"""

from __future__ import annotations

import io
import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Callable, Iterable, Iterator

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024  # 64 KB per read/write call


# ---------------------------------------------------------------------------
# PumpResult
# ---------------------------------------------------------------------------


@dataclass
class PumpResult:
    """Outcome of one pump run."""

    name: str
    bytes_copied: int = 0
    error: Exception | None = None
    failed_side: str | None = None  # "read" | "write"
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.cancelled


# ---------------------------------------------------------------------------
# StreamPump
# ---------------------------------------------------------------------------


class StreamPump:
    """Copies *source* into *sink* until the source returns ``b""``.

    Args:
        source: Object with ``read(n) -> bytes``.
        sink: Object with ``write(data)``.
        chunk_size: Bytes requested per read.
        name: Label used in logs and the thread name.
        on_progress: Called with the cumulative byte count after each chunk.
        close_sink: Close *sink* when the source is exhausted (or on error).
        cancel_event: Checked before each chunk; when set the pump stops.
    """

    def __init__(
        self,
        source,
        sink,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        name: str = "pump",
        on_progress: Callable[[int], None] | None = None,
        close_sink: bool = False,
        cancel_event: threading.Event | None = None,
    ) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self._source = source
        self._sink = sink
        self._chunk_size = chunk_size
        self.name = name
        self.on_progress = on_progress
        self._close_sink = close_sink
        self._cancel_event = cancel_event or threading.Event()
        self.result = PumpResult(name=name)
        self._thread: threading.Thread | None = None

    def run(self) -> PumpResult:
        """Pump synchronously on the calling thread."""
        result = self.result
        try:
            while True:
                if self._cancel_event.is_set():
                    result.cancelled = True
                    break
                try:
                    chunk = self._source.read(self._chunk_size)
                except Exception as exc:
                    result.error, result.failed_side = exc, "read"
                    break
                if not chunk:
                    break
                try:
                    self._sink.write(chunk)
                except Exception as exc:
                    result.error, result.failed_side = exc, "write"
                    break
                result.bytes_copied += len(chunk)
                if self.on_progress:
                    try:
                        self.on_progress(result.bytes_copied)
                    except Exception:
                        logger.exception("Exception in on_progress callback")
        finally:
            if self._close_sink:
                try:
                    self._sink.close()
                except Exception as exc:
                    if result.error is None:
                        result.error, result.failed_side = exc, "write"

        if result.error is not None:
            logger.debug(
                "Pump %s stopped after %d bytes: %s failed: %s",
                self.name,
                result.bytes_copied,
                result.failed_side,
                result.error,
            )
        else:
            logger.debug("Pump %s finished: %d bytes", self.name, result.bytes_copied)
        return result

    def start(self) -> None:
        """Run the pump on a daemon thread."""
        self._thread = threading.Thread(
            target=self.run,
            name=f"pump-{self.name}",
            daemon=True,
        )
        self._thread.start()

    def join(self, timeout: float | None = None) -> bool:
        """Wait for a started pump; return True if it has finished."""
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def cancel(self) -> None:
        self._cancel_event.set()


# ---------------------------------------------------------------------------
# Stream adapters
# ---------------------------------------------------------------------------


class IterStream(io.RawIOBase):
    """Readable stream over an iterator of byte chunks.

    Pulls from the iterator only when a read needs more data, so a lazy
    producer runs at the pace of whoever is reading.
    """

    def __init__(self, chunks: Iterable[bytes]) -> None:
        super().__init__()
        self._iter: Iterator[bytes] = iter(chunks)
        self._leftover = b""

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        while not self._leftover:
            try:
                self._leftover = next(self._iter)
            except StopIteration:
                return 0
        size = min(len(buffer), len(self._leftover))
        buffer[:size] = self._leftover[:size]
        self._leftover = self._leftover[size:]
        return size


class TailBuffer:
    """Write-only sink keeping the last *limit* bytes written.

    Used to drain a stream that must keep flowing (stderr, an unused stdout)
    while retaining enough of it for an error message.
    """

    def __init__(self, limit: int = 64 * 1024) -> None:
        self._limit = limit
        self._chunks: deque[bytes] = deque()
        self._size = 0
        self.total = 0

    def write(self, data: bytes) -> int:
        self._chunks.append(bytes(data))
        self._size += len(data)
        self.total += len(data)
        while self._size > self._limit and len(self._chunks) > 1:
            self._size -= len(self._chunks.popleft())
        return len(data)

    def getvalue(self) -> bytes:
        return b"".join(self._chunks)[-self._limit:]

    def text(self) -> str:
        return self.getvalue().decode("utf-8", errors="replace").strip()

    def close(self) -> None:
        pass
