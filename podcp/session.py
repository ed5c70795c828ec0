"""Exec session: one running remote command with three byte streams.

A session exposes a writable ``stdin``, readable ``stdout`` and ``stderr``,
and a deferred ``outcome`` that resolves once the remote command has exited
or the transport has failed.  Streams are consumed incrementally; nothing is
buffered beyond a small, fixed number of frames per channel.

:class:`WebSocketExecSession` implements this over the Kubernetes channel
sub-protocol (see :mod:`podcp.channel`).  One daemon thread reads frames and
hands them to per-channel buffers.  A full buffer blocks that thread, which
stops reading the socket and lets TCP flow control push back on the server,
so callers must drain stdout and stderr concurrently.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from concurrent.futures import Future

from websocket import (
    ABNF,
    WebSocketException,
    WebSocketTimeoutException,
)

from podcp.channel import (
    ERROR,
    PROTOCOL_V5,
    STDERR,
    STDIN,
    STDOUT,
    ExecOutcome,
    FrameError,
    OutcomeKind,
    close_frame,
    decode_frame,
    encode_frame,
    parse_status,
)

logger = logging.getLogger(__name__)

__all__ = [
    "ChannelReader",
    "ChannelWriter",
    "ExecOutcome",
    "ExecSession",
    "OutcomeKind",
    "WebSocketExecSession",
    "negotiated_protocol",
]

DEFAULT_CHUNK_SIZE = 64 * 1024
DEFAULT_QUEUE_DEPTH = 16
_POLL_INTERVAL = 1.0  # seconds between idle-timeout checks
_JOIN_TIMEOUT = 5.0


# ---------------------------------------------------------------------------
# Streams
# ---------------------------------------------------------------------------


class ChannelReader:
    """Readable end of one output channel, fed by the demultiplexer.

    Holds at most *depth* frames.  :meth:`feed` blocks while the buffer is
    full; :meth:`read` blocks until data arrives or the channel ends.
    """

    def __init__(self, name: str, depth: int = DEFAULT_QUEUE_DEPTH) -> None:
        self.name = name
        self._depth = max(1, depth)
        self._chunks: deque[bytes] = deque()
        self._pending = b""
        self._cond = threading.Condition()
        self._eof = False
        self._discarding = False

    # Producer side ------------------------------------------------------

    def feed(self, data: bytes) -> None:
        """Queue *data*, waiting for room.  Dropped once the reader is closed."""
        with self._cond:
            while len(self._chunks) >= self._depth and not self._discarding:
                self._cond.wait()
            if self._discarding:
                return
            self._chunks.append(data)
            self._cond.notify_all()

    def finish(self) -> None:
        """Mark end-of-stream; readers drain what is queued, then get ``b""``."""
        with self._cond:
            self._eof = True
            self._cond.notify_all()

    # Consumer side ------------------------------------------------------

    def read(self, size: int = -1) -> bytes:
        """Return up to *size* bytes (one frame's worth if *size* < 0).

        Returns ``b""`` only at end-of-stream.
        """
        if not self._pending:
            with self._cond:
                while not self._chunks and not self._eof:
                    self._cond.wait()
                if not self._chunks:
                    return b""
                self._pending = self._chunks.popleft()
                self._cond.notify_all()

        if size is None or size < 0 or size >= len(self._pending):
            data, self._pending = self._pending, b""
        else:
            data, self._pending = self._pending[:size], self._pending[size:]
        return data

    def close(self) -> None:
        """Stop accepting data and release a blocked producer."""
        with self._cond:
            self._discarding = True
            self._eof = True
            self._chunks.clear()
            self._cond.notify_all()
        self._pending = b""


class ChannelWriter:
    """Writable stdin of a websocket exec session."""

    def __init__(self, session: WebSocketExecSession, chunk_size: int) -> None:
        self._session = session
        self._chunk_size = chunk_size
        self.closed = False

    def write(self, data: bytes) -> int:
        """Send *data* as one or more stdin frames.

        Raises:
            BrokenPipeError: The session is closed or the socket failed.
        """
        if self.closed:
            raise BrokenPipeError("stdin is closed")
        view = memoryview(data)
        for offset in range(0, len(view), self._chunk_size):
            self._session._send(encode_frame(STDIN, bytes(view[offset:offset + self._chunk_size])))
        return len(data)

    def flush(self) -> None:
        pass

    def close(self) -> None:
        """Signal end of input.

        Only ``v5.channel.k8s.io`` can half-close stdin.  Under v4 this is a
        no-op and the remote command never sees end-of-file; see
        :attr:`WebSocketExecSession.can_close_stdin`.
        """
        if self.closed:
            return
        self.closed = True
        if self._session.can_close_stdin:
            try:
                self._session._send(close_frame(STDIN))
            except BrokenPipeError:
                logger.debug("Could not send stdin close signal; session already gone")


# ---------------------------------------------------------------------------
# ExecSession
# ---------------------------------------------------------------------------


def negotiated_protocol(sock) -> str | None:
    """Return the channel sub-protocol the server accepted on *sock*.

    The ``kubernetes`` client offers its sub-protocols as a raw header, so
    ``websocket-client`` leaves ``sock.subprotocol`` unset and the answer is
    only found in the handshake response headers.
    """
    protocol = getattr(sock, "subprotocol", None)
    if protocol:
        return protocol
    getheaders = getattr(sock, "getheaders", None)
    headers = getheaders() if callable(getheaders) else None
    for key, value in (headers or {}).items():
        if key.lower() == "sec-websocket-protocol" and value:
            return value.strip()
    return None


class ExecSession:
    """A live remote command.  Subclasses provide the streams.

    Use as a context manager so the session is closed on every exit path.
    """

    stdin: ChannelWriter
    stdout: ChannelReader
    stderr: ChannelReader

    # Whether closing stdin delivers end-of-file to the remote command.
    can_close_stdin = True

    def __init__(self) -> None:
        self.outcome: Future[ExecOutcome] = Future()

    def wait(self, timeout: float | None = None) -> ExecOutcome:
        """Block until the remote command's outcome is known.

        Raises:
            concurrent.futures.TimeoutError: *timeout* elapsed first.
        """
        return self.outcome.result(timeout=timeout)

    def _set_outcome(self, outcome: ExecOutcome) -> None:
        if not self.outcome.done():
            logger.debug("Exec outcome: %s", outcome)
            self.outcome.set_result(outcome)

    def close(self) -> None:
        raise NotImplementedError

    def __enter__(self) -> ExecSession:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class WebSocketExecSession(ExecSession):
    """Exec session multiplexed over a ``websocket.WebSocket``.

    Args:
        sock: A connected websocket speaking the channel sub-protocol.
        chunk_size: Largest stdin payload sent in one frame.
        queue_depth: Frames buffered per output channel before back-pressure.
        idle_timeout: Seconds without traffic in either direction before the
            session fails with a timed-out transport failure.  ``None`` or
            ``0`` disables the check.
        protocol: The negotiated channel sub-protocol, when the caller
            already knows it; otherwise read from the socket's handshake.
    """

    def __init__(
        self,
        sock,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        queue_depth: int = DEFAULT_QUEUE_DEPTH,
        idle_timeout: float | None = None,
        protocol: str | None = None,
    ) -> None:
        super().__init__()
        self._sock = sock
        self.protocol: str | None = protocol or negotiated_protocol(sock)
        logger.debug("Exec channel protocol: %s", self.protocol or "<unknown>")
        self.stdin = ChannelWriter(self, chunk_size)
        self.stdout = ChannelReader("stdout", queue_depth)
        self.stderr = ChannelReader("stderr", queue_depth)
        self._idle_timeout = idle_timeout or None
        self._last_activity = time.monotonic()
        self._closing = threading.Event()
        self._closed = False

        if self._idle_timeout:
            sock.settimeout(min(self._idle_timeout, _POLL_INTERVAL))
        self._reader = threading.Thread(
            target=self._demux_loop,
            name="exec-demux",
            daemon=True,
        )
        self._reader.start()

    @property
    def can_close_stdin(self) -> bool:
        return self.protocol == PROTOCOL_V5

    # ------------------------------------------------------------------
    # Socket I/O
    # ------------------------------------------------------------------

    def _touch(self) -> None:
        self._last_activity = time.monotonic()

    def _idle_expired(self) -> bool:
        if not self._idle_timeout:
            return False
        return time.monotonic() - self._last_activity >= self._idle_timeout

    def _send(self, frame: bytes) -> None:
        if self._closing.is_set():
            raise BrokenPipeError("exec session is closed")
        try:
            self._sock.send_binary(frame)
        except (WebSocketException, OSError) as exc:
            raise BrokenPipeError(f"exec stream lost while writing: {exc}") from exc
        self._touch()

    def _demux_loop(self) -> None:
        """Route inbound frames to their channel until the socket ends."""
        outcome: ExecOutcome | None = None
        try:
            while not self._closing.is_set():
                try:
                    opcode, data = self._sock.recv_data()
                except WebSocketTimeoutException:
                    if self._idle_expired():
                        outcome = ExecOutcome.transport_failure(
                            f"No traffic for {self._idle_timeout:g}s", timed_out=True
                        )
                        break
                    continue
                self._touch()

                if opcode == ABNF.OPCODE_CLOSE:
                    break
                if opcode not in (ABNF.OPCODE_BINARY, ABNF.OPCODE_TEXT) or not data:
                    continue

                try:
                    channel, payload = decode_frame(data)
                except FrameError as exc:
                    logger.debug("Dropping frame: %s", exc)
                    continue
                if not payload:
                    continue  # servers open each channel with an empty frame
                if channel == STDOUT:
                    self.stdout.feed(payload)
                elif channel == STDERR:
                    self.stderr.feed(payload)
                elif channel == ERROR:
                    outcome = parse_status(payload)
                else:
                    logger.debug("Ignoring %d bytes on channel %d", len(payload), channel)
        except (WebSocketException, OSError) as exc:
            if outcome is None and not self._closing.is_set():
                outcome = ExecOutcome.transport_failure(f"Exec stream lost: {exc}")
        finally:
            self.stdout.finish()
            self.stderr.finish()
            if outcome is None:
                if self._closing.is_set():
                    outcome = ExecOutcome.transport_failure(
                        "Session closed before the remote command finished"
                    )
                else:
                    outcome = ExecOutcome.transport_failure(
                        "Connection closed without an exit status"
                    )
            self._set_outcome(outcome)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Tear the session down; safe to call more than once.

        Closing before the remote command exits cancels it: the socket is
        aborted, blocked readers see end-of-stream, and the outcome resolves
        as a transport failure.
        """
        if self._closed:
            return
        self._closed = True
        self._closing.set()
        self.stdin.closed = True
        self.stdout.close()
        self.stderr.close()
        if self._reader.is_alive():
            try:
                self._sock.abort()
            except (WebSocketException, OSError):
                logger.debug("abort() on exec socket failed", exc_info=True)
            self._reader.join(timeout=_JOIN_TIMEOUT)
        try:
            self._sock.close()
        except (WebSocketException, OSError):
            logger.debug("close() on exec socket failed", exc_info=True)
        logger.debug("Exec session closed")
