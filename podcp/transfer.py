"""Transfer orchestration for podcp.

Copies one file or directory tree between the local machine and a container
by running ``tar`` inside the container over an exec session:

- Upload streams a locally built archive into ``tar -xf -``
- Download streams ``tar -cf -`` output into a local extractor
- stderr is drained concurrently with the content stream
- The remote exit status decides success, not the stream closing cleanly
- Every failure is classified (see :mod:`podcp.errors`); nothing is retried
"""

from __future__ import annotations

import concurrent.futures
import logging
import posixpath
import time
from dataclasses import dataclass, field, replace
from enum import Enum, auto
from typing import Callable, Sequence

from podcp.archive.reader import ArchiveReader
from podcp.archive.writer import ArchiveWriter
from podcp.channel import ExecOutcome, OutcomeKind
from podcp.connection import ExecTransport, PodRef
from podcp.errors import (
    ArchiveCorrupt,
    LocalIOFailure,
    PathTraversalRejected,
    RemoteCommandFailed,
    TransferError,
    TransportFailure,
)
from podcp.pump import DEFAULT_CHUNK_SIZE, IterStream, StreamPump, TailBuffer
from podcp.session import ExecSession
from podcp.utils.path_helpers import (
    remote_basename,
    resolve_download_target,
    resolve_upload_target,
    validate_remote_path,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, "int | None"], None]
StateChangeCallback = Callable[["TransferState"], None]

_JOIN_POLL = 0.1      # seconds between pump liveness checks
_OUTCOME_GRACE = 10.0  # seconds to wait for the exit status once streams end

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class Direction(Enum):
    """Direction of a transfer."""

    UPLOAD = auto()    # local -> container
    DOWNLOAD = auto()  # container -> local


class TransferState(Enum):
    """Lifecycle state of a :class:`Transfer`."""

    IDLE = auto()
    SESSION_OPEN = auto()
    STREAMING = auto()
    RECONCILING = auto()
    SUCCEEDED = auto()
    FAILED = auto()


# ---------------------------------------------------------------------------
# Values
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TransferSpec:
    """Describes one copy operation."""

    direction: Direction
    local_path: str
    remote_path: str
    pod: PodRef
    preserve_owner: bool = False
    preserve_permissions: bool = True

    def validate(self) -> None:
        """Raise ``ValueError`` unless this describes a valid copy."""
        if not self.local_path:
            raise ValueError("Local path must not be empty")
        if not validate_remote_path(self.remote_path):
            raise ValueError(f"Invalid remote path: {self.remote_path!r}")
        if self.direction is Direction.DOWNLOAD and remote_basename(self.remote_path) in ("", "."):
            raise ValueError(f"Cannot download {self.remote_path!r}: name a file or directory")


@dataclass(frozen=True)
class TransferResult:
    """Terminal value of a transfer: success, or a classified failure."""

    spec: TransferSpec
    state: TransferState
    bytes_transferred: int = 0
    error: TransferError | None = None
    remote_stderr: str = ""
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.state is TransferState.SUCCEEDED

    @property
    def kind(self) -> str | None:
        """Failure kind name, or ``None`` on success."""
        return self.error.kind if self.error else None

    def raise_for_status(self) -> None:
        """Raise the classified error if the transfer failed."""
        if self.error is not None:
            raise self.error


@dataclass
class _Plan:
    command: list[str]
    writer: ArchiveWriter | None = None
    reader: ArchiveReader | None = None
    total: int | None = None
    description: str = ""
    stderr: TailBuffer = field(default_factory=TailBuffer)
    stdout: TailBuffer = field(default_factory=TailBuffer)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def build_upload_command(remote_dir: str, preserve_permissions: bool = True) -> list[str]:
    """Argument vector that unpacks stdin into *remote_dir*."""
    command = ["tar"]
    if not preserve_permissions:
        command += ["--no-same-permissions", "--no-same-owner"]
    return command + ["-xf", "-", "-C", remote_dir]


def build_download_command(remote_path: str) -> list[str]:
    """Argument vector that writes an archive of *remote_path* to stdout.

    The archive is rooted at the path's basename, so entries arrive as
    ``<basename>/...``.
    """
    stripped = remote_path.rstrip("/")
    parent = posixpath.dirname(stripped) or "."
    name = posixpath.basename(stripped)
    if name.startswith("-"):
        name = f"./{name}"  # keep tar from parsing it as an option
    return ["tar", "-cf", "-", "-C", parent, name]


# ---------------------------------------------------------------------------
# Transfer
# ---------------------------------------------------------------------------


class Transfer:
    """Runs a single :class:`TransferSpec` against an :class:`ExecTransport`.

    Args:
        spec: What to copy.
        transport: Opens exec sessions (and checks the target exists).
        chunk_size: Bytes moved per pump read.
        timeout: Wall-clock limit in seconds for the streaming phase;
            ``None`` waits indefinitely.
        on_progress: Called with ``(bytes_done, bytes_total_or_None)``.
        on_state_change: Called on every state transition.
    """

    def __init__(
        self,
        spec: TransferSpec,
        transport: ExecTransport,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        timeout: float | None = None,
        on_progress: ProgressCallback | None = None,
        on_state_change: StateChangeCallback | None = None,
    ) -> None:
        self.spec = spec
        self._transport = transport
        self._chunk_size = chunk_size
        self._timeout = timeout or None
        self.on_progress = on_progress
        self.on_state_change = on_state_change
        self._state = TransferState.IDLE
        self._total: int | None = None

    @property
    def state(self) -> TransferState:
        return self._state

    def _set_state(self, new_state: TransferState) -> None:
        logger.debug("Transfer state → %s", new_state.name)
        self._state = new_state
        if self.on_state_change:
            try:
                self.on_state_change(new_state)
            except Exception:
                logger.exception("Exception in on_state_change callback")

    def _report_progress(self, done: int) -> None:
        if self.on_progress:
            self.on_progress(done, self._total)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(self) -> TransferResult:
        """Execute the transfer and return its result.

        Classified failures are returned, not raised.

        Raises:
            ValueError: The transfer spec is invalid.
        """
        if self._state is not TransferState.IDLE:
            raise RuntimeError("A Transfer can only be run once")
        started = time.monotonic()
        spec = self.spec
        spec.validate()
        logger.info(
            "%s %s %s %s:%s",
            spec.direction.name.title(),
            spec.local_path,
            "→" if spec.direction is Direction.UPLOAD else "←",
            spec.pod,
            spec.remote_path,
        )

        try:
            container = self._transport.check_target(spec.pod)
            pod = replace(spec.pod, container=container)
            plan = self._plan_upload() if spec.direction is Direction.UPLOAD else self._plan_download()
            self._total = plan.total
            session = self._transport.open_session(pod, plan.command)
        except TransferError as exc:
            return self._finish(exc, started)

        self._set_state(TransferState.SESSION_OPEN)
        with session:
            if spec.direction is Direction.UPLOAD and not session.can_close_stdin:
                error, moved = self._no_stdin_eof(session), 0
            else:
                error, moved = self._stream(session, plan)

        result = self._finish(error, started, moved, plan.stderr.text())
        if result.ok:
            logger.info("%s complete: %d bytes in %.1fs", plan.description, moved, result.duration)
        return result

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def _plan_upload(self) -> _Plan:
        spec = self.spec
        remote_dir, arcname = resolve_upload_target(spec.local_path, spec.remote_path)
        writer = ArchiveWriter(spec.local_path, arcname=arcname, preserve_owner=spec.preserve_owner)
        return _Plan(
            command=build_upload_command(remote_dir, spec.preserve_permissions),
            writer=writer,
            total=writer.archive_size(),
            description=f"Upload {spec.local_path} → {posixpath.join(remote_dir, arcname)}",
        )

    def _plan_download(self) -> _Plan:
        spec = self.spec
        target = resolve_download_target(spec.local_path, spec.remote_path)
        reader = ArchiveReader(
            target.parent,
            rename_root=(remote_basename(spec.remote_path), target.name),
            preserve_permissions=spec.preserve_permissions,
        )
        return _Plan(
            command=build_download_command(spec.remote_path),
            reader=reader,
            description=f"Download {spec.remote_path} → {target}",
        )

    def _no_stdin_eof(self, session: ExecSession) -> TransportFailure:
        protocol = getattr(session, "protocol", None) or "an unknown protocol"
        return TransportFailure(
            f"The exec channel ({protocol}) cannot signal end of input, so the remote tar would "
            "never finish; uploads need v5.channel.k8s.io (Kubernetes 1.30 or newer)",
            path=self.spec.remote_path,
        )

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    def _stream(self, session: ExecSession, plan: _Plan) -> tuple[TransferError | None, int]:
        """Run every pump to completion and classify the result."""
        stderr_pump = StreamPump(session.stderr, plan.stderr, self._chunk_size, name="stderr")
        pumps = [stderr_pump]

        if plan.writer is not None:
            chunks = plan.writer.iter_bytes(self._chunk_size)
            content = StreamPump(
                IterStream(chunks),
                session.stdin,
                self._chunk_size,
                name="upload",
                on_progress=self._report_progress,
                close_sink=True,
            )
            pumps.append(StreamPump(session.stdout, plan.stdout, self._chunk_size, name="stdout"))
        else:
            chunks = None
            session.stdin.close()
            content = StreamPump(
                session.stdout,
                plan.reader,
                self._chunk_size,
                name="download",
                on_progress=self._report_progress,
            )
        pumps.insert(0, content)

        self._set_state(TransferState.STREAMING)
        for pump in pumps:
            pump.start()
        try:
            timed_out, cause = self._join_all(session, pumps)
        finally:
            if chunks is not None and content.join(0):
                chunks.close()

        self._set_state(TransferState.RECONCILING)
        archive_error: TransferError | None = None
        if plan.reader is not None:
            if content.result.ok and not timed_out:
                try:
                    plan.reader.close()
                except TransferError as exc:
                    archive_error = exc
            else:
                plan.reader.abort()

        try:
            outcome = session.wait(timeout=_OUTCOME_GRACE)
        except concurrent.futures.TimeoutError:
            outcome = ExecOutcome.transport_failure("No exit status received from the remote command")

        moved = content.result.bytes_copied
        error = self._reconcile(pumps, archive_error, outcome, plan, timed_out, cause)
        if error is not None:
            error.bytes_transferred = moved
        return error, moved

    def _join_all(
        self, session: ExecSession, pumps: Sequence[StreamPump]
    ) -> tuple[bool, TransferError | None]:
        """Wait for all pumps; close the session early on failure or timeout.

        Returns ``(timed_out, cause)``.  *cause* is the classified pump error
        that made us cut off a remote command still running; the outcome of
        such a session only reflects our own cancellation.
        """
        deadline = time.monotonic() + self._timeout if self._timeout else None
        closed = False
        timed_out = False
        cause: TransferError | None = None
        while not all(pump.join(_JOIN_POLL) for pump in pumps):
            if closed:
                continue
            failed = [pump.result.error for pump in pumps if pump.result.error is not None]
            if failed:
                logger.debug("Pump failed (%s); closing exec session", failed[0])
                if isinstance(failed[0], TransferError) and not session.outcome.done():
                    cause = failed[0]
                closed = True
            elif deadline is not None and time.monotonic() >= deadline:
                logger.warning("Transfer exceeded %gs; cancelling", self._timeout)
                closed = timed_out = True
            if closed:
                for pump in pumps:
                    pump.cancel()
                session.close()
        return timed_out, cause

    def _reconcile(
        self,
        pumps: Sequence[StreamPump],
        archive_error: TransferError | None,
        outcome: ExecOutcome,
        plan: _Plan,
        timed_out: bool,
        cause: TransferError | None = None,
    ) -> TransferError | None:
        """Pick the one failure that explains the transfer, or ``None``.

        Local faults come first (they are why the session was cut short),
        then a classified error that made us cancel the remote command, then
        the remote side's own verdict, then stream-level damage.
        """
        content = pumps[0]
        errors = [archive_error] + [p.result.error for p in pumps]
        local = [e for e in errors if isinstance(e, (LocalIOFailure, PathTraversalRejected))]
        if local:
            return local[0]

        if timed_out:
            return TransportFailure(f"Transfer timed out after {self._timeout:g}s", timed_out=True)
        if cause is not None:
            return cause

        stderr_text = plan.stderr.text()
        if outcome.kind is OutcomeKind.TRANSPORT_FAILURE:
            return TransportFailure(outcome.message, timed_out=outcome.timed_out)
        if outcome.kind is OutcomeKind.EXIT_CODE:
            detail = stderr_text.splitlines()[-1] if stderr_text else outcome.message
            code = outcome.exit_code
            prefix = f"Remote tar exited with code {code}" if code is not None else "Remote command failed"
            return RemoteCommandFailed(
                f"{prefix}: {detail}",
                exit_code=code,
                stderr=stderr_text,
                path=self.spec.remote_path,
            )

        stream_errors = [e for e in errors if e is not None and not isinstance(e, TransferError)]
        if stream_errors:
            return TransportFailure(f"Exec stream failed: {stream_errors[0]}")

        corrupt = [e for e in errors if isinstance(e, ArchiveCorrupt)]
        if corrupt:
            return corrupt[0]
        if not content.result.ok:
            return TransportFailure("Transfer was cancelled before completion")
        return None

    # ------------------------------------------------------------------
    # Result
    # ------------------------------------------------------------------

    def _finish(
        self,
        error: TransferError | None,
        started: float,
        moved: int = 0,
        stderr: str = "",
    ) -> TransferResult:
        if error is None:
            self._set_state(TransferState.SUCCEEDED)
        else:
            self._set_state(TransferState.FAILED)
            logger.error("Transfer failed (%s): %s", error.kind, error)
        return TransferResult(
            spec=self.spec,
            state=self._state,
            bytes_transferred=moved,
            error=error,
            remote_stderr=stderr,
            duration=time.monotonic() - started,
        )


def copy(
    spec: TransferSpec,
    transport: ExecTransport,
    **kwargs,
) -> TransferResult:
    """Run *spec* once and return the result."""
    return Transfer(spec, transport, **kwargs).run()
