"""Shared fixtures for podcp tests.

``FakeSocket`` stands in for a ``websocket.WebSocket`` speaking the exec
channel protocol; tests script the frames it returns.

``LocalTarTransport`` implements the exec transport by running the command
as a local subprocess, with the container's filesystem mapped onto a
temporary directory.  End-to-end tests use it with the real ``tar`` binary.
"""

from __future__ import annotations

import json
import os
import queue
import shlex
import shutil
import subprocess
import threading
from pathlib import Path
from typing import Sequence

import pytest
from websocket import ABNF, WebSocketConnectionClosedException, WebSocketTimeoutException

from podcp.channel import PROTOCOL_V4, ExecOutcome, OutcomeKind
from podcp.connection import PodRef
from podcp.errors import TargetNotFound
from podcp.session import ExecSession

requires_tar = pytest.mark.skipif(shutil.which("tar") is None, reason="tar binary not available")
requires_sh = pytest.mark.skipif(shutil.which("sh") is None, reason="sh not available")


# ---------------------------------------------------------------------------
# Scripted websocket
# ---------------------------------------------------------------------------


def data_frame(channel: int, payload: bytes) -> tuple[int, bytes]:
    """A binary frame as ``recv_data()`` returns it."""
    return ABNF.OPCODE_BINARY, bytes([channel]) + payload


def status_frame(status: dict) -> tuple[int, bytes]:
    return data_frame(3, json.dumps(status).encode())


SUCCESS_STATUS = {"metadata": {}, "status": "Success"}


def exit_status(code: int) -> dict:
    return {
        "metadata": {},
        "status": "Failure",
        "message": f"command terminated with non-zero exit code: exit status {code}",
        "reason": "NonZeroExitCode",
        "details": {"causes": [{"reason": "ExitCode", "message": str(code)}]},
    }


CLOSE = (ABNF.OPCODE_CLOSE, b"")


class FakeSocket:
    """Minimal ``websocket.WebSocket`` replacement driven by a frame queue.

    Items are ``(opcode, data)`` tuples or exceptions to raise.  With no
    timeout set, ``recv_data`` blocks until something is pushed.

    Like a socket opened by the ``kubernetes`` client, ``subprotocol`` stays
    unset and the accepted *protocol* is only in the handshake headers.
    """

    def __init__(self, frames: Sequence = (), protocol: str | None = PROTOCOL_V4) -> None:
        self._frames: queue.Queue = queue.Queue()
        for frame in frames:
            self._frames.put(frame)
        self.subprotocol = None
        self.headers = {"Sec-WebSocket-Protocol": protocol} if protocol else {}
        self.timeout: float | None = None
        self.sent: list[bytes] = []
        self.aborted = False
        self.closed = False
        self.fail_sends = False

    def push(self, frame) -> None:
        self._frames.put(frame)

    def getheaders(self) -> dict:
        return self.headers

    def settimeout(self, timeout: float | None) -> None:
        self.timeout = timeout

    def recv_data(self):
        try:
            item = self._frames.get(timeout=self.timeout)
        except queue.Empty:
            raise WebSocketTimeoutException("timed out") from None
        if isinstance(item, Exception):
            raise item
        return item

    def send_binary(self, data: bytes) -> None:
        if self.closed or self.fail_sends:
            raise WebSocketConnectionClosedException("socket is already closed.")
        self.sent.append(data)

    def abort(self) -> None:
        self.aborted = True
        self._frames.put(WebSocketConnectionClosedException("aborted"))

    def close(self) -> None:
        self.closed = True


@pytest.fixture()
def fake_socket_factory():
    """Return a factory for scripted sockets."""
    return FakeSocket


# ---------------------------------------------------------------------------
# Subprocess-backed transport
# ---------------------------------------------------------------------------


class SubprocessSession(ExecSession):
    """Exec session backed by a local child process."""

    def __init__(self, argv: Sequence[str], cwd: Path) -> None:
        super().__init__()
        self.argv = list(argv)
        self._proc = subprocess.Popen(
            self.argv,
            cwd=cwd,
            bufsize=0,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
        self.stdin = self._proc.stdin
        self.stdout = self._proc.stdout
        self.stderr = self._proc.stderr
        self._waiter = threading.Thread(target=self._wait_exit, daemon=True)
        self._waiter.start()
        self.closed = False

    def _wait_exit(self) -> None:
        code = self._proc.wait()
        if code == 0:
            self._set_outcome(ExecOutcome.success())
        else:
            self._set_outcome(
                ExecOutcome(OutcomeKind.EXIT_CODE, exit_code=code, message=f"exit status {code}")
            )

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._proc.poll() is None:
            self._proc.kill()
        self._proc.wait()
        self._waiter.join(timeout=5)
        for pipe in (self._proc.stdin, self._proc.stdout, self._proc.stderr):
            try:
                pipe.close()
            except (OSError, ValueError):
                pass


class LocalTarTransport:
    """``ExecTransport`` that runs commands locally against a fake container root.

    ``-C <dir>`` arguments are remapped under *container_root*, so remote
    absolute paths like ``/tmp`` land in ``container_root/tmp``.

    Args:
        container_root: Directory standing in for the container filesystem.
        pods: Pod names that exist; anything else is ``TargetNotFound``.
        script: Optional ``sh -c`` script run instead of the given command.
            ``{argv}`` in it is replaced with the remapped command.
    """

    def __init__(self, container_root: Path, pods: Sequence[str] = ("web-0",), script: str | None = None) -> None:
        self.container_root = container_root
        self.pods = set(pods)
        self.script = script
        self.commands: list[list[str]] = []
        self.sessions: list[SubprocessSession] = []

    def _remap(self, command: Sequence[str]) -> list[str]:
        argv = list(command)
        for i, arg in enumerate(argv[:-1]):
            if arg == "-C":
                argv[i + 1] = os.path.join(self.container_root, argv[i + 1].lstrip("/"))
        return argv

    def check_target(self, pod: PodRef) -> str:
        if pod.pod not in self.pods:
            raise TargetNotFound(f"Pod {pod.namespace}/{pod.pod} not found", reason="pod")
        return pod.container or "main"

    def open_session(self, pod: PodRef, command: Sequence[str]) -> SubprocessSession:
        self.commands.append(list(command))
        argv = self._remap(command)
        if self.script is not None:
            argv = ["sh", "-c", self.script.format(argv=shlex.join(argv))]
        session = SubprocessSession(argv, cwd=self.container_root)
        self.sessions.append(session)
        return session


@pytest.fixture()
def container_root(tmp_path: Path) -> Path:
    """Empty directory standing in for a container's filesystem."""
    root = tmp_path / "container"
    (root / "tmp").mkdir(parents=True)
    return root


@pytest.fixture()
def local_transport(container_root: Path) -> LocalTarTransport:
    return LocalTarTransport(container_root)


@pytest.fixture()
def pod() -> PodRef:
    return PodRef(namespace="default", pod="web-0")
