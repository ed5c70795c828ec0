"""Codec for the Kubernetes exec channel sub-protocol.

Exec sessions run over one websocket.  Every binary message starts with a
single channel byte followed by the payload for that channel:

    0  stdin   (client -> container)
    1  stdout  (container -> client)
    2  stderr  (container -> client)
    3  error   (container -> client, one JSON ``Status`` document at exit)
    4  resize  (client -> container, unused here)

``v5.channel.k8s.io`` adds channel 255, a client-sent "close" signal whose
payload is the number of the channel being half-closed.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum, auto

logger = logging.getLogger(__name__)

STDIN = 0
STDOUT = 1
STDERR = 2
ERROR = 3
CLOSE = 255

PROTOCOL_V4 = "v4.channel.k8s.io"
PROTOCOL_V5 = "v5.channel.k8s.io"


# ---------------------------------------------------------------------------
# Outcome
# ---------------------------------------------------------------------------


class OutcomeKind(Enum):
    """How a remote command finished."""

    SUCCESS = auto()
    EXIT_CODE = auto()
    TRANSPORT_FAILURE = auto()


@dataclass(frozen=True)
class ExecOutcome:
    """Terminal result of one exec session."""

    kind: OutcomeKind
    exit_code: int | None = None
    message: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        """True when the remote command exited 0."""
        return self.kind is OutcomeKind.SUCCESS

    @classmethod
    def success(cls) -> ExecOutcome:
        return cls(OutcomeKind.SUCCESS, exit_code=0)

    @classmethod
    def transport_failure(cls, message: str, timed_out: bool = False) -> ExecOutcome:
        return cls(OutcomeKind.TRANSPORT_FAILURE, message=message, timed_out=timed_out)


# ---------------------------------------------------------------------------
# Frames
# ---------------------------------------------------------------------------


class FrameError(ValueError):
    """Raised for a message that is not a valid channel frame."""


def encode_frame(channel: int, payload: bytes) -> bytes:
    """Prefix *payload* with its channel byte."""
    if not 0 <= channel <= 255:
        raise FrameError(f"Channel out of range: {channel}")
    return bytes((channel,)) + payload


def decode_frame(message: bytes | str) -> tuple[int, bytes]:
    """Split a received message into ``(channel, payload)``.

    Text messages are accepted for servers that send the status channel as
    a text frame; they are encoded back to UTF-8 first.
    """
    if isinstance(message, str):
        message = message.encode("utf-8")
    if not message:
        raise FrameError("Empty message has no channel byte")
    return message[0], bytes(message[1:])


def close_frame(channel: int) -> bytes:
    """Return the v5 signal that half-closes *channel*."""
    return encode_frame(CLOSE, bytes((channel,)))


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------


def parse_status(payload: bytes) -> ExecOutcome:
    """Decode the channel-3 ``Status`` document into an :class:`ExecOutcome`.

    ``Success`` maps to exit 0.  ``Failure`` with reason ``NonZeroExitCode``
    carries the code in an ``ExitCode`` cause; any other ``Failure`` (for
    example ``tar`` missing from ``PATH``) is a remote failure without a
    code.  An unreadable document is reported as a transport failure.
    """
    try:
        status = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        logger.warning("Unparseable exec status document: %s", exc)
        return ExecOutcome.transport_failure(f"Unparseable exec status: {exc}")

    if not isinstance(status, dict):
        return ExecOutcome.transport_failure("Exec status is not a JSON object")

    if status.get("status") == "Success":
        return ExecOutcome.success()

    message = str(status.get("message") or "remote command failed")
    exit_code: int | None = None
    if status.get("reason") == "NonZeroExitCode":
        causes = (status.get("details") or {}).get("causes") or []
        for cause in causes:
            if cause.get("reason") == "ExitCode":
                try:
                    exit_code = int(cause.get("message", ""))
                except ValueError:
                    logger.warning("Non-numeric exit code in status: %r", cause)
                break
    return ExecOutcome(OutcomeKind.EXIT_CODE, exit_code=exit_code, message=message)
