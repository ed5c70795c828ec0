"""Cluster connection: target checks and exec-session opening.

The transfer engine depends only on the :class:`ExecTransport` protocol so it
can run against a fake in tests.  :class:`KubernetesTransport` is the real
implementation; it leaves credential loading and the websocket upgrade
handshake to the ``kubernetes`` client and takes over the raw socket once the
exec channel is open.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Protocol, Sequence

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.stream import stream
from urllib3.exceptions import HTTPError
from websocket import WebSocketException

from podcp.errors import TargetNotFound, TransportFailure
from podcp.session import (
    DEFAULT_CHUNK_SIZE,
    DEFAULT_QUEUE_DEPTH,
    ExecSession,
    WebSocketExecSession,
)

logger = logging.getLogger(__name__)

_DEFAULT_CONTAINER_ANNOTATION = "kubectl.kubernetes.io/default-container"


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PodRef:
    """Identity of the container a transfer targets."""

    namespace: str
    pod: str
    container: str | None = None

    def __str__(self) -> str:
        suffix = f" (container {self.container})" if self.container else ""
        return f"{self.namespace}/{self.pod}{suffix}"


class ExecTransport(Protocol):
    def check_target(self, pod: PodRef) -> str:
        """Verify the container exists and runs; return its resolved name."""
        ...

    def open_session(self, pod: PodRef, command: Sequence[str]) -> ExecSession:
        """Start *command* in the container and return the live session."""
        ...


# ---------------------------------------------------------------------------
# Credential loading
# ---------------------------------------------------------------------------


def load_api_client(
    kubeconfig: str | None = None,
    context: str | None = None,
) -> client.ApiClient:
    """Build an authenticated ``ApiClient``.

    Uses the in-cluster service account when running inside a pod and no
    kubeconfig was given; otherwise loads *kubeconfig* (or the default
    ``~/.kube/config`` / ``$KUBECONFIG``).

    Raises:
        kubernetes.config.ConfigException: No usable configuration.
    """
    if kubeconfig is None and context is None and os.environ.get("KUBERNETES_SERVICE_HOST"):
        logger.debug("Using in-cluster service account credentials")
        config.load_incluster_config()
        return client.ApiClient()
    logger.debug("Loading kubeconfig %s (context %s)", kubeconfig or "<default>", context or "<current>")
    return config.new_client_from_config(config_file=kubeconfig, context=context)


# ---------------------------------------------------------------------------
# KubernetesTransport
# ---------------------------------------------------------------------------


class KubernetesTransport:
    """Opens exec sessions through the Kubernetes API server.

    Args:
        api_client: An authenticated ``kubernetes.client.ApiClient``.
        chunk_size: Largest stdin frame payload.
        queue_depth: Frames buffered per output channel.
        idle_timeout: Seconds of silence before a session fails.
    """

    def __init__(
        self,
        api_client: client.ApiClient,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        queue_depth: int = DEFAULT_QUEUE_DEPTH,
        idle_timeout: float | None = None,
    ) -> None:
        self._core = client.CoreV1Api(api_client)
        self.chunk_size = chunk_size
        self.queue_depth = queue_depth
        self.idle_timeout = idle_timeout

    def check_target(self, pod: PodRef) -> str:
        """Return the container name to exec into.

        Raises:
            TargetNotFound: Pod or container missing, or not running.
            TransportFailure: The API server could not be reached.
        """
        try:
            obj = self._core.read_namespaced_pod(pod.pod, pod.namespace)
        except ApiException as exc:
            if exc.status == 404:
                raise TargetNotFound(f"Pod {pod.namespace}/{pod.pod} not found", reason="pod") from exc
            raise TransportFailure(f"Could not read pod {pod.namespace}/{pod.pod}: {exc.reason}") from exc
        except (HTTPError, OSError) as exc:
            raise TransportFailure(f"Could not reach the API server: {exc}") from exc

        names = [c.name for c in obj.spec.containers]
        annotations = obj.metadata.annotations or {}
        container = pod.container or annotations.get(_DEFAULT_CONTAINER_ANNOTATION) or names[0]
        if container not in names:
            raise TargetNotFound(
                f"Container {container!r} not found in pod {pod.namespace}/{pod.pod} "
                f"(available: {', '.join(names)})",
                reason="container",
            )

        phase = obj.status.phase if obj.status else None
        statuses = {s.name: s for s in (obj.status.container_statuses or [])} if obj.status else {}
        status = statuses.get(container)
        running = status is not None and status.state is not None and status.state.running is not None
        if phase != "Running" or not running:
            raise TargetNotFound(
                f"Container {container!r} in pod {pod.namespace}/{pod.pod} is not running "
                f"(pod phase: {phase})",
                reason="not-running",
            )

        logger.debug("Target %s/%s container %s is running", pod.namespace, pod.pod, container)
        return container

    def open_session(self, pod: PodRef, command: Sequence[str]) -> WebSocketExecSession:
        """Start *command* in the target container.

        Raises:
            TransportFailure: The exec channel could not be opened.
        """
        logger.info("Exec in %s: %s", pod, " ".join(command))
        try:
            ws_client = stream(
                self._core.connect_get_namespaced_pod_exec,
                pod.pod,
                pod.namespace,
                command=list(command),
                container=pod.container,
                stdin=True,
                stdout=True,
                stderr=True,
                tty=False,
                _preload_content=False,
            )
        except ApiException as exc:
            raise TransportFailure(f"Exec handshake rejected: {exc.reason}") from exc
        except (WebSocketException, HTTPError, OSError) as exc:
            raise TransportFailure(f"Could not open exec channel: {exc}") from exc

        return WebSocketExecSession(
            ws_client.sock,
            chunk_size=self.chunk_size,
            queue_depth=self.queue_depth,
            idle_timeout=self.idle_timeout,
            protocol=getattr(ws_client, "subprotocol", None),
        )
