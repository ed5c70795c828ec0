"""Tests for podcp/connection.py — target checks and exec session opening."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
from kubernetes import client
from kubernetes.client.rest import ApiException
from urllib3.exceptions import MaxRetryError

from podcp.channel import PROTOCOL_V4, PROTOCOL_V5, STDIN, close_frame
from podcp.connection import KubernetesTransport, PodRef, load_api_client
from podcp.errors import TargetNotFound, TransportFailure
from podcp.session import WebSocketExecSession

from conftest import CLOSE, FakeSocket


def make_pod(
    containers: tuple[str, ...] = ("app",),
    running: tuple[str, ...] = ("app",),
    phase: str = "Running",
    annotations: dict | None = None,
) -> client.V1Pod:
    statuses = [
        client.V1ContainerStatus(
            name=name,
            image="busybox",
            image_id="busybox@sha256:0",
            ready=name in running,
            restart_count=0,
            state=client.V1ContainerState(
                running=client.V1ContainerStateRunning() if name in running else None,
                waiting=None if name in running else client.V1ContainerStateWaiting(reason="CrashLoopBackOff"),
            ),
        )
        for name in containers
    ]
    return client.V1Pod(
        metadata=client.V1ObjectMeta(name="web-0", namespace="default", annotations=annotations),
        spec=client.V1PodSpec(containers=[client.V1Container(name=name) for name in containers]),
        status=client.V1PodStatus(phase=phase, container_statuses=statuses),
    )


@pytest.fixture()
def core_api():
    with patch("podcp.connection.client.CoreV1Api") as core_cls:
        yield core_cls.return_value


@pytest.fixture()
def transport(core_api) -> KubernetesTransport:
    return KubernetesTransport(MagicMock(), chunk_size=1024, queue_depth=4, idle_timeout=30)


POD = PodRef(namespace="default", pod="web-0")


class TestPodRef:
    def test_str(self) -> None:
        assert str(POD) == "default/web-0"
        assert str(PodRef("prod", "api-0", "app")) == "prod/api-0 (container app)"


class TestCheckTarget:
    def test_defaults_to_first_container(self, transport: KubernetesTransport, core_api) -> None:
        core_api.read_namespaced_pod.return_value = make_pod(("app", "sidecar"), running=("app", "sidecar"))
        assert transport.check_target(POD) == "app"
        core_api.read_namespaced_pod.assert_called_once_with("web-0", "default")

    def test_default_container_annotation(self, transport: KubernetesTransport, core_api) -> None:
        core_api.read_namespaced_pod.return_value = make_pod(
            ("init-proxy", "app"),
            running=("init-proxy", "app"),
            annotations={"kubectl.kubernetes.io/default-container": "app"},
        )
        assert transport.check_target(POD) == "app"

    def test_explicit_container(self, transport: KubernetesTransport, core_api) -> None:
        core_api.read_namespaced_pod.return_value = make_pod(("app", "sidecar"), running=("app", "sidecar"))
        assert transport.check_target(PodRef("default", "web-0", "sidecar")) == "sidecar"

    def test_missing_pod(self, transport: KubernetesTransport, core_api) -> None:
        core_api.read_namespaced_pod.side_effect = ApiException(status=404, reason="Not Found")
        with pytest.raises(TargetNotFound) as excinfo:
            transport.check_target(POD)
        assert excinfo.value.reason == "pod"

    def test_missing_container(self, transport: KubernetesTransport, core_api) -> None:
        core_api.read_namespaced_pod.return_value = make_pod()
        with pytest.raises(TargetNotFound) as excinfo:
            transport.check_target(PodRef("default", "web-0", "nope"))
        assert excinfo.value.reason == "container"
        assert "app" in str(excinfo.value)

    def test_container_not_running(self, transport: KubernetesTransport, core_api) -> None:
        core_api.read_namespaced_pod.return_value = make_pod(("app",), running=())
        with pytest.raises(TargetNotFound) as excinfo:
            transport.check_target(POD)
        assert excinfo.value.reason == "not-running"

    def test_pod_pending(self, transport: KubernetesTransport, core_api) -> None:
        core_api.read_namespaced_pod.return_value = make_pod(phase="Pending")
        with pytest.raises(TargetNotFound):
            transport.check_target(POD)

    def test_api_error_is_transport_failure(self, transport: KubernetesTransport, core_api) -> None:
        core_api.read_namespaced_pod.side_effect = ApiException(status=500, reason="Internal Server Error")
        with pytest.raises(TransportFailure):
            transport.check_target(POD)

    def test_unreachable_server(self, transport: KubernetesTransport, core_api) -> None:
        core_api.read_namespaced_pod.side_effect = MaxRetryError(None, "/api/v1", "connection refused")
        with pytest.raises(TransportFailure):
            transport.check_target(POD)


class TestOpenSession:
    def test_opens_websocket_session(self, transport: KubernetesTransport, core_api) -> None:
        sock = FakeSocket([CLOSE])
        with patch("podcp.connection.stream") as stream:
            stream.return_value.sock = sock
            stream.return_value.subprotocol = PROTOCOL_V5
            session = transport.open_session(PodRef("default", "web-0", "app"), ["tar", "-cf", "-", "-C", "/", "etc"])
        try:
            assert isinstance(session, WebSocketExecSession)
            args, kwargs = stream.call_args
            assert args == (core_api.connect_get_namespaced_pod_exec, "web-0", "default")
            assert kwargs["command"] == ["tar", "-cf", "-", "-C", "/", "etc"]
            assert kwargs["container"] == "app"
            assert kwargs["stdin"] and kwargs["stdout"] and kwargs["stderr"]
            assert kwargs["tty"] is False
            assert kwargs["_preload_content"] is False
            assert sock.timeout == pytest.approx(1.0)
            assert session.protocol == PROTOCOL_V5
        finally:
            session.close()

    def test_handshake_rejected(self, transport: KubernetesTransport) -> None:
        with patch("podcp.connection.stream", side_effect=ApiException(status=403, reason="Forbidden")):
            with pytest.raises(TransportFailure, match="Forbidden"):
                transport.open_session(POD, ["tar"])

    def test_connection_error(self, transport: KubernetesTransport) -> None:
        with patch("podcp.connection.stream", side_effect=ConnectionRefusedError("refused")):
            with pytest.raises(TransportFailure):
                transport.open_session(POD, ["tar"])


class TestExecThroughKubernetesClient:
    """Sessions opened through the real ``kubernetes.stream`` request path."""

    @pytest.fixture()
    def cluster_transport(self) -> KubernetesTransport:
        configuration = client.Configuration(host="http://127.0.0.1:6443")
        return KubernetesTransport(client.ApiClient(configuration), idle_timeout=30)

    def test_header_negotiated_v5_half_closes_stdin(self, cluster_transport: KubernetesTransport) -> None:
        sock = FakeSocket(protocol=PROTOCOL_V5)
        with patch("kubernetes.stream.ws_client.create_websocket", return_value=sock) as create:
            session = cluster_transport.open_session(
                PodRef("default", "web-0", "app"), ["tar", "-xf", "-", "-C", "/tmp"]
            )
        try:
            url = create.call_args.args[1]
            assert url.startswith("ws://127.0.0.1:6443/")
            assert "/namespaces/default/pods/web-0/exec" in url
            assert session.protocol == PROTOCOL_V5
            assert session.can_close_stdin
            session.stdin.write(b"data")
            session.stdin.close()
            assert sock.sent == [b"\x00data", close_frame(STDIN)]
        finally:
            session.close()

    def test_v4_server_cannot_half_close(self, cluster_transport: KubernetesTransport) -> None:
        sock = FakeSocket(protocol=PROTOCOL_V4)
        with patch("kubernetes.stream.ws_client.create_websocket", return_value=sock):
            session = cluster_transport.open_session(POD, ["tar", "-cf", "-", "-C", "/", "etc"])
        try:
            assert session.protocol == PROTOCOL_V4
            assert not session.can_close_stdin
        finally:
            session.close()


class TestLoadApiClient:
    def test_in_cluster(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("KUBERNETES_SERVICE_HOST", "10.0.0.1")
        with patch("podcp.connection.config.load_incluster_config") as load, \
                patch("podcp.connection.client.ApiClient") as api_client:
            assert load_api_client() is api_client.return_value
        load.assert_called_once_with()

    def test_kubeconfig(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("KUBERNETES_SERVICE_HOST", raising=False)
        with patch("podcp.connection.config.new_client_from_config") as new_client:
            assert load_api_client("/tmp/kubeconfig", "kind-dev") is new_client.return_value
        new_client.assert_called_once_with(config_file="/tmp/kubeconfig", context="kind-dev")

    def test_explicit_kubeconfig_wins_in_cluster(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("KUBERNETES_SERVICE_HOST", "10.0.0.1")
        with patch("podcp.connection.config.new_client_from_config") as new_client, \
                patch("podcp.connection.config.load_incluster_config") as load:
            load_api_client(context="kind-dev")
        load.assert_not_called()
        new_client.assert_called_once()
