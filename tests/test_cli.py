"""Tests for podcp/cli.py — argument handling and exit codes."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.config import ConfigException
from typer.testing import CliRunner

from podcp import __version__
from podcp.cli import EXIT_CODES, app
from podcp.errors import TargetNotFound
from podcp.transfer import Transfer

from conftest import LocalTarTransport, requires_tar

runner = CliRunner()


@pytest.fixture(autouse=True)
def _no_logging_setup():
    """Leave root logging to pytest."""
    with patch("podcp.cli._configure_logging"):
        yield


@pytest.fixture()
def config_dir(tmp_path: Path) -> Path:
    return tmp_path / "cfg"


@pytest.fixture()
def fake_cluster(local_transport: LocalTarTransport):
    """Route the CLI's transport to the local tar transport."""
    with patch("podcp.cli.load_api_client") as load, \
            patch("podcp.cli.KubernetesTransport", return_value=local_transport) as transport_cls:
        yield load, transport_cls


def invoke(config_dir: Path, *args: str):
    return runner.invoke(app, ["--config-dir", str(config_dir), *args])


class TestUsage:
    def test_version(self) -> None:
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_two_local_paths(self, config_dir: Path, tmp_path: Path) -> None:
        result = invoke(config_dir, "cp", str(tmp_path), str(tmp_path / "b"))
        assert result.exit_code == 2

    def test_two_remote_paths(self, config_dir: Path) -> None:
        result = invoke(config_dir, "cp", "web-0:/a", "web-1:/b")
        assert result.exit_code == 2

    def test_container_root_download_is_usage_error(self, config_dir: Path, tmp_path: Path) -> None:
        result = invoke(config_dir, "cp", "web-0:/", str(tmp_path))
        assert result.exit_code == 2

    def test_invalid_namespace_option(self, config_dir: Path, tmp_path: Path) -> None:
        result = invoke(config_dir, "cp", "-n", "Bad_NS", str(tmp_path), "web-0:/tmp/")
        assert result.exit_code == 2

    def test_exit_codes_are_distinct(self) -> None:
        codes = list(EXIT_CODES.values())
        assert len(set(codes)) == len(codes)
        assert 0 not in codes and 2 not in codes


class TestTargets:
    def test_namespace_from_argument(self, config_dir: Path, tmp_path: Path) -> None:
        transport = MagicMock()
        transport.check_target.side_effect = TargetNotFound("gone")
        with patch("podcp.cli.load_api_client"), patch("podcp.cli.KubernetesTransport", return_value=transport):
            result = invoke(config_dir, "cp", "-n", "ignored", "prod/api-0:/etc/hosts", str(tmp_path / "hosts"))
        assert result.exit_code == EXIT_CODES["TargetNotFound"]
        pod = transport.check_target.call_args.args[0]
        assert (pod.namespace, pod.pod) == ("prod", "api-0")

    def test_namespace_option_and_container(self, config_dir: Path, tmp_path: Path) -> None:
        transport = MagicMock()
        transport.check_target.side_effect = TargetNotFound("gone")
        with patch("podcp.cli.load_api_client"), patch("podcp.cli.KubernetesTransport", return_value=transport):
            invoke(config_dir, "cp", "-n", "staging", "-c", "app", "api-0:/etc/hosts", str(tmp_path / "hosts"))
        pod = transport.check_target.call_args.args[0]
        assert (pod.namespace, pod.container) == ("staging", "app")

    def test_default_namespace_from_config(self, config_dir: Path, tmp_path: Path) -> None:
        config_dir.mkdir()
        (config_dir / "config.json").write_text('{"default_namespace": "team-a"}', encoding="utf-8")
        transport = MagicMock()
        transport.check_target.side_effect = TargetNotFound("gone")
        with patch("podcp.cli.load_api_client"), patch("podcp.cli.KubernetesTransport", return_value=transport):
            invoke(config_dir, "cp", "api-0:/etc/hosts", str(tmp_path / "hosts"))
        assert transport.check_target.call_args.args[0].namespace == "team-a"

    def test_kubeconfig_options_are_passed(self, config_dir: Path, tmp_path: Path) -> None:
        transport = MagicMock()
        transport.check_target.side_effect = TargetNotFound("gone")
        with patch("podcp.cli.load_api_client") as load, \
                patch("podcp.cli.KubernetesTransport", return_value=transport):
            invoke(
                config_dir, "cp", "--kubeconfig", "/tmp/kc", "--context", "kind-dev",
                "api-0:/etc/hosts", str(tmp_path / "hosts"),
            )
        load.assert_called_once_with(kubeconfig="/tmp/kc", context="kind-dev")

    def test_unusable_kubeconfig(self, config_dir: Path, tmp_path: Path) -> None:
        with patch("podcp.cli.load_api_client", side_effect=ConfigException("Invalid kube-config file")):
            result = invoke(config_dir, "cp", "api-0:/etc/hosts", str(tmp_path / "hosts"))
        assert result.exit_code == EXIT_CODES["TransportFailure"]
        assert "kube-config" in result.output


@requires_tar
class TestCopy:
    def test_upload_succeeds(self, config_dir: Path, fake_cluster, container_root: Path, tmp_path: Path) -> None:
        src = tmp_path / "a.txt"
        src.write_bytes(b"via cli")
        result = invoke(config_dir, "cp", str(src), "web-0:/tmp/")
        assert result.exit_code == 0, result.output
        assert (container_root / "tmp" / "a.txt").read_bytes() == b"via cli"

    def test_options_reach_transport(self, config_dir: Path, fake_cluster, tmp_path: Path) -> None:
        _, transport_cls = fake_cluster
        src = tmp_path / "a.txt"
        src.write_bytes(b"x")
        invoke(config_dir, "cp", "--chunk-size", "4096", "--idle-timeout", "5", str(src), "web-0:/tmp/")
        kwargs = transport_cls.call_args.kwargs
        assert kwargs["chunk_size"] == 4096
        assert kwargs["idle_timeout"] == 5
        assert kwargs["queue_depth"] == 16

    def test_no_preserve_changes_remote_command(
        self, config_dir: Path, fake_cluster, local_transport: LocalTarTransport, tmp_path: Path
    ) -> None:
        src = tmp_path / "a.txt"
        src.write_bytes(b"x")
        invoke(config_dir, "cp", "--no-preserve", str(src), "web-0:/tmp/")
        assert "--no-same-permissions" in local_transport.commands[0]

    def test_preserve_owner_reaches_transfer_spec(
        self, config_dir: Path, fake_cluster, tmp_path: Path
    ) -> None:
        src = tmp_path / "a.txt"
        src.write_bytes(b"x")
        with patch("podcp.cli.Transfer", wraps=Transfer) as transfer_cls:
            result = invoke(config_dir, "cp", "--preserve-owner", str(src), "web-0:/tmp/")
        assert result.exit_code == 0, result.output
        assert transfer_cls.call_args.args[0].preserve_owner

    def test_owner_is_not_preserved_by_default(
        self, config_dir: Path, fake_cluster, tmp_path: Path
    ) -> None:
        src = tmp_path / "a.txt"
        src.write_bytes(b"x")
        with patch("podcp.cli.Transfer", wraps=Transfer) as transfer_cls:
            invoke(config_dir, "cp", str(src), "web-0:/tmp/")
        assert not transfer_cls.call_args.args[0].preserve_owner

    def test_download_succeeds(self, config_dir: Path, fake_cluster, container_root: Path, tmp_path: Path) -> None:
        (container_root / "etc").mkdir()
        (container_root / "etc" / "hosts").write_bytes(b"127.0.0.1 localhost\n")
        result = invoke(config_dir, "cp", "web-0:/etc/hosts", str(tmp_path / "hosts"))
        assert result.exit_code == 0, result.output
        assert (tmp_path / "hosts").read_bytes() == b"127.0.0.1 localhost\n"

    def test_unknown_pod(self, config_dir: Path, fake_cluster, tmp_path: Path) -> None:
        result = invoke(config_dir, "cp", "ghost-0:/etc/hosts", str(tmp_path / "hosts"))
        assert result.exit_code == EXIT_CODES["TargetNotFound"]
        assert "TargetNotFound" in result.output

    def test_remote_failure(self, config_dir: Path, fake_cluster, tmp_path: Path) -> None:
        result = invoke(config_dir, "cp", "web-0:/missing", str(tmp_path / "out"))
        assert result.exit_code == EXIT_CODES["RemoteCommandFailed"]
        assert "RemoteCommandFailed" in result.output


class TestConfigCommands:
    def test_show_prints_defaults(self, config_dir: Path) -> None:
        result = invoke(config_dir, "config", "show")
        assert result.exit_code == 0, result.output
        shown = json.loads(result.output)
        assert shown["queue_depth"] == 16
        assert shown["default_namespace"] == "default"

    def test_path(self, config_dir: Path) -> None:
        result = invoke(config_dir, "config", "path")
        assert result.exit_code == 0
        assert result.output.strip() == str(config_dir / "config.json")

    def test_set_persists_and_parses_json(self, config_dir: Path) -> None:
        assert invoke(config_dir, "config", "set", "queue_depth", "32").exit_code == 0
        assert invoke(config_dir, "config", "set", "default_namespace", "prod").exit_code == 0
        stored = json.loads((config_dir / "config.json").read_text())
        assert stored["queue_depth"] == 32
        assert stored["default_namespace"] == "prod"

    def test_set_unknown_key(self, config_dir: Path) -> None:
        result = invoke(config_dir, "config", "set", "no_such_key", "1")
        assert result.exit_code == 2
        assert "no_such_key" in result.output

    def test_set_invalid_value(self, config_dir: Path) -> None:
        result = invoke(config_dir, "config", "set", "transfer_chunk_size", "0")
        assert result.exit_code == 2
