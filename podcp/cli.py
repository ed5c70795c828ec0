"""Command-line interface for podcp.

    podcp cp ./site web-7d9f:/usr/share/nginx/html/
    podcp cp -n prod api-0:/var/log/app ./logs
    podcp cp staging/api-0:/etc/app/config.yaml ./config.yaml
"""

from __future__ import annotations

import json
import logging
import os
import sys
from pathlib import Path
from typing import Optional

import typer
from kubernetes.config import ConfigException
from tqdm import tqdm

from podcp import __version__
from podcp.config import ConfigManager
from podcp.connection import KubernetesTransport, PodRef, load_api_client
from podcp.transfer import Direction, Transfer, TransferResult, TransferSpec
from podcp.utils.path_helpers import human_readable_size, is_valid_name, split_remote_arg

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s  %(levelname)-8s  %(name)s — %(message)s"
_DATE_FORMAT = "%H:%M:%S"

EXIT_USAGE = 2
EXIT_CODES: dict[str, int] = {
    "TargetNotFound": 3,
    "TransportFailure": 4,
    "RemoteCommandFailed": 5,
    "LocalIOFailure": 6,
    "ArchiveCorrupt": 7,
    "PathTraversalRejected": 8,
}

app = typer.Typer(
    name="podcp",
    help="Copy files and directories to and from Kubernetes containers.",
    no_args_is_help=True,
    add_completion=False,
)
config_app = typer.Typer(help="Show or change stored defaults.", no_args_is_help=True)
app.add_typer(config_app, name="config")


def _configure_logging(verbosity: int) -> None:
    """Set up root logging to stderr; -v for INFO, -vv for DEBUG."""
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG
    logging.basicConfig(
        level=level,
        format=_LOG_FORMAT,
        datefmt=_DATE_FORMAT,
        stream=sys.stderr,
    )
    logging.getLogger().setLevel(level)
    # Quieten noisy third-party loggers
    for name in ("kubernetes", "urllib3", "websocket"):
        logging.getLogger(name).setLevel(logging.WARNING)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"podcp {__version__}")
        raise typer.Exit(0)


@app.callback()
def main_callback(
    ctx: typer.Context,
    verbosity: int = typer.Option(
        0,
        "--verbose",
        "-v",
        count=True,
        help="Increase verbosity (-v for INFO, -vv for DEBUG)",
    ),
    config_dir: Optional[Path] = typer.Option(
        None,
        "--config-dir",
        envvar="PODCP_CONFIG_DIR",
        help="Directory holding config.json (default: ~/.podcp)",
    ),
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
) -> None:
    """podcp - stream files between this machine and a container over exec."""
    _configure_logging(verbosity)
    ctx.obj = ConfigManager(base_dir=config_dir)


# ---------------------------------------------------------------------------
# cp
# ---------------------------------------------------------------------------


def _build_spec(
    src: str,
    dest: str,
    namespace: str,
    container: Optional[str],
    no_preserve: bool,
    preserve_owner: bool = False,
) -> TransferSpec:
    """Turn the two positional arguments into a :class:`TransferSpec`."""
    src_remote = split_remote_arg(src)
    dest_remote = split_remote_arg(dest)
    if (src_remote is None) == (dest_remote is None):
        raise typer.BadParameter(
            "exactly one of SRC and DEST must be [namespace/]pod:path",
            param_hint="SRC/DEST",
        )

    if dest_remote is not None:
        direction, local, (arg_ns, pod, remote) = Direction.UPLOAD, src, dest_remote
    else:
        direction, local, (arg_ns, pod, remote) = Direction.DOWNLOAD, dest, src_remote

    namespace = arg_ns or namespace
    if not is_valid_name(namespace):
        raise typer.BadParameter(f"invalid namespace {namespace!r}", param_hint="--namespace")

    spec = TransferSpec(
        direction=direction,
        local_path=local,
        remote_path=remote,
        pod=PodRef(namespace=namespace, pod=pod, container=container),
        preserve_owner=preserve_owner,
        preserve_permissions=not no_preserve,
    )
    try:
        spec.validate()
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="SRC/DEST") from exc
    return spec


def _report(result: TransferResult) -> None:
    if result.ok:
        logger.info(
            "Copied %s in %.1fs",
            human_readable_size(result.bytes_transferred),
            result.duration,
        )
        return
    error = result.error
    typer.echo(f"error: {result.kind}: {error}", err=True)
    if result.remote_stderr and result.remote_stderr not in str(error):
        typer.echo(result.remote_stderr, err=True)
    if error is not None and error.bytes_transferred:
        typer.echo(
            f"{human_readable_size(error.bytes_transferred)} transferred before the failure; "
            "the destination may be incomplete",
            err=True,
        )


@app.command("cp")
def cp(
    ctx: typer.Context,
    src: str = typer.Argument(..., help="Source: local path or [namespace/]pod:path"),
    dest: str = typer.Argument(..., help="Destination: local path or [namespace/]pod:path"),
    namespace: Optional[str] = typer.Option(
        None, "--namespace", "-n", help="Namespace of the pod (overridden by ns/pod:path)"
    ),
    container: Optional[str] = typer.Option(
        None, "--container", "-c", help="Container name (default: the pod's default container)"
    ),
    kubeconfig: Optional[str] = typer.Option(None, "--kubeconfig", help="Path to a kubeconfig file"),
    context: Optional[str] = typer.Option(None, "--context", help="Kubeconfig context to use"),
    no_preserve: bool = typer.Option(
        False, "--no-preserve", help="Do not preserve permission bits in the copy"
    ),
    preserve_owner: bool = typer.Option(
        False, "--preserve-owner", help="Upload with local uid/gid and names instead of root"
    ),
    timeout: Optional[float] = typer.Option(
        None, "--timeout", min=0, help="Abort after this many seconds (0 = no limit)"
    ),
    idle_timeout: Optional[float] = typer.Option(
        None, "--idle-timeout", min=0, help="Abort after this many seconds without traffic (0 = never)"
    ),
    chunk_size: Optional[int] = typer.Option(None, "--chunk-size", min=1, help="Bytes per stream chunk"),
    no_progress: bool = typer.Option(False, "--no-progress", help="Do not show a progress bar"),
) -> None:
    """Copy SRC to DEST, where exactly one of them is in a container."""
    settings: ConfigManager = ctx.obj or ConfigManager()
    spec = _build_spec(
        src,
        dest,
        settings.resolve("default_namespace", namespace),
        container,
        no_preserve,
        preserve_owner,
    )

    chunk = settings.resolve("transfer_chunk_size", chunk_size)
    try:
        api_client = load_api_client(
            kubeconfig=settings.resolve("kubeconfig", kubeconfig),
            context=settings.resolve("context", context),
        )
    except ConfigException as exc:
        typer.echo(f"error: TransportFailure: cannot load cluster credentials: {exc}", err=True)
        raise typer.Exit(EXIT_CODES["TransportFailure"]) from exc

    transport = KubernetesTransport(
        api_client,
        chunk_size=chunk,
        queue_depth=settings.get("queue_depth"),
        idle_timeout=settings.resolve("idle_timeout", idle_timeout),
    )

    show = settings.get("show_progress") and not no_progress and sys.stderr.isatty()
    label = os.path.basename(spec.remote_path.rstrip("/") or spec.local_path)
    with tqdm(
        total=None,
        unit="B",
        unit_scale=True,
        unit_divisor=1024,
        desc=label,
        disable=not show,
        leave=False,
    ) as bar:

        def on_progress(done: int, total: int | None) -> None:
            if total and bar.total != total:
                bar.total = total
            bar.update(done - bar.n)

        result = Transfer(
            spec,
            transport,
            chunk_size=chunk,
            timeout=settings.resolve("transfer_timeout", timeout),
            on_progress=on_progress,
        ).run()

    _report(result)
    if not result.ok:
        raise typer.Exit(EXIT_CODES.get(result.kind or "", 1))


# ---------------------------------------------------------------------------
# config
# ---------------------------------------------------------------------------


@config_app.command("show")
def config_show(ctx: typer.Context) -> None:
    """Print the stored settings as JSON."""
    settings: ConfigManager = ctx.obj or ConfigManager()
    typer.echo(json.dumps(settings.get_all(), indent=2, sort_keys=True))


@config_app.command("path")
def config_path(ctx: typer.Context) -> None:
    """Print the location of config.json."""
    settings: ConfigManager = ctx.obj or ConfigManager()
    typer.echo(str(settings.path))


@config_app.command("set")
def config_set(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Setting name, e.g. default_namespace"),
    value: str = typer.Argument(..., help="JSON value; bare words are taken as strings"),
) -> None:
    """Store a default used by later commands."""
    settings: ConfigManager = ctx.obj or ConfigManager()
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError:
        parsed = value
    try:
        settings.set(key, parsed)
    except KeyError as exc:
        known = ", ".join(sorted(settings.get_all()))
        raise typer.BadParameter(f"unknown setting {key!r} (known: {known})", param_hint="KEY") from exc
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="VALUE") from exc
    logger.info("Set %s = %r in %s", key, parsed, settings.path)


def main() -> None:
    """Console-script entry point."""
    app()


if __name__ == "__main__":
    main()
