"""``kubemirror`` command group.

Options given on the command line override the ``KUBEMIRROR_*`` environment
configuration; everything not given falls back to it.
"""

from __future__ import annotations

import asyncio

import click

from kubemirror.app import Mode, main
from kubemirror.config import _parse_kinds, _validate_log_level, load_config
from kubemirror.models.config import KubeMirrorConfig
from kubemirror.models.resources import ResourceKind


def _load(ctx: click.Context) -> KubeMirrorConfig:
    try:
        config = load_config()
    except ValueError as exc:
        raise click.ClickException(f"invalid environment configuration: {exc}") from exc

    opts = ctx.obj or {}
    if opts.get("log_level"):
        config.log.level = opts["log_level"]
    if opts.get("log_format"):
        config.log.format = opts["log_format"]
    if opts.get("metrics_port") is not None:
        config.metrics.port = opts["metrics_port"]
    if opts.get("source_kubeconfig"):
        config.source.kubeconfig = opts["source_kubeconfig"]
    if opts.get("source_context"):
        config.source.context = opts["source_context"]
    if opts.get("dest_kubeconfig"):
        config.destination.kubeconfig = opts["dest_kubeconfig"]
    if opts.get("dest_context"):
        config.destination.context = opts["dest_context"]
    if opts.get("kinds"):
        kinds = opts["kinds"]
        config.sync.kinds = list(kinds)
        config.importer.kinds = list(kinds)
        config.recorder.kinds = list(kinds)
    return config


def _kinds_option(_ctx: click.Context, _param: click.Parameter, value: str | None) -> list[ResourceKind] | None:
    if not value:
        return None
    try:
        return _parse_kinds(value)
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc


def _log_level_option(_ctx: click.Context, _param: click.Parameter, value: str | None) -> str | None:
    if value is None:
        return None
    try:
        return _validate_log_level(value)
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc


def _run(mode: Mode, config: KubeMirrorConfig) -> None:
    asyncio.run(main(mode, config))


@click.group()
@click.option("--log-level", callback=_log_level_option, help="debug, info, warning or error.")
@click.option("--log-format", type=click.Choice(["json", "console"]), default=None, help="Log renderer.")
@click.option("--metrics-port", type=click.IntRange(0, 65535), default=None, help="Prometheus port (0 disables).")
@click.option("--source-kubeconfig", default=None, help="Kubeconfig of the source cluster.")
@click.option("--source-context", default=None, help="Context in the source kubeconfig.")
@click.option("--dest-kubeconfig", default=None, help="Kubeconfig of the destination cluster.")
@click.option("--dest-context", default=None, help="Context in the destination kubeconfig.")
@click.option(
    "--kinds",
    callback=_kinds_option,
    help="Comma separated [group/]version/Kind list, in dependency order.",
)
@click.version_option(package_name="kubemirror")
@click.pass_context
def cli(
    ctx: click.Context,
    log_level: str | None,
    log_format: str | None,
    metrics_port: int | None,
    source_kubeconfig: str | None,
    source_context: str | None,
    dest_kubeconfig: str | None,
    dest_context: str | None,
    kinds: list[ResourceKind] | None,
) -> None:
    """Replicate Kubernetes resources from one cluster to another."""
    ctx.obj = {
        "log_level": log_level,
        "log_format": log_format,
        "metrics_port": metrics_port,
        "source_kubeconfig": source_kubeconfig,
        "source_context": source_context,
        "dest_kubeconfig": dest_kubeconfig,
        "dest_context": dest_context,
        "kinds": kinds,
    }


@cli.command()
@click.pass_context
def sync(ctx: click.Context) -> None:
    """Continuously mirror source changes to the destination."""
    _run(Mode.SYNC, _load(ctx))


@cli.command(name="import")
@click.option("-l", "--selector", default=None, help="Label selector, e.g. 'app=web,tier in (a,b)'.")
@click.option("--concurrency", type=click.IntRange(min=0), default=None, help="Parallel creates per kind (0: unbounded).")
@click.pass_context
def import_(ctx: click.Context, selector: str | None, concurrency: int | None) -> None:
    """Copy the current source state to the destination once."""
    config = _load(ctx)
    if selector is not None:
        config.importer.label_selector = selector
    if concurrency is not None:
        config.importer.max_concurrency = concurrency
    _run(Mode.IMPORT, config)


@cli.command()
@click.option("--path", "path", type=click.Path(dir_okay=False), default=None, help="Append events to this file.")
@click.option("--dir", "directory", type=click.Path(file_okay=False), default=None, help="Write one new file per run here.")
@click.option("--rotate/--no-rotate", default=None, help="Move an existing --path file aside first.")
@click.option("--queue-size", type=click.IntRange(min=1), default=None, help="Events buffered before feeds wait.")
@click.pass_context
def record(
    ctx: click.Context,
    path: str | None,
    directory: str | None,
    rotate: bool | None,
    queue_size: int | None,
) -> None:
    """Record source change events to a JSON-lines log."""
    config = _load(ctx)
    if path and directory:
        raise click.UsageError("--path and --dir are mutually exclusive")
    if path:
        config.recorder.path = path
        config.recorder.directory = ""
    if directory:
        config.recorder.directory = directory
        config.recorder.path = ""
    if rotate is not None:
        config.recorder.rotate_existing = rotate
    if queue_size is not None:
        config.recorder.queue_size = queue_size
    if not config.recorder.path and not config.recorder.directory:
        raise click.UsageError("a record target is required (--path, --dir or KUBEMIRROR_RECORD_PATH)")
    _run(Mode.RECORD, config)


@cli.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False), required=False)
@click.pass_context
def replay(ctx: click.Context, path: str | None) -> None:
    """Apply a recorded log to the destination, in order."""
    config = _load(ctx)
    if path:
        config.replay.path = path
    if not config.replay.path:
        raise click.UsageError("a record file is required (PATH or KUBEMIRROR_REPLAY_PATH)")
    _run(Mode.REPLAY, config)
