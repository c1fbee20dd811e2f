"""Application bootstrap for kubemirror.

Wires components in dependency order for the selected mode:
    config → logging → metrics → clusters → resolvers → pipeline → applier
           → synchronizer | importer | recorder | replayer

SIGTERM/SIGINT set a shared stop event; every long-running component
watches it, finishes the apply in progress and returns. Clusters are closed
in reverse order on the way out.
"""

from __future__ import annotations

import asyncio
import signal
from collections.abc import Callable
from enum import StrEnum
from typing import TYPE_CHECKING

from kubemirror.applier import ResourceApplier, TransformContext, TransformPipeline, TypeResolver
from kubemirror.config import load_config
from kubemirror.errors import KubeMirrorError
from kubemirror.models.config import ClusterConfig, KubeMirrorConfig
from kubemirror.observability.logging import get_logger, setup_logging

if TYPE_CHECKING:
    import structlog

    from kubemirror.cluster.base import Cluster
    from kubemirror.importer import ImportSummary
    from kubemirror.replayer import ReplaySummary


class Mode(StrEnum):
    SYNC = "sync"
    IMPORT = "import"
    RECORD = "record"
    REPLAY = "replay"


_NEEDS_SOURCE = {Mode.SYNC, Mode.IMPORT, Mode.RECORD}
_NEEDS_DESTINATION = {Mode.SYNC, Mode.IMPORT, Mode.REPLAY}


class _ComponentError(Exception):
    """Raised when a mandatory component fails to start."""

    def __init__(self, component: str, cause: Exception) -> None:
        super().__init__(f"Component '{component}' failed to start: {cause}")
        self.component = component
        self.cause = cause


class MirrorApp:
    """Application root for one mode.

    Clusters may be injected (tests, or replaying into an in-memory store);
    otherwise they are connected from ``config.source`` / ``config.destination``.
    """

    def __init__(
        self,
        mode: Mode,
        config: KubeMirrorConfig | None = None,
        source: Cluster | None = None,
        destination: Cluster | None = None,
        pipeline_hook: Callable[[TransformPipeline], None] | None = None,
    ) -> None:
        self.mode = Mode(mode)
        self.config = config
        self.source = source
        self.destination = destination
        # Called with the TransformPipeline after the built-ins are registered.
        self._pipeline_hook = pipeline_hook
        self._owned: list[object] = []
        self._log: structlog.stdlib.BoundLogger | None = None
        self.result: ImportSummary | ReplaySummary | None = None

    async def run(self, stop_event: asyncio.Event) -> None:
        """Start everything, run the mode until done or stopped, then tear down."""
        if self.config is None:
            self.config = load_config()
        setup_logging(self.config.log.level, json_output=self.config.log.format == "json")
        self._log = get_logger("app")
        self._log.info("kubemirror starting", mode=self.mode.value, version=_kubemirror_version())
        try:
            self._start_metrics()
            await self._connect_clusters()
            await self._run_mode(stop_event)
        finally:
            await self._close_clusters()
            self._log.info("kubemirror stopped", mode=self.mode.value)

    # ------------------------------------------------------------------
    # Startup helpers
    # ------------------------------------------------------------------

    def _start_metrics(self) -> None:
        assert self.config is not None
        assert self._log is not None
        if self.config.metrics.port <= 0:
            return
        try:
            from prometheus_client import start_http_server

            start_http_server(self.config.metrics.port)
        except Exception as exc:
            # Metrics are non-fatal; replication works without the endpoint.
            self._log.warning("metrics endpoint failed to start", port=self.config.metrics.port, error=str(exc))
            return
        self._log.info("metrics endpoint started", port=self.config.metrics.port)

    async def _connect_clusters(self) -> None:
        assert self.config is not None
        if self.mode in _NEEDS_SOURCE and self.source is None:
            self.source = await self._connect("source", self.config.source)
        if self.mode in _NEEDS_DESTINATION and self.destination is None:
            self.destination = await self._connect("destination", self.config.destination)

    async def _connect(self, name: str, cluster_config: ClusterConfig) -> Cluster:
        assert self._log is not None
        self._log.debug("connecting cluster", cluster=name)
        try:
            # Imported lazily: the kubernetes client is only needed for real clusters.
            from kubemirror.cluster.kube import KubeCluster

            cluster = await KubeCluster.connect(cluster_config, name=name)
        except Exception as exc:
            raise _ComponentError(f"{name}_cluster", exc) from exc
        self._owned.append(cluster)
        return cluster

    def _build_applier(self) -> ResourceApplier:
        assert self.config is not None
        assert self.destination is not None
        resolver = TypeResolver(self.destination.discovery, name="destination")
        context = TransformContext(destination=self.destination, resolver=resolver, source=self.source)
        pipeline = TransformPipeline(context)
        if self._pipeline_hook is not None:
            self._pipeline_hook(pipeline)
        return ResourceApplier(self.destination, resolver, pipeline, self.config.applier)

    async def _run_mode(self, stop_event: asyncio.Event) -> None:
        assert self.config is not None
        assert self._log is not None

        if self.mode is Mode.SYNC:
            from kubemirror.syncer import Synchronizer

            assert self.source is not None
            synchronizer = Synchronizer(self.source, self._build_applier(), self.config.sync)
            await synchronizer.run(stop_event)

        elif self.mode is Mode.IMPORT:
            from kubemirror.importer import BulkImporter

            assert self.source is not None
            importer = BulkImporter(self.source, self._build_applier(), self.config.importer)
            self.result = await importer.import_all()

        elif self.mode is Mode.RECORD:
            from kubemirror.recorder import Recorder

            assert self.source is not None
            recorder = Recorder(self.source, self.config.recorder)
            await recorder.run(stop_event)

        else:
            from kubemirror.replayer import Replayer

            replayer = Replayer(self._build_applier(), self.config.replay)
            self.result = await replayer.replay(stop_event)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def _close_clusters(self) -> None:
        log = self._log or get_logger("app")
        for cluster in reversed(self._owned):
            close = getattr(cluster, "close", None)
            if close is None:
                continue
            try:
                result = close()
                if asyncio.iscoroutine(result):
                    await result
            except Exception as exc:
                log.debug("cluster close raised (non-fatal)", error=str(exc))
        self._owned.clear()


def _kubemirror_version() -> str:
    from kubemirror import __version__

    return __version__


# ---------------------------------------------------------------------------
# Async entrypoint
# ---------------------------------------------------------------------------


async def main(mode: Mode | str = Mode.SYNC, config: KubeMirrorConfig | None = None) -> None:
    """Run *mode* until it finishes or SIGTERM/SIGINT is received."""
    app = MirrorApp(Mode(mode), config)
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def _request_shutdown() -> None:
        if stop_event.is_set():
            return
        get_logger("app").info("shutdown requested")
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _request_shutdown)

    try:
        await app.run(stop_event)
    except _ComponentError as exc:
        get_logger("app").critical(
            "fatal startup error",
            component=exc.component,
            error=str(exc.cause),
        )
        raise SystemExit(1) from exc
    except KubeMirrorError as exc:
        get_logger("app").critical("kubemirror failed", mode=app.mode.value, error=str(exc))
        raise SystemExit(1) from exc
    finally:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)
