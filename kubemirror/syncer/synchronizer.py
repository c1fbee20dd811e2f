"""Continuous source -> destination replication.

One change-feed subscription per configured kind. Subscriptions are set up
in configuration order and each one must report that it has delivered the
pre-existing objects before the next kind is subscribed, so prerequisite
kinds (namespaces, priority classes, storage classes) reach the destination
before the objects that reference them.
"""

from __future__ import annotations

import asyncio
from enum import StrEnum

import structlog

from kubemirror.applier.resolver import TypeResolver
from kubemirror.applier.resource_applier import ResourceApplier
from kubemirror.cluster.base import Cluster, Subscription
from kubemirror.errors import AlreadyExistsError, KubeMirrorError, NotFoundError, SyncSetupError
from kubemirror.models.config import SyncConfig
from kubemirror.models.events import Event, EventType
from kubemirror.models.resources import ResourceKind, display_name
from kubemirror.observability.metrics import sync_events_total

_log = structlog.get_logger(component="syncer")


class SyncState(StrEnum):
    UNINITIALIZED = "uninitialized"
    WATCHING = "watching"
    APPLYING = "applying"
    STOPPED = "stopped"


class Synchronizer:
    """Mirrors every Add/Update/Delete of the configured kinds.

    Args:
        source:          Cluster to watch.
        applier:         Writes to the destination.
        config:          Kinds to replicate, in dependency order.
        source_resolver: Resolves kinds against the source. Built from
                         ``source.discovery`` when omitted.
    """

    def __init__(
        self,
        source: Cluster,
        applier: ResourceApplier,
        config: SyncConfig | None = None,
        source_resolver: TypeResolver | None = None,
    ) -> None:
        self._source = source
        self._applier = applier
        self._kinds = list((config or SyncConfig()).kinds)
        self._resolver = source_resolver or TypeResolver(source.discovery, name="source")
        self._states: dict[ResourceKind, SyncState] = {kind: SyncState.UNINITIALIZED for kind in self._kinds}
        self._subscriptions: list[tuple[ResourceKind, Subscription]] = []

    def states(self) -> dict[ResourceKind, SyncState]:
        return dict(self._states)

    async def run(self, stop_event: asyncio.Event) -> None:
        """Subscribe to every kind, then replicate until *stop_event* is set.

        Raises:
            SyncSetupError: a kind could not be resolved or subscribed; any
                subscription already established is stopped first.
        """
        try:
            await self.start(stop_event)
            await stop_event.wait()
        finally:
            await self.stop()

    async def start(self, stop_event: asyncio.Event | None = None) -> None:
        _log.info("synchronizer_starting", kinds=[str(k) for k in self._kinds])
        for kind in self._kinds:
            if stop_event is not None and stop_event.is_set():
                _log.info("synchronizer_start_interrupted", next_kind=str(kind))
                return
            try:
                await self._subscribe(kind)
            except Exception as exc:
                _log.error("sync_setup_failed", kind=str(kind), error=str(exc))
                await self.stop()
                raise SyncSetupError(f"cannot replicate {kind}: {exc}") from exc
        _log.info("synchronizer_started", kinds=len(self._subscriptions))

    async def stop(self) -> None:
        """Stop all subscriptions, newest first. Handler calls in progress finish."""
        subscriptions, self._subscriptions = self._subscriptions, []
        for kind, subscription in reversed(subscriptions):
            try:
                await subscription.stop()
            except Exception as exc:  # noqa: BLE001
                _log.error("sync_stop_failed", kind=str(kind), error=str(exc))
        for kind in self._kinds:
            if self._states[kind] is not SyncState.UNINITIALIZED:
                self._states[kind] = SyncState.STOPPED
        if subscriptions:
            _log.info("synchronizer_stopped")

    async def _subscribe(self, kind: ResourceKind) -> None:
        collection = await self._resolver.resolve(kind)

        async def _handler(event: Event) -> None:
            await self._handle(kind, event)

        subscription = self._source.feed.subscribe(collection, _handler)
        await subscription.start()
        self._subscriptions.append((kind, subscription))
        self._states[kind] = SyncState.WATCHING
        await subscription.wait_synced()
        _log.info("sync_kind_synced", kind=str(kind), collection=str(collection))

    async def _handle(self, kind: ResourceKind, event: Event) -> None:
        if self._states.get(kind) is SyncState.STOPPED:
            return
        self._states[kind] = SyncState.APPLYING
        sync_events_total.labels(event=event.type.value, kind=kind.kind).inc()
        name = display_name(event.resource)
        try:
            if event.type is EventType.ADD:
                await self._applier.create(event.resource)
            elif event.type is EventType.UPDATE:
                await self._applier.update(event.resource)
            else:
                await self._applier.delete(event.resource)
        except NotFoundError as exc:
            if event.type is EventType.ADD:
                _log.error("sync_apply_failed", kind=str(kind), name=name, event=event.type.value, error=str(exc))
            else:
                # The destination object may have been removed on purpose.
                _log.info("sync_target_missing", kind=str(kind), name=name, event=event.type.value)
        except AlreadyExistsError:
            _log.warning("sync_target_exists", kind=str(kind), name=name)
        except KubeMirrorError as exc:
            _log.error("sync_apply_failed", kind=str(kind), name=name, event=event.type.value, error=str(exc))
        except Exception as exc:  # noqa: BLE001
            _log.error(
                "sync_apply_failed",
                kind=str(kind),
                name=name,
                event=event.type.value,
                error=str(exc),
                error_type=type(exc).__name__,
            )
        finally:
            if self._states.get(kind) is SyncState.APPLYING:
                self._states[kind] = SyncState.WATCHING
