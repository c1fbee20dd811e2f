"""Kind to collection resolution against a cluster's discovery endpoint."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

import structlog

from kubemirror.cluster.base import Discovery
from kubemirror.errors import ApiError, CollectionNotFoundError, ResolutionError
from kubemirror.models.resources import ResourceCollection, ResourceKind

_log = structlog.get_logger(component="applier.resolver")


@dataclass(frozen=True)
class _Resolved:
    collection: ResourceCollection
    namespaced: bool
    status_subresource: bool


class TypeResolver:
    """Caches ``ResourceKind -> ResourceCollection`` for one cluster.

    Reads are lock-free; a miss takes the lock, re-checks the cache and only
    then asks discovery, so concurrent misses for the same kind cost one
    discovery call. Entries live for the lifetime of the resolver: a
    collection removed from the cluster after it was resolved is not noticed.
    """

    def __init__(self, discovery: Discovery, name: str = "") -> None:
        self._discovery = discovery
        self._name = name
        self._cache: dict[ResourceKind, _Resolved] = {}
        self._lock = asyncio.Lock()

    async def resolve(self, kind: ResourceKind) -> ResourceCollection:
        """Return the collection serving *kind*.

        Raises:
            CollectionNotFoundError: discovery has no collection for the kind.
            ResolutionError: the discovery call itself failed.
        """
        return (await self._lookup(kind)).collection

    async def namespaced(self, kind: ResourceKind) -> bool:
        return (await self._lookup(kind)).namespaced

    async def has_status_subresource(self, kind: ResourceKind) -> bool:
        return (await self._lookup(kind)).status_subresource

    def cached(self) -> dict[ResourceKind, ResourceCollection]:
        return {kind: entry.collection for kind, entry in self._cache.items()}

    async def _lookup(self, kind: ResourceKind) -> _Resolved:
        entry = self._cache.get(kind)
        if entry is not None:
            return entry
        async with self._lock:
            entry = self._cache.get(kind)
            if entry is not None:
                return entry
            entry = await self._discover(kind)
            self._cache[kind] = entry
            return entry

    async def _discover(self, kind: ResourceKind) -> _Resolved:
        try:
            infos = await self._discovery.list_collections_for(kind.group, kind.version)
        except ApiError as exc:
            if exc.status == 404:
                raise CollectionNotFoundError(kind, kind.api_version) from exc
            raise ResolutionError(f"discovery of {kind.api_version} failed: {exc}") from exc

        for info in infos:
            if "/" in info.name:
                continue
            if info.kind == kind.kind:
                collection = ResourceCollection(group=kind.group, version=kind.version, resource=info.name)
                _log.debug("kind_resolved", cluster=self._name, kind=str(kind), collection=str(collection))
                return _Resolved(
                    collection=collection,
                    namespaced=info.namespaced,
                    status_subresource="status" in info.subresources,
                )
        raise CollectionNotFoundError(kind, kind.api_version)
