"""Collaborator interfaces consumed by the replication core.

A ``Cluster`` is one backing store (the source or the destination). The core
only talks to it through these protocols, so the real Kubernetes adapter and
the in-memory store are interchangeable.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from kubemirror.models.events import Event
from kubemirror.models.resources import Resource, ResourceCollection

EventHandler = Callable[[Event], Awaitable[None]]


@dataclass(frozen=True)
class CollectionInfo:
    """One entry of a group/version capability list."""

    name: str
    kind: str
    namespaced: bool
    subresources: frozenset[str] = field(default_factory=frozenset)


class Discovery(Protocol):
    async def list_collections_for(self, group: str, version: str) -> list[CollectionInfo]:
        """Return the collections served under ``group/version``."""
        ...


class ResourceClient(Protocol):
    async def list(self, label_selector: str = "") -> list[Resource]: ...

    async def get(self, name: str) -> Resource: ...

    async def create(self, resource: Resource) -> Resource: ...

    async def update(self, resource: Resource) -> Resource: ...

    async def patch_status(self, name: str, status: dict[str, Any]) -> Resource: ...

    async def delete(self, name: str) -> None: ...


class Subscription(Protocol):
    async def start(self) -> None:
        """Establish the feed. Raises when the subscription cannot be set up."""
        ...

    async def wait_synced(self) -> None:
        """Block until every pre-existing object has been delivered."""
        ...

    async def stop(self) -> None:
        """Stop delivery. The handler call in progress is allowed to finish."""
        ...


class ChangeFeed(Protocol):
    def subscribe(self, collection: ResourceCollection, handler: EventHandler) -> Subscription: ...


class Cluster(Protocol):
    @property
    def discovery(self) -> Discovery: ...

    @property
    def feed(self) -> ChangeFeed: ...

    def resource(self, collection: ResourceCollection, namespace: str = "") -> ResourceClient: ...
