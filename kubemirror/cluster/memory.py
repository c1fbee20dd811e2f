"""In-process cluster that behaves like an API server for the kinds it serves.

Implements the ``Cluster`` protocol without any network: objects live in
dictionaries, writes assign uid/resourceVersion/generation, status lives in
a sub-resource for the kinds that have one, and every mutation is fanned out
to change-feed subscriptions. The test-suite runs the syncer, importer,
recorder and replayer between two of these; it is also a valid replay target
when no real destination is available.
"""

from __future__ import annotations

import copy
import itertools
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from kubemirror.cluster.base import CollectionInfo, EventHandler
from kubemirror.cluster.delivery import QueuedSubscription
from kubemirror.cluster.selector import matches
from kubemirror.errors import AlreadyExistsError, ApiError, ConflictError, NotFoundError
from kubemirror.models.events import Event, EventType
from kubemirror.models.resources import Resource, ResourceCollection, metadata_of


@dataclass(frozen=True)
class CollectionSpec:
    """What the in-memory cluster serves for one collection."""

    collection: ResourceCollection
    kind: str
    namespaced: bool
    status_subresource: bool = False


def _spec(group: str, version: str, resource: str, kind: str, namespaced: bool, status: bool = False) -> CollectionSpec:
    return CollectionSpec(ResourceCollection(group, version, resource), kind, namespaced, status)


DEFAULT_COLLECTIONS: tuple[CollectionSpec, ...] = (
    _spec("", "v1", "namespaces", "Namespace", False, status=True),
    _spec("", "v1", "nodes", "Node", False, status=True),
    _spec("", "v1", "pods", "Pod", True, status=True),
    _spec("", "v1", "persistentvolumes", "PersistentVolume", False, status=True),
    _spec("", "v1", "persistentvolumeclaims", "PersistentVolumeClaim", True, status=True),
    _spec("", "v1", "serviceaccounts", "ServiceAccount", True),
    _spec("", "v1", "configmaps", "ConfigMap", True),
    _spec("scheduling.k8s.io", "v1", "priorityclasses", "PriorityClass", False),
    _spec("storage.k8s.io", "v1", "storageclasses", "StorageClass", False),
)


def _merge_patch(target: Any, patch: Any) -> Any:
    """RFC 7386 JSON merge patch."""
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)
    result = copy.deepcopy(target) if isinstance(target, dict) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = _merge_patch(result.get(key), value)
    return result


class InMemoryCluster:
    """A dictionary-backed cluster.

    Args:
        collections: Collections to serve. Defaults to the core kinds
                     replicated by kubemirror plus a few extras.
        name:        Label used in log lines.
    """

    def __init__(self, collections: tuple[CollectionSpec, ...] | list[CollectionSpec] | None = None, name: str = "memory") -> None:
        self.name = name
        self._specs: dict[ResourceCollection, CollectionSpec] = {}
        self._objects: dict[ResourceCollection, dict[tuple[str, str], Resource]] = {}
        self._subscriptions: dict[ResourceCollection, list[MemorySubscription]] = {}
        self._versions = itertools.count(1)
        # Every create/update body as received, for assertions in tests.
        self.requests: list[tuple[str, ResourceCollection, Resource]] = []
        self._discovery = MemoryDiscovery(self)
        self._feed = MemoryChangeFeed(self)
        for spec in collections if collections is not None else DEFAULT_COLLECTIONS:
            self.register(spec)

    # ------------------------------------------------------------------
    # Cluster protocol
    # ------------------------------------------------------------------

    @property
    def discovery(self) -> MemoryDiscovery:
        return self._discovery

    @property
    def feed(self) -> MemoryChangeFeed:
        return self._feed

    def resource(self, collection: ResourceCollection, namespace: str = "") -> MemoryResourceClient:
        return MemoryResourceClient(self, self._spec_for(collection), namespace)

    # ------------------------------------------------------------------
    # Registration and inspection
    # ------------------------------------------------------------------

    def register(self, spec: CollectionSpec) -> None:
        self._specs[spec.collection] = spec
        self._objects.setdefault(spec.collection, {})
        self._subscriptions.setdefault(spec.collection, [])

    def specs(self) -> list[CollectionSpec]:
        return list(self._specs.values())

    def collection_for(self, kind: str) -> ResourceCollection:
        """Look up the collection serving *kind* (test convenience)."""
        for spec in self._specs.values():
            if spec.kind == kind:
                return spec.collection
        raise KeyError(kind)

    def objects(self, collection: ResourceCollection) -> list[Resource]:
        """Deep copies of every stored object, sorted by namespace and name."""
        store = self._objects.get(collection, {})
        return [copy.deepcopy(store[key]) for key in sorted(store)]

    def find(self, kind: str, name: str, namespace: str = "") -> Resource | None:
        """Return a deep copy of one object, or None (test convenience)."""
        store = self._objects.get(self.collection_for(kind), {})
        obj = store.get((namespace, name))
        return copy.deepcopy(obj) if obj is not None else None

    def keys(self, kind: str) -> set[tuple[str, str]]:
        """(namespace, name) of every object of *kind*."""
        return set(self._objects.get(self.collection_for(kind), {}))

    # ------------------------------------------------------------------
    # Internals shared by client/feed
    # ------------------------------------------------------------------

    def _spec_for(self, collection: ResourceCollection) -> CollectionSpec:
        spec = self._specs.get(collection)
        if spec is None:
            raise NotFoundError(f"the server could not find the requested resource ({collection})")
        return spec

    def _next_version(self) -> str:
        return str(next(self._versions))

    def _namespace_exists(self, namespace: str) -> bool:
        for spec in self._specs.values():
            if spec.kind == "Namespace":
                return ("", namespace) in self._objects[spec.collection]
        # Clusters that do not serve namespaces accept any namespace.
        return True

    def _notify(self, collection: ResourceCollection, event: Event) -> None:
        for sub in list(self._subscriptions.get(collection, [])):
            sub.enqueue(event)

    def _attach(self, collection: ResourceCollection, sub: MemorySubscription) -> list[Resource]:
        """Register *sub* and return the current objects, atomically."""
        self._spec_for(collection)
        self._subscriptions[collection].append(sub)
        return self.objects(collection)

    def _detach(self, collection: ResourceCollection, sub: MemorySubscription) -> None:
        subs = self._subscriptions.get(collection, [])
        if sub in subs:
            subs.remove(sub)


class MemoryDiscovery:
    def __init__(self, cluster: InMemoryCluster) -> None:
        self._cluster = cluster

    async def list_collections_for(self, group: str, version: str) -> list[CollectionInfo]:
        infos = [
            CollectionInfo(
                name=spec.collection.resource,
                kind=spec.kind,
                namespaced=spec.namespaced,
                subresources=frozenset({"status"}) if spec.status_subresource else frozenset(),
            )
            for spec in self._cluster.specs()
            if spec.collection.group == group and spec.collection.version == version
        ]
        if not infos:
            raise NotFoundError(f"the server could not find the requested resource (/{group}/{version})")
        return infos


class MemoryResourceClient:
    """``ResourceClient`` over one collection of an ``InMemoryCluster``."""

    def __init__(self, cluster: InMemoryCluster, spec: CollectionSpec, namespace: str = "") -> None:
        self._cluster = cluster
        self._spec = spec
        self._namespace = namespace if spec.namespaced else ""

    @property
    def _store(self) -> dict[tuple[str, str], Resource]:
        return self._cluster._objects[self._spec.collection]

    def _key(self, name: str) -> tuple[str, str]:
        if self._spec.namespaced and not self._namespace:
            raise ApiError("namespace is required for namespaced resources", status=400, reason="BadRequest")
        return (self._namespace, name)

    def _not_found(self, name: str) -> NotFoundError:
        return NotFoundError(f'{self._spec.collection.resource} "{name}" not found')

    async def list(self, label_selector: str = "") -> list[Resource]:
        items = []
        for (ns, _name), obj in sorted(self._store.items()):
            if self._namespace and ns != self._namespace:
                continue
            if not matches(label_selector, metadata_of(obj).get("labels")):
                continue
            items.append(copy.deepcopy(obj))
        return items

    async def get(self, name: str) -> Resource:
        obj = self._store.get(self._key(name))
        if obj is None:
            raise self._not_found(name)
        return copy.deepcopy(obj)

    def _prepare_body(self, resource: Resource) -> tuple[Resource, str]:
        body = copy.deepcopy(resource)
        meta = body.setdefault("metadata", {})
        name = meta.get("name")
        if not name:
            raise ApiError("metadata.name is required", status=422, reason="Invalid")
        if self._spec.namespaced:
            body_ns = meta.get("namespace") or self._namespace
            if self._namespace and body_ns != self._namespace:
                raise ApiError(
                    "the namespace of the provided object does not match the namespace sent on the request",
                    status=400,
                    reason="BadRequest",
                )
            meta["namespace"] = body_ns
        else:
            meta.pop("namespace", None)
        body["apiVersion"] = self._spec.collection.group_version
        body["kind"] = self._spec.kind
        return body, name

    async def create(self, resource: Resource) -> Resource:
        self._cluster.requests.append(("create", self._spec.collection, copy.deepcopy(resource)))
        body, name = self._prepare_body(resource)
        meta = body["metadata"]
        if meta.get("resourceVersion"):
            raise ApiError("resourceVersion should not be set on objects to be created", status=500, reason="InternalError")
        key = self._key(name)
        if self._spec.namespaced and not self._cluster._namespace_exists(key[0]):
            raise NotFoundError(f'namespaces "{key[0]}" not found')
        if key in self._store:
            raise AlreadyExistsError(f'{self._spec.collection.resource} "{name}" already exists')

        meta["uid"] = str(uuid4())
        meta["resourceVersion"] = self._cluster._next_version()
        meta["generation"] = 1
        meta["creationTimestamp"] = datetime.now(tz=UTC).strftime("%Y-%m-%dT%H:%M:%SZ")
        if self._spec.status_subresource:
            body["status"] = {}
        self._store[key] = body
        self._cluster._notify(self._spec.collection, Event(EventType.ADD, copy.deepcopy(body)))
        return copy.deepcopy(body)

    async def update(self, resource: Resource) -> Resource:
        self._cluster.requests.append(("update", self._spec.collection, copy.deepcopy(resource)))
        body, name = self._prepare_body(resource)
        key = self._key(name)
        current = self._store.get(key)
        if current is None:
            raise self._not_found(name)
        meta = body["metadata"]
        current_meta = current["metadata"]
        requested_version = meta.get("resourceVersion")
        if requested_version and requested_version != current_meta["resourceVersion"]:
            raise ConflictError(
                f'Operation cannot be fulfilled on {self._spec.collection.resource} "{name}": '
                "the object has been modified; please apply your changes to the latest version and try again"
            )

        meta["uid"] = current_meta["uid"]
        meta["creationTimestamp"] = current_meta.get("creationTimestamp")
        meta["resourceVersion"] = self._cluster._next_version()
        generation = current_meta.get("generation", 1)
        if body.get("spec") != current.get("spec"):
            generation += 1
        meta["generation"] = generation
        if self._spec.status_subresource:
            body["status"] = copy.deepcopy(current.get("status", {}))
        self._store[key] = body
        self._cluster._notify(self._spec.collection, Event(EventType.UPDATE, copy.deepcopy(body)))
        return copy.deepcopy(body)

    async def patch_status(self, name: str, status: dict[str, Any]) -> Resource:
        key = self._key(name)
        current = self._store.get(key)
        if current is None:
            raise self._not_found(name)
        updated = copy.deepcopy(current)
        updated["status"] = _merge_patch(current.get("status", {}), status)
        updated["metadata"]["resourceVersion"] = self._cluster._next_version()
        self._store[key] = updated
        self._cluster._notify(self._spec.collection, Event(EventType.UPDATE, copy.deepcopy(updated)))
        return copy.deepcopy(updated)

    async def delete(self, name: str) -> None:
        key = self._key(name)
        current = self._store.pop(key, None)
        if current is None:
            raise self._not_found(name)
        self._cluster._notify(self._spec.collection, Event(EventType.DELETE, copy.deepcopy(current)))


class MemoryChangeFeed:
    def __init__(self, cluster: InMemoryCluster) -> None:
        self._cluster = cluster

    def subscribe(self, collection: ResourceCollection, handler: EventHandler) -> MemorySubscription:
        return MemorySubscription(self._cluster, collection, handler)


class MemorySubscription(QueuedSubscription):
    """Delivers events for one collection to *handler*, one at a time, in order."""

    def __init__(self, cluster: InMemoryCluster, collection: ResourceCollection, handler: EventHandler) -> None:
        super().__init__(collection, handler, source=cluster.name)
        self._cluster = cluster

    async def _open(self) -> None:
        # Attach and snapshot in one step so no write falls between them.
        for obj in self._cluster._attach(self.collection, self):
            self.enqueue(Event(EventType.ADD, obj))
        self.mark_synced()

    async def _close(self) -> None:
        self._cluster._detach(self.collection, self)
