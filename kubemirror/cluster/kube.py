"""Kubernetes cluster adapter built on kubernetes-asyncio's DynamicClient.

Requests are awaited on the event loop. Each subscription lists its
collection and then follows it with an async watch running as an asyncio
task. ``ApiException`` is translated into the ``kubemirror.errors`` taxonomy
here and nowhere else.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog
from kubernetes_asyncio import config as k8s_config  # type: ignore[import-untyped]
from kubernetes_asyncio import watch as k8s_watch  # type: ignore[import-untyped]
from kubernetes_asyncio.client import ApiClient  # type: ignore[import-untyped]
from kubernetes_asyncio.client.rest import ApiException  # type: ignore[import-untyped]
from kubernetes_asyncio.dynamic import DynamicClient  # type: ignore[import-untyped]
from kubernetes_asyncio.dynamic.resource import Resource as DynamicResource  # type: ignore[import-untyped]

from kubemirror.cluster.base import CollectionInfo, EventHandler
from kubemirror.cluster.delivery import QueuedSubscription
from kubemirror.errors import AlreadyExistsError, ApiError, ConflictError, NotFoundError
from kubemirror.models.config import ClusterConfig
from kubemirror.models.events import Event, EventType
from kubemirror.models.resources import Resource, ResourceCollection, metadata_of, name_of, namespace_of

_log = structlog.get_logger(component="cluster.kube")

T = TypeVar("T")

# Server-side watch timeout; the watch is reopened from the last resourceVersion.
_WATCH_TIMEOUT_SECONDS = 30
_RELIST_BACKOFF_SECONDS = 5.0
_MERGE_PATCH = "application/merge-patch+json"
_GONE = 410

_WATCH_EVENT_TYPES = {
    "ADDED": EventType.ADD,
    "MODIFIED": EventType.UPDATE,
    "DELETED": EventType.DELETE,
}


def _body_reason(exc: ApiException) -> str:
    body = getattr(exc, "body", None)
    if not body:
        return ""
    try:
        data = json.loads(body)
    except (TypeError, ValueError):
        return ""
    return str(data.get("reason", "")) if isinstance(data, dict) else ""


def _body_message(exc: ApiException) -> str:
    body = getattr(exc, "body", None)
    if body:
        try:
            data = json.loads(body)
        except (TypeError, ValueError):
            data = None
        if isinstance(data, dict) and data.get("message"):
            return str(data["message"])
    return str(exc.reason or exc)


def translate_api_exception(exc: ApiException) -> ApiError:
    """Map a kubernetes ``ApiException`` onto the kubemirror error taxonomy."""
    status = exc.status or 0
    message = _body_message(exc)
    if status == 404:
        return NotFoundError(message)
    if status == 409:
        if _body_reason(exc) == "AlreadyExists":
            return AlreadyExistsError(message)
        return ConflictError(message)
    return ApiError(message, status=status, reason=_body_reason(exc) or str(exc.reason or ""))


async def _call(fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
    try:
        return await fn(*args, **kwargs)
    except ApiException as exc:
        raise translate_api_exception(exc) from exc


def _discovery_path(group: str, version: str) -> str:
    if group:
        return f"/apis/{group}/{version}"
    return f"/api/{version}"


async def _api_client(config: ClusterConfig) -> ApiClient:
    if config.kubeconfig or config.context:
        return await k8s_config.new_client_from_config(
            config_file=config.kubeconfig or None,
            context=config.context or None,
        )
    try:
        # load_incluster_config() is synchronous in kubernetes-asyncio
        k8s_config.load_incluster_config()
    except k8s_config.ConfigException:
        await k8s_config.load_kube_config()
    return ApiClient()


class KubeCluster:
    """A real cluster reached through a kubeconfig context or in-cluster config.

    Use ``await KubeCluster.connect(config)``; the constructor does no I/O.
    """

    def __init__(self, dynamic: DynamicClient, name: str = "kube") -> None:
        self.name = name
        self._dynamic = dynamic
        self._discovery = KubeDiscovery(dynamic)
        self._feed = KubeChangeFeed(self)
        self._resources: dict[ResourceCollection, DynamicResource] = {}
        self._resources_lock = asyncio.Lock()

    @classmethod
    async def connect(cls, config: ClusterConfig, name: str = "kube") -> KubeCluster:
        """Load the client configuration and open a DynamicClient."""
        api_client = await _api_client(config)
        try:
            dynamic = await _call(DynamicClient, api_client)
        except Exception:
            await api_client.close()
            raise
        _log.info(
            "cluster_connected",
            cluster=name,
            kubeconfig=config.kubeconfig or "<default>",
            context=config.context or "<current>",
        )
        return cls(dynamic, name=name)

    @property
    def discovery(self) -> KubeDiscovery:
        return self._discovery

    @property
    def feed(self) -> KubeChangeFeed:
        return self._feed

    def resource(self, collection: ResourceCollection, namespace: str = "") -> KubeResourceClient:
        return KubeResourceClient(self, collection, namespace)

    async def close(self) -> None:
        """Close the ApiClient connection pool."""
        await self._dynamic.client.close()

    async def dynamic_resource(self, collection: ResourceCollection) -> DynamicResource:
        """Return the DynamicClient resource descriptor for *collection*."""
        cached = self._resources.get(collection)
        if cached is not None:
            return cached
        async with self._resources_lock:
            cached = self._resources.get(collection)
            if cached is not None:
                return cached
            infos = await self._discovery.list_collections_for(collection.group, collection.version)
            info = next((i for i in infos if i.name == collection.resource), None)
            if info is None:
                raise NotFoundError(f"the server could not find the requested resource ({collection})")
            descriptor = DynamicResource(
                prefix="apis" if collection.group else "api",
                group=collection.group,
                api_version=collection.version,
                kind=info.kind,
                namespaced=info.namespaced,
                name=info.name,
                client=self._dynamic,
            )
            self._resources[collection] = descriptor
            return descriptor

    @property
    def dynamic(self) -> DynamicClient:
        return self._dynamic


class KubeDiscovery:
    def __init__(self, dynamic: DynamicClient) -> None:
        self._dynamic = dynamic

    async def list_collections_for(self, group: str, version: str) -> list[CollectionInfo]:
        response = await _call(self._dynamic.request, "get", _discovery_path(group, version))
        document = response.to_dict() if hasattr(response, "to_dict") else {}
        entries = document.get("resources") or []

        subresources: dict[str, set[str]] = {}
        for entry in entries:
            parent, sep, sub = str(entry.get("name", "")).partition("/")
            if sep:
                subresources.setdefault(parent, set()).add(sub)

        return [
            CollectionInfo(
                name=entry["name"],
                kind=entry.get("kind", ""),
                namespaced=bool(entry.get("namespaced", False)),
                subresources=frozenset(subresources.get(entry["name"], set())),
            )
            for entry in entries
            if "/" not in str(entry.get("name", ""))
        ]


class KubeResourceClient:
    """``ResourceClient`` for one collection, optionally scoped to a namespace."""

    def __init__(self, cluster: KubeCluster, collection: ResourceCollection, namespace: str = "") -> None:
        self._cluster = cluster
        self._collection = collection
        self._namespace = namespace or None

    async def _descriptor(self) -> DynamicResource:
        return await self._cluster.dynamic_resource(self._collection)

    def _namespace_for(self, descriptor: DynamicResource, resource: Resource | None = None) -> str | None:
        if not descriptor.namespaced:
            return None
        if self._namespace:
            return self._namespace
        return namespace_of(resource) if resource is not None else None

    async def list(self, label_selector: str = "") -> list[Resource]:
        descriptor = await self._descriptor()
        response = await _call(
            self._cluster.dynamic.get,
            descriptor,
            namespace=self._namespace_for(descriptor),
            label_selector=label_selector or None,
        )
        return _list_items(response.to_dict(), self._collection.group_version, descriptor.kind)

    async def get(self, name: str) -> Resource:
        descriptor = await self._descriptor()
        response = await _call(self._cluster.dynamic.get, descriptor, name=name, namespace=self._namespace_for(descriptor))
        return response.to_dict()

    async def create(self, resource: Resource) -> Resource:
        descriptor = await self._descriptor()
        response = await _call(
            self._cluster.dynamic.create,
            descriptor,
            body=resource,
            namespace=self._namespace_for(descriptor, resource),
        )
        return response.to_dict()

    async def update(self, resource: Resource) -> Resource:
        descriptor = await self._descriptor()
        response = await _call(
            self._cluster.dynamic.replace,
            descriptor,
            body=resource,
            name=name_of(resource),
            namespace=self._namespace_for(descriptor, resource),
        )
        return response.to_dict()

    async def patch_status(self, name: str, status: dict[str, Any]) -> Resource:
        descriptor = await self._descriptor()
        path = descriptor.path(name=name, namespace=self._namespace_for(descriptor)) + "/status"
        response = await _call(
            self._cluster.dynamic.request,
            "patch",
            path,
            body={"status": status},
            content_type=_MERGE_PATCH,
        )
        return response.to_dict()

    async def delete(self, name: str) -> None:
        descriptor = await self._descriptor()
        await _call(self._cluster.dynamic.delete, descriptor, name=name, namespace=self._namespace_for(descriptor))


def _list_items(document: dict[str, Any], api_version: str, kind: str) -> list[Resource]:
    """List responses omit apiVersion/kind on items; put the envelope back."""
    items: list[Resource] = []
    for item in document.get("items") or []:
        item.setdefault("apiVersion", api_version)
        item.setdefault("kind", kind)
        items.append(item)
    return items


def _object_key(resource: Resource) -> tuple[str, str]:
    meta = metadata_of(resource)
    return (str(meta.get("namespace") or ""), str(meta.get("name") or ""))


class KubeChangeFeed:
    def __init__(self, cluster: KubeCluster) -> None:
        self._cluster = cluster

    def subscribe(self, collection: ResourceCollection, handler: EventHandler) -> KubeSubscription:
        return KubeSubscription(self._cluster, collection, handler)


class KubeSubscription(QueuedSubscription):
    """List then watch one collection cluster-wide.

    The initial list is done in ``start()`` so that a failing list surfaces
    to the caller; the watch then runs as a background task. When the watch
    expires (410 Gone) the collection is listed again and the difference
    against the last known state is emitted as Add/Update/Delete events.
    """

    def __init__(self, cluster: KubeCluster, collection: ResourceCollection, handler: EventHandler) -> None:
        super().__init__(collection, handler, source=cluster.name)
        self._cluster = cluster
        self._descriptor: DynamicResource | None = None
        self._known: dict[tuple[str, str], Resource] = {}
        self._resource_version: str | None = None
        self._watcher = k8s_watch.Watch()
        self._watch_task: asyncio.Task[None] | None = None

    async def _open(self) -> None:
        self._descriptor = await self._cluster.dynamic_resource(self.collection)
        items, version = await self._list()
        self._resource_version = version
        for item in items:
            self._known[_object_key(item)] = item
            self.enqueue(Event(EventType.ADD, item))
        self.mark_synced()
        self._watch_task = asyncio.create_task(self._watch_loop(), name=f"watch-{self.collection}")

    async def _close(self) -> None:
        self._watcher.stop()
        task, self._watch_task = self._watch_task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _list(self) -> tuple[list[Resource], str | None]:
        assert self._descriptor is not None
        response = await _call(self._cluster.dynamic.get, self._descriptor)
        document = response.to_dict()
        version = metadata_of(document).get("resourceVersion")
        return _list_items(document, self.collection.group_version, self._descriptor.kind), version

    async def _relist(self) -> None:
        items, version = await self._list()
        current = {_object_key(item): item for item in items}
        for key, item in current.items():
            previous = self._known.get(key)
            if previous is None:
                self.enqueue(Event(EventType.ADD, item))
            elif metadata_of(previous).get("resourceVersion") != metadata_of(item).get("resourceVersion"):
                self.enqueue(Event(EventType.UPDATE, item))
        for key, previous in self._known.items():
            if key not in current:
                self.enqueue(Event(EventType.DELETE, previous))
        self._known = current
        self._resource_version = version
        _log.info("watch_relisted", collection=str(self.collection), count=len(items))

    async def _watch_loop(self) -> None:
        assert self._descriptor is not None
        while True:
            try:
                async for raw in self._cluster.dynamic.watch(
                    self._descriptor,
                    resource_version=self._resource_version,
                    timeout=_WATCH_TIMEOUT_SECONDS,
                    watcher=self._watcher,
                ):
                    self._handle_watch_event(raw)
            except ApiException as exc:
                if exc.status == _GONE:
                    _log.info("watch_expired", collection=str(self.collection))
                else:
                    _log.error("watch_failed", collection=str(self.collection), status=exc.status, error=str(exc.reason))
                    await asyncio.sleep(_RELIST_BACKOFF_SECONDS)
                await self._relist_until_ok()
            except Exception as exc:  # noqa: BLE001
                _log.error("watch_failed", collection=str(self.collection), error=str(exc))
                await asyncio.sleep(_RELIST_BACKOFF_SECONDS)
                await self._relist_until_ok()

    async def _relist_until_ok(self) -> None:
        while True:
            try:
                await self._relist()
                return
            except Exception as exc:  # noqa: BLE001
                _log.error("watch_relist_failed", collection=str(self.collection), error=str(exc))
                await asyncio.sleep(_RELIST_BACKOFF_SECONDS)

    def _handle_watch_event(self, raw: dict[str, Any]) -> None:
        obj = raw.get("raw_object")
        if not isinstance(obj, dict):
            return
        kind = str(raw.get("type", ""))
        if kind == "ERROR":
            # A Status object; 410 means the resourceVersion is too old.
            raise ApiException(status=obj.get("code"), reason=obj.get("reason") or obj.get("message"))
        version = metadata_of(obj).get("resourceVersion")
        if version:
            self._resource_version = version
        event_type = _WATCH_EVENT_TYPES.get(kind)
        if event_type is None:
            # BOOKMARK only advances the resource version.
            return
        obj.setdefault("apiVersion", self.collection.group_version)
        if self._descriptor is not None:
            obj.setdefault("kind", self._descriptor.kind)
        key = _object_key(obj)
        if event_type is EventType.DELETE:
            self._known.pop(key, None)
        else:
            self._known[key] = obj
        self.enqueue(Event(event_type, obj))
