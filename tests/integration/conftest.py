"""Shared fixtures for kubemirror integration tests.

Two in-memory clusters stand in for the source and destination so the
synchronizer, importer, recorder and replayer can be exercised end to end
without touching real Kubernetes clusters.
"""

from __future__ import annotations

import asyncio
import copy
from collections.abc import Callable
from typing import Any

import pytest

from kubemirror.applier import ResourceApplier, TransformContext, TransformPipeline, TypeResolver
from kubemirror.cluster.memory import InMemoryCluster, MemoryResourceClient
from kubemirror.models.config import ApplierConfig
from kubemirror.models.resources import Resource

# ---------------------------------------------------------------------------
# Resource factories
# ---------------------------------------------------------------------------


def namespace(name: str) -> Resource:
    return {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": name}}


def pod(
    name: str,
    ns: str = "default",
    labels: dict[str, str] | None = None,
    node_name: str = "",
    image: str = "nginx:1.27",
) -> Resource:
    """A pod as a user would submit it, optionally already scheduled."""
    spec: dict[str, Any] = {
        "serviceAccountName": "default",
        "containers": [{"name": "app", "image": image}],
    }
    if node_name:
        spec["nodeName"] = node_name
    return {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {"name": name, "namespace": ns, "labels": dict(labels or {})},
        "spec": spec,
    }


def priority_class(name: str, value: int) -> Resource:
    return {
        "apiVersion": "scheduling.k8s.io/v1",
        "kind": "PriorityClass",
        "metadata": {"name": name},
        "value": value,
    }


# ---------------------------------------------------------------------------
# Cluster helpers
# ---------------------------------------------------------------------------


class SourceWriter:
    """Writes to the source cluster the way a user or controller would."""

    def __init__(self, cluster: InMemoryCluster) -> None:
        self.cluster = cluster

    def _client(self, kind: str, ns: str = "") -> MemoryResourceClient:
        return self.cluster.resource(self.cluster.collection_for(kind), ns)

    async def create(self, resource: Resource) -> Resource:
        ns = resource["metadata"].get("namespace", "")
        return await self._client(resource["kind"], ns).create(copy.deepcopy(resource))

    async def schedule(self, name: str, node: str, ns: str = "default") -> Resource:
        pods = self._client("Pod", ns)
        current = await pods.get(name)
        current["spec"]["nodeName"] = node
        return await pods.update(current)

    async def set_phase(self, name: str, phase: str, ns: str = "default") -> Resource:
        return await self._client("Pod", ns).patch_status(name, {"phase": phase})

    async def relabel(self, name: str, labels: dict[str, str], ns: str = "default") -> Resource:
        pods = self._client("Pod", ns)
        current = await pods.get(name)
        current["metadata"]["labels"] = dict(labels)
        return await pods.update(current)

    async def delete(self, kind: str, name: str, ns: str = "") -> None:
        await self._client(kind, ns).delete(name)


def snapshot(cluster: InMemoryCluster, kind: str) -> dict[tuple[str, str], Resource]:
    """Objects of *kind* with server-assigned metadata removed, keyed by (namespace, name)."""
    result: dict[tuple[str, str], Resource] = {}
    for obj in cluster.objects(cluster.collection_for(kind)):
        meta = obj["metadata"]
        for key in ("uid", "resourceVersion", "generation", "creationTimestamp"):
            meta.pop(key, None)
        result[(meta.get("namespace", ""), meta["name"])] = obj
    return result


def build_applier(destination: InMemoryCluster, source: InMemoryCluster | None = None) -> ResourceApplier:
    resolver = TypeResolver(destination.discovery, name="destination")
    pipeline = TransformPipeline(TransformContext(destination=destination, resolver=resolver, source=source))
    return ResourceApplier(destination, resolver, pipeline, ApplierConfig())


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met within timeout")
        await asyncio.sleep(0.005)


async def settle(cluster: InMemoryCluster, kind: str, count: int) -> None:
    await wait_until(lambda: len(cluster.keys(kind)) == count)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def source() -> InMemoryCluster:
    return InMemoryCluster(name="source")


@pytest.fixture
def destination() -> InMemoryCluster:
    return InMemoryCluster(name="destination")


@pytest.fixture
def writer(source: InMemoryCluster) -> SourceWriter:
    return SourceWriter(source)


@pytest.fixture
def applier(source: InMemoryCluster, destination: InMemoryCluster) -> ResourceApplier:
    return build_applier(destination, source)
