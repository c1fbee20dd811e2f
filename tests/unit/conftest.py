"""Shared fixtures and resource factories for kubemirror unit tests."""

from __future__ import annotations

import asyncio
import copy
from collections.abc import Callable
from typing import Any

import pytest

from kubemirror.applier.resolver import TypeResolver
from kubemirror.applier.resource_applier import ResourceApplier
from kubemirror.applier.transforms import TransformContext, TransformPipeline
from kubemirror.cluster.memory import InMemoryCluster
from kubemirror.models.config import ApplierConfig
from kubemirror.models.resources import Resource

# ---------------------------------------------------------------------------
# Resource factories
# ---------------------------------------------------------------------------


def make_namespace(name: str = "default", **meta: Any) -> Resource:
    return {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": name, **meta}}


def make_pod(
    name: str = "web-0",
    namespace: str = "default",
    labels: dict[str, str] | None = None,
    node_name: str = "",
    status: dict[str, Any] | None = None,
    **meta: Any,
) -> Resource:
    spec: dict[str, Any] = {"containers": [{"name": "app", "image": "nginx:1.27"}]}
    if node_name:
        spec["nodeName"] = node_name
    pod: Resource = {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {"name": name, "namespace": namespace, **meta},
        "spec": spec,
    }
    if labels:
        pod["metadata"]["labels"] = dict(labels)
    if status is not None:
        pod["status"] = copy.deepcopy(status)
    return pod


def make_pvc(name: str = "data", namespace: str = "default") -> Resource:
    return {
        "apiVersion": "v1",
        "kind": "PersistentVolumeClaim",
        "metadata": {"name": name, "namespace": namespace},
        "spec": {"accessModes": ["ReadWriteOnce"], "resources": {"requests": {"storage": "1Gi"}}},
    }


def make_pv(
    name: str = "pv-0",
    claim_name: str = "data",
    claim_namespace: str = "default",
    claim_uid: str = "source-claim-uid",
    phase: str = "Bound",
) -> Resource:
    return {
        "apiVersion": "v1",
        "kind": "PersistentVolume",
        "metadata": {"name": name},
        "spec": {
            "capacity": {"storage": "1Gi"},
            "claimRef": {
                "kind": "PersistentVolumeClaim",
                "name": claim_name,
                "namespace": claim_namespace,
                "uid": claim_uid,
            },
        },
        "status": {"phase": phase},
    }


def with_source_identity(resource: Resource, uid: str = "source-uid", version: str = "9001") -> Resource:
    """Attach identity fields as a source cluster would have assigned them."""
    stamped = copy.deepcopy(resource)
    stamped["metadata"].update({"uid": uid, "resourceVersion": version, "generation": 7})
    return stamped


# ---------------------------------------------------------------------------
# Cluster and applier fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def source() -> InMemoryCluster:
    return InMemoryCluster(name="source")


@pytest.fixture
def destination() -> InMemoryCluster:
    return InMemoryCluster(name="destination")


def build_applier(
    destination: InMemoryCluster,
    source: InMemoryCluster | None = None,
    config: ApplierConfig | None = None,
) -> ResourceApplier:
    resolver = TypeResolver(destination.discovery, name="destination")
    pipeline = TransformPipeline(TransformContext(destination=destination, resolver=resolver, source=source))
    return ResourceApplier(destination, resolver, pipeline, config)


@pytest.fixture
def applier(source: InMemoryCluster, destination: InMemoryCluster) -> ResourceApplier:
    return build_applier(destination, source)


async def seed(cluster: InMemoryCluster, *resources: Resource) -> None:
    """Create *resources* directly in *cluster*, bypassing any applier."""
    for resource in resources:
        collection = cluster.collection_for(resource["kind"])
        client = cluster.resource(collection, resource["metadata"].get("namespace", ""))
        await client.create(copy.deepcopy(resource))
        if resource.get("status"):
            await client.patch_status(resource["metadata"]["name"], copy.deepcopy(resource["status"]))


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll *predicate* until it holds; change feeds deliver on their own task."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met within timeout")
        await asyncio.sleep(0.005)
