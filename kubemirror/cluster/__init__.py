"""Cluster access for kubemirror.

Exposes:
    Cluster, Discovery, ResourceClient, ChangeFeed, Subscription -- protocols
        the replication core is written against.
    InMemoryCluster -- dictionary-backed cluster used by tests and as a
        replay target.

The real-cluster adapter lives in ``kubemirror.cluster.kube`` and is imported
explicitly, since it pulls in the ``kubernetes`` client.
"""

from kubemirror.cluster.base import (
    ChangeFeed,
    Cluster,
    CollectionInfo,
    Discovery,
    EventHandler,
    ResourceClient,
    Subscription,
)
from kubemirror.cluster.memory import CollectionSpec, InMemoryCluster

__all__ = [
    "ChangeFeed",
    "Cluster",
    "CollectionInfo",
    "CollectionSpec",
    "Discovery",
    "EventHandler",
    "InMemoryCluster",
    "ResourceClient",
    "Subscription",
]
