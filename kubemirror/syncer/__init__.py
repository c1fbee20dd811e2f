"""Continuous replication from a source cluster to a destination."""

from kubemirror.syncer.synchronizer import Synchronizer, SyncState

__all__ = ["SyncState", "Synchronizer"]
