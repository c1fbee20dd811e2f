"""End-to-end replication scenarios between two in-memory clusters.

Covers continuous sync (including the scheduled-pod skip rule), bulk
import with a label selector, dependency ordering of subscriptions,
record/replay equivalence with live sync, and idempotent creates.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from kubemirror.applier import ResourceApplier
from kubemirror.cluster.memory import InMemoryCluster
from kubemirror.errors import AlreadyExistsError
from kubemirror.importer import BulkImporter
from kubemirror.models.config import ImportConfig, RecorderConfig, ReplayConfig, SyncConfig
from kubemirror.models.resources import NAMESPACE, POD, PRIORITY_CLASS
from kubemirror.recorder import Recorder
from kubemirror.replayer import Replayer
from kubemirror.syncer import Synchronizer

from .conftest import (
    SourceWriter,
    build_applier,
    namespace,
    pod,
    priority_class,
    settle,
    snapshot,
    wait_until,
)

_KINDS = [NAMESPACE, PRIORITY_CLASS, POD]


# ---------------------------------------------------------------------------
# Continuous sync
# ---------------------------------------------------------------------------


class TestContinuousSync:
    async def test_create_schedule_delete(
        self,
        source: InMemoryCluster,
        destination: InMemoryCluster,
        writer: SourceWriter,
        applier: ResourceApplier,
    ) -> None:
        for name in ("default", "ns2"):
            await writer.create(namespace(name))

        syncer = Synchronizer(source, applier, SyncConfig(kinds=list(_KINDS)))
        await syncer.start()
        try:
            await writer.create(pod("p1", "default"))
            await writer.create(pod("p2", "ns2"))
            await wait_until(lambda: destination.keys("Pod") == {("default", "p1"), ("ns2", "p2")})
            before = snapshot(destination, "Pod")[("default", "p1")]

            await writer.schedule("p1", "node-a")
            await writer.delete("Pod", "p2", "ns2")
            await wait_until(lambda: destination.keys("Pod") == {("default", "p1")})

            # The node assignment never reached the destination.
            assert snapshot(destination, "Pod")[("default", "p1")] == before
            assert "nodeName" not in before["spec"]
        finally:
            await syncer.stop()

    async def test_destination_never_sees_source_identity(
        self,
        source: InMemoryCluster,
        destination: InMemoryCluster,
        writer: SourceWriter,
        applier: ResourceApplier,
    ) -> None:
        await writer.create(namespace("default"))
        syncer = Synchronizer(source, applier, SyncConfig(kinds=list(_KINDS)))
        await syncer.start()
        try:
            await writer.create(pod("p1", labels={"v": "1"}))
            await writer.relabel("p1", {"v": "2"})
            await writer.set_phase("p1", "Running")

            def relabelled() -> bool:
                current = destination.find("Pod", "p1", "default")
                return current is not None and current["metadata"]["labels"] == {"v": "2"}

            await wait_until(relabelled)
        finally:
            await syncer.stop()

        source_uids = {obj["metadata"]["uid"] for obj in source.objects(source.collection_for("Pod"))}
        source_versions = {obj["metadata"]["resourceVersion"] for obj in source.objects(source.collection_for("Pod"))}
        for op, _collection, body in destination.requests:
            if body["kind"] != "Pod":
                continue
            meta = body["metadata"]
            assert "generation" not in meta, op
            assert meta.get("uid") not in source_uids, op
            assert meta.get("resourceVersion") not in source_versions, op
            assert "serviceAccountName" not in body["spec"], op

    async def test_prerequisites_are_synced_before_dependents(
        self,
        source: InMemoryCluster,
        destination: InMemoryCluster,
        writer: SourceWriter,
        applier: ResourceApplier,
    ) -> None:
        await writer.create(namespace("shop"))
        await writer.create(priority_class("critical", 1000))
        for i in range(5):
            await writer.create(pod(f"web-{i}", "shop"))

        syncer = Synchronizer(source, applier, SyncConfig(kinds=list(_KINDS)))
        await syncer.start()
        try:
            await settle(destination, "Pod", 5)
        finally:
            await syncer.stop()

        kinds = [body["kind"] for op, _c, body in destination.requests if op == "create"]
        assert kinds == ["Namespace", "PriorityClass"] + ["Pod"] * 5

    async def test_failures_do_not_stop_replication(
        self,
        source: InMemoryCluster,
        destination: InMemoryCluster,
        writer: SourceWriter,
        applier: ResourceApplier,
    ) -> None:
        # "orphan" lives in a namespace that is not replicated.
        syncer = Synchronizer(source, applier, SyncConfig(kinds=[POD]))
        await writer.create(namespace("default"))
        await writer.create(namespace("private"))
        await destination.resource(destination.collection_for("Namespace")).create(namespace("default"))
        await syncer.start()
        try:
            await writer.create(pod("orphan", "private"))
            await writer.create(pod("p1", "default"))
            await wait_until(lambda: destination.keys("Pod") == {("default", "p1")})
        finally:
            await syncer.stop()


# ---------------------------------------------------------------------------
# Bulk import
# ---------------------------------------------------------------------------


class TestBulkImport:
    async def test_label_selector_scenario(
        self,
        source: InMemoryCluster,
        destination: InMemoryCluster,
        writer: SourceWriter,
        applier: ResourceApplier,
    ) -> None:
        await writer.create(namespace("default"))
        await destination.resource(destination.collection_for("Namespace")).create(namespace("default"))
        for i in range(5):
            await writer.create(pod(f"match-{i}", labels={"team": "payments"}))
        for i in range(3):
            await writer.create(pod(f"other-{i}", labels={"team": "search"}))

        importer = BulkImporter(source, applier, ImportConfig(kinds=[POD], max_concurrency=2))
        summary = await importer.import_all("team=payments")

        assert destination.keys("Pod") == {("default", f"match-{i}") for i in range(5)}
        assert summary.created == 5
        assert summary.failed == 0

    async def test_import_is_idempotent(
        self,
        source: InMemoryCluster,
        destination: InMemoryCluster,
        writer: SourceWriter,
        applier: ResourceApplier,
    ) -> None:
        await writer.create(namespace("shop"))
        await writer.create(pod("p1", "shop"))
        importer = BulkImporter(source, applier, ImportConfig(kinds=list(_KINDS)))

        await importer.import_all()
        first = {kind: snapshot(destination, kind) for kind in ("Namespace", "Pod")}
        second_summary = await importer.import_all()

        assert {kind: snapshot(destination, kind) for kind in ("Namespace", "Pod")} == first
        assert second_summary.created == 0
        assert second_summary.failed == 2

    async def test_repeated_create_leaves_state_unchanged(
        self, destination: InMemoryCluster, applier: ResourceApplier
    ) -> None:
        await applier.create(namespace("shop"))
        await applier.create(pod("p1", "shop"))
        before = snapshot(destination, "Pod")
        with pytest.raises(AlreadyExistsError):
            await applier.create(pod("p1", "shop"))
        assert snapshot(destination, "Pod") == before


# ---------------------------------------------------------------------------
# Record and replay
# ---------------------------------------------------------------------------


class TestRecordReplay:
    async def _scripted_changes(self, writer: SourceWriter, destination: InMemoryCluster) -> None:
        await writer.create(namespace("default"))
        await writer.create(namespace("ns2"))
        await settle(destination, "Namespace", 2)
        await writer.create(priority_class("batch", 10))
        await settle(destination, "PriorityClass", 1)
        for name, ns in (("p1", "default"), ("p2", "ns2"), ("p3", "default")):
            await writer.create(pod(name, ns, labels={"app": name}))
        await settle(destination, "Pod", 3)
        await writer.relabel("p1", {"app": "p1", "rev": "2"})
        await writer.set_phase("p3", "Running")
        await writer.schedule("p3", "node-b")
        await writer.delete("Pod", "p2", "ns2")
        await writer.create(pod("p4", "ns2", node_name="node-c"))
        await wait_until(lambda: destination.keys("Pod") == {("default", "p1"), ("default", "p3"), ("ns2", "p4")})

    async def test_replay_matches_live_sync(
        self,
        source: InMemoryCluster,
        destination: InMemoryCluster,
        writer: SourceWriter,
        applier: ResourceApplier,
        tmp_path: Path,
    ) -> None:
        log = tmp_path / "record.jsonl"
        recorder = Recorder(source, RecorderConfig(kinds=list(_KINDS), path=str(log)))
        syncer = Synchronizer(source, applier, SyncConfig(kinds=list(_KINDS)))
        await recorder.start()
        await syncer.start()
        try:
            await self._scripted_changes(writer, destination)
        finally:
            await syncer.stop()
            await recorder.stop()

        fresh = InMemoryCluster(name="replay-target")
        summary = await Replayer(build_applier(fresh), ReplayConfig(path=str(log))).replay()

        assert summary.total == recorder.written
        assert summary.interrupted is False
        for kind in ("Namespace", "PriorityClass", "Pod"):
            assert fresh.keys(kind) == destination.keys(kind), kind
        assert snapshot(fresh, "Pod") == snapshot(destination, "Pod")

    async def test_recorded_deletes_carry_identity_only(
        self,
        source: InMemoryCluster,
        destination: InMemoryCluster,
        writer: SourceWriter,
        applier: ResourceApplier,
        tmp_path: Path,
    ) -> None:
        log = tmp_path / "record.jsonl"
        recorder = Recorder(source, RecorderConfig(kinds=list(_KINDS), path=str(log)))
        syncer = Synchronizer(source, applier, SyncConfig(kinds=list(_KINDS)))
        await recorder.start()
        await syncer.start()
        try:
            await self._scripted_changes(writer, destination)
        finally:
            await syncer.stop()
            await recorder.stop()

        deletes = [
            line["resource"]
            for line in map(json.loads, log.read_text(encoding="utf-8").splitlines())
            if line["event"] == "Delete"
        ]
        assert deletes == [{"apiVersion": "v1", "kind": "Pod", "metadata": {"name": "p2", "namespace": "ns2"}}]

    async def test_replay_across_appended_runs(
        self,
        source: InMemoryCluster,
        writer: SourceWriter,
        tmp_path: Path,
    ) -> None:
        log = tmp_path / "record.jsonl"
        config = RecorderConfig(kinds=[NAMESPACE], path=str(log))

        first = Recorder(source, config)
        await first.start()
        await writer.create(namespace("a"))
        await first.stop()

        second = Recorder(source, config)
        await second.start()
        await writer.create(namespace("b"))
        await writer.delete("Namespace", "a")
        await second.stop()

        fresh = InMemoryCluster(name="replay-target")
        applier = build_applier(fresh)
        summary = await Replayer(applier, ReplayConfig(path=str(log))).replay()

        # The second run re-records "a" as part of its initial state.
        assert summary.already_existed == 1
        assert fresh.keys("Namespace") == {("", "b")}
