"""Tests for resource identifiers, envelope helpers and the event log line format."""

from __future__ import annotations

import json
from datetime import UTC, datetime

import pytest

from kubemirror.errors import InvalidResourceError, RecordFormatError
from kubemirror.models.events import Event, EventType
from kubemirror.models.resources import (
    DEFAULT_KINDS,
    NAMESPACE,
    POD,
    PRIORITY_CLASS,
    ResourceCollection,
    ResourceKind,
    display_name,
    identity_only,
    name_of,
    namespace_of,
)

from .conftest import make_pod, with_source_identity

# ---------------------------------------------------------------------------
# ResourceKind / ResourceCollection
# ---------------------------------------------------------------------------


class TestResourceKind:
    def test_core_api_version(self) -> None:
        assert POD.api_version == "v1"
        assert str(POD) == "v1/Pod"

    def test_grouped_api_version(self) -> None:
        assert PRIORITY_CLASS.api_version == "scheduling.k8s.io/v1"
        assert str(PRIORITY_CLASS) == "scheduling.k8s.io/v1/PriorityClass"

    def test_parse(self) -> None:
        assert ResourceKind.parse("v1/Pod") == POD
        assert ResourceKind.parse(" scheduling.k8s.io/v1/PriorityClass ") == PRIORITY_CLASS

    @pytest.mark.parametrize("value", ["Pod", "v1/", "/v1/Pod/extra", "a/b/c/d"])
    def test_parse_rejects_malformed(self, value: str) -> None:
        with pytest.raises(ValueError):
            ResourceKind.parse(value)

    def test_from_resource(self) -> None:
        assert ResourceKind.from_resource(make_pod()) == POD

    def test_from_resource_requires_envelope(self) -> None:
        with pytest.raises(InvalidResourceError, match="apiVersion"):
            ResourceKind.from_resource({"kind": "Pod"})
        with pytest.raises(InvalidResourceError, match="kind"):
            ResourceKind.from_resource({"apiVersion": "v1"})
        with pytest.raises(InvalidResourceError, match="mapping"):
            ResourceKind.from_resource(["not", "a", "dict"])  # type: ignore[arg-type]

    def test_is_hashable_routing_key(self) -> None:
        routes = {POD: "pods", ResourceKind("", "v1", "Pod"): "pods-again"}
        assert len(routes) == 1

    def test_collection_group_version(self) -> None:
        assert ResourceCollection("", "v1", "pods").group_version == "v1"
        assert str(ResourceCollection("storage.k8s.io", "v1", "storageclasses")) == "storage.k8s.io/v1/storageclasses"

    def test_default_kinds_put_prerequisites_first(self) -> None:
        order = [k.kind for k in DEFAULT_KINDS]
        assert order[0] == NAMESPACE.kind
        assert order[-1] == POD.kind
        assert order.index("PersistentVolumeClaim") < order.index("PersistentVolume")


# ---------------------------------------------------------------------------
# Envelope helpers
# ---------------------------------------------------------------------------


class TestEnvelopeHelpers:
    def test_name_and_namespace(self) -> None:
        pod = make_pod("api-1", "shop")
        assert name_of(pod) == "api-1"
        assert namespace_of(pod) == "shop"
        assert display_name(pod) == "shop/api-1"

    def test_cluster_scoped_namespace_is_empty(self) -> None:
        ns = {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": "shop"}}
        assert namespace_of(ns) == ""
        assert display_name(ns) == "shop"

    def test_name_of_missing_name(self) -> None:
        with pytest.raises(InvalidResourceError):
            name_of({"apiVersion": "v1", "kind": "Pod", "metadata": {}})

    def test_identity_only_drops_everything_else(self) -> None:
        pod = with_source_identity(make_pod("api-1", "shop", labels={"app": "api"}, status={"phase": "Running"}))
        assert identity_only(pod) == {
            "apiVersion": "v1",
            "kind": "Pod",
            "metadata": {"name": "api-1", "namespace": "shop"},
        }

    def test_identity_only_cluster_scoped(self) -> None:
        node = {"apiVersion": "v1", "kind": "Node", "metadata": {"name": "n1", "uid": "x"}, "spec": {}}
        assert identity_only(node)["metadata"] == {"name": "n1"}


# ---------------------------------------------------------------------------
# Event log line format
# ---------------------------------------------------------------------------


class TestEventLine:
    def test_to_json_is_single_line_with_expected_fields(self) -> None:
        ts = datetime(2026, 3, 3, 16, 28, 0, tzinfo=UTC)
        line = Event(EventType.ADD, make_pod("p1"), ts).to_json()
        assert "\n" not in line
        data = json.loads(line)
        assert data["event"] == "Add"
        assert data["time"] == "2026-03-03T16:28:00+00:00"
        assert data["resource"]["metadata"]["name"] == "p1"

    def test_from_json_reads_offset_and_zulu_timestamps(self) -> None:
        line = '{"time":"2026-03-03T16:28:00.957176+09:00","event":"Delete","resource":{"kind":"Pod"}}'
        event = Event.from_json(line)
        assert event.type is EventType.DELETE
        assert event.timestamp.utcoffset() is not None

        zulu = Event.from_json('{"time":"2026-03-03T07:28:00Z","event":"Update","resource":{}}')
        assert zulu.timestamp.tzinfo is not None
        assert zulu.type is EventType.UPDATE

    def test_naive_timestamp_is_taken_as_utc(self) -> None:
        event = Event.from_json('{"time":"2026-03-03T07:28:00","event":"Add","resource":{}}')
        assert event.timestamp.tzinfo is UTC

    @pytest.mark.parametrize(
        ("line", "message"),
        [
            ("{not json", "invalid JSON"),
            ("[1, 2]", "not a JSON object"),
            ('{"time":"2026-03-03T07:28:00Z","resource":{}}', "no 'event'"),
            ('{"time":"2026-03-03T07:28:00Z","event":"Patch","resource":{}}', "unknown event"),
            ('{"time":"2026-03-03T07:28:00Z","event":"Add"}', "no 'resource'"),
            ('{"event":"Add","resource":{}}', "no 'time'"),
            ('{"time":"yesterday","event":"Add","resource":{}}', "invalid timestamp"),
        ],
    )
    def test_malformed_lines(self, line: str, message: str) -> None:
        with pytest.raises(RecordFormatError, match=message):
            Event.from_json(line)
