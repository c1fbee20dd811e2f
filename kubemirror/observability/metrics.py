"""Prometheus counters for the apply pipeline and its drivers."""

from __future__ import annotations

from prometheus_client import Counter

apply_total = Counter(
    "kubemirror_apply_total",
    "Resource applier calls by operation, kind and outcome.",
    ["operation", "kind", "outcome"],
)

sync_events_total = Counter(
    "kubemirror_sync_events_total",
    "Change-feed events handled by the synchronizer.",
    ["event", "kind"],
)

recorded_events_total = Counter(
    "kubemirror_recorded_events_total",
    "Events appended to the durable log.",
    ["event"],
)

replayed_events_total = Counter(
    "kubemirror_replayed_events_total",
    "Events applied from a recorded log.",
    ["event", "outcome"],
)

import_resources_total = Counter(
    "kubemirror_import_resources_total",
    "Resources processed by the bulk importer.",
    ["kind", "outcome"],
)
