"""One-shot copy of the current source state to the destination."""

from __future__ import annotations

import asyncio
import os
from collections.abc import Mapping
from contextlib import AbstractAsyncContextManager, nullcontext
from dataclasses import dataclass, field
from typing import Any

import structlog

from kubemirror.applier.resolver import TypeResolver
from kubemirror.applier.resource_applier import ApplyOutcome, ResourceApplier
from kubemirror.cluster.base import Cluster
from kubemirror.cluster.selector import parse_selector, selector_from_label_selector
from kubemirror.errors import ImportListError
from kubemirror.models.config import ImportConfig
from kubemirror.models.resources import Resource, ResourceKind, display_name
from kubemirror.observability.metrics import import_resources_total

_log = structlog.get_logger(component="importer")


@dataclass
class KindSummary:
    listed: int = 0
    created: int = 0
    skipped: int = 0
    failed: int = 0


@dataclass
class ImportSummary:
    """Per-kind counts of an ``import_all`` run."""

    kinds: dict[ResourceKind, KindSummary] = field(default_factory=dict)

    @property
    def created(self) -> int:
        return sum(s.created for s in self.kinds.values())

    @property
    def skipped(self) -> int:
        return sum(s.skipped for s in self.kinds.values())

    @property
    def failed(self) -> int:
        return sum(s.failed for s in self.kinds.values())


def _concurrency_limit(max_concurrency: int | None) -> int | None:
    """None -> CPU count; 0 -> unbounded (returned as None)."""
    if max_concurrency is None:
        return os.cpu_count() or 1
    if max_concurrency <= 0:
        return None
    return max_concurrency


class BulkImporter:
    """Lists every configured kind on the source and creates each object on the destination.

    Kinds are processed one after another in configuration order; the
    objects of one kind are created concurrently and all of them finish
    before the next kind is listed.
    """

    def __init__(
        self,
        source: Cluster,
        applier: ResourceApplier,
        config: ImportConfig | None = None,
        source_resolver: TypeResolver | None = None,
    ) -> None:
        self._source = source
        self._applier = applier
        self._config = config or ImportConfig()
        self._resolver = source_resolver or TypeResolver(source.discovery, name="source")
        self._limit = _concurrency_limit(self._config.max_concurrency)

    async def import_all(self, label_selector: str | Mapping[str, Any] | None = None) -> ImportSummary:
        """Import every configured kind.

        Args:
            label_selector: Selector string, or a ``matchLabels`` /
                ``matchExpressions`` mapping. None uses the configured one.

        Raises:
            ImportListError: listing a kind on the source failed. Kinds
                before it have been imported; later kinds are not attempted.
        """
        if label_selector is None:
            label_selector = self._config.label_selector
        if isinstance(label_selector, Mapping):
            label_selector = selector_from_label_selector(label_selector)
        # Reject a malformed selector before touching either cluster.
        parse_selector(label_selector)

        summary = ImportSummary()
        _log.info(
            "import_started",
            kinds=[str(k) for k in self._config.kinds],
            label_selector=label_selector,
            max_concurrency=self._limit or "unbounded",
        )
        for kind in self._config.kinds:
            summary.kinds[kind] = await self._import_kind(kind, label_selector)
        _log.info(
            "import_finished",
            created=summary.created,
            skipped=summary.skipped,
            failed=summary.failed,
        )
        return summary

    async def _import_kind(self, kind: ResourceKind, label_selector: str) -> KindSummary:
        try:
            collection = await self._resolver.resolve(kind)
            items = await self._source.resource(collection).list(label_selector=label_selector)
        except Exception as exc:
            _log.error("import_list_failed", kind=str(kind), error=str(exc))
            raise ImportListError(f"list {kind} on the source: {exc}") from exc

        result = KindSummary(listed=len(items))
        semaphore = asyncio.Semaphore(self._limit) if self._limit else None
        outcomes = await asyncio.gather(*(self._import_one(kind, item, semaphore) for item in items))
        for outcome in outcomes:
            if outcome is ApplyOutcome.CREATED:
                result.created += 1
            elif outcome is ApplyOutcome.SKIPPED:
                result.skipped += 1
            else:
                result.failed += 1
        _log.info(
            "import_kind_finished",
            kind=str(kind),
            listed=result.listed,
            created=result.created,
            skipped=result.skipped,
            failed=result.failed,
        )
        return result

    async def _import_one(
        self,
        kind: ResourceKind,
        resource: Resource,
        semaphore: asyncio.Semaphore | None,
    ) -> ApplyOutcome | None:
        guard: AbstractAsyncContextManager[Any] = semaphore if semaphore is not None else nullcontext()
        async with guard:
            try:
                outcome = await self._applier.create(resource)
            except Exception as exc:  # noqa: BLE001
                _log.warning("import_resource_failed", kind=str(kind), name=display_name(resource), error=str(exc))
                import_resources_total.labels(kind=kind.kind, outcome="failed").inc()
                return None
        import_resources_total.labels(kind=kind.kind, outcome=outcome.value).inc()
        return outcome
