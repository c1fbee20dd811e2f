"""Writes source resources to the destination cluster.

Every create and update goes resolve -> filter -> mutate -> write. Deletes
are resolved and propagated as-is. Errors from resolution, transforms and
the destination are raised to the caller, which decides whether they are
benign.
"""

from __future__ import annotations

import copy
from enum import StrEnum

import structlog

from kubemirror.applier.resolver import TypeResolver
from kubemirror.applier.transforms import Direction, TransformPipeline
from kubemirror.cluster.base import Cluster, ResourceClient
from kubemirror.errors import InvalidResourceError
from kubemirror.models.config import ApplierConfig
from kubemirror.models.resources import Resource, ResourceKind, display_name, name_of, namespace_of
from kubemirror.observability.metrics import apply_total

_log = structlog.get_logger(component="applier")


class ApplyOutcome(StrEnum):
    """Result of a successful applier call."""

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    SKIPPED = "skipped"


class ResourceApplier:
    """Applies resources to one destination cluster.

    Input documents are never modified; each call works on a deep copy.
    """

    def __init__(
        self,
        destination: Cluster,
        resolver: TypeResolver,
        pipeline: TransformPipeline,
        config: ApplierConfig | None = None,
    ) -> None:
        self._destination = destination
        self._resolver = resolver
        self._pipeline = pipeline
        self._config = config or ApplierConfig()

    @property
    def resolver(self) -> TypeResolver:
        return self._resolver

    @property
    def pipeline(self) -> TransformPipeline:
        return self._pipeline

    async def create(self, resource: Resource) -> ApplyOutcome:
        kind = ResourceKind.from_resource(resource)
        try:
            outcome = await self._create(kind, resource)
        except Exception:
            apply_total.labels(operation="create", kind=kind.kind, outcome="error").inc()
            raise
        apply_total.labels(operation="create", kind=kind.kind, outcome=outcome.value).inc()
        return outcome

    async def update(self, resource: Resource) -> ApplyOutcome:
        kind = ResourceKind.from_resource(resource)
        try:
            outcome = await self._update(kind, resource)
        except Exception:
            apply_total.labels(operation="update", kind=kind.kind, outcome="error").inc()
            raise
        apply_total.labels(operation="update", kind=kind.kind, outcome=outcome.value).inc()
        return outcome

    async def delete(self, resource: Resource) -> ApplyOutcome:
        kind = ResourceKind.from_resource(resource)
        try:
            client = await self._client_for(kind, resource)
            await client.delete(name_of(resource))
        except Exception:
            apply_total.labels(operation="delete", kind=kind.kind, outcome="error").inc()
            raise
        apply_total.labels(operation="delete", kind=kind.kind, outcome=ApplyOutcome.DELETED.value).inc()
        _log.debug("resource_deleted", kind=str(kind), name=display_name(resource))
        return ApplyOutcome.DELETED

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _create(self, kind: ResourceKind, resource: Resource) -> ApplyOutcome:
        await self._resolver.resolve(kind)
        document = copy.deepcopy(resource)
        if not await self._pipeline.filter(kind, document, Direction.CREATE):
            return ApplyOutcome.SKIPPED
        document = await self._pipeline.mutate(kind, document, Direction.CREATE)

        client = await self._client_for(kind, document)
        await client.create(document)
        _log.debug("resource_created", kind=str(kind), name=display_name(document))

        status = document.get("status")
        if status and await self._patches_status(kind):
            await client.patch_status(name_of(document), status)
            _log.debug("resource_status_patched", kind=str(kind), name=display_name(document))
        return ApplyOutcome.CREATED

    async def _update(self, kind: ResourceKind, resource: Resource) -> ApplyOutcome:
        await self._resolver.resolve(kind)
        document = copy.deepcopy(resource)
        if not await self._pipeline.filter(kind, document, Direction.UPDATE):
            return ApplyOutcome.SKIPPED
        document = await self._pipeline.mutate(kind, document, Direction.UPDATE)

        client = await self._client_for(kind, document)
        await client.update(document)
        _log.debug("resource_updated", kind=str(kind), name=display_name(document))
        return ApplyOutcome.UPDATED

    async def _client_for(self, kind: ResourceKind, resource: Resource) -> ResourceClient:
        collection = await self._resolver.resolve(kind)
        namespace = ""
        if await self._resolver.namespaced(kind):
            namespace = namespace_of(resource)
            if not namespace:
                raise InvalidResourceError(f"{kind} {display_name(resource)} is namespaced but has no metadata.namespace")
        return self._destination.resource(collection, namespace)

    async def _patches_status(self, kind: ResourceKind) -> bool:
        if kind.kind in self._config.status_subresource_kinds:
            return True
        return await self._resolver.has_status_subresource(kind)
