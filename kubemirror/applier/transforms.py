"""Filter and mutate stages run by the resource applier before each write.

Filters decide whether a create/update goes ahead at all; mutators rewrite
the document that will be sent. Both are async callables receiving the
resource and a ``TransformContext`` so they can read from either cluster.

Four built-ins are registered by every pipeline before anything else and
cannot be removed:

* ``strip_identity``        every kind, create + update
* ``mutate_pod``            Pod, create + update
* ``filter_scheduled_pod``  Pod, update only
* ``mutate_persistent_volume`` PersistentVolume, create + update
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

import structlog

from kubemirror.errors import TransformError
from kubemirror.models.resources import (
    PERSISTENT_VOLUME,
    PERSISTENT_VOLUME_CLAIM,
    POD,
    SERVER_ASSIGNED_FIELDS,
    Resource,
    ResourceKind,
    display_name,
    metadata_of,
)

if TYPE_CHECKING:
    from kubemirror.applier.resolver import TypeResolver
    from kubemirror.cluster.base import Cluster

_log = structlog.get_logger(component="applier.transforms")


class Direction(StrEnum):
    """Which write a transform applies to."""

    CREATE = "create"
    UPDATE = "update"


BOTH_DIRECTIONS: frozenset[Direction] = frozenset({Direction.CREATE, Direction.UPDATE})


@dataclass(frozen=True)
class TransformContext:
    """What a transform may consult besides the resource itself.

    ``source`` is None when there is no live source, e.g. during replay.
    ``resolver`` resolves kinds against the destination.
    """

    destination: Cluster
    resolver: TypeResolver
    source: Cluster | None = None


FilterFn = Callable[[Resource, TransformContext], Awaitable[bool]]
MutateFn = Callable[[Resource, TransformContext], Awaitable[Resource]]


@dataclass(frozen=True)
class _Registration:
    kind: ResourceKind | None  # None: every kind
    directions: frozenset[Direction]
    fn: Callable[..., Awaitable[object]]
    builtin: bool = False

    @property
    def name(self) -> str:
        return getattr(self.fn, "__name__", repr(self.fn))

    def applies(self, kind: ResourceKind, direction: Direction) -> bool:
        return direction in self.directions and (self.kind is None or self.kind == kind)


# ---------------------------------------------------------------------------
# Built-in transforms
# ---------------------------------------------------------------------------


async def strip_identity(resource: Resource, ctx: TransformContext) -> Resource:
    """Drop uid, generation and resourceVersion; the destination assigns its own."""
    meta = metadata_of(resource)
    for key in SERVER_ASSIGNED_FIELDS:
        meta.pop(key, None)
    return resource


async def mutate_pod(resource: Resource, ctx: TransformContext) -> Resource:
    """Detach a pod from objects that are not mirrored.

    Service accounts and owners (replica sets, jobs, ...) do not exist on the
    destination, and nothing there would ever remove a finalizer.
    """
    spec = resource.get("spec")
    if isinstance(spec, dict):
        spec.pop("serviceAccountName", None)
        spec.pop("serviceAccount", None)
    meta = metadata_of(resource)
    meta.pop("ownerReferences", None)
    meta.pop("finalizers", None)
    return resource


async def filter_scheduled_pod(resource: Resource, ctx: TransformContext) -> bool:
    """Reject updates to pods that already carry a node assignment."""
    spec = resource.get("spec")
    node_name = spec.get("nodeName") if isinstance(spec, dict) else None
    if node_name:
        _log.info("scheduled_pod_update_skipped", pod=display_name(resource), node=node_name)
        return False
    return True


async def mutate_persistent_volume(resource: Resource, ctx: TransformContext) -> Resource:
    """Point a bound volume's claimRef at the claim's uid on the destination."""
    status = resource.get("status")
    if not isinstance(status, dict) or status.get("phase") != "Bound":
        return resource

    spec = resource.get("spec")
    claim_ref = spec.get("claimRef") if isinstance(spec, dict) else None
    if not isinstance(claim_ref, dict) or not claim_ref.get("name"):
        raise TransformError(f"bound volume {display_name(resource)} has no spec.claimRef")

    collection = await ctx.resolver.resolve(PERSISTENT_VOLUME_CLAIM)
    claim = await ctx.destination.resource(collection, claim_ref.get("namespace", "")).get(claim_ref["name"])
    claim_uid = metadata_of(claim).get("uid")
    if claim_uid:
        claim_ref["uid"] = claim_uid
    else:
        claim_ref.pop("uid", None)
    return resource


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class TransformPipeline:
    """Ordered filters and mutators keyed by kind and direction.

    Args:
        context: Passed to every transform.
    """

    def __init__(self, context: TransformContext) -> None:
        self.context = context
        self._filters: list[_Registration] = []
        self._mutators: list[_Registration] = []

        self._mutators.append(_Registration(None, BOTH_DIRECTIONS, strip_identity, builtin=True))
        self._mutators.append(_Registration(POD, BOTH_DIRECTIONS, mutate_pod, builtin=True))
        self._mutators.append(_Registration(PERSISTENT_VOLUME, BOTH_DIRECTIONS, mutate_persistent_volume, builtin=True))
        self._filters.append(_Registration(POD, frozenset({Direction.UPDATE}), filter_scheduled_pod, builtin=True))

    def register_filter(
        self,
        kind: ResourceKind | None,
        fn: FilterFn,
        directions: Iterable[Direction] = BOTH_DIRECTIONS,
    ) -> None:
        """Append *fn* to the filters for *kind* (None for every kind)."""
        self._filters.append(_Registration(kind, frozenset(directions), fn))

    def register_mutator(
        self,
        kind: ResourceKind | None,
        fn: MutateFn,
        directions: Iterable[Direction] = BOTH_DIRECTIONS,
    ) -> None:
        """Append *fn* to the mutators for *kind* (None for every kind)."""
        self._mutators.append(_Registration(kind, frozenset(directions), fn))

    def filters_for(self, kind: ResourceKind, direction: Direction) -> list[str]:
        return [r.name for r in self._filters if r.applies(kind, direction)]

    def mutators_for(self, kind: ResourceKind, direction: Direction) -> list[str]:
        return [r.name for r in self._mutators if r.applies(kind, direction)]

    async def filter(self, kind: ResourceKind, resource: Resource, direction: Direction) -> bool:
        """Run filters in registration order; the first False stops evaluation.

        Raises:
            TransformError: a filter raised.
        """
        for registration in self._filters:
            if not registration.applies(kind, direction):
                continue
            try:
                proceed = await registration.fn(resource, self.context)
            except TransformError:
                raise
            except Exception as exc:
                raise TransformError(
                    f"filter {registration.name} failed for {kind} {display_name(resource)}: {exc}"
                ) from exc
            if not proceed:
                _log.debug(
                    "resource_filtered",
                    kind=str(kind),
                    name=display_name(resource),
                    direction=direction.value,
                    filter=registration.name,
                )
                return False
        return True

    async def mutate(self, kind: ResourceKind, resource: Resource, direction: Direction) -> Resource:
        """Chain mutators in registration order, each receiving the previous output.

        Raises:
            TransformError: a mutator raised or returned something other than a mapping.
        """
        for registration in self._mutators:
            if not registration.applies(kind, direction):
                continue
            try:
                mutated = await registration.fn(resource, self.context)
            except TransformError:
                raise
            except Exception as exc:
                raise TransformError(
                    f"mutator {registration.name} failed for {kind} {display_name(resource)}: {exc}"
                ) from exc
            if not isinstance(mutated, dict):
                raise TransformError(
                    f"mutator {registration.name} returned {type(mutated).__name__}, expected a mapping"
                )
            resource = mutated
        return resource
