"""Destination-side write path: kind resolution, transforms and the applier."""

from kubemirror.applier.resolver import TypeResolver
from kubemirror.applier.resource_applier import ApplyOutcome, ResourceApplier
from kubemirror.applier.transforms import (
    Direction,
    FilterFn,
    MutateFn,
    TransformContext,
    TransformPipeline,
)

__all__ = [
    "ApplyOutcome",
    "Direction",
    "FilterFn",
    "MutateFn",
    "ResourceApplier",
    "TransformContext",
    "TransformPipeline",
    "TypeResolver",
]
