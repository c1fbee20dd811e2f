"""Core data structures for kubemirror."""

from kubemirror.models.config import KubeMirrorConfig
from kubemirror.models.events import Event, EventType
from kubemirror.models.resources import (
    DEFAULT_KINDS,
    Resource,
    ResourceCollection,
    ResourceKind,
    display_name,
    identity_only,
    name_of,
    namespace_of,
)

__all__ = [
    "DEFAULT_KINDS",
    "Event",
    "EventType",
    "KubeMirrorConfig",
    "Resource",
    "ResourceCollection",
    "ResourceKind",
    "display_name",
    "identity_only",
    "name_of",
    "namespace_of",
]
