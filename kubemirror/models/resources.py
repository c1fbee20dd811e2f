"""Resource kind/collection identifiers and envelope helpers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from kubemirror.errors import InvalidResourceError

Resource = dict[str, Any]

# Identity fields that the destination assigns on write.
SERVER_ASSIGNED_FIELDS = ("uid", "generation", "resourceVersion")


@dataclass(frozen=True, order=True)
class ResourceKind:
    """A (group, version, kind) triple, e.g. ("", "v1", "Pod")."""

    group: str
    version: str
    kind: str

    @property
    def api_version(self) -> str:
        if self.group:
            return f"{self.group}/{self.version}"
        return self.version

    def __str__(self) -> str:
        return f"{self.api_version}/{self.kind}"

    @classmethod
    def parse(cls, value: str) -> ResourceKind:
        """Parse ``group/version/Kind`` or ``version/Kind``."""
        parts = [p.strip() for p in value.strip().split("/")]
        if len(parts) == 2 and all(parts):
            return cls(group="", version=parts[0], kind=parts[1])
        if len(parts) == 3 and parts[1] and parts[2]:
            return cls(group=parts[0], version=parts[1], kind=parts[2])
        raise ValueError(f"Invalid resource kind: {value!r} (expected [group/]version/Kind)")

    @classmethod
    def from_api_version(cls, api_version: str, kind: str) -> ResourceKind:
        group, _, version = api_version.rpartition("/")
        return cls(group=group, version=version, kind=kind)

    @classmethod
    def from_resource(cls, resource: Resource) -> ResourceKind:
        """Decode the apiVersion/kind envelope of *resource*."""
        if not isinstance(resource, dict):
            raise InvalidResourceError(f"resource must be a mapping, got {type(resource).__name__}")
        api_version = resource.get("apiVersion")
        kind = resource.get("kind")
        if not api_version or not isinstance(api_version, str):
            raise InvalidResourceError("resource has no apiVersion")
        if not kind or not isinstance(kind, str):
            raise InvalidResourceError("resource has no kind")
        return cls.from_api_version(api_version, kind)


@dataclass(frozen=True, order=True)
class ResourceCollection:
    """A (group, version, plural) triple addressing a collection on a cluster."""

    group: str
    version: str
    resource: str

    @property
    def group_version(self) -> str:
        if self.group:
            return f"{self.group}/{self.version}"
        return self.version

    def __str__(self) -> str:
        return f"{self.group_version}/{self.resource}"


def metadata_of(resource: Resource) -> dict[str, Any]:
    meta = resource.get("metadata")
    return meta if isinstance(meta, dict) else {}


def name_of(resource: Resource) -> str:
    """Return metadata.name, raising InvalidResourceError when absent."""
    name = metadata_of(resource).get("name")
    if not name or not isinstance(name, str):
        raise InvalidResourceError("resource has no metadata.name")
    return name


def namespace_of(resource: Resource) -> str:
    """Return metadata.namespace, or "" for cluster-scoped objects."""
    ns = metadata_of(resource).get("namespace")
    return ns if isinstance(ns, str) else ""


def display_name(resource: Resource) -> str:
    """``namespace/name`` or ``name`` for logging."""
    meta = metadata_of(resource)
    name = str(meta.get("name", "<unnamed>"))
    ns = meta.get("namespace")
    return f"{ns}/{name}" if ns else name


def identity_only(resource: Resource) -> Resource:
    """Reduce *resource* to apiVersion, kind, name and namespace."""
    meta = metadata_of(resource)
    reduced_meta: dict[str, Any] = {"name": meta.get("name", "")}
    if meta.get("namespace"):
        reduced_meta["namespace"] = meta["namespace"]
    return {
        "apiVersion": resource.get("apiVersion", ""),
        "kind": resource.get("kind", ""),
        "metadata": reduced_meta,
    }


def _k(group: str, version: str, kind: str) -> ResourceKind:
    return ResourceKind(group=group, version=version, kind=kind)


NAMESPACE = _k("", "v1", "Namespace")
PRIORITY_CLASS = _k("scheduling.k8s.io", "v1", "PriorityClass")
STORAGE_CLASS = _k("storage.k8s.io", "v1", "StorageClass")
PERSISTENT_VOLUME_CLAIM = _k("", "v1", "PersistentVolumeClaim")
NODE = _k("", "v1", "Node")
PERSISTENT_VOLUME = _k("", "v1", "PersistentVolume")
POD = _k("", "v1", "Pod")

# Prerequisites first: a kind must precede every kind that references it.
DEFAULT_KINDS: tuple[ResourceKind, ...] = (
    NAMESPACE,
    PRIORITY_CLASS,
    STORAGE_CLASS,
    PERSISTENT_VOLUME_CLAIM,
    NODE,
    PERSISTENT_VOLUME,
    POD,
)
