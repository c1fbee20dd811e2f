"""Configuration data structures."""

from __future__ import annotations

from dataclasses import dataclass, field

from kubemirror.models.resources import DEFAULT_KINDS, ResourceKind


def _default_kinds() -> list[ResourceKind]:
    return list(DEFAULT_KINDS)


@dataclass
class ClusterConfig:
    """How to reach one cluster. Empty kubeconfig means in-cluster config."""

    kubeconfig: str = ""
    context: str = ""


@dataclass
class ApplierConfig:
    """Resource applier configuration."""

    # Kinds whose status lives in a separate sub-resource and must be patched after create.
    status_subresource_kinds: frozenset[str] = frozenset({"Pod"})


@dataclass
class SyncConfig:
    """Continuous synchronizer configuration."""

    kinds: list[ResourceKind] = field(default_factory=_default_kinds)


@dataclass
class ImportConfig:
    """One-shot bulk importer configuration."""

    kinds: list[ResourceKind] = field(default_factory=_default_kinds)
    label_selector: str = ""
    # None -> os.cpu_count(); 0 -> unbounded.
    max_concurrency: int | None = None


@dataclass
class RecorderConfig:
    """Event recorder configuration. Exactly one of path/directory is used."""

    kinds: list[ResourceKind] = field(default_factory=_default_kinds)
    path: str = ""
    directory: str = ""
    queue_size: int = 1024
    rotate_existing: bool = False


@dataclass
class ReplayConfig:
    """Replayer configuration."""

    path: str = ""


@dataclass
class MetricsConfig:
    """Prometheus exposition. Port 0 disables the HTTP endpoint."""

    port: int = 0


@dataclass
class LogConfig:
    """Logging configuration."""

    level: str = "info"
    # "json" or "console"
    format: str = "json"


@dataclass
class KubeMirrorConfig:
    """Top-level kubemirror configuration."""

    source: ClusterConfig = field(default_factory=ClusterConfig)
    destination: ClusterConfig = field(default_factory=ClusterConfig)
    applier: ApplierConfig = field(default_factory=ApplierConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    importer: ImportConfig = field(default_factory=ImportConfig)
    recorder: RecorderConfig = field(default_factory=RecorderConfig)
    replay: ReplayConfig = field(default_factory=ReplayConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)
    log: LogConfig = field(default_factory=LogConfig)
