"""Configuration loading from environment variables."""

from __future__ import annotations

import os

from kubemirror.models.config import (
    ApplierConfig,
    ClusterConfig,
    ImportConfig,
    KubeMirrorConfig,
    LogConfig,
    MetricsConfig,
    RecorderConfig,
    ReplayConfig,
    SyncConfig,
)
from kubemirror.models.resources import DEFAULT_KINDS, ResourceKind


def _env(key: str, default: str = "") -> str:
    return os.environ.get(f"KUBEMIRROR_{key}", default)


def _env_bool(key: str, default: bool = False) -> bool:
    val = _env(key, str(default).lower())
    return val.lower() in ("true", "1", "yes")


def _env_int(key: str, default: int, min_val: int | None = None, max_val: int | None = None) -> int:
    val = int(_env(key, str(default)))
    if min_val is not None:
        val = max(val, min_val)
    if max_val is not None:
        val = min(val, max_val)
    return val


def _env_optional_int(key: str, min_val: int = 0) -> int | None:
    raw = _env(key, "")
    if not raw:
        return None
    return max(int(raw), min_val)


def _validate_log_level(value: str) -> str:
    valid = {"debug", "info", "warning", "error"}
    if value.lower() not in valid:
        raise ValueError(f"Invalid log level: {value}. Must be one of {valid}")
    return value.lower()


def _validate_log_format(value: str) -> str:
    valid = {"json", "console"}
    if value.lower() not in valid:
        raise ValueError(f"Invalid log format: {value}. Must be one of {valid}")
    return value.lower()


def _parse_kinds(value: str) -> list[ResourceKind]:
    """Parse a comma separated ``[group/]version/Kind`` list, keeping order."""
    if not value.strip():
        return list(DEFAULT_KINDS)
    kinds: list[ResourceKind] = []
    for item in value.split(","):
        if not item.strip():
            continue
        kind = ResourceKind.parse(item)
        if kind not in kinds:
            kinds.append(kind)
    return kinds


def _parse_kind_names(value: str, default: frozenset[str]) -> frozenset[str]:
    if not value.strip():
        return default
    return frozenset(item.strip() for item in value.split(",") if item.strip())


def load_config() -> KubeMirrorConfig:
    """Load configuration from KUBEMIRROR_* environment variables."""
    kinds = _parse_kinds(_env("KINDS", ""))
    return KubeMirrorConfig(
        source=ClusterConfig(
            kubeconfig=_env("SOURCE_KUBECONFIG", ""),
            context=_env("SOURCE_CONTEXT", ""),
        ),
        destination=ClusterConfig(
            kubeconfig=_env("DEST_KUBECONFIG", ""),
            context=_env("DEST_CONTEXT", ""),
        ),
        applier=ApplierConfig(
            status_subresource_kinds=_parse_kind_names(
                _env("STATUS_SUBRESOURCE_KINDS", ""),
                ApplierConfig().status_subresource_kinds,
            ),
        ),
        sync=SyncConfig(kinds=list(kinds)),
        importer=ImportConfig(
            kinds=_parse_kinds(_env("IMPORT_KINDS", "")) if _env("IMPORT_KINDS") else list(kinds),
            label_selector=_env("LABEL_SELECTOR", ""),
            max_concurrency=_env_optional_int("IMPORT_CONCURRENCY"),
        ),
        recorder=RecorderConfig(
            kinds=_parse_kinds(_env("RECORD_KINDS", "")) if _env("RECORD_KINDS") else list(kinds),
            path=_env("RECORD_PATH", ""),
            directory=_env("RECORD_DIR", ""),
            queue_size=_env_int("RECORD_QUEUE_SIZE", 1024, min_val=1, max_val=1_000_000),
            rotate_existing=_env_bool("RECORD_ROTATE", False),
        ),
        replay=ReplayConfig(
            path=_env("REPLAY_PATH", ""),
        ),
        metrics=MetricsConfig(
            port=_env_int("METRICS_PORT", 0, min_val=0, max_val=65535),
        ),
        log=LogConfig(
            level=_validate_log_level(_env("LOG_LEVEL", "info")),
            format=_validate_log_format(_env("LOG_FORMAT", "json")),
        ),
    )
