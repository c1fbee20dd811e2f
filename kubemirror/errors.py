"""Exception hierarchy shared by every kubemirror component.

Backing-store failures are normalised into ``ApiError`` subclasses at the
cluster adapter boundary so that the applier, syncer and replayer can make
their benign/fatal decisions without knowing which client produced them.
"""

from __future__ import annotations


class KubeMirrorError(Exception):
    """Base class for all kubemirror errors."""


class InvalidResourceError(KubeMirrorError):
    """A resource document is missing its apiVersion/kind/name envelope."""


class ResolutionError(KubeMirrorError):
    """A resource kind could not be mapped to a collection on a cluster."""


class CollectionNotFoundError(ResolutionError):
    """Discovery succeeded but no collection serves the requested kind."""

    def __init__(self, kind: object, group_version: str) -> None:
        super().__init__(f"no collection serves {kind} in {group_version}")
        self.kind = kind
        self.group_version = group_version


class TransformError(KubeMirrorError):
    """A filter or mutator raised while processing a resource."""


class ApiError(KubeMirrorError):
    """The backing store rejected a request."""

    def __init__(self, message: str, status: int = 0, reason: str = "") -> None:
        super().__init__(message)
        self.status = status
        self.reason = reason


class NotFoundError(ApiError):
    """The addressed object does not exist."""

    def __init__(self, message: str) -> None:
        super().__init__(message, status=404, reason="NotFound")


class AlreadyExistsError(ApiError):
    """A create collided with an existing object of the same name."""

    def __init__(self, message: str) -> None:
        super().__init__(message, status=409, reason="AlreadyExists")


class ConflictError(ApiError):
    """Optimistic-concurrency or other 409 conflict."""

    def __init__(self, message: str) -> None:
        super().__init__(message, status=409, reason="Conflict")


class SyncSetupError(KubeMirrorError):
    """A change-feed subscription could not be established."""


class ImportListError(KubeMirrorError):
    """Listing a kind on the source cluster failed during a bulk import."""


class RecordWriteError(KubeMirrorError):
    """Appending to the event log failed; recording stopped."""


class RecordFormatError(KubeMirrorError):
    """A line of the durable event log could not be decoded."""

    def __init__(self, message: str, line_number: int = 0) -> None:
        super().__init__(f"line {line_number}: {message}" if line_number else message)
        self.line_number = line_number


class ReplayError(KubeMirrorError):
    """Applying a recorded event failed and the replay was aborted."""

    def __init__(self, message: str, line_number: int = 0) -> None:
        super().__init__(f"line {line_number}: {message}" if line_number else message)
        self.line_number = line_number
