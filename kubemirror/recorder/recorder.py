"""Durable recording of source change events.

Each subscribed kind pushes its events onto one bounded queue; a single
consumer task appends them to the log as JSON lines with unbuffered writes.
A full queue makes the producers wait rather than drop events. A failed
write is cut back to the last complete line and ends the recording.
"""

from __future__ import annotations

import asyncio
import os
from datetime import UTC, datetime
from pathlib import Path
from typing import BinaryIO

import structlog

from kubemirror.applier.resolver import TypeResolver
from kubemirror.cluster.base import Cluster, Subscription
from kubemirror.errors import RecordWriteError, SyncSetupError
from kubemirror.models.config import RecorderConfig
from kubemirror.models.events import Event, EventType
from kubemirror.models.resources import ResourceKind, identity_only
from kubemirror.observability.metrics import recorded_events_total

_log = structlog.get_logger(component="recorder")

_STOP = object()


def backup_name(path: Path) -> Path:
    """Name an existing log is moved to: its mtime as ``YYYY-MM-DD_HHMMSS_`` + name."""
    modified = datetime.fromtimestamp(path.stat().st_mtime)
    return path.with_name(modified.strftime("%Y-%m-%d_%H%M%S_") + path.name)


def run_file_name(now: datetime | None = None) -> str:
    now = now or datetime.now(tz=UTC)
    return now.astimezone(UTC).strftime("record-%Y%m%dT%H%M%SZ.jsonl")


class Recorder:
    """Writes every Add/Update/Delete of the configured kinds to a log file.

    Delete events are reduced to apiVersion, kind, name and namespace before
    they are queued.
    """

    def __init__(
        self,
        source: Cluster,
        config: RecorderConfig,
        source_resolver: TypeResolver | None = None,
    ) -> None:
        if not config.path and not config.directory:
            raise ValueError("recorder needs either a path or a directory")
        self._source = source
        self._config = config
        self._resolver = source_resolver or TypeResolver(source.discovery, name="source")
        self._queue: asyncio.Queue[object] = asyncio.Queue(maxsize=max(config.queue_size, 1))
        self._subscriptions: list[tuple[ResourceKind, Subscription]] = []
        self._consumer: asyncio.Task[None] | None = None
        self._file: BinaryIO | None = None
        self._path: Path | None = None
        self._written = 0
        self._failure: RecordWriteError | None = None
        self._failed = asyncio.Event()

    @property
    def path(self) -> Path | None:
        """The file being written, once started."""
        return self._path

    @property
    def written(self) -> int:
        return self._written

    async def run(self, stop_event: asyncio.Event) -> None:
        """Record until *stop_event* is set, then drain the queue and close the file.

        Raises:
            RecordWriteError: the log could not be appended to.
        """
        try:
            await self.start()
            stopped = asyncio.ensure_future(stop_event.wait())
            failed = asyncio.ensure_future(self._failed.wait())
            try:
                await asyncio.wait({stopped, failed}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                stopped.cancel()
                failed.cancel()
            if self._failure is not None:
                raise self._failure
        finally:
            await self.stop()

    async def start(self) -> None:
        self._path = self._prepare_target()
        self._file = open(self._path, "ab", buffering=0)  # noqa: SIM115
        self._consumer = asyncio.create_task(self._consume(), name="recorder-consumer")
        _log.info("recorder_started", path=str(self._path), kinds=[str(k) for k in self._config.kinds])

        for kind in self._config.kinds:
            try:
                collection = await self._resolver.resolve(kind)
                subscription = self._source.feed.subscribe(collection, self._record)
                await subscription.start()
                self._subscriptions.append((kind, subscription))
                await subscription.wait_synced()
            except Exception as exc:
                _log.error("record_setup_failed", kind=str(kind), error=str(exc))
                await self.stop()
                raise SyncSetupError(f"cannot record {kind}: {exc}") from exc

    async def stop(self) -> None:
        """Stop the feeds, then write whatever is still queued, then close the file."""
        subscriptions, self._subscriptions = self._subscriptions, []
        for kind, subscription in reversed(subscriptions):
            try:
                await subscription.stop()
            except Exception as exc:  # noqa: BLE001
                _log.error("record_stop_failed", kind=str(kind), error=str(exc))

        if self._consumer is not None:
            await self._queue.put(_STOP)
            await self._consumer
            self._consumer = None

        if self._file is not None:
            self._file.close()
            self._file = None
            _log.info("recorder_stopped", path=str(self._path), written=self._written)

    def _prepare_target(self) -> Path:
        if self._config.directory:
            directory = Path(self._config.directory)
            directory.mkdir(parents=True, exist_ok=True)
            return directory / run_file_name()

        path = Path(self._config.path)
        if path.is_dir():
            raise IsADirectoryError(f"record path {path} is a directory")
        path.parent.mkdir(parents=True, exist_ok=True)
        if self._config.rotate_existing and path.exists():
            backup = backup_name(path)
            os.replace(path, backup)
            _log.info("record_file_rotated", path=str(path), backup=str(backup))
        return path

    async def _record(self, event: Event) -> None:
        resource = event.resource
        if event.type is EventType.DELETE:
            resource = identity_only(resource)
        # Timestamp at observation time, not when the feed built the event.
        await self._queue.put(Event(event.type, resource, datetime.now(tz=UTC)))

    async def _consume(self) -> None:
        while True:
            item = await self._queue.get()
            if item is _STOP:
                return
            assert isinstance(item, Event)
            if self._failure is not None:
                # Keep the producers moving until stop(); nothing more is written.
                continue
            try:
                self._append((item.to_json() + "\n").encode("utf-8"))
            except OSError as exc:
                _log.error("record_write_failed", path=str(self._path), event=item.type.value, error=str(exc))
                self._failure = RecordWriteError(f"cannot append to {self._path}: {exc}")
                self._failed.set()
                continue
            self._written += 1
            recorded_events_total.labels(event=item.type.value).inc()

    def _append(self, line: bytes) -> None:
        """Write one whole line, or truncate the file back to where it was."""
        assert self._file is not None
        offset = self._file.tell()
        view = memoryview(line)
        try:
            while view:
                written = self._file.write(view)
                view = view[written:]
        except OSError:
            try:
                self._file.truncate(offset)
            except OSError as exc:
                _log.error("record_truncate_failed", path=str(self._path), offset=offset, error=str(exc))
            raise
