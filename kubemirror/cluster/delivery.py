"""Ordered, queue-backed event delivery shared by the change-feed adapters.

Producers (an in-process store or a watch thread) push events onto an
unbounded queue; one asyncio task per subscription pops them and awaits the
handler, so a subscription never runs two handler calls at once and never
reorders events.
"""

from __future__ import annotations

import asyncio

import structlog

from kubemirror.cluster.base import EventHandler
from kubemirror.models.events import Event
from kubemirror.models.resources import ResourceCollection

_log = structlog.get_logger(component="cluster.delivery")

_SYNCED = object()
_STOP = object()


class QueuedSubscription:
    """Base for ``Subscription`` implementations.

    Subclasses implement ``_open`` (attach to the source, enqueue the
    existing state through ``enqueue`` and then call ``mark_synced``) and
    ``_close`` (detach from the source).
    """

    def __init__(self, collection: ResourceCollection, handler: EventHandler, source: str = "") -> None:
        self.collection = collection
        self._handler = handler
        self._source = source
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._synced = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None

    def enqueue(self, event: Event) -> None:
        self._queue.put_nowait(event)

    def mark_synced(self) -> None:
        """Signal that everything enqueued so far is the pre-existing state."""
        self._queue.put_nowait(_SYNCED)

    async def start(self) -> None:
        if self._task is not None:
            return
        await self._open()
        self._task = asyncio.create_task(self._deliver(), name=f"feed-{self.collection}")

    async def wait_synced(self) -> None:
        if self._task is None:
            raise RuntimeError("subscription has not been started")
        synced = asyncio.ensure_future(self._synced.wait())
        done, _ = await asyncio.wait({synced, self._task}, return_when=asyncio.FIRST_COMPLETED)
        if synced not in done:
            synced.cancel()
            raise RuntimeError(f"feed for {self.collection} stopped before it synced")

    async def stop(self) -> None:
        if self._task is None:
            return
        await self._close()
        self._queue.put_nowait(_STOP)
        await self._task
        self._task = None

    async def _open(self) -> None:
        raise NotImplementedError

    async def _close(self) -> None:
        raise NotImplementedError

    async def _deliver(self) -> None:
        while True:
            item = await self._queue.get()
            if item is _STOP:
                return
            if item is _SYNCED:
                self._synced.set()
                continue
            assert isinstance(item, Event)
            try:
                await self._handler(item)
            except Exception as exc:  # noqa: BLE001
                # A failing handler must never end the subscription.
                _log.error(
                    "feed_handler_error",
                    source=self._source,
                    collection=str(self.collection),
                    event=item.type.value,
                    error=str(exc),
                )
