"""Re-applies a recorded event log to a destination cluster."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path

import structlog

from kubemirror.applier.resource_applier import ApplyOutcome, ResourceApplier
from kubemirror.errors import AlreadyExistsError, RecordFormatError, ReplayError
from kubemirror.models.config import ReplayConfig
from kubemirror.models.events import Event, EventType
from kubemirror.models.resources import display_name
from kubemirror.observability.metrics import replayed_events_total

_log = structlog.get_logger(component="replayer")


@dataclass
class ReplaySummary:
    total: int = 0
    applied: int = 0
    skipped: int = 0
    already_existed: int = 0
    interrupted: bool = False


def parse_records(text: str) -> list[tuple[int, Event]]:
    """Decode a log into ``(line_number, event)`` pairs. Blank lines are ignored.

    Raises:
        RecordFormatError: a non-blank line is not a valid record.
    """
    records: list[tuple[int, Event]] = []
    for number, line in enumerate(text.splitlines(), start=1):
        if not line.strip():
            continue
        try:
            records.append((number, Event.from_json(line)))
        except RecordFormatError as exc:
            raise RecordFormatError(str(exc), line_number=number) from exc
    return records


def load_records(path: str | Path) -> list[tuple[int, Event]]:
    try:
        data = Path(path).read_bytes()
    except OSError as exc:
        raise ReplayError(f"cannot read record file {path}: {exc}") from exc
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as exc:
        line_number = data.count(b"\n", 0, exc.start) + 1
        raise RecordFormatError(f"invalid UTF-8 ({exc.reason})", line_number=line_number) from exc
    return parse_records(text)


class Replayer:
    """Applies the events of one log file in recorded order.

    The whole file is decoded before anything is applied, so a corrupt line
    never leaves the destination half-replayed.
    """

    def __init__(self, applier: ResourceApplier, config: ReplayConfig) -> None:
        if not config.path:
            raise ValueError("replayer needs a record file path")
        self._applier = applier
        self._path = Path(config.path)

    async def replay(self, stop_event: asyncio.Event | None = None) -> ReplaySummary:
        """Apply every recorded event.

        Raises:
            RecordFormatError: the file contains an undecodable line.
            ReplayError: the file cannot be read, or applying an event failed
                for any reason other than an already existing object on Add.
        """
        records = await asyncio.to_thread(load_records, self._path)
        summary = ReplaySummary(total=len(records))
        _log.info("replay_started", path=str(self._path), events=len(records))

        for number, event in records:
            if stop_event is not None and stop_event.is_set():
                summary.interrupted = True
                _log.info("replay_interrupted", line=number, applied=summary.applied)
                break
            outcome = await self._apply(number, event)
            if outcome is ApplyOutcome.SKIPPED:
                summary.skipped += 1
            elif outcome is None:
                summary.already_existed += 1
            else:
                summary.applied += 1

        _log.info(
            "replay_finished",
            path=str(self._path),
            applied=summary.applied,
            skipped=summary.skipped,
            already_existed=summary.already_existed,
            interrupted=summary.interrupted,
        )
        return summary

    async def _apply(self, number: int, event: Event) -> ApplyOutcome | None:
        name = display_name(event.resource)
        try:
            if event.type is EventType.ADD:
                outcome = await self._applier.create(event.resource)
            elif event.type is EventType.UPDATE:
                outcome = await self._applier.update(event.resource)
            else:
                outcome = await self._applier.delete(event.resource)
        except AlreadyExistsError as exc:
            if event.type is not EventType.ADD:
                replayed_events_total.labels(event=event.type.value, outcome="error").inc()
                raise ReplayError(f"{event.type.value} {name}: {exc}", line_number=number) from exc
            _log.warning("replay_resource_exists", line=number, name=name)
            replayed_events_total.labels(event=event.type.value, outcome="exists").inc()
            return None
        except Exception as exc:
            replayed_events_total.labels(event=event.type.value, outcome="error").inc()
            _log.error("replay_failed", line=number, name=name, event=event.type.value, error=str(exc))
            raise ReplayError(f"{event.type.value} {name}: {exc}", line_number=number) from exc
        replayed_events_total.labels(event=event.type.value, outcome=outcome.value).inc()
        return outcome
