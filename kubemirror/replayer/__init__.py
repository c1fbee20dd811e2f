"""Replay of recorded event logs."""

from kubemirror.replayer.replayer import Replayer, ReplaySummary, load_records, parse_records

__all__ = ["ReplaySummary", "Replayer", "load_records", "parse_records"]
