"""Recording of source change events to a line-delimited JSON log."""

from kubemirror.recorder.recorder import Recorder, backup_name, run_file_name

__all__ = ["Recorder", "backup_name", "run_file_name"]
