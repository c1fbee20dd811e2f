"""Entry point for `python -m kubemirror`.

Usage:
    python -m kubemirror sync
    python -m kubemirror replay record.jsonl
"""

from __future__ import annotations

from kubemirror.cli import cli

cli(prog_name="kubemirror")
