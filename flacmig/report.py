#!/usr/bin/env python3
"""
flacmig.report

End-of-run reporting: the append-only error report file and the console
summary (per-status counts + itemized failures).
"""
from __future__ import annotations

import dataclasses
import logging
import threading
from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from rich.console import Console
from rich.table import Table

from flacmig.models import EstimationResult, Track, TrackStatus
from flacmig.progress import format_bytes, format_duration

logger = logging.getLogger(__name__)

_RULE = "=" * 80
_SEP = "-" * 80


@dataclasses.dataclass(frozen=True)
class ErrorEntry:
    relative_path: str
    source_path: str
    status: str
    error: str
    timestamp: datetime
    category: Optional[str] = None


class ErrorReporter:
    """Collects failed tracks and appends them to a plain-text report."""

    def __init__(self, report_path: Path):
        self.report_path = Path(report_path)
        self._lock = threading.Lock()
        self._errors: List[ErrorEntry] = []

    def record(self, track: Track) -> None:
        entry = ErrorEntry(
            relative_path=str(track.relative_path),
            source_path=str(track.source_path),
            status=track.status.value,
            error=track.last_error or "Unknown failure.",
            timestamp=datetime.now(),
            category=track.failure_kind.__name__ if track.failure_kind else None,
        )
        with self._lock:
            self._errors.append(entry)

    def errors(self) -> List[ErrorEntry]:
        with self._lock:
            return list(self._errors)

    def write(self) -> Optional[Path]:
        """Append the collected failures; returns the path, or None when there was nothing to write."""
        errors = sorted(self.errors(), key=lambda e: e.relative_path.lower())
        if not errors:
            return None
        lines = [
            "FLAC MIGRATION ERROR REPORT",
            f"Generated: {datetime.now():%Y-%m-%d %H:%M:%S}",
            _RULE,
            f"Total Errors: {len(errors)}",
            "",
        ]
        for e in errors:
            lines.extend([
                f"Track: {e.relative_path}",
                f"Full Path: {e.source_path}",
                f"Status: {e.status}",
                f"Error: {e.error}",
                *([f"Category: {e.category}"] if e.category else []),
                f"Time: {e.timestamp:%Y-%m-%d %H:%M:%S}",
                _SEP,
                "",
            ])
        try:
            self.report_path.parent.mkdir(parents=True, exist_ok=True)
            with self.report_path.open("a", encoding="utf-8") as f:
                f.write("\n".join(lines) + "\n")
        except OSError as e:
            logger.error("Failed to write error report %s: %s", self.report_path, e)
            return None
        logger.info("Error report saved to %s", self.report_path)
        return self.report_path


def summarize(tracks: Iterable[Track]) -> Dict[str, int]:
    counts = Counter(t.status.value for t in tracks)
    return {status.value: counts.get(status.value, 0) for status in TrackStatus}


def render_estimate(console: Console, n_tracks: int, est: EstimationResult) -> None:
    table = Table(title="Migration preview", show_header=False)
    table.add_column("key", style="bold")
    table.add_column("value", justify="right")
    table.add_row("Files", f"{n_tracks:,}")
    table.add_row("Total size", format_bytes(est.total_source_bytes))
    table.add_row("Total duration", format_duration(est.total_duration_seconds))
    table.add_row("Estimated output", format_bytes(est.estimated_output_bytes))
    table.add_row("Estimated compression", f"{est.compression_ratio:.0%}")
    if est.eta_seconds is not None:
        table.add_row("ETA", format_duration(est.eta_seconds))
    console.print(table)


def render_summary(console: Console, tracks: List[Track], *, max_failures: int = 50) -> None:
    counts = summarize(tracks)
    table = Table(title="Migration summary")
    table.add_column("Status")
    table.add_column("Tracks", justify="right")
    styles = {"Verified": "green", "Failed": "red", "Converted": "yellow", "Pending": "white"}
    for status, n in counts.items():
        table.add_row(f"[{styles[status]}]{status}[/]", f"{n:,}")
    console.print(table)

    failed = [t for t in tracks if t.status == TrackStatus.FAILED]
    if not failed:
        return
    ft = Table(title=f"Failures ({len(failed)})")
    ft.add_column("Track")
    ft.add_column("Error", overflow="fold")
    for t in failed[:max_failures]:
        ft.add_row(str(t.relative_path), (t.last_error or "").splitlines()[0] if t.last_error else "")
    console.print(ft)
    if len(failed) > max_failures:
        console.print(f"... and {len(failed) - max_failures} more (see error report)")
