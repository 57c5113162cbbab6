#!/usr/bin/env python3
"""
flacmig.progress

Thread-safe progress sink for the pipeline with an optional rich dashboard.

With ``enable_dash=False`` the reporter only records state (used by tests and
non-interactive runs); the pipeline talks to it the same way either way.
"""

from __future__ import annotations

import threading
import time
from typing import Any, Dict, List, Optional, Sequence, Tuple

from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text


def format_bytes(amount: int) -> str:
    """Return human-readable representation for byte counts."""
    units = ["B", "KiB", "MiB", "GiB", "TiB"]
    value = float(amount)
    for unit in units:
        if value < 1024.0 or unit == units[-1]:
            if unit == "B":
                return f"{int(value)} {unit}"
            precision = 2 if unit in {"GiB", "TiB"} else 1
            return f"{value:.{precision}f} {unit}"
        value /= 1024.0
    return f"{value:.2f} PiB"


def format_duration(seconds: Optional[float]) -> str:
    """hh:mm:ss, or -- when unknown."""
    if seconds is None or seconds == float("inf"):
        return "--"
    secs = max(0, int(round(seconds)))
    hours, rem = divmod(secs, 3600)
    minutes, sec = divmod(rem, 60)
    return f"{hours:02d}:{minutes:02d}:{sec:02d}"


def _stage_key(name: str) -> str:
    return name.strip().lower().replace(" ", "_")


class ProgressReporter:
    """Live status for scan / convert / verify / cleanup."""

    def __init__(
        self,
        enable_dash: bool = False,
        *,
        refresh_rate: float = 0.25,
        console: Optional[Console] = None,
    ) -> None:
        self.enable_dash = enable_dash
        self.refresh_rate = max(0.05, float(refresh_rate))
        self.console = console or Console(stderr=True)
        self.lock = threading.Lock()
        self._live: Optional[Live] = None
        self._last_print = 0.0
        self.start_ts = time.time()

        self.status_line = "idle"
        self.stage_name = "idle"
        self.stage_total = 0
        self.stage_done = 0
        self.stage_ok = 0
        self.stage_failed = 0
        self.stage_start_ts = self.start_ts
        self.stage_order: List[str] = []
        self.stage_records: Dict[str, Dict[str, Any]] = {}
        self.current_item = ""
        self.eta_seconds: Optional[float] = None

        self._log_messages: List[Tuple[str, str, float]] = []

    # ------------------------------------------------------------------ lifecycle

    def start(self) -> None:
        if self.enable_dash and self._live is None:
            self._live = Live(
                self._render(),
                console=self.console,
                refresh_per_second=max(4, int(round(1 / self.refresh_rate))),
                transient=False,
            )
            self._live.start()

    def stop(self) -> None:
        if self._live is not None:
            self._live.update(self._render(), refresh=True)
            self._live.stop()
            self._live = None

    # ------------------------------------------------------------------ stage API

    def set_status(self, text: str) -> None:
        with self.lock:
            self.status_line = text
        self._print_if_due()

    def start_stage(self, name: str, total: int) -> None:
        now = time.time()
        with self.lock:
            key = _stage_key(name)
            if key not in self.stage_records:
                self.stage_order.append(key)
            self.stage_records[key] = {
                "display": name,
                "status": "running",
                "total": max(0, int(total)),
                "done": 0,
                "ok": 0,
                "failed": 0,
                "start": now,
                "duration": None,
            }
            self.stage_name = name
            self.stage_total = max(0, int(total))
            self.stage_done = 0
            self.stage_ok = 0
            self.stage_failed = 0
            self.stage_start_ts = now
            self.status_line = name
            self.current_item = ""
        self._print_now()

    def advance(self, ok: bool = True, *, item: Optional[str] = None, n: int = 1) -> None:
        """Count ``n`` finished items in the current stage."""
        with self.lock:
            self.stage_done += n
            if ok:
                self.stage_ok += n
            else:
                self.stage_failed += n
            if item:
                self.current_item = item
            rec = self.stage_records.get(_stage_key(self.stage_name))
            if rec is not None:
                rec["done"] = self.stage_done
                rec["ok"] = self.stage_ok
                rec["failed"] = self.stage_failed
        self._print_if_due()

    def finish_stage(self, name: Optional[str] = None, *, status: str = "done") -> None:
        now = time.time()
        with self.lock:
            rec = self.stage_records.get(_stage_key(name or self.stage_name))
            if rec is not None:
                rec["status"] = status
                rec["duration"] = max(0.0, now - rec["start"])
        self._print_if_due()

    def mark_stage_skipped(self, name: str) -> None:
        with self.lock:
            key = _stage_key(name)
            if key not in self.stage_records:
                self.stage_order.append(key)
            self.stage_records[key] = {
                "display": name, "status": "skipped", "total": 0, "done": 0,
                "ok": 0, "failed": 0, "start": time.time(), "duration": 0.0,
            }
        self._print_if_due()

    def set_eta(self, seconds: Optional[float]) -> None:
        with self.lock:
            self.eta_seconds = seconds
        self._print_if_due()

    def stage_snapshot(self, name: str) -> Dict[str, Any]:
        with self.lock:
            return dict(self.stage_records.get(_stage_key(name), {}))

    # ------------------------------------------------------------------ logs

    def add_log(self, message: str, level: str = "INFO") -> None:
        entry = (level.upper(), str(message), time.time())
        with self.lock:
            self._log_messages.append(entry)
            if len(self._log_messages) > 200:
                self._log_messages.pop(0)
        self._print_if_due()

    def recent_logs(self, n: int = 5) -> List[Tuple[str, str, float]]:
        with self.lock:
            return list(self._log_messages[-n:])

    # ------------------------------------------------------------------ rendering

    def _print_if_due(self) -> None:
        if self._live is None:
            return
        if (time.time() - self._last_print) >= self.refresh_rate:
            self._print_now()

    def _print_now(self) -> None:
        if self._live is None:
            return
        self._last_print = time.time()
        self._live.update(self._render(), refresh=True)

    def _render(self) -> Panel:
        with self.lock:
            stages = [dict(self.stage_records[k]) for k in self.stage_order]
            status = self.status_line
            current = self.current_item
            eta = self.eta_seconds
            logs = list(self._log_messages[-5:])
            elapsed = time.time() - self.start_ts

        table = Table(expand=True, show_edge=False, pad_edge=False)
        table.add_column("Stage")
        table.add_column("Progress", justify="right")
        table.add_column("OK", justify="right", style="green")
        table.add_column("Failed", justify="right", style="red")
        table.add_column("Status")
        table.add_column("Time", justify="right")
        for rec in stages:
            total = rec["total"]
            pct = (rec["done"] / total * 100.0) if total else 0.0
            duration = rec["duration"] if rec["duration"] is not None else time.time() - rec["start"]
            table.add_row(
                rec["display"],
                f"{rec['done']}/{total} ({pct:.0f}%)",
                str(rec["ok"]),
                str(rec["failed"]),
                rec["status"],
                format_duration(duration),
            )

        header = Text(f"{status}  |  elapsed {format_duration(elapsed)}  |  ETA {format_duration(eta)}", style="bold")
        parts: List[Any] = [header, table]
        if current:
            parts.append(Text(f"last: {current}", style="dim"))
        for level, message, _ts in logs:
            style = {"ERROR": "red", "WARNING": "yellow"}.get(level, "white")
            parts.append(Text(f"[{level}] {message}", style=style))
        return Panel(Group(*parts), title="flacmig", border_style="cyan")

    def stage_names(self) -> Sequence[str]:
        with self.lock:
            return [self.stage_records[k]["display"] for k in self.stage_order]
