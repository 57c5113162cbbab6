#!/usr/bin/env python3
"""
flacmig.scanner

Discovers source files and probes their durations.

Files are probed in fixed-size batches (one ffprobe spawn per batch) through
the WorkerQueue. Any file the batch output does not account for unambiguously
is re-probed on its own; a file is only Pending once a usable duration is
known, otherwise it enters the run as Failed. Sources whose targets would
coincide are all marked Failed as well.
"""
from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from flacmig.config import TEMP_SUFFIX, MigrationConfig
from flacmig.errors import ProbeFailure, TargetCollision
from flacmig.models import ItemResult, Track, TrackStatus, estimate_output_bytes, target_path_for, track_key
from flacmig.probe import probe_duration, probe_durations_batch
from flacmig.progress import ProgressReporter
from flacmig.worker_queue import WorkerQueue

logger = logging.getLogger(__name__)


def iter_source_files(root: Path, source_ext: str) -> Iterator[Path]:
    """Yield files under ``root`` whose suffix matches ``source_ext`` (case-insensitive)."""
    ext = source_ext.lower()
    for dp, dn, fn in os.walk(root):
        dn.sort()
        for name in sorted(fn):
            lower = name.lower()
            if lower.endswith(TEMP_SUFFIX):
                continue
            if lower.endswith(ext):
                yield Path(dp) / name


def make_batches(paths: List[Path], size: int) -> List[List[Path]]:
    size = max(1, int(size))
    return [paths[i:i + size] for i in range(0, len(paths), size)]


def mark_target_collisions(tracks: List[Track]) -> int:
    """
    Fail every track whose target path is shared with another track
    (``a.flac`` and ``a.FLAC`` both map to ``a.mp3``). None of them is
    converted, so neither source can become eligible for deletion.
    Returns the number of tracks marked.
    """
    groups: Dict[str, List[Track]] = {}
    for t in tracks:
        groups.setdefault(track_key(t.target_path), []).append(t)

    marked = 0
    for group in groups.values():
        if len(group) < 2:
            continue
        for t in group:
            others = ", ".join(str(o.source_path) for o in group if o is not t)
            error = f"Target path collides with {others}"
            if t.status == TrackStatus.FAILED:
                # already failed at probe time; the collision takes precedence
                t.last_error = error
                t.failure_kind = TargetCollision
            else:
                t.mark_failed(error, TargetCollision)
            marked += 1
        logger.error("%d sources map to %s; none of them will be converted", len(group), group[0].target_path)
    return marked


class Scanner:
    def __init__(self, config: MigrationConfig, runner, reporter: Optional[ProgressReporter] = None):
        self.config = config
        self.runner = runner
        self.reporter = reporter or ProgressReporter(enable_dash=False)
        self._lock = threading.Lock()
        self._tracks: List[Track] = []
        self._batch_disabled = threading.Event()
        if config.probe_batch_size <= 1:
            self._batch_disabled.set()

    # ------------------------------------------------------------------ public

    def scan(self, root: Optional[Path] = None) -> List[Track]:
        root = Path(root or self.config.source_dir).resolve()
        files = list(iter_source_files(root, self.config.source_ext))
        logger.info("Found %d %s file(s) under %s", len(files), self.config.source_ext, root)

        with self._lock:
            self._tracks = []
        self.reporter.start_stage("scan", total=len(files))

        batches = make_batches(files, self.config.probe_batch_size)
        queue: WorkerQueue[List[Path]] = WorkerQueue(
            self.config.scan_workers,
            name="scan",
            describe=lambda b: f"batch of {len(b)} starting {b[0].name}" if b else "empty batch",
        )
        queue.run(batches, lambda batch: self._probe_batch(root, batch))
        self.reporter.finish_stage("scan")

        with self._lock:
            tracks = sorted(self._tracks, key=lambda t: str(t.relative_path).lower())
        failed = sum(1 for t in tracks if t.status == TrackStatus.FAILED)
        if failed:
            logger.warning("%d file(s) could not be probed and were marked Failed", failed)
        mark_target_collisions(tracks)
        return tracks

    # ------------------------------------------------------------------ internals

    def _probe_batch(self, root: Path, batch: List[Path]) -> ItemResult:
        cfg = self.config
        durations: Dict[Path, float] = {}
        if not self._batch_disabled.is_set() and len(batch) > 1:
            matched, tool_ok = probe_durations_batch(self.runner, cfg.ffprobe_path, batch, cfg.ffprobe_timeout * 2)
            if not tool_ok and not self._batch_disabled.is_set():
                self._batch_disabled.set()
                logger.info("Batch probing rejected by %s; probing files individually", cfg.ffprobe_path)
            durations.update(matched)

        errors: Dict[Path, str] = {}
        for path in batch:
            if path in durations:
                continue
            seconds, reason = probe_duration(self.runner, cfg.ffprobe_path, path, cfg.ffprobe_timeout)
            if seconds is None:
                errors[path] = reason or "no duration reported"
            else:
                durations[path] = seconds

        new_tracks = [self._make_track(root, p, durations.get(p), errors.get(p)) for p in batch]
        with self._lock:
            self._tracks.extend(new_tracks)
        for t in new_tracks:
            self.reporter.advance(t.status != TrackStatus.FAILED, item=str(t.relative_path))

        if errors:
            return ItemResult.failure(f"{len(errors)} of {len(batch)} file(s) without duration", ProbeFailure)
        return ItemResult.success()

    def _make_track(self, root: Path, path: Path, seconds: Optional[float], error: Optional[str]) -> Track:
        cfg = self.config
        relative = path.relative_to(root)
        try:
            size = path.stat().st_size
        except OSError as e:
            size = 0
            error = error or f"stat failed: {e}"
            seconds = None
        track = Track(
            source_path=path,
            relative_path=relative,
            target_path=target_path_for(relative, cfg.output_root, cfg.target_ext),
            size_bytes=int(size),
            duration_seconds=float(seconds or 0.0),
            estimated_output_bytes=estimate_output_bytes(seconds or 0.0, cfg.bitrate_kbps),
        )
        if seconds is None:
            track.mark_failed(f"Duration probe failed: {error or 'unknown error'}", ProbeFailure)
        return track
