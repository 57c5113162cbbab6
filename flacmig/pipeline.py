#!/usr/bin/env python3
"""
flacmig.pipeline

Resumable migration orchestrator.

Exports:
- preflight(cfg)
- merge_with_ledger(tracks, index, retry_failed)
- MigrationPipeline(cfg, runner=None, reporter=None, confirm=None).run() -> MigrationOutcome

Phases (never overlapping):
  scan     – enumerate + probe durations (WorkerQueue, cfg.scan_workers)
  merge    – adopt progress from the ledger; ledger saved
  convert  – Pending tracks (WorkerQueue, cfg.convert_workers); ledger saved
  verify   – Converted tracks (WorkerQueue, cfg.verify_workers); ledger saved
  cleanup  – delete sources of Verified tracks, only if enabled and the last
             ledger save succeeded
"""

from __future__ import annotations

import dataclasses
import logging
import os
import shutil
import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional

from flacmig.cleanup import CleanupSummary, delete_verified
from flacmig.config import MigrationConfig
from flacmig.converter import Converter
from flacmig.errors import ConversionFailure, PersistenceFailure, PreflightFailure, ProbeFailure, VerificationFailure
from flacmig.estimator import BenchmarkSampler, calculate
from flacmig.ledger import AtomicLedger, LedgerIndex, LedgerStore
from flacmig.models import EstimationResult, ItemResult, Track, TrackStatus
from flacmig.process import ToolRunner
from flacmig.progress import ProgressReporter, format_bytes, format_duration
from flacmig.report import ErrorReporter, summarize
from flacmig.scanner import Scanner
from flacmig.verifier import Verifier
from flacmig.worker_queue import WorkerQueue

logger = logging.getLogger(__name__)

ConfirmCallback = Callable[[List[Track], EstimationResult], bool]


# -------------------------------------------------------------------------------------------------
# Preflight & merge
# -------------------------------------------------------------------------------------------------

def _is_within(child: Path, parent: Path) -> bool:
    c = os.path.normcase(str(child))
    p = os.path.normcase(str(parent))
    try:
        return os.path.commonpath([c, p]) == p
    except ValueError:  # different drives
        return False


def preflight(cfg: MigrationConfig) -> None:
    """Validate directories before any work. Raises PreflightFailure."""
    src = cfg.source_dir
    if not src.exists():
        raise PreflightFailure(f"Source directory not found: {src}")
    if not src.is_dir():
        raise PreflightFailure(f"Source is not a directory: {src}")
    if cfg.in_place:
        return
    dst = cfg.target_dir
    if dst is None:
        raise PreflightFailure("A target directory is required unless migrating in place.")
    if os.path.normcase(str(dst)) == os.path.normcase(str(src)):
        raise PreflightFailure("Target directory must be different from source (use in-place mode instead).")
    if _is_within(dst, src):
        raise PreflightFailure("Target directory cannot be inside the source directory.")
    if _is_within(src, dst):
        raise PreflightFailure("Source directory cannot be inside the target directory.")
    if dst.exists() and not dst.is_dir():
        raise PreflightFailure(f"Target exists and is not a directory: {dst}")


def merge_with_ledger(tracks: List[Track], index: LedgerIndex, *, retry_failed: bool) -> Dict[str, int]:
    """
    Adopt prior progress. The scan decides what exists and how long it is; the
    ledger decides how far each track got.

    - Verified / Converted are kept only while the target file still exists,
      also when this run's duration probe failed
    - other scan failures stay Failed; target collisions are never restored
    - Failed is kept unless ``retry_failed``; then the track goes back to Pending
    """
    counts = {"verified": 0, "converted": 0, "failed": 0, "retried": 0, "reset": 0}
    for track in tracks:
        entry = index.get(track.source_path)
        if entry is None:
            continue
        if track.status == TrackStatus.FAILED:
            if track.failure_kind is not ProbeFailure:
                continue
            if entry.status in (TrackStatus.VERIFIED, TrackStatus.CONVERTED) and Path(track.target_path).exists():
                logger.warning("Probe failed for %s; keeping %s from the ledger", track.relative_path, entry.status.value)
                track.restore(entry)
                counts[entry.status.value.lower()] += 1
            continue
        if entry.status in (TrackStatus.VERIFIED, TrackStatus.CONVERTED):
            if Path(track.target_path).exists():
                track.restore(entry)
                counts[entry.status.value.lower()] += 1
            else:
                counts["reset"] += 1
                logger.info("Output missing for %s, converting again", track.relative_path)
        elif entry.status == TrackStatus.FAILED:
            track.restore(entry)
            if retry_failed:
                track.retry()
                counts["retried"] += 1
            else:
                counts["failed"] += 1
    return counts


def has_enough_free_space(path: Path, required_bytes: int) -> bool:
    try:
        usage = shutil.disk_usage(str(path))
    except OSError as e:
        logger.debug("disk_usage failed for %s: %s", path, e)
        return True
    return usage.free > required_bytes


# -------------------------------------------------------------------------------------------------
# Outcome
# -------------------------------------------------------------------------------------------------

@dataclasses.dataclass
class MigrationOutcome:
    tracks: List[Track]
    estimation: Optional[EstimationResult] = None
    conversions: int = 0
    skipped_conversions: int = 0
    cleanup: Optional[CleanupSummary] = None
    error_report: Optional[Path] = None
    ledger_saved: bool = True
    cancelled: bool = False

    @property
    def counts(self) -> Dict[str, int]:
        return summarize(self.tracks)

    @property
    def failures(self) -> List[Track]:
        return [t for t in self.tracks if t.status == TrackStatus.FAILED]

    @property
    def ok(self) -> bool:
        return not self.cancelled and self.ledger_saved and not self.failures


class _Counters:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.converted = 0
        self.skipped = 0

    def add(self, skipped: bool) -> None:
        with self._lock:
            if skipped:
                self.skipped += 1
            else:
                self.converted += 1


# -------------------------------------------------------------------------------------------------
# Pipeline
# -------------------------------------------------------------------------------------------------

class MigrationPipeline:
    def __init__(
        self,
        config: MigrationConfig,
        runner=None,
        reporter: Optional[ProgressReporter] = None,
        confirm: Optional[ConfirmCallback] = None,
    ) -> None:
        self.config = config
        self.runner = runner or ToolRunner()
        self.reporter = reporter or ProgressReporter(enable_dash=False)
        self.confirm = confirm
        self.ledger = AtomicLedger(LedgerStore(config.ledger_path))
        self.scanner = Scanner(config, self.runner, self.reporter)
        self.converter = Converter(config, self.runner)
        self.verifier = Verifier(config, self.runner)
        self.errors = ErrorReporter(config.error_report_path)
        self.sampler = BenchmarkSampler(config.benchmark_samples)

    # ------------------------------------------------------------------ entry point

    def run(self) -> MigrationOutcome:
        preflight(self.config)
        self.config.output_root.mkdir(parents=True, exist_ok=True)
        self.reporter.start()
        try:
            return self._run()
        finally:
            self.reporter.stop()

    def _run(self) -> MigrationOutcome:
        cfg = self.config
        reporter = self.reporter

        reporter.set_status("Scanning")
        logger.info("Scanning %s for %s files", cfg.source_dir, cfg.source_ext)
        tracks = self.scanner.scan(cfg.source_dir)

        index = LedgerIndex(self.ledger.load())
        merged = merge_with_ledger(tracks, index, retry_failed=cfg.retry_failed)
        if len(index):
            logger.info(
                "Resuming: %d verified, %d converted, %d failed kept, %d failed retried, %d reset",
                merged["verified"], merged["converted"], merged["failed"], merged["retried"], merged["reset"],
            )
        index.upsert_many(tracks)
        outcome = MigrationOutcome(tracks=tracks)
        outcome.ledger_saved = self._save(index, "scan")

        pending = [t for t in tracks if t.status == TrackStatus.PENDING]
        estimation = calculate(pending)
        outcome.estimation = estimation
        logger.info(
            "%d track(s) to convert: %s source, %s audio, ~%s output (%.0f%%)",
            len(pending),
            format_bytes(estimation.total_source_bytes),
            format_duration(estimation.total_duration_seconds),
            format_bytes(estimation.estimated_output_bytes),
            estimation.compression_ratio * 100,
        )

        required = estimation.estimated_output_bytes + cfg.free_space_buffer_bytes
        if pending and not has_enough_free_space(cfg.output_root, required):
            logger.warning("Free space check indicates possible insufficient space (need ~%s)", format_bytes(required))
            reporter.add_log("Free space may be insufficient", "WARNING")

        if self.confirm is not None and not self.confirm(tracks, estimation):
            logger.info("Cancelled by user.")
            outcome.cancelled = True
            return outcome

        self._convert_phase(pending, index, outcome)
        outcome.ledger_saved = self._save(index, "convert") and outcome.ledger_saved

        to_verify = [t for t in tracks if t.status == TrackStatus.CONVERTED]
        self._verify_phase(to_verify, index)
        last_save_ok = self._save(index, "verify")
        outcome.ledger_saved = last_save_ok and outcome.ledger_saved

        if not cfg.delete_verified:
            reporter.mark_stage_skipped("cleanup")
            logger.info("Deletion disabled. Verified source files were kept.")
        elif not last_save_ok:
            reporter.mark_stage_skipped("cleanup")
            logger.error("Ledger could not be saved; skipping deletion of verified sources.")
        else:
            verified = [t for t in tracks if t.status == TrackStatus.VERIFIED]
            reporter.start_stage("cleanup", total=len(verified))
            outcome.cleanup = delete_verified(tracks)
            reporter.advance(True, n=len(outcome.cleanup.deleted))
            reporter.finish_stage("cleanup")
            logger.info(
                "Deleted %d verified source file(s), freed %s",
                len(outcome.cleanup.deleted), format_bytes(outcome.cleanup.bytes_freed),
            )

        for track in outcome.failures:
            self.errors.record(track)
        outcome.error_report = self.errors.write()

        counts = outcome.counts
        logger.info("Migration complete: %s", ", ".join(f"{k}={v}" for k, v in counts.items()))
        reporter.set_status("Complete")
        return outcome

    # ------------------------------------------------------------------ phases

    def _convert_phase(self, batch: List[Track], index: LedgerIndex, outcome: MigrationOutcome) -> None:
        cfg = self.config
        counters = _Counters()
        audio_total = sum(t.duration_seconds for t in batch)

        def _convert_one(track: Track) -> ItemResult:
            try:
                result = self.converter.convert(track)
            except Exception as e:
                logger.exception("Conversion crashed for %s", track.relative_path)
                track.mark_failed(f"Conversion error: {type(e).__name__}: {e}", ConversionFailure)
                index.upsert_track(track)
                return ItemResult.failure(track.last_error, ConversionFailure)
            if not result.success:
                track.mark_failed(result.error or "Conversion failed.", ConversionFailure)
                index.upsert_track(track)
                return ItemResult.failure(track.last_error, ConversionFailure)
            track.mark_converted()
            index.upsert_track(track)
            counters.add(result.skipped)
            if not result.skipped and self.sampler.add(result.elapsed, track.duration_seconds):
                factor = self.sampler.average()
                eta = calculate(batch, factor / cfg.convert_workers).eta_seconds if factor else None
                if eta is not None:
                    logger.info("ETA based on benchmark: %s for %s of audio", format_duration(eta), format_duration(audio_total))
                    self.reporter.set_eta(eta)
            return ItemResult.success()

        self._run_phase("convert", batch, cfg.convert_workers, _convert_one)
        outcome.conversions = counters.converted
        outcome.skipped_conversions = counters.skipped

    def _verify_phase(self, batch: List[Track], index: LedgerIndex) -> None:
        cfg = self.config

        def _verify_one(track: Track) -> ItemResult:
            try:
                result = self.verifier.verify(track, cfg.full_verify)
            except Exception as e:
                logger.exception("Verification crashed for %s", track.relative_path)
                track.mark_failed(f"Verification error: {type(e).__name__}: {e}", VerificationFailure)
                index.upsert_track(track)
                return ItemResult.failure(track.last_error, VerificationFailure)
            if not result.success:
                track.mark_failed(result.error or "Verification failed.", VerificationFailure)
                index.upsert_track(track)
                return ItemResult.failure(track.last_error, VerificationFailure)
            track.mark_verified()
            index.upsert_track(track)
            return ItemResult.success()

        self._run_phase("verify", batch, cfg.verify_workers, _verify_one)

    def _run_phase(self, name: str, batch: List[Track], workers: int, operation) -> None:
        if not batch:
            self.reporter.mark_stage_skipped(name)
            logger.info("%s: nothing to do", name)
            return
        self.reporter.set_status(name.capitalize())
        self.reporter.start_stage(name, total=len(batch))

        def _done(track: Track, result: ItemResult) -> None:
            self.reporter.advance(result.ok, item=str(track.relative_path))
            if not result.ok:
                self.reporter.add_log(f"{name} failed: {track.relative_path}: {result.reason}", "ERROR")

        queue: WorkerQueue[Track] = WorkerQueue(
            workers, name=name, describe=lambda t: str(t.relative_path), on_item_done=_done,
        )
        queue.run(batch, operation)
        self.reporter.finish_stage(name)

    # ------------------------------------------------------------------ persistence

    def _save(self, index: LedgerIndex, phase: str) -> bool:
        try:
            self.ledger.save(index.to_ledger())
        except PersistenceFailure as e:
            logger.error("Ledger save after %s failed: %s", phase, e)
            self.reporter.add_log(f"Ledger save after {phase} failed", "ERROR")
            return False
        return True
