#!/usr/bin/env python3
"""
flacmig.cli – CLI entrypoint

Examples:

  # Mirror a FLAC library into a separate MP3 tree (sources untouched)
  flacmig D:\\Music\\FLAC D:\\Music\\MP3 -L

  # Convert next to the originals and delete each FLAC once its MP3 is verified
  flacmig -s /srv/music -i -d -F -y

  # Resume an interrupted run and give previously failed tracks another go
  flacmig /srv/flac /srv/mp3 -r --convert-workers 6
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
import time
from pathlib import Path
from typing import List, Optional, Sequence

import yaml
from rich.console import Console
from rich.prompt import Confirm

from flacmig.config import MigrationConfig, build_config
from flacmig.errors import PreflightFailure
from flacmig.models import EstimationResult, Track, TrackStatus
from flacmig.pipeline import MigrationPipeline, preflight
from flacmig.progress import ProgressReporter
from flacmig.report import render_estimate, render_summary

_LOCK_STALE_SECONDS = 12 * 3600

EXIT_OK = 0
EXIT_FAILURES = 1
EXIT_USAGE = 2
EXIT_CANCELLED = 130


def _setup_logging(log_file: Optional[Path] = None, log_level: str = "INFO", console_level: str = "WARNING") -> logging.Logger:
    """
    Configure the ``flacmig`` logger.

    Args:
        log_file: Detailed log destination (None disables the file handler)
        log_level: File logging level (DEBUG, INFO, WARNING, ERROR)
        console_level: Console logging level (DEBUG, INFO, WARNING, ERROR)
    """
    logger = logging.getLogger('flacmig')
    logger.setLevel(logging.DEBUG)

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, mode='a', encoding='utf-8')
        file_handler.setLevel(getattr(logging, log_level.upper()))
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s | %(levelname)-8s | %(funcName)-20s | %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))
        logger.addHandler(file_handler)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(getattr(logging, console_level.upper()))
    console_handler.setFormatter(logging.Formatter('%(levelname)s: %(message)s'))
    logger.addHandler(console_handler)

    return logger


# -------- run lock --------

def _acquire_output_lock(lock: Path, logger: logging.Logger) -> bool:
    """Create ``lock`` exclusively. A lock older than _LOCK_STALE_SECONDS is replaced."""
    lock.parent.mkdir(parents=True, exist_ok=True)
    if lock.exists():
        try:
            age = time.time() - lock.stat().st_mtime
        except OSError:
            age = 0.0
        if age < _LOCK_STALE_SECONDS:
            logger.error("Another run holds %s (age %.0fs)", lock, age)
            return False
        logger.warning("Replacing stale lock %s (age %.0fh)", lock, age / 3600)
        try:
            lock.unlink()
        except FileNotFoundError:
            pass
    try:
        fd = os.open(str(lock), os.O_CREAT | os.O_EXCL | os.O_WRONLY)
    except FileExistsError:
        logger.error("Another run grabbed %s first", lock)
        return False
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(f"pid={os.getpid()}\nstarted={time.strftime('%Y-%m-%d %H:%M:%S')}\n")
    logger.debug("Acquired lock %s", lock)
    return True


def _release_output_lock(lock: Path, logger: logging.Logger) -> None:
    try:
        lock.unlink()
        logger.debug("Released lock %s", lock)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("Could not remove lock %s: %s", lock, e)


# -------- args --------

def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        prog="flacmig",
        description="Resumable, verified FLAC -> MP3 library migration.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__.split("Examples:", 1)[1] if __doc__ else None,
    )
    p.add_argument("source", nargs="?", help="Root of the lossless archive")
    p.add_argument("target", nargs="?", help="Root of the mirrored output tree")
    p.add_argument("-s", "--source", dest="source_opt", help="Source root (alternative to the positional)")
    p.add_argument("-t", "--target", dest="target_opt", help="Target root (alternative to the positional)")
    p.add_argument("-i", "--in-place", action="store_true", help="Write outputs next to the sources")
    p.add_argument("-d", "--delete-verified", action="store_true",
                   help="Delete each source file once its output is verified (default: keep sources)")
    p.add_argument("-r", "--retry-failed", action="store_true", help="Reset tracks that failed in a previous run to Pending")
    p.add_argument("-F", "--full-verify", action="store_true", help="Decode every output completely during verification")
    p.add_argument("--scan-workers", type=int, help="Concurrent probe batches (default: max(2, cpu/2))")
    p.add_argument("--convert-workers", type=int, help="Concurrent conversions (default: max(1, cpu/2))")
    p.add_argument("--verify-workers", type=int, help="Concurrent verifications (default: max(1, cpu-1))")
    p.add_argument("-b", "--bitrate", type=int, help="Output bitrate in kbps (default: 320)")
    p.add_argument("--tolerance", type=float, help="Allowed duration difference in seconds (default: 1.0)")
    p.add_argument("-c", "--config", type=str, help="YAML config file (default: ~/.config/flacmig/config.yml)")
    p.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation")
    p.add_argument("-L", "--live", action="store_true", help="Show live progress UI")

    logging_group = p.add_argument_group("logging")
    logging_group.add_argument("--log-level", type=str, default="INFO",
                               choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="File log level (default: INFO)")
    logging_group.add_argument("--console-log-level", type=str, default="WARNING",
                               choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Console log level (default: WARNING)")
    logging_group.add_argument("--no-log-file", action="store_true", help="Do not write flacmig.log")
    return p.parse_args(argv)


def _validate_args(args: argparse.Namespace) -> Optional[str]:
    if args.source and args.source_opt:
        return "give the source either positionally or with -s/--source, not both"
    if args.target and args.target_opt:
        return "give the target either positionally or with -t/--target, not both"
    source = args.source or args.source_opt
    target = args.target or args.target_opt
    if not source:
        return "the following arguments are required: source"
    if args.in_place and target:
        return "-i/--in-place cannot be combined with a target directory"
    if not args.in_place and not target:
        return "a target directory is required unless -i/--in-place is given"
    for name in ("scan_workers", "convert_workers", "verify_workers", "bitrate"):
        value = getattr(args, name)
        if value is not None and value < 1:
            return f"--{name.replace('_', '-')} must be >= 1"
    if args.tolerance is not None and args.tolerance < 0:
        return "--tolerance must be >= 0"
    return None


def _build_config(args: argparse.Namespace) -> MigrationConfig:
    source = args.source or args.source_opt
    target = args.target or args.target_opt
    return build_config(
        Path(source),
        Path(target) if target else None,
        config_path=Path(args.config).expanduser() if args.config else None,
        in_place=args.in_place or None,
        delete_verified=args.delete_verified or None,
        retry_failed=args.retry_failed or None,
        full_verify=args.full_verify or None,
        scan_workers=args.scan_workers,
        convert_workers=args.convert_workers,
        verify_workers=args.verify_workers,
        bitrate_kbps=args.bitrate,
        duration_tolerance=args.tolerance,
    )


def _make_confirm(console: Console, cfg: MigrationConfig, assume_yes: bool):
    def _confirm(tracks: List[Track], estimation: EstimationResult) -> bool:
        pending = sum(1 for t in tracks if t.status == TrackStatus.PENDING)
        render_estimate(console, pending, estimation)
        if cfg.delete_verified:
            console.print("[bold yellow]Verified source files will be DELETED.[/bold yellow]")
        if assume_yes:
            return True
        if not sys.stdin.isatty():
            console.print("[bold red]No terminal to confirm on; pass -y/--yes to run unattended.[/bold red]")
            return False
        return Confirm.ask("[bold magenta]Start migration?[/bold magenta]", default=False, console=console)
    return _confirm


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)

    validation_error = _validate_args(args)
    if validation_error:
        print(f"flacmig: error: {validation_error}", file=sys.stderr)
        return EXIT_USAGE

    try:
        cfg = _build_config(args)
        preflight(cfg)
    except (ValueError, FileNotFoundError, yaml.YAMLError, PreflightFailure) as e:
        print(f"flacmig: error: {e}", file=sys.stderr)
        return EXIT_USAGE

    cfg.output_root.mkdir(parents=True, exist_ok=True)
    log_file = None if args.no_log_file else cfg.log_path
    logger = _setup_logging(log_file, args.log_level, args.console_log_level)
    logger.info(f"flacmig started with args: {' '.join(sys.argv[1:] if argv is None else argv)}")
    logger.info(f"Source: {cfg.source_dir}")
    logger.info(f"Output root: {cfg.output_root} (in place: {cfg.in_place})")
    logger.info(
        f"Workers: scan={cfg.scan_workers}, convert={cfg.convert_workers}, verify={cfg.verify_workers}; "
        f"bitrate={cfg.bitrate_kbps}k, tolerance={cfg.duration_tolerance}s, full verify={cfg.full_verify}"
    )

    lock = cfg.lock_path
    if not _acquire_output_lock(lock, logger):
        print(f"flacmig: error: another run is using {cfg.output_root} (lock: {lock})", file=sys.stderr)
        return EXIT_USAGE

    console = Console()
    reporter = ProgressReporter(enable_dash=bool(args.live))
    pipeline = MigrationPipeline(cfg, reporter=reporter, confirm=_make_confirm(console, cfg, args.yes))
    try:
        outcome = pipeline.run()
    except KeyboardInterrupt:
        logger.warning("Interrupted by user; progress up to the last saved phase is kept")
        print("\nInterrupted. Re-run the same command to resume.", file=sys.stderr)
        return EXIT_CANCELLED
    except PreflightFailure as e:
        print(f"flacmig: error: {e}", file=sys.stderr)
        return EXIT_USAGE
    finally:
        _release_output_lock(lock, logger)
        logger.info("flacmig session ended")

    if outcome.cancelled:
        console.print("[bold red]Aborted by user.[/bold red]")
        return EXIT_CANCELLED

    render_summary(console, outcome.tracks)
    if outcome.cleanup is not None:
        console.print(f"Deleted {len(outcome.cleanup.deleted)} verified source file(s).")
    if outcome.error_report is not None:
        console.print(f"Error report: {outcome.error_report}")
    if not outcome.ledger_saved:
        console.print(f"[bold red]Progress could not be saved to {cfg.ledger_path}; see {cfg.log_path}.[/bold red]")
    return EXIT_OK if outcome.ok else EXIT_FAILURES


if __name__ == "__main__":
    sys.exit(main())
