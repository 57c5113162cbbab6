#!/usr/bin/env python3
"""
flacmig.cleanup

The only destructive step. Runs once, after both phases drained and the ledger
was saved, and removes a source file only when its track is Verified.
"""
from __future__ import annotations

import dataclasses
import logging
from pathlib import Path
from typing import Iterable, List, Tuple

from flacmig.models import Track, TrackStatus, track_key

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class CleanupSummary:
    deleted: List[Path] = dataclasses.field(default_factory=list)
    skipped: List[Tuple[Path, str]] = dataclasses.field(default_factory=list)
    errors: List[Tuple[Path, str]] = dataclasses.field(default_factory=list)
    bytes_freed: int = 0


def delete_verified(tracks: Iterable[Track]) -> CleanupSummary:
    summary = CleanupSummary()
    for track in tracks:
        if track.status != TrackStatus.VERIFIED:
            continue
        source = Path(track.source_path)
        target = Path(track.target_path)
        if not source.exists():
            continue
        if track_key(source) == track_key(target):
            summary.skipped.append((source, "source and target are the same file"))
            logger.error("Refusing to delete %s: it is its own target", source)
            continue
        if not target.exists():
            summary.skipped.append((source, "converted file is missing"))
            logger.warning("Keeping %s: converted file %s is missing", track.relative_path, target)
            continue
        try:
            size = source.stat().st_size
            source.unlink()
        except OSError as e:
            summary.errors.append((source, str(e)))
            logger.error("Failed to delete %s: %s", source, e)
            continue
        summary.deleted.append(source)
        summary.bytes_freed += int(size)
        logger.info("Deleted %s", track.relative_path)
    return summary
