#!/usr/bin/env python3
"""
flacmig.verifier

Proves a converted file is usable before its source may be deleted:
  1. output exists and the source duration is known
  2. |probed output duration - source duration| <= tolerance
  3. optionally, a full decode to a null sink succeeds
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import List

from flacmig.config import MigrationConfig
from flacmig.models import Track, VerificationResult
from flacmig.probe import probe_duration

logger = logging.getLogger(__name__)


def decode_args(cfg: MigrationConfig, path: Path) -> List[str]:
    return [cfg.ffmpeg_path, "-hide_banner", "-nostdin", "-v", "error", "-i", str(path), "-f", "null", "-"]


class Verifier:
    def __init__(self, config: MigrationConfig, runner):
        self.config = config
        self.runner = runner

    def verify(self, track: Track, full_decode: bool = False) -> VerificationResult:
        cfg = self.config
        target = Path(track.target_path)
        if not target.exists():
            return VerificationResult(False, "Output file is missing.")
        if not track.has_duration:
            return VerificationResult(False, "Original duration missing.")

        probed, reason = probe_duration(self.runner, cfg.ffprobe_path, target, cfg.ffprobe_timeout)
        if probed is None:
            return VerificationResult(False, f"Output duration probe failed: {reason}")

        diff = abs(probed - track.duration_seconds)
        if diff > cfg.duration_tolerance:
            return VerificationResult(
                False,
                f"Duration mismatch ({diff:.1f}s; source {track.duration_seconds:.1f}s, output {probed:.1f}s).",
                probed,
            )

        if full_decode:
            result = self.runner.run(decode_args(cfg, target), cfg.ffmpeg_timeout)
            if not result.ok:
                return VerificationResult(False, f"Decode check failed: {result.diagnostic()}", probed)
            if result.stderr.strip():
                # -v error only prints on real decode errors, even with exit 0
                return VerificationResult(False, f"Decode check reported errors: {result.stderr.strip()}", probed)

        logger.info("Verified %s", track.relative_path)
        return VerificationResult(True, None, probed)
