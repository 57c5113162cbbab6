#!/usr/bin/env python3
"""
flacmig.probe

ffprobe duration queries.

- probe_duration(): one file, one invocation. Authoritative.
- probe_durations_batch(): many files in one invocation, parsed from ffprobe's
  sectioned ``default`` writer output:

      [FORMAT]
      filename=/music/a.flac
      duration=215.373000
      [/FORMAT]

  A record is only trusted when it is fully delimited, carries a numeric
  positive duration, and its filename equals exactly one requested path.
  Everything else is left out of the result so the caller falls back to
  probe_duration() for it.
"""
from __future__ import annotations

import logging
import math
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from flacmig.models import track_key
from flacmig.process import ProcessResult

logger = logging.getLogger(__name__)

_SECTION_OPEN = "[FORMAT]"
_SECTION_CLOSE = "[/FORMAT]"


def single_probe_args(ffprobe: str, path: Path) -> List[str]:
    return [
        ffprobe, "-v", "error",
        "-show_entries", "format=duration",
        "-of", "default=noprint_wrappers=1:nokey=1",
        str(path),
    ]


def batch_probe_args(ffprobe: str, paths: Sequence[Path]) -> List[str]:
    return [
        ffprobe, "-v", "error",
        "-show_entries", "format=filename,duration",
        "-of", "default",
        *[str(p) for p in paths],
    ]


def parse_duration(text: str) -> Optional[float]:
    """Return positive finite seconds from ``text`` or None."""
    try:
        value = float((text or "").strip())
    except ValueError:
        return None
    if not math.isfinite(value) or value <= 0:
        return None
    return value


def probe_duration(runner, ffprobe: str, path: Path, timeout: float) -> Tuple[Optional[float], Optional[str]]:
    """
    Probe one file.

    Returns (seconds, None) on success, (None, reason) on failure.
    """
    result: ProcessResult = runner.run(single_probe_args(ffprobe, path), timeout)
    if not result.ok:
        reason = result.diagnostic()
        logger.warning("ffprobe failed for %s: %s", path, reason)
        return None, reason
    lines = [ln for ln in result.stdout.splitlines() if ln.strip()]
    seconds = parse_duration(lines[0]) if len(lines) == 1 else None
    if seconds is None:
        logger.warning("Unable to parse duration for %s: %r", path, result.stdout.strip()[:80])
        return None, f"Unparsable duration output: {result.stdout.strip()[:80]!r}"
    return seconds, None


def parse_batch_output(stdout: str) -> List[Tuple[str, str]]:
    """
    Split sectioned output into (filename, duration_text) records.

    Sections missing a close tag, a filename or a duration are dropped.
    """
    records: List[Tuple[str, str]] = []
    current: Optional[Dict[str, str]] = None
    broken = False
    for raw in stdout.splitlines():
        line = raw.strip()
        if not line:
            continue
        if line == _SECTION_OPEN:
            current = {}
            broken = False
            continue
        if line == _SECTION_CLOSE:
            if current is not None and not broken and "filename" in current and "duration" in current:
                records.append((current["filename"], current["duration"]))
            current = None
            continue
        if current is None or "=" not in line:
            continue
        key, _, value = line.partition("=")
        key = key.strip()
        if key in current:
            # repeated key inside one section: record is not trustworthy
            broken = True
            continue
        current[key] = value.strip() if key == "duration" else value
    return records


def match_batch_records(paths: Sequence[Path], records: Sequence[Tuple[str, str]]) -> Dict[Path, float]:
    """
    Map records back to requested paths by exact normalized path equality.

    Paths reported more than once, or records naming nothing we asked for, are
    treated as ambiguous and excluded.
    """
    wanted: Dict[str, Path] = {track_key(p): p for p in paths}
    seen: Dict[str, int] = {}
    durations: Dict[str, float] = {}
    for filename, duration_text in records:
        key = track_key(filename)
        if key not in wanted:
            logger.debug("Batch probe returned unrequested file %r", filename)
            continue
        seen[key] = seen.get(key, 0) + 1
        seconds = parse_duration(duration_text)
        if seconds is not None:
            durations[key] = seconds
    out: Dict[Path, float] = {}
    for key, seconds in durations.items():
        if seen.get(key) == 1:
            out[wanted[key]] = seconds
    return out


def probe_durations_batch(runner, ffprobe: str, paths: Sequence[Path], timeout: float) -> Tuple[Dict[Path, float], bool]:
    """
    Probe several files in one invocation.

    Returns (matched, tool_ok). ``matched`` only contains unambiguous records;
    ``tool_ok`` is False when the tool rejected the invocation as a whole.
    """
    if not paths:
        return {}, True
    result: ProcessResult = runner.run(batch_probe_args(ffprobe, paths), timeout)
    if not result.ok:
        logger.debug("Batch probe of %d files failed: %s", len(paths), result.diagnostic()[:200])
        return {}, False
    matched = match_batch_records(paths, parse_batch_output(result.stdout))
    if len(matched) != len(paths):
        logger.debug("Batch probe matched %d/%d files", len(matched), len(paths))
    return matched, True
