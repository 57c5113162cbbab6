#!/usr/bin/env python3
"""
flacmig.converter

Transcodes one track: source -> ``<target>.part`` -> target.

Never overwrites an existing target. If the target exists up front the call is
a no-op (``skipped=True``), which is what makes re-running a crashed phase safe.
"""
from __future__ import annotations

import logging
import os
import time
from pathlib import Path
from typing import List

from flacmig.config import TEMP_SUFFIX, MigrationConfig
from flacmig.models import ConversionResult, Track

logger = logging.getLogger(__name__)


def temp_path_for(target: Path) -> Path:
    return target.parent / f"{target.name}{TEMP_SUFFIX}"


def transcode_args(cfg: MigrationConfig, source: Path, output: Path) -> List[str]:
    """
    ffmpeg invocation:
      - every stream mapped, global metadata copied
      - video / attached-picture streams copied untouched (cover art)
      - audio re-encoded at constant bitrate
      - ID3v2.3 + ID3v1 tags for older players
    """
    return [
        cfg.ffmpeg_path,
        "-hide_banner", "-nostdin", "-v", "error",
        "-n",
        "-i", str(source),
        "-map", "0",
        "-map_metadata", "0",
        "-c:v", "copy",
        "-c:a", cfg.audio_codec,
        "-b:a", f"{cfg.bitrate_kbps}k",
        "-id3v2_version", "3",
        "-write_id3v1", "1",
        "-f", cfg.output_format,
        str(output),
    ]


def _remove_quietly(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("Could not remove %s: %s", path, e)


def publish_no_overwrite(temp: Path, target: Path) -> None:
    """
    Move ``temp`` to ``target`` without ever replacing an existing file.

    Raises FileExistsError if the target is present, OSError for anything else.
    """
    if target.exists():
        raise FileExistsError(str(target))
    try:
        os.link(temp, target)
    except FileExistsError:
        raise
    except OSError:
        # no hard links on this filesystem (exFAT, some network shares)
        if target.exists():
            raise FileExistsError(str(target))
        os.rename(temp, target)
        return
    temp.unlink()


class Converter:
    def __init__(self, config: MigrationConfig, runner):
        self.config = config
        self.runner = runner

    def convert(self, track: Track) -> ConversionResult:
        target = Path(track.target_path)
        if target.exists():
            logger.debug("Target exists, skipping: %s", target)
            return ConversionResult(success=True, skipped=True)

        target.parent.mkdir(parents=True, exist_ok=True)
        temp = temp_path_for(target)
        if temp.exists():
            logger.info("Removing stale partial output %s", temp)
            _remove_quietly(temp)

        started = time.monotonic()
        result = self.runner.run(transcode_args(self.config, Path(track.source_path), temp), self.config.ffmpeg_timeout)
        elapsed = time.monotonic() - started

        if not result.ok:
            _remove_quietly(temp)
            return ConversionResult(success=False, error=result.diagnostic(), elapsed=elapsed)

        if not temp.exists():
            return ConversionResult(success=False, error="Codec tool reported success but wrote no output.", elapsed=elapsed)

        try:
            publish_no_overwrite(temp, target)
        except FileExistsError:
            _remove_quietly(temp)
            return ConversionResult(success=False, error="Target file already exists.", elapsed=elapsed)
        except OSError as e:
            _remove_quietly(temp)
            return ConversionResult(success=False, error=f"Could not move output into place: {e}", elapsed=elapsed)

        logger.info("Converted %s (%.1fs)", track.relative_path, elapsed)
        return ConversionResult(success=True, elapsed=elapsed)
