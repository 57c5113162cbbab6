#!/usr/bin/env python3
"""
flacmig.config

Immutable run configuration plus the optional YAML config file.

Layering (lowest to highest precedence):
  1. dataclass defaults
  2. YAML config file (``--config`` or the platform default path, if present)
  3. environment: FLACMIG_FFMPEG, FLACMIG_FFPROBE
  4. CLI flags (applied by the caller through ``dataclasses.replace``)

Example config.yml:
---
bitrate_kbps: 256
convert_workers: 4
full_verify: true
ffmpeg_path: /opt/ffmpeg/bin/ffmpeg
"""
from __future__ import annotations

import dataclasses
import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

LEDGER_FILENAME = "migration_state.json"
ERROR_REPORT_FILENAME = "migration_errors.txt"
LOG_FILENAME = "flacmig.log"
LOCK_FILENAME = ".flacmig.lock"
TEMP_SUFFIX = ".part"


def _cpu_count() -> int:
    return os.cpu_count() or 2


def default_scan_workers() -> int:
    return max(2, _cpu_count() // 2)


def default_convert_workers() -> int:
    # the encoder does its own threading; leave headroom
    return max(1, _cpu_count() // 2)


def default_verify_workers() -> int:
    return max(1, _cpu_count() - 1)


@dataclasses.dataclass(frozen=True)
class MigrationConfig:
    source_dir: Path
    target_dir: Optional[Path] = None
    in_place: bool = False
    delete_verified: bool = False
    retry_failed: bool = False
    full_verify: bool = False
    # codec tool
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"
    source_ext: str = ".flac"
    target_ext: str = ".mp3"
    audio_codec: str = "libmp3lame"
    output_format: str = "mp3"
    bitrate_kbps: int = 320
    duration_tolerance: float = 1.0
    ffmpeg_timeout: float = 1800.0
    ffprobe_timeout: float = 30.0
    probe_batch_size: int = 8
    # concurrency
    scan_workers: int = dataclasses.field(default_factory=default_scan_workers)
    convert_workers: int = dataclasses.field(default_factory=default_convert_workers)
    verify_workers: int = dataclasses.field(default_factory=default_verify_workers)
    # misc
    free_space_buffer_bytes: int = 500 * 1024 * 1024
    benchmark_samples: int = 3

    def __post_init__(self) -> None:
        object.__setattr__(self, "source_dir", Path(self.source_dir).expanduser().resolve())
        if self.in_place:
            object.__setattr__(self, "target_dir", self.source_dir)
        elif self.target_dir is not None:
            object.__setattr__(self, "target_dir", Path(self.target_dir).expanduser().resolve())
        object.__setattr__(self, "source_ext", _normalize_ext(self.source_ext))
        object.__setattr__(self, "target_ext", _normalize_ext(self.target_ext))
        for name in ("scan_workers", "convert_workers", "verify_workers", "probe_batch_size", "benchmark_samples"):
            if int(getattr(self, name)) < 1:
                raise ValueError(f"{name} must be >= 1 (got {getattr(self, name)!r})")
        if self.bitrate_kbps <= 0:
            raise ValueError(f"bitrate_kbps must be positive (got {self.bitrate_kbps!r})")
        if self.duration_tolerance < 0:
            raise ValueError(f"duration_tolerance must be >= 0 (got {self.duration_tolerance!r})")
        if self.source_ext == self.target_ext:
            raise ValueError("source_ext and target_ext must differ")

    @property
    def output_root(self) -> Path:
        """Root the mirrored tree is written under (the source root when in place)."""
        return self.target_dir if self.target_dir is not None else self.source_dir

    @property
    def ledger_path(self) -> Path:
        return self.output_root / LEDGER_FILENAME

    @property
    def error_report_path(self) -> Path:
        return self.output_root / ERROR_REPORT_FILENAME

    @property
    def log_path(self) -> Path:
        return self.output_root / LOG_FILENAME

    @property
    def lock_path(self) -> Path:
        return self.output_root / LOCK_FILENAME


def _normalize_ext(ext: str) -> str:
    s = (ext or "").strip().lower()
    if not s:
        raise ValueError("file extension must not be empty")
    return s if s.startswith(".") else f".{s}"


def default_config_path() -> Path:
    r"""
    Platform-appropriate default config path.

        Linux/WSL/Termux: $XDG_CONFIG_HOME/flacmig/config.yml or ~/.config/flacmig/config.yml
        Windows: %APPDATA%\flacmig\config.yml
    """
    if sys.platform == "win32":
        appdata = os.environ.get("APPDATA")
        if not appdata:
            return Path.home() / "AppData" / "Roaming" / "flacmig" / "config.yml"
        return Path(appdata) / "flacmig" / "config.yml"
    config_home = os.environ.get("XDG_CONFIG_HOME")
    if config_home:
        return Path(config_home) / "flacmig" / "config.yml"
    return Path.home() / ".config" / "flacmig" / "config.yml"


# Keys a config file may set; paths and per-run switches come from the CLI.
_FILE_KEYS = {
    f.name
    for f in dataclasses.fields(MigrationConfig)
    if f.name not in {"source_dir", "target_dir", "in_place"}
}


def load_config_file(config_path: Optional[Path] = None) -> Dict[str, Any]:
    """
    Read overrides from a YAML file.

    An explicit ``config_path`` must exist. The default path is optional; a
    missing default file yields ``{}``.

    Raises:
        FileNotFoundError: explicit path does not exist
        yaml.YAMLError: malformed YAML
        ValueError: top level is not a mapping, or unknown keys are present
    """
    explicit = config_path is not None
    path = Path(config_path) if explicit else default_config_path()
    if not path.exists():
        if explicit:
            raise FileNotFoundError(f"Configuration file not found at: {path}")
        return {}

    with open(path, "r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Error parsing YAML file at {path}: {e}")

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Invalid configuration in {path}: expected a mapping at top level")
    unknown = sorted(set(data) - _FILE_KEYS)
    if unknown:
        raise ValueError(f"Unknown configuration keys in {path}: {', '.join(unknown)}")
    return dict(data)


def env_overrides() -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    ffmpeg = os.environ.get("FLACMIG_FFMPEG", "").strip()
    ffprobe = os.environ.get("FLACMIG_FFPROBE", "").strip()
    if ffmpeg:
        out["ffmpeg_path"] = ffmpeg
    if ffprobe:
        out["ffprobe_path"] = ffprobe
    return out


def build_config(
    source_dir: Path,
    target_dir: Optional[Path] = None,
    *,
    config_path: Optional[Path] = None,
    **overrides: Any,
) -> MigrationConfig:
    """Merge file, environment and explicit overrides (``None`` values are ignored)."""
    values: Dict[str, Any] = {}
    values.update(load_config_file(config_path))
    values.update(env_overrides())
    values.update({k: v for k, v in overrides.items() if v is not None})
    return MigrationConfig(source_dir=source_dir, target_dir=target_dir, **values)
