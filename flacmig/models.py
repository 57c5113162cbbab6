#!/usr/bin/env python3
from __future__ import annotations

import dataclasses
import enum
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, FrozenSet, List, Optional, Type

from flacmig.errors import InvalidTransition, MigrationError


class TrackStatus(str, enum.Enum):
    PENDING = "Pending"
    CONVERTED = "Converted"
    VERIFIED = "Verified"
    FAILED = "Failed"


# Failed -> Pending is handled by Track.retry() only.
_TRANSITIONS: Dict[TrackStatus, FrozenSet[TrackStatus]] = {
    TrackStatus.PENDING: frozenset({TrackStatus.CONVERTED, TrackStatus.FAILED}),
    TrackStatus.CONVERTED: frozenset({TrackStatus.VERIFIED, TrackStatus.FAILED}),
    TrackStatus.VERIFIED: frozenset(),
    TrackStatus.FAILED: frozenset(),
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def track_key(path) -> str:
    """Stable join key for a source path (case-folded where the OS is case-insensitive)."""
    return os.path.normcase(os.path.abspath(str(path)))


def target_path_for(relative_path: Path, target_root: Path, target_ext: str) -> Path:
    return Path(target_root) / Path(relative_path).with_suffix(target_ext)


def estimate_output_bytes(duration_seconds: float, bitrate_kbps: int) -> int:
    """Constant-bitrate projection: seconds * bits-per-second / 8."""
    if duration_seconds <= 0:
        return 0
    return int(duration_seconds * bitrate_kbps * 1000 / 8)


@dataclasses.dataclass
class Track:
    source_path: Path
    relative_path: Path
    target_path: Path
    size_bytes: int = 0
    duration_seconds: float = 0.0
    estimated_output_bytes: int = 0
    status: TrackStatus = TrackStatus.PENDING
    last_error: Optional[str] = None
    verified_at: Optional[datetime] = None
    # run-local; not persisted in the ledger
    failure_kind: Optional[Type[MigrationError]] = None

    @property
    def key(self) -> str:
        return track_key(self.source_path)

    @property
    def has_duration(self) -> bool:
        return self.duration_seconds > 0

    def transition(self, status: TrackStatus, error: Optional[str] = None) -> None:
        if status not in _TRANSITIONS[self.status]:
            raise InvalidTransition(self.status, status)
        self.status = status
        if status == TrackStatus.FAILED:
            self.last_error = error or "Unknown failure."
        else:
            self.last_error = None
        if status == TrackStatus.VERIFIED:
            self.verified_at = utc_now()

    def mark_converted(self) -> None:
        self.transition(TrackStatus.CONVERTED)

    def mark_verified(self) -> None:
        self.transition(TrackStatus.VERIFIED)

    def mark_failed(self, error: str, kind: Type[MigrationError] = MigrationError) -> None:
        self.transition(TrackStatus.FAILED, error)
        self.failure_kind = kind

    def retry(self) -> None:
        """Failed -> Pending; only used when a retry policy was requested."""
        if self.status != TrackStatus.FAILED:
            raise InvalidTransition(self.status, TrackStatus.PENDING)
        self.status = TrackStatus.PENDING
        self.last_error = None
        self.failure_kind = None

    def restore(self, entry: "LedgerEntry") -> None:
        """Adopt progress persisted by an earlier run (ledger merge, not a transition)."""
        self.status = entry.status
        self.last_error = entry.last_error
        self.verified_at = entry.verified_at
        self.failure_kind = None
        if not self.has_duration and entry.duration_seconds > 0:
            self.duration_seconds = entry.duration_seconds
            self.estimated_output_bytes = entry.estimated_output_bytes


@dataclasses.dataclass
class LedgerEntry:
    source_path: str
    target_path: str
    status: TrackStatus = TrackStatus.PENDING
    last_error: Optional[str] = None
    duration_seconds: float = 0.0
    size_bytes: int = 0
    estimated_output_bytes: int = 0
    verified_at: Optional[datetime] = None

    @classmethod
    def from_track(cls, track: Track) -> "LedgerEntry":
        return cls(
            source_path=str(track.source_path),
            target_path=str(track.target_path),
            status=track.status,
            last_error=track.last_error,
            duration_seconds=float(track.duration_seconds),
            size_bytes=int(track.size_bytes),
            estimated_output_bytes=int(track.estimated_output_bytes),
            verified_at=track.verified_at,
        )


@dataclasses.dataclass
class Ledger:
    created_at: datetime = dataclasses.field(default_factory=utc_now)
    updated_at: datetime = dataclasses.field(default_factory=utc_now)
    entries: List[LedgerEntry] = dataclasses.field(default_factory=list)


@dataclasses.dataclass(frozen=True)
class EstimationResult:
    total_source_bytes: int
    total_duration_seconds: float
    estimated_output_bytes: int
    compression_ratio: float
    eta_seconds: Optional[float] = None


@dataclasses.dataclass(frozen=True)
class ConversionResult:
    success: bool
    skipped: bool = False
    error: Optional[str] = None
    elapsed: float = 0.0


@dataclasses.dataclass(frozen=True)
class VerificationResult:
    success: bool
    error: Optional[str] = None
    probed_duration: Optional[float] = None


@dataclasses.dataclass(frozen=True)
class ItemResult:
    """Outcome of one scheduler item; ``reason`` and ``kind`` are set on failure."""
    ok: bool
    reason: Optional[str] = None
    kind: Optional[Type[MigrationError]] = None

    @classmethod
    def success(cls) -> "ItemResult":
        return cls(True)

    @classmethod
    def failure(cls, reason: str, kind: Type[MigrationError] = MigrationError) -> "ItemResult":
        return cls(False, reason, kind)
