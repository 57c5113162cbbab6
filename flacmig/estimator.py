#!/usr/bin/env python3
"""Size/duration/ETA projections. Pure, no I/O."""
from __future__ import annotations

import threading
from typing import Iterable, List, Optional

from flacmig.models import EstimationResult, Track


def calculate(tracks: Iterable[Track], seconds_per_source_second: Optional[float] = None) -> EstimationResult:
    track_list = list(tracks)
    total_size = sum(int(t.size_bytes) for t in track_list)
    total_duration = sum(float(t.duration_seconds) for t in track_list)
    output = sum(int(t.estimated_output_bytes) for t in track_list)
    ratio = (output / total_size) if total_size > 0 else 0.0

    eta: Optional[float] = None
    if seconds_per_source_second is not None and seconds_per_source_second > 0:
        eta = total_duration * seconds_per_source_second

    return EstimationResult(
        total_source_bytes=total_size,
        total_duration_seconds=total_duration,
        estimated_output_bytes=output,
        compression_ratio=ratio,
        eta_seconds=eta,
    )


class BenchmarkSampler:
    """
    Keeps the speed factor (wall seconds per audio second) of the first
    ``limit`` real conversions. Later samples are ignored so the estimate is
    computed once and stays stable.
    """

    def __init__(self, limit: int = 3):
        self.limit = max(1, int(limit))
        self._lock = threading.Lock()
        self._samples: List[float] = []

    def add(self, elapsed_seconds: float, duration_seconds: float) -> bool:
        """Record a sample; returns True exactly when this sample completed the set."""
        if duration_seconds <= 0 or elapsed_seconds < 0:
            return False
        with self._lock:
            if len(self._samples) >= self.limit:
                return False
            self._samples.append(elapsed_seconds / duration_seconds)
            return len(self._samples) == self.limit

    @property
    def ready(self) -> bool:
        with self._lock:
            return len(self._samples) >= self.limit

    def average(self) -> Optional[float]:
        with self._lock:
            if not self._samples:
                return None
            return sum(self._samples) / len(self._samples)
