from __future__ import annotations

import os
import tempfile
import threading
import time
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import pytest

from flacmig.config import MigrationConfig
from flacmig.models import track_key
from flacmig.process import ProcessResult


_PYTEST_TMP_ROOT = Path(__file__).resolve().parent / ".pytest_tmp"
_PYTEST_TMP_ROOT.mkdir(parents=True, exist_ok=True)


def _configure_temp_environment() -> None:
    """
    Keep every temporary file inside the repository so Windows ACLs never
    block tmp_path/tmp_path_factory.
    """
    temp_dir = str(_PYTEST_TMP_ROOT)
    os.environ["TMP"] = temp_dir
    os.environ["TEMP"] = temp_dir
    os.environ["TMPDIR"] = temp_dir
    tempfile.tempdir = temp_dir


_configure_temp_environment()


def pytest_configure(config) -> None:  # pragma: no cover - exercised implicitly
    base = _PYTEST_TMP_ROOT / "basetemp"
    base.mkdir(parents=True, exist_ok=True)
    config.option.basetemp = str(base)
    if hasattr(config, "_tmp_path_factory"):
        delattr(config, "_tmp_path_factory")


# -------------------------------------------------------------------------------------------------
# Fake codec tool
# -------------------------------------------------------------------------------------------------

class FakeRunner:
    """
    Answers ffprobe/ffmpeg invocations from an in-memory duration table.

    - single probe: duration of the file, or a decode error for unknown files
    - batch probe:  one [FORMAT] section per known file (unknown files are omitted)
    - transcode:    writes the output file; its probed duration is the source
                    duration plus ``drift`` (per source name) unless overridden
    - decode check: clean unless the target is listed in ``decode_errors``
    """

    def __init__(
        self,
        durations: Optional[Dict[Path, float]] = None,
        *,
        batch_supported: bool = True,
        delay: float = 0.0,
    ) -> None:
        self.durations: Dict[str, float] = {track_key(p): float(d) for p, d in (durations or {}).items()}
        self.batch_supported = batch_supported
        self.delay = delay
        self.drift: Dict[str, float] = {}
        self.transcode_results: Dict[str, ProcessResult] = {}
        self.decode_errors: Dict[str, str] = {}
        self.duplicate_in_batch: set = set()
        self.calls: List[List[str]] = []
        self._lock = threading.Lock()
        self._active: Dict[str, int] = {}
        self.max_active: Dict[str, int] = {}

    # ------------------------------------------------------------------ helpers

    def set_duration(self, path: Path, seconds: float) -> None:
        self.durations[track_key(path)] = float(seconds)

    def calls_of(self, kind: str) -> List[List[str]]:
        with self._lock:
            return [c for c in self.calls if self._kind(c) == kind]

    @staticmethod
    def _kind(args: List[str]) -> str:
        tool = Path(args[0]).name
        if tool.startswith("ffprobe"):
            return "batch_probe" if "format=filename,duration" in args else "probe"
        if "-f" in args and args[args.index("-f") + 1] == "null":
            return "decode"
        return "transcode"

    # ------------------------------------------------------------------ runner API

    def run(self, args: Iterable[str], timeout: float) -> ProcessResult:
        args = [str(a) for a in args]
        kind = self._kind(args)
        with self._lock:
            self.calls.append(args)
            self._active[kind] = self._active.get(kind, 0) + 1
            self.max_active[kind] = max(self.max_active.get(kind, 0), self._active[kind])
        try:
            if self.delay:
                time.sleep(self.delay)
            return getattr(self, f"_{kind}")(args)
        finally:
            with self._lock:
                self._active[kind] -= 1

    def _probe(self, args: List[str]) -> ProcessResult:
        path = args[-1]
        seconds = self.durations.get(track_key(path))
        if seconds is None:
            return ProcessResult(1, "", f"{path}: Invalid data found when processing input")
        return ProcessResult(0, f"{seconds:.6f}\n", "")

    def _batch_probe(self, args: List[str]) -> ProcessResult:
        if not self.batch_supported:
            return ProcessResult(1, "", "Argument 'b.flac' provided as input filename, but 'a.flac' was already specified.")
        paths = args[args.index("default") + 1:]
        lines: List[str] = []
        for path in paths:
            seconds = self.durations.get(track_key(path))
            if seconds is None:
                continue
            copies = 2 if Path(path).name in self.duplicate_in_batch else 1
            for _ in range(copies):
                lines += ["[FORMAT]", f"filename={path}", f"duration={seconds:.6f}", "[/FORMAT]"]
        return ProcessResult(0, "\n".join(lines) + "\n", "")

    def _transcode(self, args: List[str]) -> ProcessResult:
        source = args[args.index("-i") + 1]
        output = Path(args[-1])
        name = Path(source).name
        output.write_bytes(b"ID3" + name.encode("utf-8"))
        if name in self.transcode_results:
            return self.transcode_results[name]
        final = output.with_name(output.name[:-len(".part")]) if output.name.endswith(".part") else output
        seconds = self.durations.get(track_key(source))
        if seconds is not None:
            self.set_duration(final, seconds + self.drift.get(name, 0.0))
        return ProcessResult(0, "", "")

    def _decode(self, args: List[str]) -> ProcessResult:
        target = args[args.index("-i") + 1]
        err = self.decode_errors.get(Path(target).name)
        if err:
            return ProcessResult(0, "", err)
        return ProcessResult(0, "", "")


def make_library(root: Path, names: Iterable[str], size: int = 10_000) -> List[Path]:
    paths = []
    for name in names:
        p = root / name
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_bytes(b"f" * size)
        paths.append(p)
    return paths


@pytest.fixture
def library(tmp_path: Path):
    """Three-track source tree with a matching FakeRunner and config."""
    src = tmp_path / "flac"
    dst = tmp_path / "mp3"
    files = make_library(src, ["A/a.flac", "A/b.flac", "c.flac"])
    runner = FakeRunner({p: 200.0 for p in files})
    cfg = MigrationConfig(source_dir=src, target_dir=dst, scan_workers=2, convert_workers=2, verify_workers=2)
    return cfg, runner, files
