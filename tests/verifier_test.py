from pathlib import Path

import pytest

from conftest import FakeRunner

from flacmig.config import MigrationConfig
from flacmig.models import Track
from flacmig.verifier import Verifier, decode_args


def _setup(tmp_path: Path, source_duration: float = 100.0, tolerance: float = 1.0):
    src = tmp_path / "src"
    src.mkdir(exist_ok=True)
    target = tmp_path / "out.mp3"
    target.write_bytes(b"ID3")
    cfg = MigrationConfig(source_dir=src, target_dir=tmp_path / "dst", duration_tolerance=tolerance)
    track = Track(
        source_path=src / "in.flac",
        relative_path=Path("in.flac"),
        target_path=target,
        duration_seconds=source_duration,
    )
    return cfg, track, FakeRunner()


@pytest.mark.parametrize("probed,ok", [(100.5, True), (101.0, True), (99.0, True), (101.5, False), (98.9, False)])
def test_duration_tolerance_boundary(tmp_path: Path, probed: float, ok: bool):
    cfg, track, runner = _setup(tmp_path)
    runner.set_duration(track.target_path, probed)
    result = Verifier(cfg, runner).verify(track)
    assert result.success is ok
    assert result.probed_duration == pytest.approx(probed)
    if not ok:
        assert result.error.startswith("Duration mismatch")


def test_missing_output(tmp_path: Path):
    cfg, track, runner = _setup(tmp_path)
    track.target_path.unlink()
    assert Verifier(cfg, runner).verify(track).error == "Output file is missing."


def test_unknown_source_duration(tmp_path: Path):
    cfg, track, runner = _setup(tmp_path, source_duration=0.0)
    assert Verifier(cfg, runner).verify(track).error == "Original duration missing."


def test_output_probe_failure(tmp_path: Path):
    cfg, track, runner = _setup(tmp_path)
    result = Verifier(cfg, runner).verify(track)
    assert not result.success
    assert result.error.startswith("Output duration probe failed:")


def test_full_decode_runs_only_when_requested(tmp_path: Path):
    cfg, track, runner = _setup(tmp_path)
    runner.set_duration(track.target_path, 100.0)
    assert Verifier(cfg, runner).verify(track).success
    assert runner.calls_of("decode") == []

    assert Verifier(cfg, runner).verify(track, full_decode=True).success
    assert runner.calls_of("decode") == [decode_args(cfg, track.target_path)]


def test_decode_errors_fail_even_with_zero_exit(tmp_path: Path):
    cfg, track, runner = _setup(tmp_path)
    runner.set_duration(track.target_path, 100.0)
    runner.decode_errors["out.mp3"] = "[mp3float @ 0x1] Header missing"
    result = Verifier(cfg, runner).verify(track, full_decode=True)
    assert not result.success
    assert "Header missing" in result.error
