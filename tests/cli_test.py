from pathlib import Path
from unittest import mock

import pytest

from conftest import FakeRunner, make_library

from flacmig import cli
from flacmig.ledger import LedgerStore
from flacmig.models import TrackStatus


@pytest.fixture(autouse=True)
def _no_user_config(monkeypatch, tmp_path):
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    monkeypatch.setenv("APPDATA", str(tmp_path / "appdata"))
    monkeypatch.delenv("FLACMIG_FFMPEG", raising=False)
    monkeypatch.delenv("FLACMIG_FFPROBE", raising=False)


@pytest.mark.parametrize("argv,fragment", [
    ([], "required: source"),
    (["/a"], "target directory is required"),
    (["/a", "/b", "-i"], "cannot be combined"),
    (["/a", "/b", "-s", "/c"], "not both"),
    (["/a", "/b", "--convert-workers", "0"], "--convert-workers must be >= 1"),
    (["/a", "/b", "--tolerance", "-1"], "--tolerance"),
])
def test_validate_args(argv, fragment):
    assert fragment in cli._validate_args(cli.parse_args(argv))


def test_option_forms_are_accepted():
    args = cli.parse_args(["-s", "/a", "-i", "-d", "-r", "-F", "-b", "192", "-y", "-L"])
    assert cli._validate_args(args) is None
    assert (args.source_opt, args.in_place, args.delete_verified, args.retry_failed) == ("/a", True, True, True)
    assert (args.full_verify, args.bitrate, args.yes, args.live) == (True, 192, True, True)


def test_cli_flags_reach_config(tmp_path: Path):
    args = cli.parse_args([str(tmp_path), str(tmp_path / "o"), "-b", "128", "--verify-workers", "5", "--tolerance", "0.5"])
    cfg = cli._build_config(args)
    assert (cfg.bitrate_kbps, cfg.verify_workers, cfg.duration_tolerance) == (128, 5, 0.5)
    assert cfg.delete_verified is False


def test_missing_source_is_a_usage_error(tmp_path: Path, capsys):
    assert cli.main([str(tmp_path / "nope"), str(tmp_path / "out"), "-y", "--no-log-file"]) == 2
    assert "Source directory not found" in capsys.readouterr().err


def _runner_for(src: Path, names):
    files = make_library(src, names)
    return files, FakeRunner({p: 120.0 for p in files})


def test_main_end_to_end(tmp_path: Path):
    src, dst = tmp_path / "flac", tmp_path / "mp3"
    files, runner = _runner_for(src, ["a.flac", "b/c.flac"])
    with mock.patch("flacmig.pipeline.ToolRunner", return_value=runner):
        code = cli.main([str(src), str(dst), "-y", "-d", "--convert-workers", "2"])
    assert code == 0
    assert (dst / "b" / "c.mp3").exists()
    assert not any(f.exists() for f in files)
    assert (dst / "flacmig.log").exists()
    assert not (dst / ".flacmig.lock").exists()


def test_main_reports_failures_with_exit_one(tmp_path: Path):
    src, dst = tmp_path / "flac", tmp_path / "mp3"
    files, runner = _runner_for(src, ["a.flac"])
    make_library(src, ["broken.flac"])
    with mock.patch("flacmig.pipeline.ToolRunner", return_value=runner):
        code = cli.main([str(src), str(dst), "-y", "--no-log-file"])
    assert code == 1
    assert (dst / "migration_errors.txt").exists()


def test_main_refuses_when_locked(tmp_path: Path):
    src, dst = tmp_path / "flac", tmp_path / "mp3"
    make_library(src, ["a.flac"])
    dst.mkdir()
    (dst / ".flacmig.lock").write_text("pid=1\n", encoding="utf-8")
    assert cli.main([str(src), str(dst), "-y", "--no-log-file"]) == 2


def test_declined_prompt_exits_130(tmp_path: Path):
    src, dst = tmp_path / "flac", tmp_path / "mp3"
    _files, runner = _runner_for(src, ["a.flac"])
    with mock.patch("flacmig.pipeline.ToolRunner", return_value=runner), \
            mock.patch("flacmig.cli.sys.stdin") as stdin, \
            mock.patch("flacmig.cli.Confirm.ask", return_value=False):
        stdin.isatty.return_value = True
        assert cli.main([str(src), str(dst), "--no-log-file"]) == 130
    assert runner.calls_of("transcode") == []


def test_keyboard_interrupt_exits_130_and_releases_lock(tmp_path: Path):
    src, dst = tmp_path / "flac", tmp_path / "mp3"
    make_library(src, ["a.flac"])
    with mock.patch("flacmig.cli.MigrationPipeline.run", side_effect=KeyboardInterrupt):
        assert cli.main([str(src), str(dst), "-y", "--no-log-file"]) == 130
    assert not (dst / ".flacmig.lock").exists()


def test_resume_through_cli_keeps_verified(tmp_path: Path):
    src, dst = tmp_path / "flac", tmp_path / "mp3"
    _files, runner = _runner_for(src, ["a.flac", "b.flac"])
    with mock.patch("flacmig.pipeline.ToolRunner", return_value=runner):
        assert cli.main([str(src), str(dst), "-y", "--no-log-file"]) == 0
        before = len(runner.calls_of("transcode"))
        make_library(src, ["c.flac"])
        runner.set_duration(src / "c.flac", 60.0)
        assert cli.main([str(src), str(dst), "-y", "--no-log-file"]) == 0
    assert len(runner.calls_of("transcode")) == before + 1
    statuses = {Path(e.source_path).name: e.status for e in LedgerStore(dst / "migration_state.json").load().entries}
    assert statuses == {"a.flac": TrackStatus.VERIFIED, "b.flac": TrackStatus.VERIFIED, "c.flac": TrackStatus.VERIFIED}
