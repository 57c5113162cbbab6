from pathlib import Path

from flacmig.probe import (
    batch_probe_args,
    match_batch_records,
    parse_batch_output,
    parse_duration,
    probe_duration,
    probe_durations_batch,
    single_probe_args,
)
from flacmig.process import ProcessResult


class _Canned:
    def __init__(self, result: ProcessResult):
        self.result = result
        self.calls = []

    def run(self, args, timeout):
        self.calls.append(list(args))
        return self.result


def test_parse_duration_accepts_only_positive_finite_numbers():
    assert parse_duration("215.373000\n") == 215.373
    for bad in ("", "N/A", "0", "-3", "nan", "inf"):
        assert parse_duration(bad) is None


def test_single_probe_args_shape():
    args = single_probe_args("ffprobe", Path("/m/a.flac"))
    assert args[0] == "ffprobe"
    assert "format=duration" in args
    assert args[-1] == str(Path("/m/a.flac"))


def test_probe_duration_success_and_failures():
    ok = _Canned(ProcessResult(0, "100.5\n", ""))
    assert probe_duration(ok, "ffprobe", Path("a.flac"), 5) == (100.5, None)

    broken = _Canned(ProcessResult(1, "", "a.flac: Invalid data found when processing input"))
    seconds, reason = probe_duration(broken, "ffprobe", Path("a.flac"), 5)
    assert seconds is None and "Invalid data" in reason

    ambiguous = _Canned(ProcessResult(0, "100.5\n99.0\n", ""))
    seconds, reason = probe_duration(ambiguous, "ffprobe", Path("a.flac"), 5)
    assert seconds is None and "Unparsable" in reason


def test_parse_batch_output_requires_delimited_complete_sections():
    out = "\n".join([
        "[FORMAT]", "filename=/m/a.flac", "duration=10.000000", "[/FORMAT]",
        "[FORMAT]", "filename=/m/b.flac", "[/FORMAT]",                          # no duration
        "[FORMAT]", "filename=/m/c.flac", "duration=1", "duration=2", "[/FORMAT]",  # repeated key
        "[FORMAT]", "filename=/m/d.flac", "duration=4.0",                         # never closed
    ])
    assert parse_batch_output(out) == [("/m/a.flac", "10.000000")]


def test_match_batch_records_excludes_duplicates_and_strangers(tmp_path: Path):
    a, b, c = tmp_path / "a.flac", tmp_path / "b.flac", tmp_path / "c.flac"
    records = [
        (str(a), "10.0"),
        (str(b), "20.0"),
        (str(b), "20.0"),
        (str(tmp_path / "other.flac"), "5.0"),
        (str(c), "N/A"),
    ]
    assert match_batch_records([a, b, c], records) == {a: 10.0}


def test_probe_durations_batch_reports_tool_rejection(tmp_path: Path):
    paths = [tmp_path / "a.flac", tmp_path / "b.flac"]
    rejected = _Canned(ProcessResult(1, "", "only one input allowed"))
    assert probe_durations_batch(rejected, "ffprobe", paths, 5) == ({}, False)

    out = "[FORMAT]\nfilename={}\nduration=3.5\n[/FORMAT]\n".format(paths[1])
    partial = _Canned(ProcessResult(0, out, ""))
    matched, tool_ok = probe_durations_batch(partial, "ffprobe", paths, 5)
    assert tool_ok is True
    assert matched == {paths[1]: 3.5}
    assert partial.calls[0] == batch_probe_args("ffprobe", paths)
