import sys
from unittest import mock

import psutil

from flacmig.process import ProcessResult, ToolRunner, kill_process_tree


def test_result_diagnostic_prefers_stderr():
    assert ProcessResult(1, "out", "err").diagnostic() == "err"
    assert ProcessResult(1, "out", "  ").diagnostic() == "out"
    assert ProcessResult(3, "", "").diagnostic() == "exit code 3"
    assert not ProcessResult(0, "", "", timed_out=True).ok


def test_run_captures_output():
    result = ToolRunner().run([sys.executable, "-c", "import sys; print('12.5'); sys.stderr.write('warn')"], 30)
    assert result.ok
    assert result.stdout.strip() == "12.5"
    assert result.stderr == "warn"


def test_run_reports_exit_code():
    result = ToolRunner().run([sys.executable, "-c", "import sys; sys.exit(4)"], 30)
    assert result.exit_code == 4
    assert not result.ok


def test_missing_executable_is_a_failed_result():
    result = ToolRunner().run(["definitely-not-a-real-ffmpeg-binary"], 5)
    assert result.exit_code == -1
    assert result.stderr.startswith("Failed to start")


def test_timeout_kills_only_that_process():
    result = ToolRunner().run([sys.executable, "-c", "import time; time.sleep(30)"], 0.5)
    assert result.timed_out
    assert result.stderr == "Process timed out after 0.5s."


def test_kill_process_tree_kills_children_first_then_parent():
    child = mock.Mock(pid=2)
    parent = mock.Mock(pid=1)
    parent.children.return_value = [child]
    with mock.patch("flacmig.process.psutil.Process", return_value=parent), \
            mock.patch("flacmig.process.psutil.wait_procs") as wait_procs:
        kill_process_tree(1)
    child.kill.assert_called_once()
    parent.kill.assert_called_once()
    wait_procs.assert_called_once_with([child, parent], timeout=5)


def test_kill_process_tree_ignores_vanished_process():
    with mock.patch("flacmig.process.psutil.Process", side_effect=psutil.NoSuchProcess(99)):
        kill_process_tree(99)
