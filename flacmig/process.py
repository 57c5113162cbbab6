#!/usr/bin/env python3
"""
flacmig.process

Runs the external codec tool (ffmpeg / ffprobe) with a hard timeout.

A timeout kills the whole process tree of that one invocation (ffmpeg may fork
helpers) and nothing else; sibling invocations keep running.
"""
from __future__ import annotations

import dataclasses
import logging
import os
import subprocess
from typing import List, Sequence

import psutil

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class ProcessResult:
    exit_code: int
    stdout: str
    stderr: str
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return not self.timed_out and self.exit_code == 0

    def diagnostic(self) -> str:
        """Best human-readable failure text (stderr first, then stdout)."""
        text = (self.stderr or "").strip() or (self.stdout or "").strip()
        if text:
            return text
        return f"exit code {self.exit_code}"


def kill_process_tree(pid: int) -> None:
    """Kill ``pid`` and all of its descendants. Missing processes are ignored."""
    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return
    try:
        children: List[psutil.Process] = parent.children(recursive=True)
    except psutil.NoSuchProcess:
        children = []
    for proc in children + [parent]:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            continue
        except psutil.AccessDenied as e:
            logger.warning("Could not kill pid %s: %s", proc.pid, e)
    psutil.wait_procs(children + [parent], timeout=5)


class ToolRunner:
    """Thin subprocess wrapper; tests substitute a fake with the same ``run`` signature."""

    def run(self, args: Sequence[str], timeout: float) -> ProcessResult:
        cmd = [str(a) for a in args]
        logger.debug("exec (timeout=%ss): %s", timeout, " ".join(cmd))
        popen_kwargs = {}
        if os.name != "nt":
            popen_kwargs["start_new_session"] = True
        try:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                **popen_kwargs,
            )
        except (FileNotFoundError, PermissionError) as e:
            return ProcessResult(-1, "", f"Failed to start {cmd[0]}: {e}")

        try:
            stdout, stderr = proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.warning("Timed out after %ss, killing: %s", timeout, cmd[0])
            kill_process_tree(proc.pid)
            try:
                proc.communicate(timeout=5)
            except subprocess.TimeoutExpired:
                proc.kill()
            return ProcessResult(-1, "", f"Process timed out after {timeout:g}s.", timed_out=True)

        return ProcessResult(proc.returncode, stdout or "", stderr or "")
