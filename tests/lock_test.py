import logging
import os
import time
from pathlib import Path

from flacmig import cli


def _make_logger() -> logging.Logger:
    logger = logging.getLogger("flacmig-lock-test")
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setLevel(logging.DEBUG)
        logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)
    return logger


def test_acquire_lock_respects_existing_file(tmp_path: Path) -> None:
    logger = _make_logger()
    lock = tmp_path / ".flacmig.lock"
    assert cli._acquire_output_lock(lock, logger) is True
    assert lock.exists()
    assert "pid=" in lock.read_text(encoding="utf-8")
    assert cli._acquire_output_lock(lock, logger) is False
    cli._release_output_lock(lock, logger)
    assert not lock.exists()
    cli._release_output_lock(lock, logger)


def test_acquire_lock_removes_stale(tmp_path: Path) -> None:
    logger = _make_logger()
    lock = tmp_path / ".flacmig.lock"
    assert cli._acquire_output_lock(lock, logger) is True
    os.utime(lock, (time.time() - (cli._LOCK_STALE_SECONDS + 10),) * 2)
    assert cli._acquire_output_lock(lock, logger) is True
    cli._release_output_lock(lock, logger)
