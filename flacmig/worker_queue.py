#!/usr/bin/env python3
"""
flacmig.worker_queue

Bounded-parallelism executor used by every pipeline phase.

Contract:
  - every item is handed to ``operation`` exactly once
  - at most ``max_workers`` operations run at the same time; items start in
    submission order
  - a failed item (``ItemResult.failure`` returned, or an exception raised) is
    counted and logged and never stops its siblings; a raised MigrationError
    keeps its class as the result's ``kind``
  - run() returns after every item finished
  - progress()/stats() may be polled from another thread at any time
"""
from __future__ import annotations

import concurrent.futures
import logging
import threading
from typing import Callable, Generic, Iterable, List, Optional, Tuple, TypeVar

from flacmig.errors import MigrationError
from flacmig.models import ItemResult

logger = logging.getLogger(__name__)

T = TypeVar("T")

Operation = Callable[[T], Optional[ItemResult]]
DoneCallback = Callable[[T, ItemResult], None]


class WorkerQueue(Generic[T]):
    def __init__(
        self,
        max_workers: int,
        *,
        name: str = "worker",
        describe: Callable[[T], str] = str,
        on_item_done: Optional[DoneCallback] = None,
    ) -> None:
        if int(max_workers) < 1:
            raise ValueError(f"max_workers must be >= 1 (got {max_workers!r})")
        self.max_workers = int(max_workers)
        self.name = name
        self._describe = describe
        self._on_item_done = on_item_done
        self._lock = threading.Lock()
        self._processed = 0
        self._total = 0
        self._success = 0
        self._failure = 0

    # ------------------------------------------------------------------ queries

    def progress(self) -> Tuple[int, int]:
        with self._lock:
            return self._processed, self._total

    def stats(self) -> Tuple[int, int]:
        with self._lock:
            return self._success, self._failure

    # ------------------------------------------------------------------ execution

    def run(self, items: Iterable[T], operation: Operation) -> Tuple[int, int]:
        """Apply ``operation`` to all items; returns (success_count, failure_count) for this run."""
        batch: List[T] = list(items)
        with self._lock:
            self._total = len(batch)
            self._processed = 0
            self._success = 0
            self._failure = 0
        if not batch:
            return 0, 0

        logger.info("%s: %d item(s), %d worker(s)", self.name, len(batch), self.max_workers)
        with concurrent.futures.ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix=f"flacmig-{self.name}"
        ) as ex:
            futures = [ex.submit(self._run_one, item, operation) for item in batch]
            concurrent.futures.wait(futures)

        success, failure = self.stats()
        logger.info("%s finished: %d ok, %d failed", self.name, success, failure)
        return success, failure

    def _run_one(self, item: T, operation: Operation) -> ItemResult:
        try:
            result = operation(item)
            if result is None:
                result = ItemResult.success()
        except MigrationError as e:
            result = ItemResult.failure(str(e), type(e))
        except Exception as e:  # one item must never take the batch down
            logger.exception("%s: unhandled error for %s", self.name, self._describe(item))
            result = ItemResult.failure(f"{type(e).__name__}: {e}")

        with self._lock:
            self._processed += 1
            if result.ok:
                self._success += 1
            else:
                self._failure += 1

        if not result.ok:
            logger.error("%s failed for %s: %s", self.name, self._describe(item), result.reason)

        if self._on_item_done is not None:
            try:
                self._on_item_done(item, result)
            except Exception:
                logger.exception("%s: progress callback raised", self.name)
        return result
