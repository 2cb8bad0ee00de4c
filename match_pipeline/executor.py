from __future__ import annotations

"""
Partition executors.

A stage is one task function applied to every partition unit:

    task(partition_index, unit, *args) -> result

Partitions are independent. A partition whose task raises is re-run from
scratch up to `max_retries` more times; after that the whole stage fails with
StageFailure. CacheBudgetViolation is a defect and is never retried.
"""

import multiprocessing
from concurrent.futures import FIRST_COMPLETED, Future, ProcessPoolExecutor, wait
from concurrent.futures.process import BrokenProcessPool
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from common.errors import CacheBudgetViolation
from common.logging_setup import get_logger


log = get_logger(__name__)

Task = Callable[..., Any]


class StageFailure(Exception):
    """A partition exhausted its attempts; `completed` holds results of partitions that finished."""

    def __init__(
        self,
        stage: str,
        partition_index: int,
        attempts: int,
        cause: BaseException,
        completed: Optional[Dict[int, Any]] = None,
    ):
        super().__init__(stage, partition_index, attempts, cause, completed)
        self.stage = stage
        self.partition_index = partition_index
        self.attempts = attempts
        self.cause = cause
        self.completed = dict(completed or {})

    def __str__(self) -> str:
        return (
            f"{self.stage} stage failed on partition {self.partition_index} "
            f"after {self.attempts} attempt(s): {self.cause!r}"
        )


class PartitionExecutor:
    def __init__(self, max_retries: int = 0):
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.max_retries = int(max_retries)

    def run_stage(self, stage: str, task: Task, units: Sequence[Any], *args: Any) -> List[Any]:
        raise NotImplementedError

    def close(self) -> None:
        pass

    def __enter__(self) -> "PartitionExecutor":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def _should_retry(self, error: BaseException, attempt: int) -> bool:
        if isinstance(error, CacheBudgetViolation):
            return False
        return attempt <= self.max_retries

    def _log_retry(self, stage: str, index: int, attempt: int, error: BaseException) -> None:
        log.warning(
            "partition failed, retrying",
            extra={"extra": {"stage": stage, "partition": index, "attempt": attempt, "error": repr(error)}},
        )


class SerialPartitionExecutor(PartitionExecutor):
    """Runs partitions one after another in the calling process."""

    def run_stage(self, stage: str, task: Task, units: Sequence[Any], *args: Any) -> List[Any]:
        results: Dict[int, Any] = {}
        for i, unit in enumerate(units):
            attempt = 0
            while True:
                attempt += 1
                try:
                    results[i] = task(i, unit, *args)
                    break
                except Exception as e:
                    if not self._should_retry(e, attempt):
                        raise StageFailure(stage, i, attempt, e, completed=results) from e
                    self._log_retry(stage, i, attempt, e)
        return [results[i] for i in range(len(units))]


class ProcessPartitionExecutor(PartitionExecutor):
    """
    Runs partitions on a pool of worker processes. The pool lives across
    stages, so process-local state created in one stage (the shared canvas
    cache) is still there for later stages until close().
    """

    def __init__(self, workers: int, max_retries: int = 0, mp_context: Optional[Any] = None):
        super().__init__(max_retries=max_retries)
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self.workers = int(workers)
        self._mp_context = mp_context
        self._pool: Optional[ProcessPoolExecutor] = None

    def _get_pool(self) -> ProcessPoolExecutor:
        if self._pool is None:
            ctx = self._mp_context or multiprocessing.get_context()
            self._pool = ProcessPoolExecutor(max_workers=self.workers, mp_context=ctx)
        return self._pool

    def _reset_pool(self) -> None:
        if self._pool is not None:
            self._pool.shutdown(wait=False, cancel_futures=True)
            self._pool = None

    def run_stage(self, stage: str, task: Task, units: Sequence[Any], *args: Any) -> List[Any]:
        results: Dict[int, Any] = {}
        pending: Dict[Future, Tuple[int, int]] = {}

        def submit(i: int, attempt: int) -> None:
            fut = self._get_pool().submit(task, i, units[i], *args)
            pending[fut] = (i, attempt)

        for i in range(len(units)):
            submit(i, 1)

        while pending:
            done, _ = wait(list(pending), return_when=FIRST_COMPLETED)
            for fut in done:
                i, attempt = pending.pop(fut)
                try:
                    results[i] = fut.result()
                except Exception as e:
                    if not self._should_retry(e, attempt):
                        for other in pending:
                            other.cancel()
                        raise StageFailure(stage, i, attempt, e, completed=results) from e
                    self._log_retry(stage, i, attempt, e)
                    if isinstance(e, BrokenProcessPool):
                        self._reset_pool()
                    submit(i, attempt + 1)
        return [results[i] for i in range(len(units))]

    def close(self) -> None:
        if self._pool is not None:
            self._pool.shutdown(wait=True)
            self._pool = None
