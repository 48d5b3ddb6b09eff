"""Bounded worker pool that paces per-user submissions.

A fixed number of workers pull task indices from one shared cursor. Each
worker waits ``delay`` seconds between its own remote calls, so at most
``concurrency`` calls are in flight and calls are spaced to respect the
upstream rate limit. Results are stored by input index, so the report order
never depends on completion order.
"""

from __future__ import annotations

import asyncio
from typing import Callable, List, Optional, Sequence

from .models import BatchReport, Outcome, ProgressSnapshot, SubmissionResult, SubmissionTask
from .retry import DEFAULT_BASE_DELAY, DEFAULT_MAX_ATTEMPTS, Sleep, submit_with_retry
from .submitter import RemoteSubmitter
from .utils.logger import get_logger

_log = get_logger("queue")

ProgressSink = Callable[[ProgressSnapshot], None]

DEFAULT_CONCURRENCY = 3
DEFAULT_DELAY = 0.3


class CancelToken:
    """Cooperative cancellation, honoured before each admission."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


class _QueueRun:
    """State owned by a single ``BoundedQueue.run`` invocation."""

    def __init__(
        self,
        queue: "BoundedQueue",
        tasks: Sequence[SubmissionTask],
        *,
        concurrency: int,
        delay: float,
        on_progress: Optional[ProgressSink],
        cancel: Optional[CancelToken],
    ) -> None:
        self._queue = queue
        self._tasks = list(tasks)
        self._concurrency = concurrency
        self._delay = delay
        self._on_progress = on_progress
        self._cancel = cancel
        self._results: List[Optional[SubmissionResult]] = [None] * len(self._tasks)
        self._cursor = 0
        self._completed = 0
        self.in_flight = 0
        self.peak_in_flight = 0

    @property
    def total(self) -> int:
        return len(self._tasks)

    def _has_pending(self) -> bool:
        return self._cursor < len(self._tasks)

    def _claim(self) -> Optional[int]:
        if not self._has_pending():
            return None
        index = self._cursor
        self._cursor += 1
        return index

    def _is_cancelled(self) -> bool:
        return self._cancel is not None and self._cancel.cancelled

    async def execute(self) -> BatchReport:
        workers = min(self._concurrency, self.total)
        await asyncio.gather(*(self._worker(worker_id) for worker_id in range(workers)))

        cancelled = False
        results: List[SubmissionResult] = []
        for index, result in enumerate(self._results):
            task = self._tasks[index]
            if result is None and not task.has_session:
                result = SubmissionResult.failure(task, Outcome.MISSING_SESSION, "No session cookie")
            elif result is None:
                cancelled = True
                result = SubmissionResult.failure(task, Outcome.CANCELLED, "Run cancelled before submission")
            results.append(result)
        if cancelled:
            _log.warning(f"Run cancelled: {self._completed}/{self.total} users processed")
        return BatchReport.from_results(results, mode="queue", cancelled=cancelled)

    async def _worker(self, worker_id: int) -> None:
        needs_gap = False
        while not self._is_cancelled():
            index = self._claim()
            if index is None:
                return
            task = self._tasks[index]
            if not task.has_session:
                self._record(index, SubmissionResult.failure(task, Outcome.MISSING_SESSION, "No session cookie"))
                continue
            if needs_gap and self._delay > 0:
                await self._queue._sleep(self._delay)
                # A claimed task left unrecorded is reported as cancelled.
                if self._is_cancelled():
                    return
            self._record(index, await self._submit(worker_id, task))
            needs_gap = True

    async def _submit(self, worker_id: int, task: SubmissionTask) -> SubmissionResult:
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            return await self._queue._submit_one(task)
        except Exception as exc:  # noqa: BLE001
            _log.debug(f"Worker {worker_id}: processing {task.user.display_name} failed: {exc!r}")
            return SubmissionResult.failure(task, Outcome.NETWORK_FAILURE, f"Processing failed: {exc}")
        finally:
            self.in_flight -= 1

    def _record(self, index: int, result: SubmissionResult) -> None:
        self._results[index] = result
        self._completed += 1
        if self._on_progress is None:
            return
        snapshot = ProgressSnapshot(completed=self._completed, total=self.total, last_result=result)
        try:
            self._on_progress(snapshot)
        except Exception as exc:  # noqa: BLE001
            _log.debug(f"Progress sink raised {exc!r}; ignoring")


class BoundedQueue:
    """Run submission tasks with a concurrency ceiling and inter-call delay."""

    def __init__(
        self,
        submitter: RemoteSubmitter,
        *,
        concurrency: int = DEFAULT_CONCURRENCY,
        delay: float = DEFAULT_DELAY,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay: float = DEFAULT_BASE_DELAY,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._submitter = submitter
        self.concurrency = max(1, concurrency)
        self.delay = max(0.0, delay)
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self._sleep = sleep

    async def _submit_one(self, task: SubmissionTask) -> SubmissionResult:
        return await submit_with_retry(
            self._submitter,
            task,
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            sleep=self._sleep,
        )

    async def run(
        self,
        tasks: Sequence[SubmissionTask],
        *,
        concurrency: Optional[int] = None,
        delay: Optional[float] = None,
        on_progress: Optional[ProgressSink] = None,
        cancel: Optional[CancelToken] = None,
    ) -> BatchReport:
        """Process every task and return a report ordered like ``tasks``."""
        run = _QueueRun(
            self,
            tasks,
            concurrency=max(1, concurrency if concurrency is not None else self.concurrency),
            delay=max(0.0, delay if delay is not None else self.delay),
            on_progress=on_progress,
            cancel=cancel,
        )
        _log.debug(
            f"Queue run: {run.total} tasks, concurrency {run._concurrency}, delay {run._delay:.3f}s"
        )
        report = await run.execute()
        _log.debug(f"Queue run finished; peak in-flight {run.peak_in_flight}")
        return report


__all__ = ["BoundedQueue", "CancelToken", "ProgressSink", "DEFAULT_CONCURRENCY", "DEFAULT_DELAY"]
