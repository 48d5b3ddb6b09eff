"""Strategy selection between server-side batch and client-side queue processing."""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import List, Optional, Sequence, Union

from .batch import BatchSubmitter
from .errors import ConfigurationError, TransportFailure
from .models import BatchReport, ProgressSnapshot, SubmissionTask, UserAccount
from .queue import BoundedQueue, CancelToken, ProgressSink
from .retry import Sleep
from .settings import ProcessorSettings
from .submitter import RemoteSubmitter
from .utils.logger import debug_detail, get_logger, progress, step, success

_log = get_logger("processor")

UserLike = Union[UserAccount, str]


class ProcessorState(str, Enum):
    IDLE = "idle"
    DISPATCHING_BATCH = "dispatching_batch"
    DISPATCHING_QUEUE = "dispatching_queue"
    FALLBACK = "fallback"
    AGGREGATING = "aggregating"
    DONE = "done"


class _Dispatch:
    """Tracks the state of one ``process`` call."""

    def __init__(self) -> None:
        self.state = ProcessorState.IDLE
        self.history: List[ProcessorState] = [ProcessorState.IDLE]

    def enter(self, state: ProcessorState) -> None:
        debug_detail(f"processor: {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)


def _coerce_user(user: UserLike) -> UserAccount:
    if isinstance(user, UserAccount):
        return user
    return UserAccount(identifier=str(user))


def build_tasks(
    users: Sequence[UserLike],
    event_id: str,
    session_tokens: Optional[Sequence[Optional[str]]],
) -> List[SubmissionTask]:
    """Validate caller input and pair each user with its session token."""
    if not users:
        raise ConfigurationError("No users loaded yet. Please add users first.")
    if session_tokens is None or len(session_tokens) != len(users):
        have = 0 if session_tokens is None else len(session_tokens)
        raise ConfigurationError(
            f"Session tokens not loaded for every user ({have} tokens for {len(users)} users)"
        )
    if not event_id or not str(event_id).strip():
        raise ConfigurationError("Attendance event id is empty")
    event_id = str(event_id).strip()
    return [
        SubmissionTask(user=_coerce_user(user), session_token=token, event_id=event_id)
        for user, token in zip(users, session_tokens)
    ]


class AttendanceProcessor:
    """Pick batch or queue processing and fall back from batch to queue once.

    The batch path is used when the preferred method is ``batch``, a batch
    endpoint is configured and the user count reaches the threshold. A batch
    call that fails outright is retried as a local queue run with the same
    inputs; individual rejections inside a batch response are final.

    ``last_states`` holds the state trail of the most recent ``process`` call.
    """

    def __init__(
        self,
        submitter: RemoteSubmitter,
        *,
        batch_submitter: Optional[BatchSubmitter] = None,
        settings: Optional[ProcessorSettings] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.settings = settings or ProcessorSettings()
        self.last_states: List[ProcessorState] = []
        self._batch = batch_submitter
        self._queue = BoundedQueue(
            submitter,
            concurrency=self.settings.concurrency,
            delay=self.settings.delay,
            max_attempts=self.settings.retry.max_attempts,
            base_delay=self.settings.retry.base_delay,
            sleep=sleep,
        )

    def choose_mode(self, user_count: int) -> str:
        if (
            self.settings.method == "batch"
            and self._batch is not None
            and user_count >= self.settings.batch_threshold
        ):
            return "batch"
        return "queue"

    async def process(
        self,
        users: Sequence[UserLike],
        event_id: str,
        session_tokens: Optional[Sequence[Optional[str]]],
        *,
        on_progress: Optional[ProgressSink] = None,
        cancel: Optional[CancelToken] = None,
    ) -> BatchReport:
        tasks = build_tasks(users, event_id, session_tokens)
        dispatch = _Dispatch()
        self.last_states = dispatch.history

        mode = self.choose_mode(len(tasks))
        if cancel is not None and cancel.cancelled:
            mode = "queue"

        if mode == "batch":
            dispatch.enter(ProcessorState.DISPATCHING_BATCH)
            step(f"Starting batch attendance processing for {len(tasks)} users")
            try:
                report = await self._batch.submit_batch(tasks[0].event_id, tasks)
            except TransportFailure as exc:
                _log.warning(f"Batch processing error: {exc}")
                dispatch.enter(ProcessorState.FALLBACK)
                progress("Falling back to queue-based processing…")
                report = await self._run_queue(tasks, on_progress, cancel)
                report.fell_back = True
            else:
                _replay_progress(report, on_progress)
        else:
            dispatch.enter(ProcessorState.DISPATCHING_QUEUE)
            report = await self._run_queue(tasks, on_progress, cancel)

        dispatch.enter(ProcessorState.AGGREGATING)
        label = "Batch" if report.mode == "batch" else "Queue"
        success(f"{label} processing completed: {report.successful}/{report.total} successful")
        dispatch.enter(ProcessorState.DONE)
        return report

    async def _run_queue(
        self,
        tasks: Sequence[SubmissionTask],
        on_progress: Optional[ProgressSink],
        cancel: Optional[CancelToken],
    ) -> BatchReport:
        step(f"Starting queue-based attendance processing for {len(tasks)} users")
        return await self._queue.run(tasks, on_progress=on_progress, cancel=cancel)


def _replay_progress(report: BatchReport, on_progress: Optional[ProgressSink]) -> None:
    if on_progress is None:
        return
    for completed, result in enumerate(report.results, start=1):
        try:
            on_progress(ProgressSnapshot(completed=completed, total=report.total, last_result=result))
        except Exception as exc:  # noqa: BLE001
            _log.debug(f"Progress sink raised {exc!r}; ignoring")


__all__ = ["AttendanceProcessor", "ProcessorState", "build_tasks"]
