import asyncio
from unittest.mock import AsyncMock

import pytest

from qr_attend.batch import parse_batch_response
from qr_attend.errors import ConfigurationError, TransportFailure
from qr_attend.models import Outcome, UpstreamCode, UserAccount
from qr_attend.processor import AttendanceProcessor, ProcessorState, build_tasks
from qr_attend.queue import CancelToken
from qr_attend.settings import ProcessorSettings



def _users(count):
    return [UserAccount(identifier=f"S{i:03d}", name=f"Student {i}") for i in range(count)]


def _tokens(count):
    return [f"cookie-{i}" for i in range(count)]


class FakeBatchSubmitter:
    def __init__(self, expired=(), fail=False):
        self.expired = set(expired)
        self.fail = fail
        self.calls = []

    async def submit_batch(self, event_id, tasks):
        self.calls.append((event_id, [t.user_identifier for t in tasks]))
        if self.fail:
            raise TransportFailure("Batch processing failed: HTTP 502 Bad Gateway")
        results = []
        for task in tasks:
            if task.user_identifier in self.expired:
                results.append({"identifier": task.user_identifier, "status": "rejected", "code": "EVENT_EXPIRED"})
            else:
                results.append({"identifier": task.user_identifier, "status": "success"})
        return parse_batch_response(tasks, {"results": results})


def test_mismatched_tokens_fail_before_any_call(scripted_submitter):
    submitter = scripted_submitter()
    batch = FakeBatchSubmitter()
    processor = AttendanceProcessor(submitter, batch_submitter=batch)

    with pytest.raises(ConfigurationError):
        asyncio.run(processor.process(_users(3), "EVT-1", _tokens(2)))

    assert submitter.calls == []
    assert batch.calls == []


@pytest.mark.parametrize(
    "users,event_id,tokens",
    [
        ([], "EVT-1", []),
        (_users(2), "EVT-1", None),
        (_users(2), "  ", _tokens(2)),
    ],
)
def test_invalid_input_raises_configuration_error(users, event_id, tokens):
    with pytest.raises(ConfigurationError):
        build_tasks(users, event_id, tokens)


def test_build_tasks_accepts_plain_identifiers():
    tasks = build_tasks(["S1", "S2"], " EVT-9 ", ["a", None])

    assert [t.user_identifier for t in tasks] == ["S1", "S2"]
    assert all(t.event_id == "EVT-9" for t in tasks)
    assert tasks[1].has_session is False


def test_end_to_end_batch_mode_report(scripted_submitter):
    users = _users(12)
    batch = FakeBatchSubmitter(expired={"S004", "S009"})
    submitter = scripted_submitter()
    settings = ProcessorSettings(concurrency=3, delay=0.3, batch_threshold=5)
    processor = AttendanceProcessor(submitter, batch_submitter=batch, settings=settings)
    snapshots = []

    report = asyncio.run(processor.process(users, "EVT-1", _tokens(12), on_progress=snapshots.append))

    assert report.mode == "batch"
    assert report.fell_back is False
    assert (report.total, report.successful, report.failed) == (12, 10, 2)
    assert report.results[4].outcome is Outcome.REJECTED
    assert report.results[4].reason is UpstreamCode.EVENT_EXPIRED
    assert submitter.calls == []
    assert [snap.completed for snap in snapshots] == list(range(1, 13))


def test_batch_transport_failure_falls_back_to_queue(scripted_submitter, recording_sleep):
    users = _users(6)
    batch = FakeBatchSubmitter(fail=True)
    submitter = scripted_submitter()
    processor = AttendanceProcessor(submitter, batch_submitter=batch, sleep=recording_sleep)

    report = asyncio.run(processor.process(users, "EVT-1", _tokens(6)))

    assert len(batch.calls) == 1
    assert report.mode == "queue"
    assert report.fell_back is True
    assert report.total == len(report.results) == 6
    assert sorted(submitter.calls) == [u.identifier for u in users]


def test_fallback_is_attempted_once_even_if_queue_results_fail(scripted_submitter, recording_sleep):
    users = _users(6)
    batch = FakeBatchSubmitter(fail=True)
    submitter = scripted_submitter({u.identifier: ["network"] * 3 for u in users})
    processor = AttendanceProcessor(submitter, batch_submitter=batch, sleep=recording_sleep)

    report = asyncio.run(processor.process(users, "EVT-1", _tokens(6)))

    assert len(batch.calls) == 1
    assert report.failed == 6
    assert all(r.outcome is Outcome.NETWORK_FAILURE for r in report.results)


@pytest.mark.parametrize(
    "count,fail,expected",
    [
        (
            6,
            True,
            [
                ProcessorState.IDLE,
                ProcessorState.DISPATCHING_BATCH,
                ProcessorState.FALLBACK,
                ProcessorState.AGGREGATING,
                ProcessorState.DONE,
            ],
        ),
        (
            6,
            False,
            [
                ProcessorState.IDLE,
                ProcessorState.DISPATCHING_BATCH,
                ProcessorState.AGGREGATING,
                ProcessorState.DONE,
            ],
        ),
        (
            3,
            False,
            [
                ProcessorState.IDLE,
                ProcessorState.DISPATCHING_QUEUE,
                ProcessorState.AGGREGATING,
                ProcessorState.DONE,
            ],
        ),
    ],
)
def test_state_trail_is_kept_after_each_run(scripted_submitter, recording_sleep, count, fail, expected):
    processor = AttendanceProcessor(
        scripted_submitter(), batch_submitter=FakeBatchSubmitter(fail=fail), sleep=recording_sleep
    )
    assert processor.last_states == []

    asyncio.run(processor.process(_users(count), "EVT-1", _tokens(count)))

    assert processor.last_states == expected


def test_state_trail_resets_between_runs(scripted_submitter, recording_sleep):
    processor = AttendanceProcessor(
        scripted_submitter(), batch_submitter=FakeBatchSubmitter(fail=True), sleep=recording_sleep
    )

    asyncio.run(processor.process(_users(6), "EVT-1", _tokens(6)))
    asyncio.run(processor.process(_users(2), "EVT-1", _tokens(2)))

    assert ProcessorState.FALLBACK not in processor.last_states
    assert processor.last_states[1] is ProcessorState.DISPATCHING_QUEUE


@pytest.mark.parametrize(
    "count,method,has_batch,expected",
    [
        (5, "batch", True, "batch"),
        (4, "batch", True, "queue"),
        (20, "queue", True, "queue"),
        (20, "batch", False, "queue"),
    ],
)
def test_choose_mode(scripted_submitter, count, method, has_batch, expected):
    batch = FakeBatchSubmitter() if has_batch else None
    processor = AttendanceProcessor(
        scripted_submitter(), batch_submitter=batch, settings=ProcessorSettings(method=method)
    )

    assert processor.choose_mode(count) == expected


def test_small_group_uses_queue_and_never_touches_batch(scripted_submitter, recording_sleep):
    batch = AsyncMock()
    submitter = scripted_submitter()
    processor = AttendanceProcessor(submitter, batch_submitter=batch, sleep=recording_sleep)

    report = asyncio.run(processor.process(_users(3), "EVT-1", _tokens(3)))

    batch.submit_batch.assert_not_called()
    assert report.mode == "queue"
    assert report.successful == 3


def test_queue_mode_reports_missing_session_distinctly(scripted_submitter, recording_sleep):
    submitter = scripted_submitter()
    processor = AttendanceProcessor(submitter, sleep=recording_sleep)

    report = asyncio.run(processor.process(_users(3), "EVT-1", ["cookie-0", "", "cookie-2"]))

    assert report.results[1].outcome is Outcome.MISSING_SESSION
    assert "S001" not in submitter.calls


def test_pre_cancelled_run_skips_batch_and_reports_every_user(scripted_submitter, recording_sleep):
    batch = FakeBatchSubmitter()
    cancel = CancelToken()
    cancel.cancel()
    processor = AttendanceProcessor(scripted_submitter(), batch_submitter=batch, sleep=recording_sleep)

    report = asyncio.run(processor.process(_users(6), "EVT-1", _tokens(6), cancel=cancel))

    assert batch.calls == []
    assert report.cancelled is True
    assert report.total == 6
    assert all(r.outcome is Outcome.CANCELLED for r in report.results)
