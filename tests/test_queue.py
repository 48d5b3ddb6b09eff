import asyncio
import logging

from qr_attend.models import Outcome, UpstreamCode
from qr_attend.queue import BoundedQueue, CancelToken

from conftest import make_tasks


def test_results_follow_input_order_not_completion_order(scripted_submitter, recording_sleep):
    tasks = make_tasks(6)
    # Earlier users answer slower, so completion order is reversed.
    latency = {task.user_identifier: 0.03 - index * 0.005 for index, task in enumerate(tasks)}
    submitter = scripted_submitter(latency=latency)
    completion_order = []

    queue = BoundedQueue(submitter, concurrency=6, delay=0, sleep=recording_sleep)
    report = asyncio.run(
        queue.run(tasks, on_progress=lambda snap: completion_order.append(snap.last_result.user_identifier))
    )

    assert [r.user_identifier for r in report.results] == [t.user_identifier for t in tasks]
    assert completion_order != [t.user_identifier for t in tasks]
    assert report.total == report.successful == 6


def test_in_flight_never_exceeds_concurrency(scripted_submitter, recording_sleep):
    tasks = make_tasks(10)
    submitter = scripted_submitter(latency={t.user_identifier: 0.01 for t in tasks})

    queue = BoundedQueue(submitter, concurrency=3, delay=0.3, sleep=recording_sleep)
    report = asyncio.run(queue.run(tasks))

    assert submitter.peak_in_flight == 3
    assert report.total == 10
    assert report.successful + report.failed == report.total


def test_delay_separates_each_workers_calls(scripted_submitter, recording_sleep):
    tasks = make_tasks(7)
    queue = BoundedQueue(scripted_submitter(), concurrency=3, delay=0.3, sleep=recording_sleep)

    asyncio.run(queue.run(tasks))

    # Three workers make their first call immediately; every later call waits.
    assert recording_sleep.delays == [0.3] * 4


def test_run_arguments_override_queue_defaults(scripted_submitter, recording_sleep):
    tasks = make_tasks(4)
    submitter = scripted_submitter(latency={t.user_identifier: 0.01 for t in tasks})
    queue = BoundedQueue(submitter, concurrency=3, delay=0.3, sleep=recording_sleep)

    asyncio.run(queue.run(tasks, concurrency=1, delay=0.5))

    assert submitter.peak_in_flight == 1
    assert recording_sleep.delays == [0.5] * 3


def test_missing_session_fails_without_a_call(scripted_submitter, recording_sleep):
    tasks = make_tasks(3, missing=[1])
    submitter = scripted_submitter()

    report = asyncio.run(BoundedQueue(submitter, sleep=recording_sleep).run(tasks))

    assert report.results[1].outcome is Outcome.MISSING_SESSION
    assert report.results[1].attempts == 0
    assert tasks[1].user_identifier not in submitter.calls
    assert report.successful == 2 and report.failed == 1


def test_partial_failures_do_not_stop_the_batch(scripted_submitter, recording_sleep):
    tasks = make_tasks(5)
    submitter = scripted_submitter(
        {
            tasks[0].user_identifier: ["ATTENDANCE_NOT_VALID"],
            tasks[2].user_identifier: ["timeout"] * 3,
            tasks[4].user_identifier: ["boom"],
        }
    )

    report = asyncio.run(BoundedQueue(submitter, concurrency=2, sleep=recording_sleep).run(tasks))

    outcomes = [r.outcome for r in report.results]
    assert outcomes == [
        Outcome.REJECTED,
        Outcome.SUCCESS,
        Outcome.TIMEOUT,
        Outcome.SUCCESS,
        Outcome.NETWORK_FAILURE,
    ]
    assert report.results[0].reason is UpstreamCode.ATTENDANCE_NOT_VALID
    assert "Processing failed" in report.results[4].error
    assert (report.successful, report.failed) == (2, 3)


def test_progress_snapshots_are_monotonic_and_bounded(scripted_submitter, recording_sleep):
    tasks = make_tasks(8, missing=[3])
    snapshots = []

    asyncio.run(
        BoundedQueue(scripted_submitter(), concurrency=3, sleep=recording_sleep).run(
            tasks, on_progress=snapshots.append
        )
    )

    counts = [snap.completed for snap in snapshots]
    assert counts == list(range(1, 9))
    assert all(snap.total == 8 for snap in snapshots)
    assert {snap.last_result.user_identifier for snap in snapshots} == {t.user_identifier for t in tasks}


def test_failing_progress_sink_is_ignored(scripted_submitter, recording_sleep, caplog):
    def broken_sink(snapshot):
        raise ValueError("display went away")

    with caplog.at_level(logging.DEBUG, logger="qr_attend"):
        report = asyncio.run(
            BoundedQueue(scripted_submitter(), sleep=recording_sleep).run(make_tasks(3), on_progress=broken_sink)
        )

    assert report.successful == 3
    assert any("Progress sink raised" in record.getMessage() for record in caplog.records)


def test_cancel_keeps_partial_report(scripted_submitter, recording_sleep):
    tasks = make_tasks(6)
    cancel = CancelToken()

    def cancel_after_two(snapshot):
        if snapshot.completed == 2:
            cancel.cancel()

    queue = BoundedQueue(scripted_submitter(), concurrency=1, delay=0.1, sleep=recording_sleep)
    report = asyncio.run(queue.run(tasks, on_progress=cancel_after_two, cancel=cancel))

    assert report.cancelled is True
    assert report.total == 6
    assert [r.outcome for r in report.results[:2]] == [Outcome.SUCCESS, Outcome.SUCCESS]
    assert all(r.outcome is Outcome.CANCELLED for r in report.results[2:])
    assert report.successful == 2 and report.failed == 4


def test_cancel_still_reports_missing_sessions(scripted_submitter, recording_sleep):
    tasks = make_tasks(6, missing=(4,))
    cancel = CancelToken()

    def cancel_after_two(snapshot):
        if snapshot.completed == 2:
            cancel.cancel()

    submitter = scripted_submitter()
    queue = BoundedQueue(submitter, concurrency=1, delay=0.1, sleep=recording_sleep)
    report = asyncio.run(queue.run(tasks, on_progress=cancel_after_two, cancel=cancel))

    assert report.cancelled is True
    assert report.results[4].outcome is Outcome.MISSING_SESSION
    assert [r.outcome for r in report.results[2:4]] == [Outcome.CANCELLED, Outcome.CANCELLED]
    assert report.results[5].outcome is Outcome.CANCELLED
    assert "S004" not in submitter.calls


def test_empty_task_list_yields_empty_report(scripted_submitter, recording_sleep):
    report = asyncio.run(BoundedQueue(scripted_submitter(), sleep=recording_sleep).run([]))

    assert (report.total, report.successful, report.failed) == (0, 0, 0)
