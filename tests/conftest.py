import asyncio
import pathlib
import sys
from typing import Dict, List, Sequence

import pytest

SYS_ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC_PATH = SYS_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from qr_attend.models import Outcome, SubmissionResult, SubmissionTask, UpstreamCode, UserAccount


class RecordingSleep:
    """Stand-in for asyncio.sleep that records delays and only yields."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)

    @property
    def total(self) -> float:
        return sum(self.delays)


class ScriptedSubmitter:
    """Fake submitter returning scripted outcomes per user, in call order.

    ``script`` maps a user identifier to a list of outcome specs: ``"ok"``,
    ``"network"``, ``"timeout"``, ``"boom"`` (raises) or an upstream code
    string for a rejection. Users without a script succeed.
    """

    def __init__(self, script: Dict[str, Sequence[str]] = None, latency: Dict[str, float] = None) -> None:
        self.script = {key: list(value) for key, value in (script or {}).items()}
        self.latency = latency or {}
        self.calls: List[str] = []
        self.in_flight = 0
        self.peak_in_flight = 0

    async def submit(self, task: SubmissionTask) -> SubmissionResult:
        self.calls.append(task.user_identifier)
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.latency.get(task.user_identifier, 0.001))
            steps = self.script.get(task.user_identifier)
            action = steps.pop(0) if steps else "ok"
            if action == "ok":
                return SubmissionResult.success(task, raw_response={"data": {"code": "SUCCESS"}})
            if action == "network":
                return SubmissionResult.failure(task, Outcome.NETWORK_FAILURE, "connection reset")
            if action == "timeout":
                return SubmissionResult.failure(task, Outcome.TIMEOUT, "Request timed out")
            if action == "boom":
                raise RuntimeError("submitter exploded")
            return SubmissionResult.rejected(task, UpstreamCode.parse(action), raw_response={"data": {"code": action}})
        finally:
            self.in_flight -= 1

    def call_count(self, identifier: str) -> int:
        return self.calls.count(identifier)


def make_tasks(count: int, event_id: str = "EVT-1", missing: Sequence[int] = ()) -> List[SubmissionTask]:
    return [
        SubmissionTask(
            user=UserAccount(identifier=f"S{index:03d}", name=f"Student {index}"),
            session_token=None if index in missing else f"cookie-{index}",
            event_id=event_id,
        )
        for index in range(count)
    ]


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def scripted_submitter():
    return ScriptedSubmitter
