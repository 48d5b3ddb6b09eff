"""Value objects passed between the submission pipeline stages."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence


class UpstreamCode(str, Enum):
    """Status codes the attendance portal answers with."""

    SUCCESS = "SUCCESS"
    ATTENDANCE_NOT_VALID = "ATTENDANCE_NOT_VALID"
    EVENT_EXPIRED = "EVENT_EXPIRED"
    ALREADY_MARKED = "ALREADY_MARKED"
    UNAUTHORIZED = "UNAUTHORIZED"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, raw: Any) -> "UpstreamCode":
        if not isinstance(raw, str) or not raw.strip():
            return cls.UNKNOWN
        try:
            return cls(raw.strip().upper())
        except ValueError:
            return cls.UNKNOWN


class Outcome(str, Enum):
    SUCCESS = "success"
    REJECTED = "rejected"
    NETWORK_FAILURE = "network_failure"
    TIMEOUT = "timeout"
    MISSING_SESSION = "missing_session"
    CANCELLED = "cancelled"

    @property
    def transient(self) -> bool:
        return self in (Outcome.NETWORK_FAILURE, Outcome.TIMEOUT)


_REASON_LABELS = {
    UpstreamCode.ATTENDANCE_NOT_VALID: "Invalid QR",
    UpstreamCode.EVENT_EXPIRED: "Event expired",
    UpstreamCode.ALREADY_MARKED: "Already marked",
    UpstreamCode.UNAUTHORIZED: "Session expired",
}

_OUTCOME_LABELS = {
    Outcome.SUCCESS: "Marked Present",
    Outcome.NETWORK_FAILURE: "Network error",
    Outcome.TIMEOUT: "Timed out",
    Outcome.MISSING_SESSION: "No session cookie",
    Outcome.CANCELLED: "Cancelled",
}


@dataclass(frozen=True)
class UserAccount:
    identifier: str
    name: str = ""

    @property
    def display_name(self) -> str:
        return self.name or self.identifier


@dataclass(frozen=True)
class SubmissionTask:
    """One (user, attendance event) pair to submit."""

    user: UserAccount
    session_token: Optional[str]
    event_id: str

    @property
    def user_identifier(self) -> str:
        return self.user.identifier

    @property
    def has_session(self) -> bool:
        return bool(self.session_token and self.session_token.strip())


@dataclass(frozen=True)
class SubmissionResult:
    """Terminal outcome of one task."""

    user: UserAccount
    outcome: Outcome
    reason: Optional[UpstreamCode] = None
    raw_response: Any = None
    error: Optional[str] = None
    attempts: int = 0

    @property
    def user_identifier(self) -> str:
        return self.user.identifier

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.SUCCESS

    @property
    def status_label(self) -> str:
        if self.outcome is Outcome.REJECTED:
            reason = self.reason or UpstreamCode.UNKNOWN
            return _REASON_LABELS.get(reason, reason.value)
        return _OUTCOME_LABELS[self.outcome]

    @classmethod
    def success(cls, task: SubmissionTask, raw_response: Any = None) -> "SubmissionResult":
        return cls(user=task.user, outcome=Outcome.SUCCESS, reason=UpstreamCode.SUCCESS, raw_response=raw_response)

    @classmethod
    def rejected(
        cls, task: SubmissionTask, reason: UpstreamCode, raw_response: Any = None
    ) -> "SubmissionResult":
        return cls(user=task.user, outcome=Outcome.REJECTED, reason=reason, raw_response=raw_response)

    @classmethod
    def failure(cls, task: SubmissionTask, outcome: Outcome, error: str) -> "SubmissionResult":
        return cls(user=task.user, outcome=outcome, error=error)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "identifier": self.user.identifier,
            "name": self.user.name,
            "status": self.outcome.value,
            "code": self.reason.value if self.reason else None,
            "error": self.error if self.error else (None if self.ok else self.status_label),
        }


@dataclass(frozen=True)
class ProgressSnapshot:
    completed: int
    total: int
    last_result: SubmissionResult


@dataclass
class BatchReport:
    """Aggregate of every task in one pipeline run, in input order."""

    total: int
    successful: int
    failed: int
    results: List[SubmissionResult] = field(default_factory=list)
    mode: str = "queue"
    fell_back: bool = False
    cancelled: bool = False

    @classmethod
    def from_results(cls, results: Sequence[SubmissionResult], **extra: Any) -> "BatchReport":
        results = list(results)
        successful = sum(1 for result in results if result.ok)
        return cls(
            total=len(results),
            successful=successful,
            failed=len(results) - successful,
            results=results,
            **extra,
        )

    def success_count(self) -> int:
        return self.successful

    def failure_count(self) -> int:
        return self.failed

    def to_payload(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "results": [result.to_payload() for result in self.results],
        }
