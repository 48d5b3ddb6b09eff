"""Bounded-concurrency attendance submission for many accounts at once."""

from .batch import BatchClient
from .errors import AttendanceError, ConfigurationError, TransportFailure
from .models import (
    BatchReport,
    Outcome,
    ProgressSnapshot,
    SubmissionResult,
    SubmissionTask,
    UpstreamCode,
    UserAccount,
)
from .processor import AttendanceProcessor, ProcessorState
from .queue import BoundedQueue, CancelToken
from .retry import submit_with_retry
from .settings import ProcessorSettings, RelaySettings
from .submitter import HttpSubmitter, PortalSubmitter

__all__ = [
    "AttendanceError",
    "AttendanceProcessor",
    "BatchClient",
    "BatchReport",
    "BoundedQueue",
    "CancelToken",
    "ConfigurationError",
    "HttpSubmitter",
    "Outcome",
    "PortalSubmitter",
    "ProcessorSettings",
    "ProcessorState",
    "ProgressSnapshot",
    "RelaySettings",
    "SubmissionResult",
    "SubmissionTask",
    "TransportFailure",
    "UpstreamCode",
    "UserAccount",
    "submit_with_retry",
]
