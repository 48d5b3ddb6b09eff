"""Client for the relay's server-side batch endpoint."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Protocol, Sequence

import aiohttp

from .errors import TransportFailure
from .models import BatchReport, Outcome, SubmissionResult, SubmissionTask, UpstreamCode
from .utils.logger import get_logger

_log = get_logger("batch")

DEFAULT_BATCH_TIMEOUT_SECONDS = 120.0


class BatchSubmitter(Protocol):
    """Send every task in one round trip and return the aggregate report."""

    async def submit_batch(self, event_id: str, tasks: Sequence[SubmissionTask]) -> BatchReport:
        """Raise :class:`TransportFailure` when no per-user results came back."""


def build_batch_payload(event_id: str, tasks: Sequence[SubmissionTask]) -> Dict[str, Any]:
    return {
        "eventId": event_id,
        "users": [
            {
                "identifier": task.user.identifier,
                "name": task.user.name,
                "sessionToken": task.session_token,
            }
            for task in tasks
        ],
    }


def _result_from_entry(task: SubmissionTask, entry: Any) -> SubmissionResult:
    if not isinstance(entry, dict):
        raise TransportFailure(f"Malformed batch result entry for {task.user_identifier}")

    status = str(entry.get("status") or "").strip().lower()
    error = entry.get("error")
    if status == Outcome.SUCCESS.value:
        return SubmissionResult.success(task, raw_response=entry)

    try:
        outcome = Outcome(status)
    except ValueError:
        outcome = Outcome.REJECTED

    if outcome is Outcome.REJECTED:
        reason = UpstreamCode.parse(entry.get("code") or error)
        return SubmissionResult(
            user=task.user,
            outcome=outcome,
            reason=reason,
            raw_response=entry,
            error=error if reason is UpstreamCode.UNKNOWN else None,
        )
    return SubmissionResult(user=task.user, outcome=outcome, raw_response=entry, error=error)


def parse_batch_response(tasks: Sequence[SubmissionTask], payload: Any) -> BatchReport:
    """Pair the response results with ``tasks`` by position."""
    if not isinstance(payload, dict) or not isinstance(payload.get("results"), list):
        raise TransportFailure("Batch response is missing a results list")
    entries: List[Any] = payload["results"]
    if len(entries) != len(tasks):
        raise TransportFailure(
            f"Batch response covered {len(entries)} users, expected {len(tasks)}"
        )
    for task, entry in zip(tasks, entries):
        identifier = entry.get("identifier") if isinstance(entry, dict) else None
        if identifier is not None and str(identifier) != task.user_identifier:
            raise TransportFailure(
                f"Batch result order mismatch: got {identifier}, expected {task.user_identifier}"
            )
    results = [_result_from_entry(task, entry) for task, entry in zip(tasks, entries)]
    return BatchReport.from_results(results, mode="batch")


class BatchClient:
    """POST all users to ``/api/mark-attendance-batch`` in a single request."""

    ENDPOINT = "/api/mark-attendance-batch"

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = DEFAULT_BATCH_TIMEOUT_SECONDS,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.url = base_url.rstrip("/") + self.ENDPOINT
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> "BatchClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def submit_batch(self, event_id: str, tasks: Sequence[SubmissionTask]) -> BatchReport:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True

        payload = build_batch_payload(event_id, tasks)
        try:
            async with self._session.post(self.url, json=payload, timeout=self._timeout) as response:
                if response.status >= 300:
                    raise TransportFailure(f"Batch processing failed: HTTP {response.status} {response.reason}")
                try:
                    body = await response.json(content_type=None)
                except ValueError as exc:
                    raise TransportFailure(f"Batch response was not JSON: {exc}") from exc
        except asyncio.TimeoutError as exc:
            raise TransportFailure("Batch request timed out") from exc
        except aiohttp.ClientError as exc:
            raise TransportFailure(f"Batch request failed: {exc}") from exc

        report = parse_batch_response(tasks, body)
        _log.debug(f"Batch endpoint answered {report.successful}/{report.total} successful")
        return report


__all__ = [
    "BatchClient",
    "BatchSubmitter",
    "build_batch_payload",
    "parse_batch_response",
    "DEFAULT_BATCH_TIMEOUT_SECONDS",
]
