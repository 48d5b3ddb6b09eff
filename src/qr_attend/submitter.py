"""Remote submitters: one attendance call for one user.

Submitters never raise past ``submit``; every failure is folded into a
:class:`~qr_attend.models.SubmissionResult` so callers can aggregate uniformly.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional, Protocol, Tuple

import aiohttp

from .models import Outcome, SubmissionResult, SubmissionTask, UpstreamCode
from .utils.logger import get_logger

_log = get_logger("submitter")

DEFAULT_TIMEOUT_SECONDS = 10.0


class RemoteSubmitter(Protocol):
    """Submit attendance for a single task."""

    async def submit(self, task: SubmissionTask) -> SubmissionResult:
        """Return the terminal result of exactly one outbound call."""


def _dig(payload: Any, path: Tuple[str, ...]) -> Any:
    node = payload
    for key in path:
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    return node


class HttpSubmitter:
    """Submit through the relay's ``/api/mark-attendance`` endpoint."""

    ENDPOINT = "/api/mark-attendance"
    CODE_PATH: Tuple[str, ...] = ("output", "data", "code")

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self._url = self._resolve_url(base_url)
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None

    @property
    def url(self) -> str:
        return self._url

    def _resolve_url(self, base_url: str) -> str:
        return base_url.rstrip("/") + self.ENDPOINT

    def _build_request(self, task: SubmissionTask) -> Tuple[Dict[str, Any], Dict[str, str]]:
        payload = {
            "stuId": task.user_identifier,
            "attendanceId": task.event_id,
            "cookie": task.session_token,
        }
        return payload, {}

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> "HttpSubmitter":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def submit(self, task: SubmissionTask) -> SubmissionResult:
        if not task.has_session:
            return SubmissionResult.failure(task, Outcome.MISSING_SESSION, "No session cookie")

        payload, headers = self._build_request(task)
        try:
            session = await self._get_session()
            async with session.post(
                self._url, json=payload, headers=headers, timeout=self._timeout
            ) as response:
                status = response.status
                body = await _read_json(response)
        except asyncio.TimeoutError:
            _log.debug("Submission for %s timed out", task.user_identifier)
            return SubmissionResult.failure(task, Outcome.TIMEOUT, "Request timed out")
        except aiohttp.ClientError as exc:
            _log.debug("Submission for %s failed: %s", task.user_identifier, exc)
            return SubmissionResult.failure(task, Outcome.NETWORK_FAILURE, str(exc) or type(exc).__name__)
        except Exception as exc:  # noqa: BLE001
            _log.debug("Unexpected submission error for %s: %r", task.user_identifier, exc)
            return SubmissionResult.failure(task, Outcome.NETWORK_FAILURE, str(exc) or type(exc).__name__)

        return self.classify(task, status, body)

    def classify(self, task: SubmissionTask, status: int, body: Any) -> SubmissionResult:
        """Map an HTTP status and decoded body onto a result."""
        if status >= 500 or status == 429:
            return SubmissionResult.failure(task, Outcome.NETWORK_FAILURE, f"HTTP {status}")

        raw_code = _dig(body, self.CODE_PATH)
        if raw_code is None:
            return SubmissionResult(
                user=task.user,
                outcome=Outcome.REJECTED,
                reason=UpstreamCode.UNKNOWN,
                raw_response=body,
                error=f"HTTP {status}: response carried no status code",
            )

        code = UpstreamCode.parse(raw_code)
        if code is UpstreamCode.SUCCESS:
            return SubmissionResult.success(task, raw_response=body)
        if code is UpstreamCode.UNKNOWN:
            return SubmissionResult(
                user=task.user,
                outcome=Outcome.REJECTED,
                reason=code,
                raw_response=body,
                error=str(raw_code),
            )
        return SubmissionResult.rejected(task, code, raw_response=body)


class PortalSubmitter(HttpSubmitter):
    """Submit straight to the upstream portal, sending the session as a cookie."""

    CODE_PATH = ("data", "code")

    def _resolve_url(self, base_url: str) -> str:
        return base_url

    def _build_request(self, task: SubmissionTask) -> Tuple[Dict[str, Any], Dict[str, str]]:
        payload = {"attendanceId": task.event_id, "stuId": task.user_identifier}
        return payload, {"Cookie": task.session_token or ""}


async def _read_json(response: aiohttp.ClientResponse) -> Any:
    try:
        return await response.json(content_type=None)
    except ValueError:
        return None


__all__ = ["RemoteSubmitter", "HttpSubmitter", "PortalSubmitter", "DEFAULT_TIMEOUT_SECONDS"]
