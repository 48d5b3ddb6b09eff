"""Bounded exponential-backoff retry around a single submission.

Only transient outcomes (network failure, timeout) are retried. An explicit
rejection from the portal is authoritative and returned immediately.
"""

from __future__ import annotations

import asyncio
import dataclasses
from typing import Awaitable, Callable

from .models import SubmissionResult, SubmissionTask
from .submitter import RemoteSubmitter
from .utils.logger import get_logger

_log = get_logger("retry")

Sleep = Callable[[float], Awaitable[None]]

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 1.0


def backoff_delay(attempt: int, base_delay: float) -> float:
    """Delay to wait after failed attempt number ``attempt`` (1-based)."""
    return base_delay * (2 ** (attempt - 1))


async def submit_with_retry(
    submitter: RemoteSubmitter,
    task: SubmissionTask,
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    base_delay: float = DEFAULT_BASE_DELAY,
    sleep: Sleep = asyncio.sleep,
) -> SubmissionResult:
    """Submit ``task``, retrying transient failures up to ``max_attempts`` calls.

    Waits ``base_delay * 2**(attempt-1)`` between attempts. The returned
    result carries the number of calls made in ``attempts``.
    """
    max_attempts = max(1, max_attempts)
    attempt = 0
    while True:
        attempt += 1
        result = await submitter.submit(task)
        result = dataclasses.replace(result, attempts=attempt)
        if not result.outcome.transient:
            if attempt > 1 and result.ok:
                _log.debug(f"{task.user.display_name}: succeeded on attempt {attempt}/{max_attempts}")
            return result
        if attempt >= max_attempts:
            _log.debug(
                f"{task.user.display_name}: giving up after {attempt} attempts ({result.outcome.value})"
            )
            return result
        delay = backoff_delay(attempt, base_delay)
        _log.debug(
            f"{task.user.display_name}: attempt {attempt}/{max_attempts} failed "
            f"({result.outcome.value}); retrying in {delay:.2f}s"
        )
        await sleep(delay)


__all__ = ["submit_with_retry", "backoff_delay", "DEFAULT_MAX_ATTEMPTS", "DEFAULT_BASE_DELAY"]
