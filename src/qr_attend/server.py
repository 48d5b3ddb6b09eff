"""aiohttp relay exposing the single and batch attendance endpoints.

The relay holds no state between requests. The batch endpoint paces its
upstream calls with its own queue settings, which are configured separately
from the client's queue.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

from aiohttp import web

from .errors import ConfigurationError
from .models import Outcome, UserAccount
from .processor import build_tasks
from .queue import BoundedQueue
from .retry import Sleep
from .settings import RelaySettings
from .submitter import PortalSubmitter, RemoteSubmitter
from .utils.logger import get_logger, step, success

_log = get_logger("relay")

SETTINGS_KEY = web.AppKey("settings", RelaySettings)
SUBMITTER_KEY = web.AppKey("submitter", object)
QUEUE_KEY = web.AppKey("queue", BoundedQueue)


def _bad_request(message: str) -> web.Response:
    return web.json_response({"error": message}, status=400)


async def _read_body(request: web.Request) -> Optional[Dict[str, Any]]:
    try:
        body = await request.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


async def handle_health(request: web.Request) -> web.Response:
    return web.json_response({"status": "ok"})


async def handle_single(request: web.Request) -> web.Response:
    body = await _read_body(request)
    if body is None:
        return _bad_request("Request body must be a JSON object")
    stu_id = str(body.get("stuId") or "").strip()
    if not stu_id:
        return _bad_request("stuId is required")
    try:
        (task,) = build_tasks([UserAccount(identifier=stu_id)], body.get("attendanceId"), [body.get("cookie")])
    except ConfigurationError as exc:
        return _bad_request(str(exc))
    if not task.has_session:
        return _bad_request("cookie is required")

    submitter: RemoteSubmitter = request.app[SUBMITTER_KEY]
    result = await submitter.submit(task)
    _log.debug(f"Relayed {stu_id}: {result.outcome.value}")
    if result.outcome is Outcome.TIMEOUT:
        return web.json_response({"error": result.error}, status=504)
    if result.outcome.transient:
        return web.json_response({"error": result.error}, status=502)
    return web.json_response({"output": result.raw_response})


def _parse_batch_users(raw_users: Any) -> Optional[List[Dict[str, Any]]]:
    if not isinstance(raw_users, list):
        return None
    if not all(isinstance(entry, dict) for entry in raw_users):
        return None
    return raw_users


async def handle_batch(request: web.Request) -> web.Response:
    body = await _read_body(request)
    if body is None:
        return _bad_request("Request body must be a JSON object")
    entries = _parse_batch_users(body.get("users"))
    if entries is None:
        return _bad_request("users must be a list of objects")

    users = [
        UserAccount(identifier=str(entry.get("identifier") or ""), name=str(entry.get("name") or ""))
        for entry in entries
    ]
    if any(not user.identifier for user in users):
        return _bad_request("every user needs an identifier")
    try:
        tasks = build_tasks(users, body.get("eventId"), [entry.get("sessionToken") for entry in entries])
    except ConfigurationError as exc:
        return _bad_request(str(exc))

    step(f"Relay batch: {len(tasks)} users for event {tasks[0].event_id}")
    report = await request.app[QUEUE_KEY].run(tasks)
    success(f"Relay batch completed: {report.successful}/{report.total} successful")
    return web.json_response(report.to_payload())


def create_app(
    settings: Optional[RelaySettings] = None,
    *,
    submitter: Optional[RemoteSubmitter] = None,
    sleep: Sleep = asyncio.sleep,
) -> web.Application:
    settings = settings or RelaySettings.from_env()
    owned: Optional[PortalSubmitter] = None
    if submitter is None:
        owned = PortalSubmitter(settings.require_portal(), timeout=settings.timeout)
        submitter = owned

    app = web.Application()
    app[SETTINGS_KEY] = settings
    app[SUBMITTER_KEY] = submitter
    app[QUEUE_KEY] = BoundedQueue(
        submitter,
        concurrency=settings.concurrency,
        delay=settings.delay,
        max_attempts=settings.retry.max_attempts,
        base_delay=settings.retry.base_delay,
        sleep=sleep,
    )
    app.router.add_get("/health", handle_health)
    app.router.add_post("/api/mark-attendance", handle_single)
    app.router.add_post("/api/mark-attendance-batch", handle_batch)

    if owned is not None:
        async def _close_submitter(_app: web.Application) -> None:
            await owned.close()

        app.on_cleanup.append(_close_submitter)
    return app


def run_relay(settings: Optional[RelaySettings] = None) -> None:
    settings = settings or RelaySettings.from_env()
    app = create_app(settings)
    step(f"Relay listening on http://{settings.host}:{settings.port}")
    web.run_app(app, host=settings.host, port=settings.port, print=None)


__all__ = ["create_app", "run_relay"]
