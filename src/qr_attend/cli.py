"""Command line entry point: ``qr-attend mark`` and ``qr-attend serve``."""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import sys
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from .batch import BatchClient
from .errors import ConfigurationError
from .models import BatchReport, UserAccount
from .processor import AttendanceProcessor
from .progress import ProgressDisplay, render_report
from .server import run_relay
from .settings import ProcessorSettings, RelaySettings
from .submitter import HttpSubmitter
from .utils.logger import configure_from_env, logger, set_log_profile

EXIT_OK = 0
EXIT_FAILURES = 1
EXIT_CONFIG = 2


def load_users(path: Path | str) -> Tuple[List[UserAccount], List[Optional[str]]]:
    """Read ``[{"stuId"|"identifier", "name", "cookie"|"sessionToken"}, ...]``."""
    path = Path(path)
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ConfigurationError(f"Cannot read users file {path}: {exc}") from exc
    except ValueError as exc:
        raise ConfigurationError(f"Users file {path} is not valid JSON: {exc}") from exc
    if not isinstance(payload, list):
        raise ConfigurationError("Users file must contain a JSON list")

    users: List[UserAccount] = []
    tokens: List[Optional[str]] = []
    for entry in payload:
        if not isinstance(entry, dict):
            raise ConfigurationError("Each user entry must be an object")
        identifier = entry.get("identifier") or entry.get("stuId")
        if not identifier:
            raise ConfigurationError(f"User entry missing identifier: {entry.get('name') or entry}")
        users.append(UserAccount(identifier=str(identifier), name=str(entry.get("name") or "")))
        token = entry.get("sessionToken") or entry.get("cookie")
        tokens.append(str(token) if token else None)
    return users, tokens


async def run_mark(
    users: Sequence[UserAccount],
    event_id: str,
    tokens: Sequence[Optional[str]],
    settings: ProcessorSettings,
) -> BatchReport:
    async with HttpSubmitter(settings.relay_url, timeout=settings.timeout) as submitter, BatchClient(
        settings.relay_url, timeout=settings.batch_timeout
    ) as batch_client:
        processor = AttendanceProcessor(submitter, batch_submitter=batch_client, settings=settings)
        with ProgressDisplay(len(users)) as display:
            return await processor.process(users, event_id, tokens, on_progress=display)


def _cmd_mark(args: argparse.Namespace) -> int:
    settings = ProcessorSettings.from_env(args.env_file)
    configure_from_env(args.log_profile)
    overrides = {}
    if args.method:
        overrides["method"] = args.method
    if args.relay:
        overrides["relay_url"] = args.relay
    if overrides:
        settings = dataclasses.replace(settings, **overrides)

    users, tokens = load_users(args.users)
    report = asyncio.run(run_mark(users, args.event, tokens, settings))
    render_report(report)
    return EXIT_OK if report.failed == 0 else EXIT_FAILURES


def _cmd_serve(args: argparse.Namespace) -> int:
    settings = RelaySettings.from_env(args.env_file)
    configure_from_env(args.log_profile)
    overrides = {}
    if args.host:
        overrides["host"] = args.host
    if args.port:
        overrides["port"] = args.port
    if overrides:
        settings = dataclasses.replace(settings, **overrides)
    settings.require_portal()
    run_relay(settings)
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="qr-attend", description="Mark attendance for several accounts")
    parser.add_argument("--env-file", help="Path to .env file (default: $ENV_FILE or .env)")
    parser.add_argument("--log-profile", choices=["quiet", "user", "debug"], help="Console verbosity")
    sub = parser.add_subparsers(dest="command", required=True)

    mark = sub.add_parser("mark", help="Submit attendance for every user in a users file")
    mark.add_argument("--users", required=True, help="JSON file with identifiers and session cookies")
    mark.add_argument("--event", required=True, help="Attendance event id decoded from the QR code")
    mark.add_argument("--method", choices=["batch", "queue"], help="Preferred processing method")
    mark.add_argument("--relay", help="Relay base URL (default: $RELAY_URL)")
    mark.set_defaults(handler=_cmd_mark)

    serve = sub.add_parser("serve", help="Run the attendance relay server")
    serve.add_argument("--host", help="Bind address (default: $RELAY_HOST)")
    serve.add_argument("--port", type=int, help="Bind port (default: $RELAY_PORT)")
    serve.set_defaults(handler=_cmd_serve)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    if args.log_profile:
        set_log_profile(args.log_profile)
    try:
        return args.handler(args)
    except ConfigurationError as exc:
        logger.error(str(exc))
        return EXIT_CONFIG
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return EXIT_FAILURES


if __name__ == "__main__":
    sys.exit(main())
