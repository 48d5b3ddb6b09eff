"""Utilities for loading environment variables from .env files."""

from __future__ import annotations

import os
from typing import Optional

from .logger import get_logger

_log = get_logger("env")


def load_env(path: str = ".env") -> None:
    """Populate :data:`os.environ` with values from a ``.env`` file.

    Existing environment variables are not overridden. Lines beginning with
    ``#`` or without an ``=`` are ignored. Values wrapped in single or double
    quotes are unwrapped before assignment.
    """
    if not os.path.exists(path):
        return
    try:
        with open(path, "r", encoding="utf-8") as file:
            lines = file.readlines()
    except OSError as exc:
        _log.warning("Could not read %s: %s", path, exc)
        return
    for raw in lines:
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


def env_int(name: str, default: int, *, minimum: Optional[int] = None) -> int:
    """Read an integer variable, falling back to ``default`` when malformed."""
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        _log.warning("Ignoring %s=%r (expected an integer); using %s", name, raw, default)
        return default
    if minimum is not None and value < minimum:
        return minimum
    return value


def env_ms(name: str, default: int) -> float:
    """Read a millisecond duration and return it in seconds."""
    return env_int(name, default, minimum=0) / 1000


__all__ = ["load_env", "env_int", "env_ms"]
