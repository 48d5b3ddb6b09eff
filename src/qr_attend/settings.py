"""Environment-driven settings for the client pipeline and the relay server."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional

from .errors import ConfigurationError
from .utils.env_utils import env_int, env_ms, load_env

PROCESSING_METHODS = ("batch", "queue")


def _load_env_file(env_file: Optional[str]) -> None:
    load_env(env_file or os.getenv("ENV_FILE", ".env"))


@dataclass(frozen=True)
class RetrySettings:
    max_attempts: int = 3
    base_delay: float = 1.0

    @classmethod
    def from_env(cls) -> "RetrySettings":
        return cls(
            max_attempts=env_int("RETRY_MAX_ATTEMPTS", 3, minimum=1),
            base_delay=env_ms("RETRY_BASE_DELAY_MS", 1000),
        )


@dataclass(frozen=True)
class ProcessorSettings:
    """Client-side knobs: queue pacing, batch threshold and relay location."""

    concurrency: int = 3
    delay: float = 0.3
    timeout: float = 10.0
    batch_threshold: int = 5
    batch_timeout: float = 120.0
    method: str = "batch"
    relay_url: str = "http://127.0.0.1:8080"
    retry: RetrySettings = field(default_factory=RetrySettings)

    def __post_init__(self) -> None:
        if self.method not in PROCESSING_METHODS:
            raise ConfigurationError(
                f"Unknown processing method {self.method!r}; expected one of {', '.join(PROCESSING_METHODS)}"
            )
        if self.concurrency < 1:
            object.__setattr__(self, "concurrency", 1)

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "ProcessorSettings":
        _load_env_file(env_file)
        return cls(
            concurrency=env_int("SUBMIT_CONCURRENCY", 3, minimum=1),
            delay=env_ms("SUBMIT_DELAY_MS", 300),
            timeout=env_ms("SUBMIT_TIMEOUT_MS", 10000),
            batch_threshold=env_int("BATCH_THRESHOLD", 5, minimum=1),
            batch_timeout=env_ms("BATCH_TIMEOUT_MS", 120000),
            method=(os.getenv("PROCESSING_METHOD") or "batch").strip().lower(),
            relay_url=(os.getenv("RELAY_URL") or "http://127.0.0.1:8080").strip(),
            retry=RetrySettings.from_env(),
        )


@dataclass(frozen=True)
class RelaySettings:
    """Server-side knobs, tuned independently of the client queue."""

    host: str = "127.0.0.1"
    port: int = 8080
    portal_url: str = ""
    concurrency: int = 3
    delay: float = 0.5
    timeout: float = 8.0
    retry: RetrySettings = field(default_factory=RetrySettings)

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "RelaySettings":
        _load_env_file(env_file)
        return cls(
            host=(os.getenv("RELAY_HOST") or "127.0.0.1").strip(),
            port=env_int("RELAY_PORT", 8080, minimum=1),
            portal_url=(os.getenv("PORTAL_ATTENDANCE_URL") or "").strip(),
            concurrency=env_int("RELAY_CONCURRENCY", 3, minimum=1),
            delay=env_ms("RELAY_DELAY_MS", 500),
            timeout=env_ms("RELAY_TIMEOUT_MS", 8000),
            retry=RetrySettings.from_env(),
        )

    def require_portal(self) -> str:
        if not self.portal_url:
            raise ConfigurationError("PORTAL_ATTENDANCE_URL is not set")
        return self.portal_url


__all__ = ["ProcessorSettings", "RelaySettings", "RetrySettings", "PROCESSING_METHODS"]
