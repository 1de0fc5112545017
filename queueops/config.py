"""Configuration objects and environment helpers.

Everything a command needs (region, profile, proxy, drain knobs) is built
once by the CLI and passed down explicitly.
"""

from __future__ import annotations

import logging
import os
import random
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 10
EMPTY_STREAK_THRESHOLD = 10
DEFAULT_CONCURRENCY = 10
MAX_WAIT_TIME_SECONDS = 20
DEFAULT_SCAN_ENDPOINT = "https://001sg6kjid.execute-api.us-west-2.amazonaws.com/prod/scan"


def load_env_file(path: Optional[Path] = None) -> Dict[str, str]:
    """Load simple KEY=VALUE pairs from .env if present."""
    env_path = path or Path.cwd() / ".env"
    values: Dict[str, str] = {}
    if not env_path.exists():
        return values
    for line in env_path.read_text().splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, val = line.split("=", 1)
        values[key.strip()] = val.strip()
    return values


def apply_env_file(path: Optional[Path] = None) -> None:
    """Export .env values without overriding the real environment."""
    for key, value in load_env_file(path).items():
        os.environ.setdefault(key, value)


def env_str(name: str) -> Optional[str]:
    """Read a string from the environment, treating blanks as unset."""
    raw = os.getenv(name, "").strip()
    return raw or None


def env_int(name: str, default: int) -> int:
    """Read an int from the environment with a safe fallback."""
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid int for %s=%s, using default %s", name, raw, default)
        return default


def env_float(name: str, default: float) -> float:
    """Read a float from the environment with a safe fallback."""
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Invalid float for %s=%s, using default %s", name, raw, default)
        return default


def get_log_level() -> int:
    """Resolve LOG_LEVEL to a logging level constant."""
    raw = os.getenv("LOG_LEVEL", "INFO").upper()
    return getattr(logging, raw, logging.INFO)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for transient AWS errors."""

    max_retries: int = 3
    base_delay: float = 0.5
    max_delay: float = 10.0
    exponential_base: float = 2.0
    jitter: bool = True

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number `attempt` (0-based)."""
        delay = min(self.base_delay * (self.exponential_base**attempt), self.max_delay)
        if self.jitter:
            delay = random.uniform(0, delay)
        return delay


NO_RETRY = RetryPolicy(max_retries=0)


@dataclass(frozen=True)
class ToolConfig:
    """Connection settings shared by every command of one invocation."""

    region: Optional[str] = None
    profile: Optional[str] = None
    http_proxy: Optional[str] = None

    @property
    def proxies(self) -> Optional[Dict[str, str]]:
        if not self.http_proxy:
            return None
        return {"http": self.http_proxy, "https": self.http_proxy}

    def with_overrides(
        self, region: Optional[str] = None, profile: Optional[str] = None
    ) -> "ToolConfig":
        """Copy for a second account/region, e.g. a replay target."""
        return ToolConfig(
            region=region or self.region,
            profile=profile or self.profile,
            http_proxy=self.http_proxy,
        )


@dataclass(frozen=True)
class DrainConfig:
    """Knobs for one drain run.

    `wait_time_seconds=None` leaves the long-poll wait to the queue's own
    ReceiveMessageWaitTimeSeconds attribute.
    """

    concurrency: int = DEFAULT_CONCURRENCY
    keep_messages: bool = False
    stop_after_batch: bool = True
    wait_time_seconds: Optional[int] = None
    max_batch_size: int = MAX_BATCH_SIZE
    empty_streak_threshold: int = EMPTY_STREAK_THRESHOLD
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    def __post_init__(self) -> None:
        if self.concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {self.concurrency}")
        if not 1 <= self.max_batch_size <= MAX_BATCH_SIZE:
            raise ValueError(f"max_batch_size must be 1..{MAX_BATCH_SIZE}, got {self.max_batch_size}")
        if self.empty_streak_threshold < 1:
            raise ValueError(
                f"empty_streak_threshold must be >= 1, got {self.empty_streak_threshold}"
            )
        if self.wait_time_seconds is not None and not (
            0 <= self.wait_time_seconds <= MAX_WAIT_TIME_SECONDS
        ):
            raise ValueError(
                f"wait_time_seconds must be 0..{MAX_WAIT_TIME_SECONDS}, got {self.wait_time_seconds}"
            )
