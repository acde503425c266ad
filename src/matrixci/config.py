# config.py
from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import Any


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    return float(raw) if raw not in (None, "") else default


def _env_int(name: str, default: int | None) -> int | None:
    raw = os.environ.get(name)
    return int(raw) if raw not in (None, "") else default


@dataclass(frozen=True)
class EngineConfig:
    # Thread pool size; None = one thread per instance, capped at max_threads
    max_workers: int | None = None
    max_threads: int = 64
    # Steps without their own timeout get this one (GitHub's 360 minutes)
    default_step_timeout: float = 6 * 60 * 60
    # How long a single provider.acquire() may block
    acquire_timeout: float = 600.0
    # Retry policy for RunnerAcquisitionFailure; 0 attempts = fail on first error
    acquire_retries: int = 3
    acquire_backoff_initial_ms: int = 500
    acquire_backoff_max_ms: int = 30_000
    # Runners per capability tag for the local provider
    runner_capacity: int = os.cpu_count() or 2

    def __post_init__(self) -> None:
        if self.max_workers is not None and self.max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        if self.acquire_retries < 0:
            raise ValueError("acquire_retries must be >= 0")
        if self.acquire_backoff_max_ms < self.acquire_backoff_initial_ms:
            raise ValueError("acquire_backoff_max_ms must be >= acquire_backoff_initial_ms")
        if self.runner_capacity < 1:
            raise ValueError("runner_capacity must be >= 1")

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Read MATRIXCI_* environment variables over the defaults."""
        base = cls()
        return cls(
            max_workers=_env_int("MATRIXCI_MAX_WORKERS", base.max_workers),
            default_step_timeout=_env_float("MATRIXCI_STEP_TIMEOUT", base.default_step_timeout),
            acquire_timeout=_env_float("MATRIXCI_ACQUIRE_TIMEOUT", base.acquire_timeout),
            acquire_retries=_env_int("MATRIXCI_ACQUIRE_RETRIES", base.acquire_retries),
            acquire_backoff_initial_ms=_env_int("MATRIXCI_ACQUIRE_BACKOFF_MS", base.acquire_backoff_initial_ms),
            acquire_backoff_max_ms=_env_int("MATRIXCI_ACQUIRE_BACKOFF_MAX_MS", base.acquire_backoff_max_ms),
            runner_capacity=_env_int("MATRIXCI_RUNNER_CAPACITY", base.runner_capacity),
        )

    def override(self, **changes: Any) -> EngineConfig:
        """Copy with the non-None changes applied (CLI flags)."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})
