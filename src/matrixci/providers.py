# providers.py
"""
Boundary collaborators: runner provisioning, step execution, event source.

The engine only talks to the protocols below. The local implementations
make `matrixci run` useful on a developer machine.
"""
from __future__ import annotations

import itertools
import os
import platform
import re
import subprocess
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Iterable, Protocol

from .conditions import normalize_arch, normalize_os
from .errors import RunnerAcquisitionFailure
from .model import ActionRef, AxisAssignment, EMPTY_ASSIGNMENT, EventKind, StepStatus

if TYPE_CHECKING:
    from .results import RunResult


# ----------------------------------------------------------------------
# Data passed across the boundary
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class RunnerHandle:
    id: str
    tag: str | None
    os: str | None = None
    arch: str | None = None


@dataclass(frozen=True)
class StepInvocation:
    """Everything an executor needs for one step; `run` is the opaque payload."""
    job: str
    step_id: str
    run: Any
    env: Dict[str, str] = field(default_factory=dict)
    cwd: str | None = None
    matrix: AxisAssignment = EMPTY_ASSIGNMENT


@dataclass(frozen=True)
class StepResult:
    status: StepStatus
    detail: str = ""
    outputs: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def success(cls, detail: str = "", **outputs: str) -> StepResult:
        return cls(StepStatus.SUCCESS, detail, dict(outputs))

    @classmethod
    def failure(cls, detail: str = "") -> StepResult:
        return cls(StepStatus.FAILURE, detail)

    @classmethod
    def timeout(cls, detail: str = "") -> StepResult:
        return cls(StepStatus.TIMEOUT, detail)


# ----------------------------------------------------------------------
# Protocols
# ----------------------------------------------------------------------

class RunnerProvider(Protocol):
    def acquire(self, tag: str, timeout: float) -> RunnerHandle:
        """Block until a runner for `tag` is free; raise RunnerAcquisitionFailure otherwise."""
        ...

    def release(self, handle: RunnerHandle) -> None:
        ...


class StepExecutor(Protocol):
    def execute(self, invocation: StepInvocation, runner: RunnerHandle | None, timeout: float) -> StepResult:
        ...


class EventSource(Protocol):
    def event_kind(self) -> EventKind:
        ...


class ResultSink(Protocol):
    def publish(self, result: RunResult) -> None:
        ...


# ----------------------------------------------------------------------
# Local runner provider
# ----------------------------------------------------------------------

class LocalRunnerProvider:
    """
    Serves a fixed set of capability tags from this machine.

    Each tag gets `capacity` concurrent runners. A tag that is not served
    fails immediately instead of blocking forever.
    """

    def __init__(self, labels: Iterable[str] = ("local",), capacity: int = 1):
        self.labels = list(dict.fromkeys(labels))
        self.capacity = capacity
        self.os = normalize_os(platform.system())
        self.arch = normalize_arch(platform.machine())
        self._slots = {label: threading.BoundedSemaphore(capacity) for label in self.labels}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self._leased: Dict[str, RunnerHandle] = {}

    def acquire(self, tag: str, timeout: float) -> RunnerHandle:
        slots = self._slots.get(tag)
        if slots is None:
            raise RunnerAcquisitionFailure(
                tag, f"no local runner serves '{tag}' (have {self.labels})", retryable=False
            )
        if not slots.acquire(timeout=timeout):
            raise RunnerAcquisitionFailure(tag, f"timed out after {timeout:g}s waiting for a runner")
        with self._lock:
            handle = RunnerHandle(id=f"{tag}-{next(self._ids)}", tag=tag, os=self.os, arch=self.arch)
            self._leased[handle.id] = handle
        return handle

    def release(self, handle: RunnerHandle) -> None:
        with self._lock:
            if self._leased.pop(handle.id, None) is None:
                raise ValueError(f"runner {handle.id} is not leased")
        self._slots[handle.tag].release()

    @property
    def in_use(self) -> int:
        with self._lock:
            return len(self._leased)


# ----------------------------------------------------------------------
# Shell step executor
# ----------------------------------------------------------------------

_OUTPUT_TAIL = 4000


def matrix_env(assignment: AxisAssignment) -> Dict[str, str]:
    """Axis values as MATRIX_<AXIS> environment variables."""
    return {
        "MATRIX_" + re.sub(r"[^A-Za-z0-9]", "_", axis).upper(): str(value)
        for axis, value in assignment.items()
    }


class ShellStepExecutor:
    """Runs string payloads with the system shell, relative to `repo_root`."""

    def __init__(self, repo_root: str | Path = "."):
        self.repo_root = Path(repo_root).resolve()

    def execute(self, invocation: StepInvocation, runner: RunnerHandle | None, timeout: float) -> StepResult:
        if isinstance(invocation.run, ActionRef):
            return StepResult.failure(f"cannot run action '{invocation.run.action}' locally")
        if not isinstance(invocation.run, str):
            return StepResult.failure(f"unsupported step payload {type(invocation.run).__name__}")

        cwd = (self.repo_root / (invocation.cwd or ".")).resolve()
        if not cwd.exists():
            return StepResult.failure(f"cwd not found: {cwd}")

        env = os.environ.copy()
        env.update(invocation.env)
        env.update(matrix_env(invocation.matrix))
        if runner is not None:
            env["RUNNER_NAME"] = runner.id
            env["RUNNER_OS"] = runner.os or ""
            env["RUNNER_ARCH"] = runner.arch or ""

        try:
            proc = subprocess.run(
                invocation.run,
                shell=True,
                cwd=str(cwd),
                env=env,
                text=True,
                capture_output=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            return StepResult.timeout(f"timed out after {timeout:g}s: {invocation.run}")

        if proc.returncode != 0:
            tail = (proc.stderr or proc.stdout or "")[-_OUTPUT_TAIL:]
            return StepResult.failure(f"exit={proc.returncode}: {invocation.run}\n{tail}".rstrip())
        return StepResult.success(proc.stdout[-_OUTPUT_TAIL:])


# ----------------------------------------------------------------------
# Event sources
# ----------------------------------------------------------------------

class StaticEventSource:
    def __init__(self, kind: EventKind | str = EventKind.MANUAL):
        self.kind = EventKind(kind)

    def event_kind(self) -> EventKind:
        return self.kind


class EnvEventSource:
    """Reads the triggering event from an environment variable (default MATRIXCI_EVENT)."""

    def __init__(self, var: str = "MATRIXCI_EVENT", default: EventKind = EventKind.MANUAL):
        self.var = var
        self.default = default

    def event_kind(self) -> EventKind:
        raw = os.environ.get(self.var, "").strip().lower()
        return EventKind(raw) if raw else self.default
