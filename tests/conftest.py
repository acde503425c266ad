"""Shared fakes for matrixci tests: runner provider, step executor, quiet console."""

from __future__ import annotations

import threading
import time
from typing import Callable, Dict, List, Tuple

import pytest

from matrixci.config import EngineConfig
from matrixci.dag import DependencyGraph
from matrixci.errors import RunnerAcquisitionFailure
from matrixci.model import EventKind, RunContext, Workflow
from matrixci.providers import RunnerHandle, StaticEventSource, StepInvocation, StepResult
from matrixci.scheduler import Scheduler
from matrixci.ui.console import Console, set_console


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line('markers', 'unit: fast tests with fake runners/executors')
    config.addinivalue_line('markers', 'shell: tests that spawn real shell processes')


@pytest.fixture(autouse=True)
def quiet_console() -> Console:
    console = Console(quiet=True)
    set_console(console)
    return console


# =============================================================================
# Fakes
# =============================================================================


class FakeRunnerProvider:
    """
    Counts leases per tag and enforces a per-tag capacity.

    `unserved` tags always fail; `flaky[tag] = n` fails the first n
    acquisitions of that tag; `hold[tag]` is polled until it returns True
    before the lease is granted.
    """

    def __init__(
        self,
        capacity: int = 8,
        *,
        unserved: Tuple[str, ...] = (),
        flaky: Dict[str, int] | None = None,
        platforms: Dict[str, Tuple[str, str]] | None = None,
    ):
        self.capacity = capacity
        self.unserved = set(unserved)
        self.flaky = dict(flaky or {})
        self.platforms = dict(platforms or {})
        self.hold: Dict[str, Callable[[], bool]] = {}
        self.acquired: List[RunnerHandle] = []
        self.released: List[RunnerHandle] = []
        self.attempts: Dict[str, int] = {}
        self.max_in_use = 0
        self._in_use: Dict[str, int] = {}
        self._cond = threading.Condition()
        self._next = 0

    def acquire(self, tag: str, timeout: float) -> RunnerHandle:
        with self._cond:
            self.attempts[tag] = self.attempts.get(tag, 0) + 1
            if tag in self.unserved:
                raise RunnerAcquisitionFailure(tag, f"no runner serves '{tag}'", retryable=False)
            if self.flaky.get(tag, 0) > 0:
                self.flaky[tag] -= 1
                raise RunnerAcquisitionFailure(tag, "provider busy")

        hold = self.hold.get(tag)
        if hold is not None:
            deadline = time.monotonic() + 5
            while not hold() and time.monotonic() < deadline:
                time.sleep(0.005)

        with self._cond:
            ok = self._cond.wait_for(lambda: self._in_use.get(tag, 0) < self.capacity, timeout=timeout)
            if not ok:
                raise RunnerAcquisitionFailure(tag, "timed out")
            self._in_use[tag] = self._in_use.get(tag, 0) + 1
            self.max_in_use = max(self.max_in_use, self._in_use[tag])
            self._next += 1
            os_name, arch = self.platforms.get(tag, ("linux", "x64"))
            handle = RunnerHandle(id=f"{tag}-{self._next}", tag=tag, os=os_name, arch=arch)
            self.acquired.append(handle)
            return handle

    def release(self, handle: RunnerHandle) -> None:
        with self._cond:
            self.released.append(handle)
            self._in_use[handle.tag] -= 1
            self._cond.notify_all()


class ScriptedExecutor:
    """
    Returns scripted results keyed by "<instance label>/<step id>" or by
    step id alone; everything else succeeds. A script value may be a
    StepResult, an exception instance (raised) or a callable taking the
    invocation.
    """

    def __init__(self, script: Dict[str, object] | None = None, delay: float = 0.0):
        self.script = dict(script or {})
        self.delay = delay
        self.calls: List[str] = []
        self.invocations: List[StepInvocation] = []
        self.running = 0
        self.max_running = 0
        self._lock = threading.Lock()

    def execute(self, invocation: StepInvocation, runner: RunnerHandle | None, timeout: float) -> StepResult:
        call = f"{invocation.job}/{invocation.step_id}"
        with self._lock:
            self.calls.append(call)
            self.invocations.append(invocation)
            self.running += 1
            self.max_running = max(self.max_running, self.running)
        try:
            if self.delay:
                time.sleep(self.delay)
            action = self.script.get(call, self.script.get(invocation.step_id))
            if action is None:
                return StepResult.success()
            if isinstance(action, BaseException):
                raise action
            if callable(action):
                return action(invocation)
            return action
        finally:
            with self._lock:
                self.running -= 1

    def ran(self, call: str) -> bool:
        return call in self.calls


def fast_config(**overrides) -> EngineConfig:
    values = dict(
        acquire_timeout=2.0,
        acquire_retries=3,
        acquire_backoff_initial_ms=1,
        acquire_backoff_max_ms=5,
        default_step_timeout=30.0,
    )
    values.update(overrides)
    return EngineConfig(**values)


def make_scheduler(
    jobs,
    *,
    provider=None,
    executor=None,
    config: EngineConfig | None = None,
    event: EventKind = EventKind.PUSH,
    env: Dict[str, str] | None = None,
) -> Scheduler:
    graph = DependencyGraph.build(jobs)
    return Scheduler(
        graph,
        RunContext(event=event),
        provider or FakeRunnerProvider(),
        executor or ScriptedExecutor(),
        config or fast_config(),
        workflow_env=env,
    )


def workflow_of(*jobs, on=None, env=None) -> Workflow:
    from matrixci.dsl import wf

    return wf(*jobs, name="test", on=on, env=env)


def push_events() -> StaticEventSource:
    return StaticEventSource(EventKind.PUSH)
