# model.py
from __future__ import annotations

import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


class InstanceState(str, Enum):
    """
    Lifecycle of one job instance.

        PENDING → READY → QUEUED → RUNNING → SUCCEEDED | FAILED | CANCELLED
                        → SKIPPED (condition said skip)
        PENDING/READY/QUEUED → CANCELLED (fail-fast)
    """

    PENDING = "pending"
    READY = "ready"
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        """Whether this state is final (no further transitions)."""
        return self in TERMINAL_STATES


TERMINAL_STATES: frozenset[InstanceState] = frozenset({
    InstanceState.SUCCEEDED,
    InstanceState.FAILED,
    InstanceState.CANCELLED,
    InstanceState.SKIPPED,
})


class StepStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"
    SKIPPED = "skipped"

    @property
    def failed(self) -> bool:
        return self in (StepStatus.FAILURE, StepStatus.TIMEOUT)


class EventKind(str, Enum):
    """What triggered the run."""

    PUSH = "push"
    PULL_REQUEST = "pull_request"
    SCHEDULE = "schedule"
    MANUAL = "manual"


ALL_EVENTS: frozenset[EventKind] = frozenset(EventKind)

# needs=(ALL_JOBS,) on an aggregator means "every other job in the workflow"
ALL_JOBS = "*"


# ---------------------------------------------------------------------
# Templates (static declarations)
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class ActionRef:
    """Reference to an external, reusable action (`uses` + `with`)."""
    action: str
    inputs: Dict[str, str] = field(default_factory=dict)

    def __str__(self) -> str:
        return f"uses {self.action}"


@dataclass(frozen=True)
class StepTemplate:
    """A single unit of work inside a job. `run` is opaque to the engine."""
    id: str
    run: Any
    name: str | None = None
    when: Any = None
    continue_on_error: bool = False
    env: Dict[str, str] = field(default_factory=dict)
    cwd: str | None = None
    timeout: float | None = None

    @property
    def display_name(self) -> str:
        return self.name or self.id


@dataclass(frozen=True)
class JobTemplate:
    """
    A job before matrix expansion.

    `needs` is declared at template granularity; every instance of this
    template depends on every instance of each needed template.
    `runs_on` may reference axis values, e.g. ``runs_on="{runner}"``.
    """
    id: str
    steps: Tuple[StepTemplate, ...]
    needs: Tuple[str, ...] = ()
    matrix: Optional[Dict[str, List[Any]]] = None
    fail_fast: bool = True
    runs_on: str | None = "local"
    when: Any = None
    env: Dict[str, str] = field(default_factory=dict)
    continue_on_error: bool = False
    aggregate: bool = False

    def __hash__(self) -> int:
        return hash(self.id)


@dataclass
class Workflow:
    name: str
    jobs: List[JobTemplate]
    on: frozenset[EventKind] = ALL_EVENTS
    env: Dict[str, str] = field(default_factory=dict)

    def accepts(self, event: EventKind) -> bool:
        return event in self.on

    def job(self, job_id: str) -> JobTemplate:
        for j in self.jobs:
            if j.id == job_id:
                return j
        raise KeyError(job_id)


# ---------------------------------------------------------------------
# Instances (runtime)
# ---------------------------------------------------------------------

class AxisAssignment(Mapping):
    """Immutable mapping axis name → chosen value, in declaration order."""

    __slots__ = ("_items",)

    def __init__(self, items: Any = ()):
        if isinstance(items, Mapping):
            items = items.items()
        self._items: Tuple[Tuple[str, Any], ...] = tuple(items)

    def __getitem__(self, key: str) -> Any:
        for k, v in self._items:
            if k == key:
                return v
        raise KeyError(key)

    def __iter__(self) -> Iterator[str]:
        return (k for k, _ in self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Mapping):
            return NotImplemented
        return dict(self._items) == dict(other)

    def __hash__(self) -> int:
        return hash(frozenset(self._items))

    def __repr__(self) -> str:
        return f"AxisAssignment({dict(self._items)!r})"

    def label(self) -> str:
        return ", ".join(f"{k}={v}" for k, v in self._items)


EMPTY_ASSIGNMENT = AxisAssignment()


def runner_tag(tag: str | None, assignment: AxisAssignment) -> str | None:
    """Resolve `{axis}` placeholders in a runs_on tag. Raises KeyError for an undeclared axis."""
    if tag is None:
        return None
    return tag.format(**dict(assignment))


@dataclass(frozen=True)
class InstanceKey:
    template_id: str
    assignment: AxisAssignment = EMPTY_ASSIGNMENT

    @property
    def label(self) -> str:
        if not self.assignment:
            return self.template_id
        return f"{self.template_id}[{self.assignment.label()}]"

    def __str__(self) -> str:
        return self.label


@dataclass(frozen=True)
class StepOutcome:
    step_id: str
    status: StepStatus
    detail: str = ""
    continue_on_error: bool = False
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def hard_failure(self) -> bool:
        return self.status.failed and not self.continue_on_error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step": self.step_id,
            "status": self.status.value,
            "detail": self.detail,
            "continue_on_error": self.continue_on_error,
        }


@dataclass
class JobInstance:
    """
    One schedulable unit: a template bound to one axis assignment.

    Mutated only by the scheduler and step runner; frozen once terminal.
    """
    key: InstanceKey
    template: JobTemplate
    state: InstanceState = InstanceState.PENDING
    steps: List[StepOutcome] = field(default_factory=list)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    runner: Any = None
    reason: str | None = None
    cancel_requested: threading.Event = field(default_factory=threading.Event, repr=False)

    @property
    def label(self) -> str:
        return self.key.label

    @property
    def runs_on(self) -> str | None:
        return runner_tag(self.template.runs_on, self.key.assignment)

    @property
    def allowed_to_fail(self) -> bool:
        return self.template.continue_on_error

    def to_record(self) -> Dict[str, Any]:
        return {
            "job": self.key.template_id,
            "matrix": dict(self.key.assignment),
            "state": self.state.value,
            "reason": self.reason,
            "runner": getattr(self.runner, "id", None),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "steps": [s.to_dict() for s in self.steps],
        }


@dataclass(frozen=True)
class InstanceOutcome:
    """Frozen view of a terminal instance, as stored in the RunContext."""
    key: InstanceKey
    state: InstanceState
    reason: str | None = None
    steps: Tuple[StepOutcome, ...] = ()


class RunContext:
    """
    Process-wide state for one workflow run.

    The outcome map is the only state shared across concurrent instances:
    each key is written exactly once, at its terminal transition.
    """

    def __init__(self, event: EventKind, started_at: datetime | None = None):
        self.event = event
        self.started_at = started_at or now_utc()
        self._outcomes: Dict[InstanceKey, InstanceOutcome] = {}
        self._lock = threading.Lock()
        self._closed = False

    def record(self, outcome: InstanceOutcome) -> None:
        if not outcome.state.is_terminal:
            raise ValueError(f"{outcome.key} recorded in non-terminal state {outcome.state.value}")
        with self._lock:
            if self._closed:
                raise RuntimeError("RunContext is closed")
            if outcome.key in self._outcomes:
                raise RuntimeError(f"{outcome.key} already has a recorded outcome")
            self._outcomes[outcome.key] = outcome

    def outcome(self, key: InstanceKey) -> InstanceOutcome | None:
        with self._lock:
            return self._outcomes.get(key)

    def state_of(self, key: InstanceKey) -> InstanceState | None:
        o = self.outcome(key)
        return o.state if o is not None else None

    def outcomes(self) -> Dict[InstanceKey, InstanceOutcome]:
        with self._lock:
            return dict(self._outcomes)

    def close(self) -> None:
        with self._lock:
            self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed
