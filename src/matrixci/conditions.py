# conditions.py
"""
Closed set of run/skip predicates for jobs and steps.

Conditions are plain frozen dataclasses composed with AllOf/AnyOf/Not.
There is no expression language: anything that is not one of the
predicate types below is rejected by `validate()` when the workflow is
loaded, so `evaluate()` is total at run time.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Optional, Tuple

from .errors import UnknownCondition
from .model import AxisAssignment, EMPTY_ASSIGNMENT, EventKind, InstanceState


class Decision(str, Enum):
    RUN = "run"
    SKIP = "skip"


# ---------------------------------------------------------------------
# Predicates
# ---------------------------------------------------------------------

class Condition:
    """Marker base for the predicate types."""


@dataclass(frozen=True)
class Always(Condition):
    """Run regardless of upstream outcomes (cleanup, reporting, gates)."""


@dataclass(frozen=True)
class Success(Condition):
    """Run only if every upstream succeeded. The default when no condition is set."""
    allow_skipped: bool = False


@dataclass(frozen=True)
class Failure(Condition):
    """
    Run only if an upstream failed.

    target=None means any upstream; otherwise a job id (job scope) or a
    step id (step scope). `axes` narrows a job target to matching
    matrix instances.
    """
    target: Optional[str] = None
    axes: Optional[Tuple[Tuple[str, Any], ...]] = None

    def matches(self, name: str, assignment: AxisAssignment) -> bool:
        if self.target is not None and name != self.target:
            return False
        if self.axes:
            return all(assignment.get(k) == v for k, v in self.axes)
        return True


@dataclass(frozen=True)
class RunnerOs(Condition):
    os: str


@dataclass(frozen=True)
class RunnerArch(Condition):
    arch: str


@dataclass(frozen=True)
class EventIs(Condition):
    kinds: FrozenSet[EventKind]


@dataclass(frozen=True)
class AllOf(Condition):
    conditions: Tuple[Condition, ...]


@dataclass(frozen=True)
class AnyOf(Condition):
    conditions: Tuple[Condition, ...]


@dataclass(frozen=True)
class Not(Condition):
    condition: Condition


DEFAULT_CONDITION = Success()


# ---------------------------------------------------------------------
# Platform names
# ---------------------------------------------------------------------

_OS_ALIASES: Dict[str, str] = {
    "linux": "linux",
    "ubuntu": "linux",
    "debian": "linux",
    "macos": "macos",
    "darwin": "macos",
    "osx": "macos",
    "windows": "windows",
    "win32": "windows",
}

_ARCH_ALIASES: Dict[str, str] = {
    "x64": "x64",
    "x86_64": "x64",
    "amd64": "x64",
    "arm64": "arm64",
    "aarch64": "arm64",
    "arm": "arm",
    "armv7": "arm",
    "armv7l": "arm",
    "riscv64": "riscv64",
}


def normalize_os(name: str | None) -> str | None:
    if not name:
        return None
    return _OS_ALIASES.get(name.strip().lower(), name.strip().lower())


def normalize_arch(name: str | None) -> str | None:
    if not name:
        return None
    return _ARCH_ALIASES.get(name.strip().lower(), name.strip().lower())


def facts_from_tag(tag: str | None) -> Tuple[str | None, str | None]:
    """
    Best-effort (os, arch) for a capability tag like ``ubuntu-22.04`` or
    ``macos-14-arm64``. Unknown parts come back as None.
    """
    if not tag:
        return None, None
    os_name = arch = None
    for part in tag.lower().replace("_", "-").split("-"):
        if os_name is None and part in _OS_ALIASES:
            os_name = _OS_ALIASES[part]
        if arch is None and part in _ARCH_ALIASES:
            arch = _ARCH_ALIASES[part]
    # x86_64 is split by the replace above
    if arch is None and "x86_64" in tag.lower():
        arch = "x64"
    return os_name, arch


# ---------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Upstream:
    """
    What a condition can see about one upstream job instance or step.

    `state` is the conclusion used by Success; `failed` is the raw outcome
    used by Failure (a continue-on-error step concludes SUCCEEDED but
    still reports failed=True).
    """
    name: str
    state: InstanceState
    failed: bool = False
    assignment: AxisAssignment = EMPTY_ASSIGNMENT


@dataclass(frozen=True)
class Facts:
    event: EventKind
    upstream: Tuple[Upstream, ...] = ()
    runner_os: str | None = None
    runner_arch: str | None = None
    step_scope: bool = False
    cancelled: bool = False


def _holds(cond: Condition, facts: Facts) -> bool:
    if isinstance(cond, Always):
        return True

    if isinstance(cond, Success):
        if facts.step_scope:
            if facts.cancelled:
                return False
            return not any(u.state is InstanceState.FAILED for u in facts.upstream)
        for u in facts.upstream:
            if u.state is InstanceState.SUCCEEDED:
                continue
            if cond.allow_skipped and u.state is InstanceState.SKIPPED:
                continue
            return False
        return True

    if isinstance(cond, Failure):
        return any(u.failed and cond.matches(u.name, u.assignment) for u in facts.upstream)

    if isinstance(cond, RunnerOs):
        return facts.runner_os is not None and normalize_os(cond.os) == normalize_os(facts.runner_os)

    if isinstance(cond, RunnerArch):
        return facts.runner_arch is not None and normalize_arch(cond.arch) == normalize_arch(facts.runner_arch)

    if isinstance(cond, EventIs):
        return facts.event in cond.kinds

    if isinstance(cond, AllOf):
        return all(_holds(c, facts) for c in cond.conditions)

    if isinstance(cond, AnyOf):
        return any(_holds(c, facts) for c in cond.conditions)

    if isinstance(cond, Not):
        return not _holds(cond.condition, facts)

    # validate() runs at load time, so reaching this is a programming error
    raise UnknownCondition(f"unsupported condition {cond!r}")


def _checks_status(cond: Condition) -> bool:
    if isinstance(cond, (Always, Success, Failure)):
        return True
    if isinstance(cond, (AllOf, AnyOf)):
        return any(_checks_status(c) for c in cond.conditions)
    if isinstance(cond, Not):
        return _checks_status(cond.condition)
    return False


def implies_success(condition: Condition | None) -> bool:
    """True when the default `Success()` applies to this condition."""
    return condition is None or not _checks_status(condition)


def effective(condition: Condition | None) -> Condition:
    """
    The condition actually evaluated.

    A tree with no status predicate (only runner, event or their
    compositions) filters on top of the default `Success()`, so
    `runner_os("linux")` still skips after an upstream failure.
    """
    if condition is None:
        return DEFAULT_CONDITION
    if implies_success(condition):
        return AllOf((DEFAULT_CONDITION, condition))
    return condition


def evaluate(condition: Condition | None, facts: Facts) -> Decision:
    return Decision.RUN if _holds(effective(condition), facts) else Decision.SKIP


# ---------------------------------------------------------------------
# Load-time validation
# ---------------------------------------------------------------------

def validate(
    condition: Any,
    *,
    targets: Iterable[str],
    job: str | None = None,
    step: str | None = None,
) -> None:
    """
    Reject anything outside the predicate set.

    `targets` are the names a Failure(target=...) may refer to: the job's
    needs at job scope, earlier step ids at step scope.
    """
    if condition is None:
        return
    known = set(targets)

    def _check(cond: Any) -> None:
        if isinstance(cond, (Always, Success)):
            return
        if isinstance(cond, Failure):
            if cond.target is not None and cond.target not in known:
                raise UnknownCondition(
                    f"failure() refers to '{cond.target}', which is not upstream",
                    job=job,
                    step=step,
                    upstream=sorted(known),
                )
            return
        if isinstance(cond, RunnerOs):
            if not cond.os:
                raise UnknownCondition("runner_os() needs an OS name", job=job, step=step)
            return
        if isinstance(cond, RunnerArch):
            if not cond.arch:
                raise UnknownCondition("runner_arch() needs an architecture", job=job, step=step)
            return
        if isinstance(cond, EventIs):
            if not cond.kinds or not all(isinstance(k, EventKind) for k in cond.kinds):
                raise UnknownCondition(f"invalid event kinds {cond.kinds!r}", job=job, step=step)
            return
        if isinstance(cond, (AllOf, AnyOf)):
            if not cond.conditions:
                raise UnknownCondition(f"{type(cond).__name__} needs at least one condition", job=job, step=step)
            for c in cond.conditions:
                _check(c)
            return
        if isinstance(cond, Not):
            _check(cond.condition)
            return
        raise UnknownCondition(f"unknown condition {cond!r}", job=job, step=step)

    _check(condition)
