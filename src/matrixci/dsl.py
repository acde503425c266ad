# dsl.py
from __future__ import annotations

import re
from typing import Any, Dict, Iterable, List, Optional

from .aggregate import gate
from .conditions import (
    AllOf,
    Always,
    AnyOf,
    Condition,
    EventIs,
    Failure,
    Not,
    RunnerArch,
    RunnerOs,
    Success,
)
from .model import ALL_EVENTS, ALL_JOBS, ActionRef, EventKind, JobTemplate, StepTemplate, Workflow


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def _slug(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-") or "step"


def sh(
    name: str,
    cmd: str,
    *,
    id: str | None = None,
    cwd: str | None = None,
    env: Optional[Dict[str, str]] = None,
    when: Condition | None = None,
    continue_on_error: bool = False,
    timeout: float | None = None,
) -> StepTemplate:
    """Create a shell step."""
    return StepTemplate(
        id=id or _slug(name),
        name=name,
        run=cmd,
        cwd=cwd,
        env={k: str(v) for k, v in (env or {}).items()},
        when=when,
        continue_on_error=continue_on_error,
        timeout=timeout,
    )


def uses(
    action: str,
    *,
    name: str | None = None,
    id: str | None = None,
    with_: Optional[Dict[str, Any]] = None,
    env: Optional[Dict[str, str]] = None,
    when: Condition | None = None,
    continue_on_error: bool = False,
    timeout: float | None = None,
) -> StepTemplate:
    """Create a step that invokes an external action (`uses:` / `with:`)."""
    return StepTemplate(
        id=id or _slug(name or action.split("@")[0].split("/")[-1]),
        name=name or action,
        run=ActionRef(action, {k: str(v) for k, v in (with_ or {}).items()}),
        env={k: str(v) for k, v in (env or {}).items()},
        when=when,
        continue_on_error=continue_on_error,
        timeout=timeout,
    )


# ---------------------------------------------------------------------
# Job helper
# ---------------------------------------------------------------------

def _matrix(matrix: Optional[Dict[str, Iterable[Any]]]) -> Optional[Dict[str, List[Any]]]:
    if matrix is None:
        return None
    # strings are left alone so validation can reject them as non-lists
    return {axis: values if isinstance(values, (str, bytes)) else list(values) for axis, values in matrix.items()}


def job(
    name: str,
    *steps: StepTemplate,
    needs: Optional[Iterable[str]] = None,
    matrix: Optional[Dict[str, Iterable[Any]]] = None,
    fail_fast: bool = True,
    runs_on: str | None = "local",
    when: Condition | None = None,
    env: Optional[Dict[str, str]] = None,
    continue_on_error: bool = False,
) -> JobTemplate:
    if not steps:
        raise ValueError(f"job({name!r}) must have at least one step")

    ids = [s.id for s in steps]
    if len(set(ids)) != len(ids):
        dupes = sorted({i for i in ids if ids.count(i) > 1})
        raise ValueError(f"job({name!r}) has duplicate step ids: {dupes} (pass id=... to disambiguate)")

    return JobTemplate(
        id=name,
        steps=tuple(steps),
        needs=tuple(needs or ()),
        matrix=_matrix(matrix),
        fail_fast=fail_fast,
        runs_on=runs_on,
        when=when,
        env={k: str(v) for k, v in (env or {}).items()},
        continue_on_error=continue_on_error,
    )


# ---------------------------------------------------------------------
# Conditions
# ---------------------------------------------------------------------

def always() -> Condition:
    return Always()


def success(*, allow_skipped: bool = False) -> Condition:
    return Success(allow_skipped=allow_skipped)


def failure(target: str | None = None, **axes: Any) -> Condition:
    """failure() = any upstream failed; failure("build", arch="x86_64") = that instance failed."""
    return Failure(target=target, axes=tuple(axes.items()) or None)


def runner_os(name: str) -> Condition:
    return RunnerOs(name)


def runner_arch(name: str) -> Condition:
    return RunnerArch(name)


def on_event(*kinds: EventKind | str) -> Condition:
    return EventIs(frozenset(EventKind(k) for k in kinds))


def all_of(*conditions: Condition) -> Condition:
    return AllOf(tuple(conditions))


def any_of(*conditions: Condition) -> Condition:
    return AnyOf(tuple(conditions))


def not_(condition: Condition) -> Condition:
    return Not(condition)


# ---------------------------------------------------------------------
# Workflow helper
# ---------------------------------------------------------------------

ALL = ALL_JOBS


def wf(
    *jobs: JobTemplate,
    name: str = "workflow",
    on: Optional[Iterable[EventKind | str]] = None,
    env: Optional[Dict[str, str]] = None,
) -> Workflow:
    """
    Workflow definition helper.

        from matrixci import wf, job, sh, gate

        def workflow():
            return wf(
                job("lint", sh("Lint", "ruff check .")),
                job("test", sh("Test", "pytest -q"), needs=["lint"]),
                gate("ci-complete"),
            )
    """
    triggers = frozenset(EventKind(k) for k in on) if on is not None else ALL_EVENTS
    return Workflow(
        name=name,
        jobs=list(jobs),
        on=triggers,
        env={k: str(v) for k, v in (env or {}).items()},
    )
