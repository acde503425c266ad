# aggregate.py
"""Status aggregator: collapse a set of jobs into one pass/fail signal."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Sequence, Tuple

from .conditions import Always
from .model import ALL_JOBS, InstanceKey, InstanceState, JobTemplate, RunContext, StepTemplate


@dataclass(frozen=True)
class GateCheck:
    """Built-in step payload, evaluated inside the engine rather than on a runner."""

    def __str__(self) -> str:
        return "gate check"


def verdict(
    needs: Sequence[str],
    context: RunContext,
    instances: Dict[str, List[InstanceKey]],
) -> Tuple[bool, str]:
    """
    (ok, detail). ok iff every needed job exists in the run and every one
    of its instances resolved to SUCCEEDED.
    """
    outcomes = context.outcomes()
    problems: List[str] = []
    for job_id in needs:
        keys = instances.get(job_id)
        if keys is None:
            problems.append(f"{job_id}: missing")
            continue
        for key in keys:
            o = outcomes.get(key)
            if o is None:
                problems.append(f"{key.label}: unresolved")
            elif o.state is not InstanceState.SUCCEEDED:
                problems.append(f"{key.label}: {o.state.value}")
    if problems:
        return False, "required jobs did not succeed: " + "; ".join(problems)
    return True, f"{len(needs)} required job(s) succeeded"


def gate(
    name: str,
    needs: Iterable[str] | str = ALL_JOBS,
    *,
    runs_on: str | None = None,
) -> JobTemplate:
    """
    Terminal job that succeeds iff every job in `needs` succeeded.

    needs=ALL_JOBS (the default) means every other non-aggregator job.
    The gate itself always runs; a failed/skipped/cancelled/missing
    requirement makes its single step fail.
    """
    if isinstance(needs, str):
        needs = (needs,)
    check = StepTemplate(id="gate", name=f"{name} complete", run=GateCheck(), when=Always())
    return JobTemplate(
        id=name,
        steps=(check,),
        needs=tuple(dict.fromkeys(needs)),
        runs_on=runs_on,
        when=Always(),
        aggregate=True,
    )
