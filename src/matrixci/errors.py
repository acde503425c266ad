# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List


@dataclass
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - debugging without full tracebacks
    """
    kind: str
    message: str
    job: str | None = None
    step: str | None = None
    details: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        super().__init__(self.message)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


# ----------------------------------------------------------------------
# Load-time validation (abort the run before anything is dispatched)
# ----------------------------------------------------------------------

class WorkflowError(CIError):
    """Base for errors raised while loading/validating a workflow."""


class InvalidMatrix(WorkflowError):
    def __init__(self, job: str, message: str, **details: Any):
        super().__init__(kind="InvalidMatrix", message=message, job=job, details=details)


class UnknownCondition(WorkflowError):
    def __init__(self, message: str, *, job: str | None = None, step: str | None = None, **details: Any):
        super().__init__(kind="UnknownCondition", message=message, job=job, step=step, details=details)


class CyclicDependency(WorkflowError):
    def __init__(self, cycle: List[str]):
        self.cycle = list(cycle)
        super().__init__(
            kind="CyclicDependency",
            message=" -> ".join(self.cycle),
            details={"cycle": self.cycle},
        )


class MissingDependency(WorkflowError):
    def __init__(self, job: str, missing: str, known: List[str]):
        super().__init__(
            kind="MissingDependency",
            message=f"Job '{job}' needs missing job '{missing}'",
            job=job,
            details={"known": sorted(known)},
        )


class DuplicateJob(WorkflowError):
    def __init__(self, names: List[str]):
        super().__init__(
            kind="DuplicateJob",
            message=f"Duplicate job names found: {sorted(names)}",
        )


# ----------------------------------------------------------------------
# Runtime (recovered into instance outcomes, never crash the engine)
# ----------------------------------------------------------------------

class StepFailure(CIError):
    def __init__(self, job: str, step: str, detail: str = ""):
        super().__init__(kind="StepFailure", message=detail or "step failed", job=job, step=step)


class StepTimeout(CIError):
    def __init__(self, job: str, step: str, timeout: float):
        super().__init__(
            kind="StepTimeout",
            message=f"step exceeded {timeout:g}s",
            job=job,
            step=step,
            details={"timeout": timeout},
        )


class RunnerAcquisitionFailure(CIError):
    """
    Provider exhausted, unavailable, or cannot serve the capability tag.

    retryable=False means waiting cannot help (the tag is never served).
    """

    def __init__(self, tag: str | None, message: str = "no runner available", *, retryable: bool = True):
        super().__init__(kind="RunnerAcquisitionFailure", message=message, details={"runs_on": tag})
        self.tag = tag
        self.retryable = retryable
