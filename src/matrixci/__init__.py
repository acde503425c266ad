from .dsl import ALL, all_of, always, any_of, failure, gate, job, not_, on_event, runner_arch, runner_os, sh, success, uses, wf
from .engine import load_workflow, plan, run_workflow, validate
from .model import EventKind, InstanceState, JobTemplate, StepTemplate, Workflow
from .results import RunResult

__all__ = [
    "ALL", "all_of", "always", "any_of", "failure", "gate", "job", "not_", "on_event",
    "runner_arch", "runner_os", "sh", "success", "uses", "wf",
    "load_workflow", "plan", "run_workflow", "validate",
    "EventKind", "InstanceState", "JobTemplate", "StepTemplate", "Workflow", "RunResult",
]
