# engine.py
from __future__ import annotations

import runpy
from pathlib import Path
from typing import Any, Iterable, List

from .config import EngineConfig
from .dag import DependencyGraph
from .logging import get_logger
from .model import InstanceKey, JobTemplate, RunContext, Workflow
from .providers import (
    EnvEventSource,
    EventSource,
    LocalRunnerProvider,
    ResultSink,
    RunnerProvider,
    ShellStepExecutor,
    StepExecutor,
)
from .results import RunResult
from .scheduler import Scheduler
from .ui.console import get_console

log = get_logger("engine")


# ----------------------------------------------------------------------
# Workflow loading (local file)
# ----------------------------------------------------------------------

def as_workflow(obj: Any, name: str = "workflow") -> Workflow:
    if isinstance(obj, Workflow):
        return obj
    if isinstance(obj, (list, tuple)) and all(isinstance(j, JobTemplate) for j in obj):
        return Workflow(name=name, jobs=list(obj))
    raise TypeError(
        "Workflow must return/define a Workflow or a list of jobs. "
        "Define workflow() -> wf(job(...), ...), WORKFLOW = wf(...) or JOBS = [job(...), ...]."
    )


def load_workflow(path: str | Path) -> Workflow:
    """
    Load a workflow from a python file path.

    The file must define one of:
      - workflow() -> Workflow | List[JobTemplate]
      - WORKFLOW = Workflow
      - JOBS = [JobTemplate, ...]
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix != ".py":
        raise ValueError(f"Workflow must be a .py file, got: {wf_path.name}")

    globals_dict = runpy.run_path(str(wf_path), run_name=f"matrixci_workflow_{wf_path.stem}")

    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        obj = globals_dict["workflow"]()
    elif "WORKFLOW" in globals_dict:
        obj = globals_dict["WORKFLOW"]
    elif "JOBS" in globals_dict:
        obj = globals_dict["JOBS"]
    else:
        obj = None
    return as_workflow(obj, name=wf_path.stem)


# ----------------------------------------------------------------------
# Validation / planning
# ----------------------------------------------------------------------

def validate(workflow: Workflow | Iterable[JobTemplate]) -> DependencyGraph:
    """All load-time checks; raises a WorkflowError subclass on the first problem."""
    if not isinstance(workflow, Workflow):
        workflow = as_workflow(list(workflow))
    return DependencyGraph.build(workflow.jobs)


def plan(workflow: Workflow | Iterable[JobTemplate]) -> List[List[InstanceKey]]:
    """Expanded instances grouped into stages that may run in parallel."""
    graph = validate(workflow)
    return [[k for name in level for k in graph.instances[name]] for level in graph.topo_levels()]


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def run_workflow(
    workflow: Workflow | Iterable[JobTemplate],
    *,
    provider: RunnerProvider | None = None,
    executor: StepExecutor | None = None,
    event_source: EventSource | None = None,
    config: EngineConfig | None = None,
    sink: ResultSink | None = None,
    repo_root: str | Path = ".",
) -> RunResult:
    """
    Validate, expand and run a workflow to completion.

    Load-time errors (InvalidMatrix, UnknownCondition, CyclicDependency,
    MissingDependency, DuplicateJob) are raised before anything runs.
    Job and step failures are reported in the result, never raised.
    """
    if not isinstance(workflow, Workflow):
        workflow = as_workflow(list(workflow))
    config = config or EngineConfig.from_env()
    graph = validate(workflow)

    event = (event_source or EnvEventSource()).event_kind()
    context = RunContext(event=event)

    if not workflow.accepts(event):
        log.info("workflow %s is not triggered by %s", workflow.name, event.value)
        context.close()
        result = RunResult(workflow=workflow.name, event=event, context=context, triggered=False)
    else:
        provider = provider or LocalRunnerProvider(capacity=config.runner_capacity)
        executor = executor or ShellStepExecutor(repo_root)

        get_console().print_run_started(
            workflow=workflow.name,
            event=event.value,
            job_count=len(graph.templates),
            instance_count=len(graph.all_instances()),
        )
        scheduler = Scheduler(graph, context, provider, executor, config, workflow_env=workflow.env)
        instances = scheduler.run()
        context.close()
        result = RunResult(workflow=workflow.name, event=event, context=context, instances=instances)

    if sink is not None:
        sink.publish(result)
    return result
