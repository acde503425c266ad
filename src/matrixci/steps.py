# steps.py
from __future__ import annotations

from dataclasses import replace
from typing import Dict, Tuple

from . import aggregate
from .conditions import Decision, Facts, Upstream, evaluate, facts_from_tag
from .config import EngineConfig
from .errors import StepFailure, StepTimeout
from .logging import get_logger
from .model import InstanceState, JobInstance, RunContext, StepOutcome, StepStatus, StepTemplate, now_utc
from .providers import RunnerHandle, StepExecutor, StepInvocation, StepResult
from .ui.console import get_console

log = get_logger("steps")


def _as_upstream(outcome: StepOutcome) -> Upstream:
    if outcome.status is StepStatus.SKIPPED:
        state = InstanceState.SKIPPED
    elif outcome.hard_failure:
        state = InstanceState.FAILED
    else:
        # continue-on-error failures conclude as success
        state = InstanceState.SUCCEEDED
    return Upstream(name=outcome.step_id, state=state, failed=outcome.status.failed)


class StepRunner:
    """
    Executes one instance's steps strictly in order on its runner.

    A step that fails without continue-on-error fails the instance; later
    steps then run only if their own condition still says so (always(),
    failure(...)). A cancel request is checked between steps, never
    in the middle of one.
    """

    def __init__(
        self,
        executor: StepExecutor,
        context: RunContext,
        instances: Dict[str, list],
        config: EngineConfig,
        workflow_env: Dict[str, str] | None = None,
    ):
        self.executor = executor
        self.context = context
        self.instances = instances
        self.config = config
        self.workflow_env = dict(workflow_env or {})

    def run(self, instance: JobInstance, runner: RunnerHandle | None) -> Tuple[InstanceState, str | None]:
        console = get_console()
        if runner is not None:
            runner_os, runner_arch = runner.os, runner.arch
        else:
            runner_os, runner_arch = facts_from_tag(instance.runs_on)

        first_failure: StepOutcome | None = None
        skipped_by_cancel = False

        for step in instance.template.steps:
            facts = Facts(
                event=self.context.event,
                upstream=tuple(_as_upstream(o) for o in instance.steps),
                runner_os=runner_os,
                runner_arch=runner_arch,
                step_scope=True,
                cancelled=instance.cancel_requested.is_set(),
            )
            if evaluate(step.when, facts) is Decision.SKIP:
                because_cancel = facts.cancelled and evaluate(step.when, replace(facts, cancelled=False)) is Decision.RUN
                skipped_by_cancel = skipped_by_cancel or because_cancel
                instance.steps.append(StepOutcome(
                    step_id=step.id,
                    status=StepStatus.SKIPPED,
                    detail="cancelled" if because_cancel else "condition",
                    continue_on_error=step.continue_on_error,
                ))
                console.print_step_skipped(instance.label, step.display_name)
                continue

            console.print_step(instance.label, step.display_name)
            started = now_utc()
            result = self._execute(instance, step, runner)
            outcome = StepOutcome(
                step_id=step.id,
                status=result.status,
                detail=result.detail,
                continue_on_error=step.continue_on_error,
                started_at=started,
                finished_at=now_utc(),
            )
            instance.steps.append(outcome)

            if outcome.status.failed:
                console.print_failure(
                    f"{instance.label} / {step.display_name}",
                    outcome.detail,
                    hint="continue-on-error" if step.continue_on_error else None,
                )
                if outcome.hard_failure and first_failure is None:
                    first_failure = outcome

        if first_failure is not None:
            verb = "timed out" if first_failure.status is StepStatus.TIMEOUT else "failed"
            return InstanceState.FAILED, f"step '{first_failure.step_id}' {verb}"
        if skipped_by_cancel:
            return InstanceState.CANCELLED, "fail-fast"
        return InstanceState.SUCCEEDED, None

    def _execute(self, instance: JobInstance, step: StepTemplate, runner: RunnerHandle | None) -> StepResult:
        if isinstance(step.run, aggregate.GateCheck):
            ok, detail = aggregate.verdict(instance.template.needs, self.context, self.instances)
            return StepResult.success(detail) if ok else StepResult.failure(detail)

        env: Dict[str, str] = {}
        env.update(self.workflow_env)
        env.update(instance.template.env)
        env.update(step.env)
        invocation = StepInvocation(
            job=instance.label,
            step_id=step.id,
            run=step.run,
            env=env,
            cwd=step.cwd,
            matrix=instance.key.assignment,
        )
        timeout = step.timeout if step.timeout is not None else self.config.default_step_timeout

        try:
            result = self.executor.execute(invocation, runner, timeout)
        except StepTimeout as e:
            return StepResult.timeout(e.message)
        except StepFailure as e:
            return StepResult.failure(e.message)
        except Exception as e:
            # an executor crash is a step failure, not an engine failure
            log.debug("executor raised for %s/%s", instance.label, step.id, exc_info=True)
            return StepResult.failure(f"{type(e).__name__}: {e}")

        if not isinstance(result, StepResult) or result.status is StepStatus.SKIPPED:
            return StepResult.failure(f"executor returned {result!r}")
        return result
