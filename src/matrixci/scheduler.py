# scheduler.py
from __future__ import annotations

import random
import threading
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Deque, Dict, List, Tuple

from .conditions import Decision, Facts, Upstream, evaluate, facts_from_tag, implies_success
from .config import EngineConfig
from .dag import DependencyGraph
from .errors import RunnerAcquisitionFailure
from .logging import get_logger
from .model import InstanceKey, InstanceOutcome, InstanceState, JobInstance, RunContext, now_utc
from .providers import RunnerHandle, RunnerProvider, StepExecutor
from .steps import StepRunner
from .ui.console import get_console

log = get_logger("scheduler")

# States fail-fast may still preempt without ever dispatching
_PREEMPTIBLE = frozenset({InstanceState.PENDING, InstanceState.READY, InstanceState.QUEUED})


@dataclass
class _RetryBackoff:
    initial_ms: int
    max_ms: int
    max_attempts: int
    attempts: int = 0

    def can_retry(self) -> bool:
        return self.attempts < self.max_attempts

    def next_delay_seconds(self) -> float:
        self.attempts += 1
        exponent = max(0, self.attempts - 1)
        base_ms = min(self.max_ms, int(self.initial_ms * (2**exponent)))
        jitter_range = base_ms * 0.25
        delay_ms = base_ms + random.uniform(-jitter_range, jitter_range)
        return max(0.01, delay_ms / 1000.0)


class Scheduler:
    """
    Drives every instance of a run to exactly one terminal state.

    The calling thread owns the state machine: it evaluates readiness and
    conditions, applies fail-fast, and records outcomes. Each dispatched
    instance runs on a pool thread (runner acquisition + steps) and
    reports back through its future. Readiness is re-evaluated only when
    something becomes terminal.
    """

    def __init__(
        self,
        graph: DependencyGraph,
        context: RunContext,
        provider: RunnerProvider,
        executor: StepExecutor,
        config: EngineConfig | None = None,
        workflow_env: Dict[str, str] | None = None,
    ):
        self.graph = graph
        self.context = context
        self.provider = provider
        self.config = config or EngineConfig()
        self.instances: Dict[InstanceKey, JobInstance] = {
            key: JobInstance(key=key, template=graph.templates[key.template_id])
            for key in graph.all_instances()
        }
        self.step_runner = StepRunner(executor, context, graph.instances, self.config, workflow_env)
        self._lock = threading.RLock()
        self._work: Deque[InstanceKey] = deque()
        self._in_flight: Dict[Future, JobInstance] = {}
        self._pool: ThreadPoolExecutor | None = None

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    def run(self) -> List[JobInstance]:
        ordered = [self.instances[k] for k in self.graph.all_instances()]
        if not ordered:
            return ordered

        workers = self.config.max_workers or min(len(ordered), self.config.max_threads)
        log.debug("scheduling %d instance(s) on %d worker thread(s)", len(ordered), workers)

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="matrixci") as pool:
            self._pool = pool
            self._work.extend(i.key for i in ordered)
            self._drain()

            while self._in_flight:
                done, _ = wait(list(self._in_flight), return_when=FIRST_COMPLETED)
                for fut in done:
                    inst = self._in_flight.pop(fut)
                    self._complete(inst, fut)
                self._drain()
            self._pool = None

        stuck = [i.label for i in ordered if not i.state.is_terminal]
        if stuck:
            raise RuntimeError(f"scheduler finished with non-terminal instances: {stuck}")
        return ordered

    def _drain(self) -> None:
        """Process instances whose readiness may have changed."""
        while self._work:
            key = self._work.popleft()
            inst = self.instances[key]
            if inst.state is not InstanceState.PENDING:
                continue
            if not self.graph.is_ready(key, self.context):
                continue

            self._transition(inst, InstanceState.READY)
            decision, reason = self._decide(inst)
            if decision is Decision.SKIP:
                get_console().print_job_skipped(inst.label, reason)
                self._finish(inst, InstanceState.SKIPPED, reason)
                continue

            self._transition(inst, InstanceState.QUEUED)
            fut = self._pool.submit(self._execute, inst)
            self._in_flight[fut] = inst

    def _decide(self, inst: JobInstance) -> Tuple[Decision, str | None]:
        template = inst.template
        if template.aggregate:
            # the gate always runs; its step reports the verdict
            return Decision.RUN, None

        upstream = []
        for dep in self.graph.ordered_dependencies(inst.key):
            state = self.context.state_of(dep)
            upstream.append(Upstream(
                name=dep.template_id,
                state=state,
                failed=state is InstanceState.FAILED,
                assignment=dep.assignment,
            ))
        runner_os, runner_arch = facts_from_tag(inst.runs_on)
        facts = Facts(
            event=self.context.event,
            upstream=tuple(upstream),
            runner_os=runner_os,
            runner_arch=runner_arch,
        )
        if evaluate(template.when, facts) is Decision.RUN:
            return Decision.RUN, None

        blocked = [u for u in upstream if u.state is not InstanceState.SUCCEEDED]
        if implies_success(template.when) and blocked:
            first = blocked[0]
            label = InstanceKey(first.name, first.assignment).label
            return Decision.SKIP, f"upstream {label} {first.state.value}"
        return Decision.SKIP, "condition"

    # ------------------------------------------------------------------
    # State transitions (calling thread, except QUEUED -> RUNNING)
    # ------------------------------------------------------------------

    def _transition(self, inst: JobInstance, state: InstanceState) -> None:
        with self._lock:
            if inst.state.is_terminal:
                raise RuntimeError(f"{inst.label} is already {inst.state.value}; cannot become {state.value}")
            log.debug("%s: %s -> %s", inst.label, inst.state.value, state.value)
            inst.state = state

    def _finish(self, inst: JobInstance, state: InstanceState, reason: str | None) -> None:
        with self._lock:
            self._transition(inst, state)
            inst.reason = reason
            inst.finished_at = now_utc()
            self.context.record(InstanceOutcome(
                key=inst.key,
                state=state,
                reason=reason,
                steps=tuple(inst.steps),
            ))

        if state is not InstanceState.SKIPPED:
            get_console().print_job_finished(inst.label, state.value, reason)

        if state is InstanceState.FAILED and inst.template.fail_fast and not inst.allowed_to_fail:
            self._fail_fast(inst)

        self._work.extend(self.graph.ordered_dependents(inst.key))

    def _fail_fast(self, failed: JobInstance) -> None:
        """Cancel the failed instance's matrix siblings. Running ones are asked, not killed."""
        for key in self.graph.siblings(failed.key):
            sib = self.instances[key]
            with self._lock:
                if sib.state in _PREEMPTIBLE:
                    sib.cancel_requested.set()
                    log.info("fail-fast: cancelling %s (%s) after %s failed", sib.label, sib.state.value, failed.label)
                    self._finish(sib, InstanceState.CANCELLED, f"fail-fast: {failed.label} failed")
                elif sib.state is InstanceState.RUNNING:
                    log.info("fail-fast: requesting cancel of running %s", sib.label)
                    sib.cancel_requested.set()

    def _complete(self, inst: JobInstance, fut: Future) -> None:
        try:
            result = fut.result()
        except RunnerAcquisitionFailure as e:
            if not inst.state.is_terminal:
                log.warning("%s: giving up on runner '%s': %s", inst.label, inst.runs_on, e.message)
                self._finish(inst, InstanceState.FAILED, f"runner-unavailable: {e.message}")
            return
        except Exception as e:
            log.error("%s: engine error", inst.label, exc_info=True)
            if not inst.state.is_terminal:
                self._finish(inst, InstanceState.FAILED, f"engine-error: {type(e).__name__}: {e}")
            return

        if result is None:
            # preempted before dispatch; already terminal
            return
        state, reason = result
        if state is InstanceState.SUCCEEDED and inst.cancel_requested.is_set():
            # finished its steps after a sibling failed; step outcomes stay as recorded
            state, reason = InstanceState.CANCELLED, "fail-fast"
        self._finish(inst, state, reason)

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------

    def _execute(self, inst: JobInstance) -> Tuple[InstanceState, str | None] | None:
        handle: RunnerHandle | None = None
        try:
            tag = inst.runs_on
            if tag is not None:
                handle = self._acquire(inst, tag)
                if handle is None:
                    return None

            with self._lock:
                if inst.state is not InstanceState.QUEUED:
                    # cancelled by fail-fast while waiting for capacity
                    return None
                self._transition(inst, InstanceState.RUNNING)
                inst.runner = handle
                inst.started_at = now_utc()

            get_console().print_job_start(inst.label, handle.id if handle else None)
            return self.step_runner.run(inst, handle)
        finally:
            if handle is not None:
                self.provider.release(handle)
                log.debug("%s: released runner %s", inst.label, handle.id)

    def _acquire(self, inst: JobInstance, tag: str) -> RunnerHandle | None:
        backoff = _RetryBackoff(
            initial_ms=self.config.acquire_backoff_initial_ms,
            max_ms=self.config.acquire_backoff_max_ms,
            max_attempts=self.config.acquire_retries,
        )
        while True:
            if inst.cancel_requested.is_set():
                return None
            try:
                handle = self.provider.acquire(tag, self.config.acquire_timeout)
                log.debug("%s: acquired runner %s", inst.label, handle.id)
                return handle
            except RunnerAcquisitionFailure as e:
                if not e.retryable or not backoff.can_retry():
                    raise
                delay = backoff.next_delay_seconds()
                log.info(
                    "%s: runner '%s' unavailable (%s); retry %d/%d in %.1fs",
                    inst.label, tag, e.message, backoff.attempts, backoff.max_attempts, delay,
                )
                if inst.cancel_requested.wait(delay):
                    return None
