# dag.py
from __future__ import annotations

from collections import deque
from dataclasses import replace
from typing import Dict, Iterable, List, Set

from . import conditions
from .errors import CyclicDependency, DuplicateJob, InvalidMatrix, MissingDependency
from .matrix import expand_keys
from .model import ALL_JOBS, InstanceKey, InstanceState, JobTemplate, RunContext, runner_tag

_UNVISITED, _IN_PROGRESS, _DONE = 0, 1, 2

# All terminal states count as "resolved" for readiness; the dependent's own
# condition decides whether a failed dependency blocks it.
RESOLVED_STATES = frozenset({
    InstanceState.SUCCEEDED,
    InstanceState.FAILED,
    InstanceState.SKIPPED,
    InstanceState.CANCELLED,
})


class DependencyGraph:
    """
    Template-level "needs" graph, enforced at instance level.

    An instance of T depends on *every* instance of every template T needs
    (full fan-out/fan-in across matrix expansions).
    """

    def __init__(self, templates: List[JobTemplate]):
        self.templates: Dict[str, JobTemplate] = {t.id: t for t in templates}
        self.order: List[str] = [t.id for t in templates]
        # template id -> its expanded instance keys, in matrix order
        self.instances: Dict[str, List[InstanceKey]] = {}
        # dep -> dependents (template level)
        self.adj: Dict[str, Set[str]] = {t.id: set() for t in templates}
        self.indeg: Dict[str, int] = {t.id: 0 for t in templates}

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def build(cls, templates: Iterable[JobTemplate]) -> DependencyGraph:
        """
        Validate templates and build the graph.

        Raises DuplicateJob, InvalidMatrix, MissingDependency,
        CyclicDependency or UnknownCondition. Nothing is dispatched if
        this fails.
        """
        templates = list(templates)
        names = [t.id for t in templates]
        templates = [_expand_all_jobs(t, templates) for t in templates]
        if len(set(names)) != len(names):
            raise DuplicateJob(sorted({n for n in names if names.count(n) > 1}))

        graph = cls(templates)
        for t in templates:
            graph.instances[t.id] = expand_keys(t)

        for t in templates:
            for dep in graph.needs_of(t):
                graph.adj[dep].add(t.id)
                graph.indeg[t.id] += 1

        graph._check_acyclic()
        graph._check_conditions()
        graph._check_runner_tags()
        return graph

    def needs_of(self, template: JobTemplate) -> List[str]:
        """
        Declared needs that exist in the workflow.

        Aggregators may name jobs that are absent; that is reported by the
        gate at run time rather than rejected here.
        """
        deps: List[str] = []
        for dep in template.needs:
            if dep in self.templates:
                if dep not in deps:
                    deps.append(dep)
            elif not template.aggregate:
                raise MissingDependency(template.id, dep, list(self.templates))
        return deps

    def _check_acyclic(self) -> None:
        color: Dict[str, int] = {n: _UNVISITED for n in self.order}

        def visit(node: str, path: List[str]) -> None:
            color[node] = _IN_PROGRESS
            path.append(node)
            for dep in self.needs_of(self.templates[node]):
                if color[dep] == _IN_PROGRESS:
                    start = path.index(dep)
                    raise CyclicDependency(path[start:] + [dep])
                if color[dep] == _UNVISITED:
                    visit(dep, path)
            path.pop()
            color[node] = _DONE

        for node in self.order:
            if color[node] == _UNVISITED:
                visit(node, [])

    def _check_runner_tags(self) -> None:
        for t in self.templates.values():
            for key in self.instances[t.id]:
                try:
                    runner_tag(t.runs_on, key.assignment)
                except (KeyError, IndexError, ValueError) as e:
                    raise InvalidMatrix(
                        t.id,
                        f"runs_on '{t.runs_on}' cannot be resolved for {key.label}: {type(e).__name__}: {e}",
                        runs_on=t.runs_on,
                    ) from e

    def _check_conditions(self) -> None:
        for t in self.templates.values():
            conditions.validate(t.when, targets=t.needs, job=t.id)
            seen: List[str] = []
            for step in t.steps:
                conditions.validate(step.when, targets=seen, job=t.id, step=step.id)
                seen.append(step.id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def all_instances(self) -> List[InstanceKey]:
        return [k for name in self.order for k in self.instances[name]]

    def instance_dependencies(self, key: InstanceKey) -> Set[InstanceKey]:
        deps: Set[InstanceKey] = set()
        for dep in self.needs_of(self.templates[key.template_id]):
            deps.update(self.instances[dep])
        return deps

    def ordered_dependencies(self, key: InstanceKey) -> List[InstanceKey]:
        """instance_dependencies() in declaration order (stable for conditions/reports)."""
        out: List[InstanceKey] = []
        for dep in self.needs_of(self.templates[key.template_id]):
            out.extend(self.instances[dep])
        return out

    def dependents(self, key: InstanceKey) -> Set[InstanceKey]:
        out: Set[InstanceKey] = set()
        for child in self.adj[key.template_id]:
            out.update(self.instances[child])
        return out

    def ordered_dependents(self, key: InstanceKey) -> List[InstanceKey]:
        """dependents() in declaration order."""
        return [k for name in self.order if name in self.adj[key.template_id] for k in self.instances[name]]

    def siblings(self, key: InstanceKey) -> List[InstanceKey]:
        return [k for k in self.instances[key.template_id] if k != key]

    def is_ready(self, key: InstanceKey, context: RunContext) -> bool:
        return all(context.state_of(d) in RESOLVED_STATES for d in self.instance_dependencies(key))

    def topo_levels(self) -> List[List[str]]:
        """
        Convert the template DAG into topological "levels" (stages).
        Each stage can run in parallel.
        """
        indeg = dict(self.indeg)  # copy (we mutate it)
        position = {n: i for i, n in enumerate(self.order)}
        q = deque(sorted([n for n, d in indeg.items() if d == 0], key=position.__getitem__))

        levels: List[List[str]] = []
        while q:
            level: List[str] = []
            for _ in range(len(q)):
                node = q.popleft()
                level.append(node)
                for child in sorted(self.adj.get(node, set()), key=position.__getitem__):
                    indeg[child] -= 1
                    if indeg[child] == 0:
                        q.append(child)
            levels.append(level)
        return levels


def _expand_all_jobs(template: JobTemplate, templates: List[JobTemplate]) -> JobTemplate:
    """An aggregator declared with needs=ALL depends on every non-aggregator job."""
    if not template.aggregate or ALL_JOBS not in template.needs:
        return template
    needs = [t.id for t in templates if not t.aggregate and t.id != template.id]
    needs += [n for n in template.needs if n != ALL_JOBS and n not in needs]
    return replace(template, needs=tuple(needs))
