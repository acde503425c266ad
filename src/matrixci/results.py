# results.py
from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List

from .model import EventKind, InstanceKey, InstanceState, JobInstance, RunContext


@dataclass
class RunResult:
    """Final terminal-state map of one workflow run."""
    workflow: str
    event: EventKind
    context: RunContext
    instances: List[JobInstance] = field(default_factory=list)
    triggered: bool = True

    @property
    def succeeded(self) -> bool:
        """
        True iff every instance succeeded or was skipped, ignoring
        failures of jobs that are allowed to fail.
        """
        for inst in self.instances:
            if inst.state in (InstanceState.SUCCEEDED, InstanceState.SKIPPED):
                continue
            if inst.allowed_to_fail and inst.state in (InstanceState.FAILED, InstanceState.CANCELLED):
                continue
            return False
        return True

    @property
    def exit_code(self) -> int:
        return 0 if self.succeeded else 1

    def state_of(self, key: InstanceKey | str) -> InstanceState:
        if isinstance(key, str):
            key = InstanceKey(key)
        for inst in self.instances:
            if inst.key == key:
                return inst.state
        raise KeyError(key)

    def states(self) -> Dict[str, str]:
        return {inst.label: inst.state.value for inst in self.instances}

    def to_records(self) -> List[Dict[str, Any]]:
        """Ordered (job, matrix, state, steps) records for audit."""
        return [inst.to_record() for inst in self.instances]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workflow": self.workflow,
            "event": self.event.value,
            "started_at": self.context.started_at.isoformat(),
            "triggered": self.triggered,
            "succeeded": self.succeeded,
            "instances": self.to_records(),
        }

    def to_json(self, indent: int | None = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, default=str)


class JsonResultSink:
    """Writes the run's audit records to a JSON file."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def publish(self, result: RunResult) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(result.to_json() + "\n", encoding="utf-8")
