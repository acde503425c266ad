"""Unit tests for the status aggregator (gate)."""

from __future__ import annotations

import pytest

from matrixci.aggregate import GateCheck, gate, verdict
from matrixci.conditions import Always
from matrixci.model import ALL_JOBS, AxisAssignment, EventKind, InstanceKey, InstanceOutcome, InstanceState, RunContext

S = InstanceState


def _ctx(*outcomes):
    ctx = RunContext(EventKind.PUSH)
    for key, state in outcomes:
        ctx.record(InstanceOutcome(key, state))
    return ctx


BUILD = [InstanceKey("build", AxisAssignment({"arch": a})) for a in ("x86_64", "aarch64")]
LINT = [InstanceKey("lint")]
INSTANCES = {"lint": LINT, "build": BUILD}


@pytest.mark.unit
class TestVerdict:
    def test_all_succeeded(self) -> None:
        ctx = _ctx((LINT[0], S.SUCCEEDED), (BUILD[0], S.SUCCEEDED), (BUILD[1], S.SUCCEEDED))
        ok, detail = verdict(["lint", "build"], ctx, INSTANCES)
        assert ok is True
        assert detail == "2 required job(s) succeeded"

    @pytest.mark.parametrize("state", [S.FAILED, S.CANCELLED, S.SKIPPED])
    def test_any_unsuccessful_instance_fails(self, state) -> None:
        ctx = _ctx((LINT[0], S.SUCCEEDED), (BUILD[0], S.SUCCEEDED), (BUILD[1], state))
        ok, detail = verdict(["lint", "build"], ctx, INSTANCES)
        assert ok is False
        assert f"build[arch=aarch64]: {state.value}" in detail

    def test_missing_job_fails(self) -> None:
        ctx = _ctx((LINT[0], S.SUCCEEDED))
        ok, detail = verdict(["lint", "integration-test"], ctx, INSTANCES)
        assert ok is False
        assert "integration-test: missing" in detail

    def test_unresolved_instance_fails(self) -> None:
        ok, detail = verdict(["lint"], _ctx(), INSTANCES)
        assert ok is False
        assert "lint: unresolved" in detail

    def test_no_requirements_pass(self) -> None:
        assert verdict([], _ctx(), INSTANCES) == (True, "0 required job(s) succeeded")


@pytest.mark.unit
class TestGateTemplate:
    def test_shape(self) -> None:
        t = gate("build-workflow-complete", needs=["lint", "build", "lint"])
        assert t.aggregate is True
        assert t.needs == ("lint", "build")
        assert t.runs_on is None
        assert isinstance(t.when, Always)
        assert len(t.steps) == 1
        assert isinstance(t.steps[0].run, GateCheck)
        assert isinstance(t.steps[0].when, Always)

    def test_default_needs_everything(self) -> None:
        assert gate("ci").needs == (ALL_JOBS,)

    def test_single_string_need(self) -> None:
        assert gate("ci", needs="build").needs == ("build",)
