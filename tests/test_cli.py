"""CLI tests using click's CliRunner against real shell steps."""

from __future__ import annotations

import json
from textwrap import dedent

import pytest
from click.testing import CliRunner

from matrixci.cli import EXIT_INVALID_WORKFLOW, cli

GOOD = """
    from matrixci import wf, job, sh, gate

    def workflow():
        return wf(
            job("lint", sh("fmt", "true")),
            job("build", sh("compile", "test -n \\"$MATRIX_ARCH\\""), needs=["lint"], matrix={"arch": ["x86_64", "aarch64"]}),
            gate("ci-complete"),
            name="ci",
        )
"""

FAILING = """
    from matrixci import job, sh
    JOBS = [job("lint", sh("fmt", "exit 1")), job("build", sh("compile", "true"), needs=["lint"])]
"""

CYCLIC = """
    from matrixci import job, sh
    JOBS = [job("a", sh("s", "true"), needs=["b"]), job("b", sh("s", "true"), needs=["a"])]
"""


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


def _write(path, body: str):
    path.write_text(dedent(body))
    return str(path)


@pytest.mark.unit
class TestValidateAndPlan:
    def test_validate_ok(self, runner, tmp_path) -> None:
        wf = _write(tmp_path / "ci_workflow.py", GOOD)
        result = runner.invoke(cli, ["validate", "--workflow", wf])
        assert result.exit_code == 0, result.output
        assert "OK: ci (3 jobs, 4 instances)" in result.output

    def test_validate_cycle(self, runner, tmp_path) -> None:
        wf = _write(tmp_path / "ci_workflow.py", CYCLIC)
        result = runner.invoke(cli, ["validate", "--workflow", wf])
        assert result.exit_code == EXIT_INVALID_WORKFLOW

    def test_plan(self, runner, tmp_path) -> None:
        wf = _write(tmp_path / "ci_workflow.py", GOOD)
        result = runner.invoke(cli, ["plan", "--workflow", wf])
        assert result.exit_code == 0, result.output
        assert "=== Stage 2 ===" in result.output
        assert "build[arch=aarch64]" in result.output

    def test_missing_workflow_file(self, runner, tmp_path) -> None:
        result = runner.invoke(cli, ["validate", "--workflow", str(tmp_path / "absent.py")])
        assert result.exit_code == EXIT_INVALID_WORKFLOW


@pytest.mark.shell
class TestRun:
    def test_run_success_writes_audit(self, runner, tmp_path) -> None:
        wf = _write(tmp_path / "ci_workflow.py", GOOD)
        audit = tmp_path / "audit.json"
        result = runner.invoke(
            cli,
            ["run", "--workflow", wf, "--event", "push", "--capacity", "2", "--audit", str(audit)],
        )
        assert result.exit_code == 0, result.output
        assert "RUN SUCCEEDED" in result.output
        data = json.loads(audit.read_text())
        assert data["succeeded"] is True
        assert len(data["instances"]) == 4

    def test_run_failure_exit_code(self, runner, tmp_path) -> None:
        wf = _write(tmp_path / "ci_workflow.py", FAILING)
        result = runner.invoke(cli, ["run", "--workflow", wf, "--event", "push", "--quiet"])
        assert result.exit_code == 1
        assert "build: SKIPPED (upstream lint failed)" in result.output
        assert "RUN FAILED" in result.output

    def test_unserved_runner_label(self, runner, tmp_path) -> None:
        wf = _write(tmp_path / "ci_workflow.py", GOOD)
        result = runner.invoke(
            cli,
            ["run", "--workflow", wf, "--runner-label", "ubuntu-22.04", "--quiet"],
            env={"MATRIXCI_ACQUIRE_RETRIES": "0"},
        )
        assert result.exit_code == 1
        assert "runner-unavailable" in result.output
