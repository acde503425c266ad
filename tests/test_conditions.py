"""Unit tests for condition evaluation and load-time validation."""

from __future__ import annotations

import pytest

from matrixci.conditions import (
    Decision,
    Facts,
    Upstream,
    effective,
    evaluate,
    facts_from_tag,
    implies_success,
    normalize_arch,
    normalize_os,
    validate,
)
from matrixci.dsl import all_of, always, any_of, failure, not_, on_event, runner_arch, runner_os, success
from matrixci.errors import UnknownCondition
from matrixci.model import AxisAssignment, EventKind, InstanceState

S = InstanceState


def _facts(*upstream: Upstream, event=EventKind.PUSH, **kw) -> Facts:
    return Facts(event=event, upstream=tuple(upstream), **kw)


def _up(name: str, state: InstanceState, **axes) -> Upstream:
    return Upstream(name=name, state=state, failed=state is S.FAILED, assignment=AxisAssignment(axes))


# =============================================================================
# Job scope
# =============================================================================


@pytest.mark.unit
class TestJobScope:
    def test_default_runs_when_all_upstream_succeeded(self) -> None:
        facts = _facts(_up("lint", S.SUCCEEDED), _up("build", S.SUCCEEDED))
        assert evaluate(None, facts) is Decision.RUN

    def test_default_runs_with_no_upstream(self) -> None:
        assert evaluate(None, _facts()) is Decision.RUN

    @pytest.mark.parametrize("state", [S.FAILED, S.CANCELLED, S.SKIPPED])
    def test_default_skips_on_any_unsuccessful_upstream(self, state: InstanceState) -> None:
        facts = _facts(_up("lint", S.SUCCEEDED), _up("build", state))
        assert evaluate(None, facts) is Decision.SKIP

    def test_success_allow_skipped(self) -> None:
        facts = _facts(_up("lint", S.SUCCEEDED), _up("nightly", S.SKIPPED))
        assert evaluate(success(allow_skipped=True), facts) is Decision.RUN
        assert evaluate(success(), facts) is Decision.SKIP

    def test_success_allow_skipped_still_blocks_failures(self) -> None:
        facts = _facts(_up("build", S.FAILED))
        assert evaluate(success(allow_skipped=True), facts) is Decision.SKIP

    def test_always_runs_after_failure(self) -> None:
        assert evaluate(always(), _facts(_up("build", S.FAILED))) is Decision.RUN

    def test_failure_any_upstream(self) -> None:
        assert evaluate(failure(), _facts(_up("build", S.FAILED))) is Decision.RUN
        assert evaluate(failure(), _facts(_up("build", S.SUCCEEDED))) is Decision.SKIP

    def test_failure_of_a_cancelled_upstream_does_not_count(self) -> None:
        assert evaluate(failure(), _facts(_up("build", S.CANCELLED))) is Decision.SKIP

    def test_failure_target(self) -> None:
        facts = _facts(_up("lint", S.SUCCEEDED), _up("build", S.FAILED))
        assert evaluate(failure("build"), facts) is Decision.RUN
        assert evaluate(failure("lint"), facts) is Decision.SKIP

    def test_failure_target_with_axes(self) -> None:
        facts = _facts(
            _up("build", S.FAILED, arch="x86_64"),
            _up("build", S.SUCCEEDED, arch="aarch64"),
        )
        assert evaluate(failure("build", arch="x86_64"), facts) is Decision.RUN
        assert evaluate(failure("build", arch="aarch64"), facts) is Decision.SKIP

    def test_event(self) -> None:
        cond = on_event("schedule", EventKind.MANUAL)
        assert evaluate(cond, _facts(event=EventKind.SCHEDULE)) is Decision.RUN
        assert evaluate(cond, _facts(event=EventKind.PUSH)) is Decision.SKIP

    def test_runner_os_and_arch_use_normalized_names(self) -> None:
        facts = _facts(runner_os="Darwin", runner_arch="aarch64")
        assert evaluate(runner_os("macos"), facts) is Decision.RUN
        assert evaluate(runner_arch("arm64"), facts) is Decision.RUN
        assert evaluate(runner_os("linux"), facts) is Decision.SKIP

    def test_unknown_runner_facts_never_match(self) -> None:
        assert evaluate(runner_os("linux"), _facts()) is Decision.SKIP
        assert evaluate(not_(runner_os("linux")), _facts()) is Decision.RUN

    def test_composition(self) -> None:
        facts = _facts(_up("lint", S.SUCCEEDED), event=EventKind.SCHEDULE)
        assert evaluate(all_of(success(), on_event("schedule")), facts) is Decision.RUN
        assert evaluate(all_of(success(), on_event("push")), facts) is Decision.SKIP
        assert evaluate(any_of(failure(), on_event("schedule")), facts) is Decision.RUN
        assert evaluate(not_(on_event("schedule")), facts) is Decision.SKIP

    def test_evaluation_is_deterministic(self) -> None:
        facts = _facts(_up("build", S.FAILED, arch="x86_64"), runner_os="linux")
        cond = any_of(all_of(failure("build"), runner_os("linux")), always())
        assert {evaluate(cond, facts) for _ in range(20)} == {Decision.RUN}


# =============================================================================
# Step scope
# =============================================================================


@pytest.mark.unit
class TestStepScope:
    def test_skipped_earlier_steps_do_not_block(self) -> None:
        facts = _facts(_up("setup", S.SKIPPED), _up("build", S.SUCCEEDED), step_scope=True)
        assert evaluate(None, facts) is Decision.RUN

    def test_hard_failure_blocks_default(self) -> None:
        facts = _facts(_up("build", S.FAILED), step_scope=True)
        assert evaluate(None, facts) is Decision.SKIP
        assert evaluate(always(), facts) is Decision.RUN
        assert evaluate(failure("build"), facts) is Decision.RUN

    def test_continue_on_error_failure_is_visible_to_failure_only(self) -> None:
        soft = Upstream(name="flaky", state=S.SUCCEEDED, failed=True)
        facts = _facts(soft, step_scope=True)
        assert evaluate(None, facts) is Decision.RUN
        assert evaluate(failure("flaky"), facts) is Decision.RUN

    def test_cancel_request_blocks_success_but_not_always(self) -> None:
        facts = _facts(_up("build", S.SUCCEEDED), step_scope=True, cancelled=True)
        assert evaluate(None, facts) is Decision.SKIP
        assert evaluate(always(), facts) is Decision.RUN


# =============================================================================
# Validation
# =============================================================================


@pytest.mark.unit
class TestValidate:
    def test_none_is_valid(self) -> None:
        validate(None, targets=[])

    def test_nested_predicates_are_valid(self) -> None:
        cond = all_of(success(), any_of(on_event("push"), not_(runner_os("linux"))), failure("build"))
        validate(cond, targets=["build"], job="report")

    def test_string_expression_is_rejected(self) -> None:
        with pytest.raises(UnknownCondition) as exc:
            validate("${{ success() && github.event_name == 'push' }}", targets=[], job="deploy")
        assert exc.value.job == "deploy"

    def test_unknown_object_nested_in_composition(self) -> None:
        with pytest.raises(UnknownCondition):
            validate(all_of(success(), lambda: True), targets=[])

    def test_failure_target_must_be_upstream(self) -> None:
        with pytest.raises(UnknownCondition, match="not upstream"):
            validate(failure("deploy"), targets=["build"], job="report")

    def test_empty_composition_is_rejected(self) -> None:
        with pytest.raises(UnknownCondition):
            validate(any_of(), targets=[])

    def test_step_context_is_reported(self) -> None:
        with pytest.raises(UnknownCondition) as exc:
            validate(failure("later"), targets=["earlier"], job="build", step="upload")
        assert exc.value.step == "upload"


@pytest.mark.unit
class TestPlatformNames:
    @pytest.mark.parametrize(
        ("tag", "expected"),
        [
            ("ubuntu-22.04", ("linux", None)),
            ("macos-14-arm64", ("macos", "arm64")),
            ("linux-x86_64", ("linux", "x64")),
            ("windows-latest", ("windows", None)),
            ("local", (None, None)),
            (None, (None, None)),
        ],
    )
    def test_facts_from_tag(self, tag, expected) -> None:
        assert facts_from_tag(tag) == expected

    def test_normalize(self) -> None:
        assert normalize_os("Linux") == "linux"
        assert normalize_arch("AMD64") == "x64"
        assert normalize_arch("sparc") == "sparc"
        assert normalize_os(None) is None


# =============================================================================
# Filter-only conditions
# =============================================================================


@pytest.mark.unit
class TestImpliedSuccess:
    def test_filters_without_status_imply_success(self) -> None:
        assert implies_success(None)
        assert implies_success(runner_os("linux"))
        assert implies_success(all_of(on_event("push"), not_(runner_arch("arm64"))))
        assert not implies_success(always())
        assert not implies_success(any_of(failure(), runner_os("linux")))
        assert not implies_success(not_(success()))

    def test_effective_wraps_filters_only(self) -> None:
        cond = runner_os("linux")
        assert effective(cond) == all_of(success(), cond)
        assert effective(always()) == always()
        assert effective(None) == success()

    def test_os_filter_skips_after_upstream_failure(self) -> None:
        facts = _facts(_up("build", S.FAILED), runner_os="linux", runner_arch="x64")
        assert evaluate(runner_os("linux"), facts) is Decision.SKIP
        assert evaluate(all_of(always(), runner_os("linux")), facts) is Decision.RUN

    def test_event_filter_skips_after_upstream_failure(self) -> None:
        assert evaluate(on_event("push"), _facts(_up("lint", S.FAILED))) is Decision.SKIP
        assert evaluate(on_event("push"), _facts(_up("lint", S.SUCCEEDED))) is Decision.RUN

    def test_event_filter_skips_after_failed_step(self) -> None:
        facts = _facts(_up("build", S.FAILED), step_scope=True)
        assert evaluate(on_event("push"), facts) is Decision.SKIP
        assert evaluate(not_(runner_os("windows")), facts) is Decision.SKIP

    def test_filter_still_decides_when_upstream_succeeded(self) -> None:
        facts = _facts(_up("build", S.SUCCEEDED), runner_os="macos", runner_arch="arm64")
        assert evaluate(runner_os("linux"), facts) is Decision.SKIP
        assert evaluate(runner_os("macos"), facts) is Decision.RUN
