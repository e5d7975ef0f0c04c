"""Tests for the pipeline, run and deployment data model."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from conveyor.models import (
    Artifact,
    Backoff,
    DeploymentRecord,
    Environment,
    FailurePolicy,
    Outcome,
    OutcomeStatus,
    PipelineDefinition,
    RetryPolicy,
    RunState,
    RunStatus,
    Stage,
    StageGroup,
    StageKind,
)
from conveyor.errors import DefinitionError


def _definition() -> PipelineDefinition:
    return PipelineDefinition(
        name="shop",
        groups=[
            StageGroup(name="checks", stages=[
                Stage(name="lint", kind="validate", operation="shell:true"),
            ]),
            StageGroup(name="deploy", stages=[
                Stage(name="deploy-staging", kind="deploy", environment="staging"),
                Stage(name="deploy-production", kind="deploy", environment="production"),
            ]),
            StageGroup(name="verify", stages=[
                Stage(name="verify-production", kind="verify", environment="production"),
            ]),
        ],
    )


# ── RetryPolicy ──────────────────────────────────────────────────────────────

class TestRetryPolicy:

    def test_defaults_tolerate_nothing(self):
        policy = RetryPolicy()
        assert policy.attempts == 1
        assert policy.delay == 0.0
        assert policy.backoff == Backoff.FIXED

    def test_readiness_budget(self):
        policy = RetryPolicy.readiness()
        assert policy.attempts == 15
        assert policy.delay == 5.0

    def test_fixed_delay(self):
        policy = RetryPolicy(attempts=3, delay=2)
        assert [policy.delay_after(i) for i in (1, 2, 3)] == [2, 2, 2]

    def test_exponential_delay_is_capped(self):
        policy = RetryPolicy(attempts=5, delay=1, backoff="exponential", max_delay=3)
        assert [policy.delay_after(i) for i in (1, 2, 3, 4)] == [1, 2, 3, 3]

    def test_zero_attempts_rejected(self):
        with pytest.raises(ValidationError):
            RetryPolicy(attempts=0)


# ── Stage ────────────────────────────────────────────────────────────────────

class TestStage:

    def test_verify_stage_gets_readiness_budget(self):
        stage = Stage(name="verify", kind="verify", environment="staging")
        assert stage.retry.attempts == 15
        assert stage.retry.delay == 5.0

    def test_other_stages_get_single_attempt(self):
        stage = Stage(name="build", kind="build")
        assert stage.retry.attempts == 1

    def test_explicit_retry_is_kept(self):
        stage = Stage(name="verify", kind="verify", environment="staging",
                      retry={"attempts": 3, "delay": 0})
        assert stage.retry.attempts == 3

    def test_deploy_requires_environment(self):
        with pytest.raises(ValidationError):
            Stage(name="deploy", kind="deploy")

    def test_validate_requires_operation(self):
        with pytest.raises(ValidationError):
            Stage(name="lint", kind="validate")

    def test_non_positive_timeout_rejected(self):
        with pytest.raises(ValidationError):
            Stage(name="build", kind="build", timeout=0)

    def test_failure_policy(self):
        fatal = Stage(name="a", kind="build")
        lenient = Stage(name="b", kind="scan", failure_policy="warn-and-continue")
        assert fatal.is_fatal
        assert not lenient.is_fatal
        assert lenient.failure_policy == FailurePolicy.WARN_AND_CONTINUE

    def test_frozen(self):
        stage = Stage(name="build", kind="build")
        with pytest.raises(ValidationError):
            stage.name = "other"


# ── PipelineDefinition ───────────────────────────────────────────────────────

class TestPipelineDefinition:

    def test_empty_definition_rejected(self):
        with pytest.raises(ValidationError):
            PipelineDefinition(name="empty", groups=[])

    def test_empty_group_rejected(self):
        with pytest.raises(ValidationError):
            PipelineDefinition(groups=[{"name": "nothing", "stages": []}])

    def test_duplicate_stage_names_rejected(self):
        with pytest.raises(ValidationError):
            PipelineDefinition(groups=[
                {"stages": [{"name": "build", "kind": "build"}]},
                {"stages": [{"name": "build", "kind": "build"}]},
            ])

    def test_iter_stages_in_group_order(self):
        names = [s.name for s in _definition().iter_stages()]
        assert names == ["lint", "deploy-staging", "deploy-production", "verify-production"]

    def test_target_and_verified_environments(self):
        d = _definition()
        assert d.target_environments() == {"staging", "production"}
        assert d.verified_environments() == {"production"}

    def test_restricted_to_drops_stages_and_empty_groups(self):
        restricted = _definition().restricted_to({"staging"})
        assert [g.name for g in restricted.groups] == ["checks", "deploy"]
        assert [s.name for s in restricted.iter_stages()] == ["lint", "deploy-staging"]

    def test_restricted_to_nothing_raises(self):
        d = PipelineDefinition(groups=[
            {"stages": [{"name": "deploy", "kind": "deploy", "environment": "production"}]},
        ])
        with pytest.raises(DefinitionError):
            d.restricted_to({"staging"})


# ── Environment & Artifact ───────────────────────────────────────────────────

class TestEnvironment:

    def test_url(self):
        env = Environment(name="staging", rank=1, host="10.0.0.5", port=8080)
        assert env.url() == "http://10.0.0.5:8080/"
        assert env.url("healthz") == "http://10.0.0.5:8080/healthz"

    def test_negative_rank_rejected(self):
        with pytest.raises(ValidationError):
            Environment(name="dev", rank=-1)


class TestArtifact:

    def test_from_commit(self):
        artifact = Artifact.from_commit("shop", "0123456789abcdef0123")
        assert artifact.identifier == "shop:0123456789ab"
        assert artifact.version == "0123456789ab"
        assert artifact.commit == "0123456789abcdef0123"

    def test_record_artifact(self):
        record = DeploymentRecord(
            id=1, environment="staging", artifact_id="shop:abc", version="abc", commit="abc",
        )
        assert record.artifact() == Artifact(identifier="shop:abc", version="abc", commit="abc")


# ── Run state ────────────────────────────────────────────────────────────────

class TestRunState:

    def test_terminal_statuses(self):
        assert not RunStatus.PENDING.is_terminal
        assert not RunStatus.RUNNING.is_terminal
        assert RunStatus.SUCCEEDED.is_terminal
        assert RunStatus.FAILED.is_terminal
        assert RunStatus.ABORTED.is_terminal

    def test_exit_codes(self):
        assert RunStatus.SUCCEEDED.exit_code == 0
        assert RunStatus.FAILED.exit_code == 1
        assert RunStatus.ABORTED.exit_code == 2

    def test_summary_and_lookup(self):
        state = RunState(id="r1", branch="main", commit="abc", status=RunStatus.FAILED,
                         failed_stage="build")
        state.outcomes.append(Outcome(stage="lint", attempts=1))
        state.outcomes.append(Outcome(stage="build", attempts=3, status=OutcomeStatus.FAILED))

        assert state.outcome("build").failed
        assert state.outcome("missing") is None
        summary = state.summary()
        assert summary.startswith("failed:")
        assert "lint=passed(1)" in summary
        assert "build=failed(3)" in summary
        assert "first fatal failure: build" in summary

    def test_json_round_trip(self):
        state = RunState(id="r1", branch="main", commit="abc")
        state.outcomes.append(Outcome(stage="lint", attempts=1))
        restored = RunState.model_validate_json(state.model_dump_json())
        assert restored == state
