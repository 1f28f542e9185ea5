"""
Tests for rollout-manager data models and the attempt state machine.
"""

import pytest

from rollout_manager.errors import InvalidTransitionError
from rollout_manager.models import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    CategoryOutcome,
    ClusterStatus,
    DeploymentPlan,
    DeploymentTarget,
    FailureReason,
    HealthReport,
    RolloutAttempt,
    RolloutStatus,
    TargetOutcome,
    TargetStatus,
    utc_now,
)


@pytest.fixture
def attempt():
    target = DeploymentTarget(
        name="backend",
        namespace="kaldrix",
        desired_image="registry/backend:v2",
        deployment_name="backend-deployment",
    )
    return RolloutAttempt(target=target, new_image=target.desired_image)


class TestDeploymentTarget:
    def test_resource_name_defaults_to_name(self):
        target = DeploymentTarget(name="frontend", namespace="kaldrix", desired_image="img:v1")
        assert target.resource_name == "frontend"
        assert target.key == "kaldrix/frontend"

    def test_resource_name_uses_deployment_name(self, attempt):
        assert attempt.target.resource_name == "backend-deployment"
        assert attempt.target.key == "kaldrix/backend-deployment"


class TestRolloutAttemptTransitions:
    def test_starts_pending(self, attempt):
        assert attempt.status == RolloutStatus.PENDING
        assert not attempt.is_terminal
        assert len(attempt.id) == 12

    def test_happy_path(self, attempt):
        attempt.transition(RolloutStatus.UPDATING)
        attempt.transition(RolloutStatus.AWAITING_HEALTH)
        attempt.transition(RolloutStatus.HEALTHY)

        assert attempt.is_terminal
        assert attempt.finished_at is not None
        assert [entry["to"] for entry in attempt.history] == [
            "updating",
            "awaiting_health",
            "healthy",
        ]

    def test_rollback_path_keeps_gate_reason(self, attempt):
        attempt.transition(RolloutStatus.UPDATING)
        attempt.transition(RolloutStatus.AWAITING_HEALTH)
        attempt.transition(
            RolloutStatus.ROLLING_BACK, FailureReason.HEALTH_CHECK_FAILED, "score 60 < 80"
        )
        attempt.transition(RolloutStatus.ROLLED_BACK, message="rolled back to 1")

        assert attempt.status == RolloutStatus.ROLLED_BACK
        assert attempt.reason == FailureReason.HEALTH_CHECK_FAILED
        assert attempt.message == "rolled back to 1"
        assert attempt.history[-2]["reason"] == "health-check-failed"

    def test_cannot_skip_updating(self, attempt):
        with pytest.raises(InvalidTransitionError) as exc_info:
            attempt.transition(RolloutStatus.AWAITING_HEALTH)
        assert exc_info.value.current == "pending"
        assert exc_info.value.requested == "awaiting_health"
        assert attempt.status == RolloutStatus.PENDING
        assert attempt.history == []

    def test_updating_cannot_roll_back(self, attempt):
        attempt.transition(RolloutStatus.UPDATING)
        with pytest.raises(InvalidTransitionError):
            attempt.transition(RolloutStatus.ROLLING_BACK)

    @pytest.mark.parametrize("terminal", sorted(TERMINAL_STATUSES, key=lambda s: s.value))
    def test_terminal_states_have_no_exits(self, terminal):
        assert ALLOWED_TRANSITIONS[terminal] == frozenset()
        assert terminal.is_terminal

    def test_no_transition_out_of_failed(self, attempt):
        attempt.transition(RolloutStatus.FAILED, FailureReason.CANCELLED)
        for status in RolloutStatus:
            with pytest.raises(InvalidTransitionError):
                attempt.transition(status)

    def test_noop_success_from_pending(self, attempt):
        attempt.transition(RolloutStatus.HEALTHY, FailureReason.ALREADY_AT_DESIRED_IMAGE)
        assert attempt.status == RolloutStatus.HEALTHY
        assert attempt.reason == FailureReason.ALREADY_AT_DESIRED_IMAGE

    def test_every_state_has_transition_entry(self):
        assert set(ALLOWED_TRANSITIONS) == set(RolloutStatus)


class TestClusterStatus:
    def test_ready_when_all_available(self):
        status = ClusterStatus(available=3, desired=3, condition_available=True, updated=3)
        assert status.is_ready

    def test_not_ready_without_condition(self):
        status = ClusterStatus(available=3, desired=3, condition_available=False)
        assert not status.is_ready

    def test_not_ready_while_old_replicas_still_serve(self):
        status = ClusterStatus(available=3, desired=3, condition_available=True, updated=1)
        assert not status.is_ready

    def test_updated_not_reported(self):
        status = ClusterStatus(available=2, desired=2, condition_available=True)
        assert status.is_ready

    def test_not_ready_until_generation_observed(self):
        stale = ClusterStatus(
            available=3,
            desired=3,
            condition_available=True,
            updated=3,
            replicas=3,
            generation=2,
            observed_generation=1,
        )
        assert not stale.observed
        assert not stale.is_ready
        assert stale.model_copy(update={"observed_generation": 2}).is_ready

    def test_generation_without_observation_not_ready(self):
        status = ClusterStatus(available=3, desired=3, condition_available=True, generation=1)
        assert not status.is_ready

    def test_not_ready_until_old_replicas_drained(self):
        status = ClusterStatus(
            available=3, desired=3, condition_available=True, updated=3, replicas=4
        )
        assert not status.is_ready


class TestHealthReport:
    def test_passed_threshold(self):
        report = HealthReport(target="backend", score=80, measured_at=utc_now())
        assert report.passed(80)
        assert not report.passed(80.5)

    def test_all_errored(self):
        report = HealthReport(
            target="backend",
            score=0,
            category_results={"liveness": CategoryOutcome.ERROR, "api": CategoryOutcome.ERROR},
            measured_at=utc_now(),
        )
        assert report.all_errored
        assert report.error_categories == ["liveness", "api"]

    def test_partially_errored(self):
        report = HealthReport(
            target="backend",
            score=50,
            category_results={"liveness": CategoryOutcome.PASS, "api": CategoryOutcome.ERROR},
            measured_at=utc_now(),
        )
        assert not report.all_errored

    def test_empty_report_is_not_all_errored(self):
        report = HealthReport(target="backend", score=0, measured_at=utc_now())
        assert not report.all_errored

    def test_score_bounds(self):
        with pytest.raises(ValueError):
            HealthReport(target="backend", score=120, measured_at=utc_now())


class TestTargetOutcome:
    def test_display_status_with_reason(self):
        outcome = TargetOutcome(
            target="backend", status=TargetStatus.FAILED, reason="rollback-failed"
        )
        assert outcome.display_status == "failed: rollback-failed"

    def test_display_status_healthy_hides_informational_reason(self):
        outcome = TargetOutcome(
            target="backend", status=TargetStatus.HEALTHY, reason="already-at-desired-image"
        )
        assert outcome.display_status == "healthy"


class TestDeploymentPlan:
    def _target(self, name, namespace="kaldrix"):
        return DeploymentTarget(name=name, namespace=namespace, desired_image=f"registry/{name}:v2")

    def test_namespace(self):
        plan = DeploymentPlan(
            environment="production",
            deployment_type="full",
            targets=[self._target("backend"), self._target("frontend")],
        )
        assert plan.namespace == "kaldrix"

    def test_empty_targets_rejected(self):
        with pytest.raises(ValueError):
            DeploymentPlan(environment="production", deployment_type="full", targets=[])

    def test_mixed_namespaces_rejected(self):
        with pytest.raises(ValueError, match="several namespaces"):
            DeploymentPlan(
                environment="production",
                deployment_type="full",
                targets=[self._target("backend"), self._target("frontend", "kaldrix-staging")],
            )
