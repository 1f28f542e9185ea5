"""
Deployment data models for rollout-manager.

These models define targets, per-attempt rollout state, plans and run
results. ``RolloutAttempt`` owns the rollout state machine: every status
change goes through ``transition`` so an unexpected cluster response can
never fall through as success.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, model_validator

from rollout_manager.errors import InvalidTransitionError
from rollout_manager.models.backup import BackupRecord
from rollout_manager.models.health import HealthCheckConfig, HealthReport


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ============================================================================
# ENUMS
# ============================================================================


class RolloutStatus(str, Enum):
    """Rollout attempt lifecycle states."""

    PENDING = "pending"
    UPDATING = "updating"
    AWAITING_HEALTH = "awaiting_health"
    HEALTHY = "healthy"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: FrozenSet[RolloutStatus] = frozenset(
    {RolloutStatus.HEALTHY, RolloutStatus.ROLLED_BACK, RolloutStatus.FAILED}
)

ALLOWED_TRANSITIONS: Dict[RolloutStatus, FrozenSet[RolloutStatus]] = {
    # Pending -> Healthy is the idempotent no-op: target already runs the image
    RolloutStatus.PENDING: frozenset(
        {RolloutStatus.UPDATING, RolloutStatus.HEALTHY, RolloutStatus.FAILED}
    ),
    RolloutStatus.UPDATING: frozenset({RolloutStatus.AWAITING_HEALTH, RolloutStatus.FAILED}),
    RolloutStatus.AWAITING_HEALTH: frozenset(
        {RolloutStatus.HEALTHY, RolloutStatus.ROLLING_BACK, RolloutStatus.FAILED}
    ),
    RolloutStatus.ROLLING_BACK: frozenset({RolloutStatus.ROLLED_BACK, RolloutStatus.FAILED}),
    RolloutStatus.HEALTHY: frozenset(),
    RolloutStatus.ROLLED_BACK: frozenset(),
    RolloutStatus.FAILED: frozenset(),
}


class FailureReason(str, Enum):
    """Why an attempt ended somewhere other than a fresh Healthy rollout."""

    ROLLOUT_TIMEOUT = "rollout-timeout"
    HEALTH_CHECK_FAILED = "health-check-failed"
    HEALTH_VERIFICATION_ERROR = "health-verification-error"
    NO_ROLLBACK_TARGET = "no-rollback-target"
    ROLLBACK_FAILED = "rollback-failed"
    CLUSTER_ERROR = "cluster-error"
    CANCELLED = "cancelled"
    ALREADY_AT_DESIRED_IMAGE = "already-at-desired-image"
    ABORTED = "aborted"  # remaining target skipped after an earlier failure


class FailurePolicy(str, Enum):
    """What the sequencer does after a target fails."""

    ABORT_ON_FIRST_FAILURE = "abort_on_first_failure"
    BEST_EFFORT = "best_effort"


class TargetStatus(str, Enum):
    """Terminal state of a target within a run."""

    HEALTHY = "healthy"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"
    SKIPPED = "skipped"


class RunStatus(str, Enum):
    """Overall result of a deployment run."""

    SUCCESS = "success"
    PARTIAL_FAILURE = "partial_failure"
    FAILURE = "failure"


# ============================================================================
# TARGETS AND POLICY
# ============================================================================


class DeploymentTarget(BaseModel):
    """
    One deployable service.

    Immutable for the duration of an attempt except ``current_revision``,
    which only advances after a Healthy result.
    """

    name: str = Field(..., description="Logical target name (e.g. frontend, backend, chain-node)")
    namespace: str = Field(..., description="Cluster namespace")
    desired_image: str = Field(..., description="Image this run should converge to")
    current_revision: Optional[int] = Field(
        None, description="Revision confirmed healthy; None until first observed"
    )
    replica_count: Optional[int] = Field(
        None, description="Expected replica count; falls back to the cluster's desired count"
    )
    deployment_name: Optional[str] = Field(
        None, description="Cluster object name when it differs from the target name"
    )

    @property
    def resource_name(self) -> str:
        return self.deployment_name or self.name

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.resource_name}"


class TargetPolicy(BaseModel):
    """Per-target health gate and rollback behaviour."""

    health_threshold: float = Field(
        ..., ge=0, le=100, description="Minimum composite score for promotion"
    )
    rollback_enabled: bool = Field(default=True, description="Roll back on a failed health gate")
    health: HealthCheckConfig = Field(
        default_factory=HealthCheckConfig, description="Probe endpoints"
    )


# ============================================================================
# ROLLOUT ATTEMPT
# ============================================================================


class RolloutAttempt(BaseModel):
    """
    A single attempt to move one target to a new image.

    Owned by the polling loop that created it until it reaches a terminal
    state and is handed back to the sequencer.
    """

    id: str = Field(default_factory=lambda: uuid4().hex[:12], description="Attempt identifier")
    target: DeploymentTarget = Field(..., description="Target being rolled out")
    previous_revision: Optional[int] = Field(
        None, description="Revision the target was on before this attempt"
    )
    new_image: str = Field(..., description="Image being rolled out")
    started_at: str = Field(default_factory=utc_now, description="ISO 8601 start time")
    deadline_at: Optional[str] = Field(None, description="ISO 8601 rollout deadline")
    finished_at: Optional[str] = Field(None, description="ISO 8601 time a terminal state was reached")
    status: RolloutStatus = Field(default=RolloutStatus.PENDING, description="Current state")
    reason: Optional[FailureReason] = Field(None, description="Reason attached to the last transition")
    message: Optional[str] = Field(None, description="Human-readable detail for the last transition")
    deployed_revision: Optional[int] = Field(
        None, description="Revision created by applying the new image"
    )
    rollback_revision: Optional[int] = Field(
        None, description="Revision the attempt rolled back to"
    )
    health_report: Optional[HealthReport] = Field(
        None, description="Health report that decided the gate"
    )
    history: List[Dict[str, Any]] = Field(
        default_factory=list, description="Timeline of transitions"
    )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def transition(
        self,
        new_status: RolloutStatus,
        reason: Optional[FailureReason] = None,
        message: Optional[str] = None,
    ) -> None:
        """
        Move to ``new_status``.

        Raises:
            InvalidTransitionError: if the transition table does not allow it,
                which includes any move out of a terminal state.
        """
        if new_status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(self.status.value, new_status.value)

        entry: Dict[str, Any] = {
            "timestamp": utc_now(),
            "from": self.status.value,
            "to": new_status.value,
        }
        if reason:
            entry["reason"] = reason.value
        if message:
            entry["message"] = message
        self.history.append(entry)

        self.status = new_status
        if reason is not None:
            self.reason = reason
        if message is not None:
            self.message = message
        if new_status.is_terminal:
            self.finished_at = entry["timestamp"]


# ============================================================================
# PLAN AND RESULT
# ============================================================================


class DeploymentPlan(BaseModel):
    """Ordered targets plus the policy to apply. Consumed once per run."""

    id: str = Field(default_factory=lambda: uuid4().hex[:12], description="Run identifier")
    environment: str = Field(..., description="Environment selector (production, staging)")
    deployment_type: str = Field(..., description="Deployment type selector (full, frontend, ...)")
    targets: List[DeploymentTarget] = Field(
        ..., min_length=1, description="Targets in dependency order, all in one namespace"
    )
    policy: FailurePolicy = Field(
        default=FailurePolicy.ABORT_ON_FIRST_FAILURE, description="Continue-vs-abort policy"
    )
    target_policies: Dict[str, TargetPolicy] = Field(
        default_factory=dict, description="Per-target policy keyed by target name"
    )
    backup_enabled: bool = Field(default=True, description="Snapshot before mutating")
    force_backup: bool = Field(
        default=False, description="Proceed even when the snapshot fails"
    )
    backup_scope: List[str] = Field(
        default_factory=lambda: ["deployment", "service", "configmap"],
        description="Resource kinds included in the snapshot",
    )
    rollout_timeout: Optional[float] = Field(
        None, description="Environment override of the rollout deadline in seconds"
    )

    @model_validator(mode="after")
    def validate_single_namespace(self) -> "DeploymentPlan":
        """A plan deploys into, and snapshots, exactly one namespace."""
        namespaces = sorted({target.namespace for target in self.targets})
        if len(namespaces) > 1:
            raise ValueError(f"Plan targets span several namespaces: {', '.join(namespaces)}")
        return self

    @property
    def namespace(self) -> str:
        return self.targets[0].namespace

    def policy_for(self, target: DeploymentTarget) -> TargetPolicy:
        try:
            return self.target_policies[target.name]
        except KeyError:
            raise KeyError(f"No policy configured for target {target.name}") from None


class TargetOutcome(BaseModel):
    """Terminal result for one target in a run."""

    target: str = Field(..., description="Target name")
    status: TargetStatus = Field(..., description="Terminal state within the run")
    reason: Optional[str] = Field(None, description="Failure reason, e.g. rollback-failed")
    message: Optional[str] = Field(None, description="Human-readable detail")
    image: Optional[str] = Field(None, description="Image the run tried to deploy")
    revision_before: Optional[int] = Field(None, description="Revision before the run")
    revision_after: Optional[int] = Field(None, description="Revision after the run")
    attempt: Optional[RolloutAttempt] = Field(None, description="Attempt record, if one ran")

    @property
    def display_status(self) -> str:
        """Status with its reason, e.g. ``failed: rollback-failed``."""
        if self.reason and self.status != TargetStatus.HEALTHY:
            return f"{self.status.value}: {self.reason}"
        return self.status.value


class RunResult(BaseModel):
    """Structured result of a deployment run, suitable for machine consumption."""

    run_id: str = Field(..., description="Run identifier (plan id)")
    environment: str = Field(..., description="Environment selector")
    deployment_type: str = Field(..., description="Deployment type selector")
    status: RunStatus = Field(default=RunStatus.FAILURE, description="Overall result")
    outcomes: List[TargetOutcome] = Field(default_factory=list, description="Per-target outcomes")
    backup: Optional[BackupRecord] = Field(None, description="Snapshot taken for this run")
    backup_skipped: bool = Field(default=False, description="Backups disabled by configuration")
    backup_error: Optional[str] = Field(
        None, description="Snapshot failure that was overridden with force"
    )
    aggregate_passed: Optional[bool] = Field(
        None, description="Final cross-service check result; None when it did not run"
    )
    aggregate_reports: List[HealthReport] = Field(
        default_factory=list, description="Reports from the final cross-service check"
    )
    error: Optional[str] = Field(None, description="Run-level error that aborted the run")
    started_at: str = Field(default_factory=utc_now, description="ISO 8601 start time")
    completed_at: Optional[str] = Field(None, description="ISO 8601 completion time")
    events: List[Dict[str, Any]] = Field(default_factory=list, description="Run timeline")

    def outcome_for(self, target: str) -> Optional[TargetOutcome]:
        for outcome in self.outcomes:
            if outcome.target == target:
                return outcome
        return None

    def targets_with_status(self, status: TargetStatus) -> List[str]:
        return [outcome.target for outcome in self.outcomes if outcome.status == status]
