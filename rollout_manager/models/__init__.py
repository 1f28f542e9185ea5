"""
Pydantic models for rollout-manager.
"""

from rollout_manager.models.backup import BackupRecord
from rollout_manager.models.cluster import ClusterStatus, Revision
from rollout_manager.models.deployment import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    DeploymentPlan,
    DeploymentTarget,
    FailurePolicy,
    FailureReason,
    RolloutAttempt,
    RolloutStatus,
    RunResult,
    RunStatus,
    TargetOutcome,
    TargetPolicy,
    TargetStatus,
    utc_now,
)
from rollout_manager.models.health import CategoryOutcome, HealthCheckConfig, HealthReport

__all__ = [
    "ALLOWED_TRANSITIONS",
    "TERMINAL_STATUSES",
    "BackupRecord",
    "CategoryOutcome",
    "ClusterStatus",
    "DeploymentPlan",
    "DeploymentTarget",
    "FailurePolicy",
    "FailureReason",
    "HealthCheckConfig",
    "HealthReport",
    "Revision",
    "RolloutAttempt",
    "RolloutStatus",
    "RunResult",
    "RunStatus",
    "TargetOutcome",
    "TargetPolicy",
    "TargetStatus",
    "utc_now",
]
