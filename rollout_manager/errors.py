"""
Exception hierarchy for rollout-manager.

Cluster errors carry a ``retryable`` flag so the retry helper in
``rollout_manager.cluster.retry`` can decide without inspecting messages.
"""

from typing import Optional


class RolloutManagerError(Exception):
    """Base exception for rollout-manager."""

    pass


class PrerequisiteError(RolloutManagerError):
    """Control plane unreachable or target namespace missing. Aborts before any mutation."""

    pass


class PlanError(RolloutManagerError):
    """Operator input could not be turned into a deployment plan."""

    pass


class BackupError(RolloutManagerError):
    """Pre-deployment snapshot could not be written."""

    pass


class ClusterError(RolloutManagerError):
    """Error reported by the cluster control plane."""

    retryable: bool = False

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ConnectivityError(ClusterError):
    """Control plane unreachable. Retryable."""

    retryable = True


class NotFoundError(ClusterError):
    """Target or namespace absent. Never retried."""

    retryable = False


class ConflictError(ClusterError):
    """Concurrent mutation detected. Retried with backoff up to a bounded count."""

    retryable = True


class ClusterMutationError(RolloutManagerError):
    """An apply or rollback call was rejected after retries were exhausted."""

    def __init__(self, message: str, cause: Optional[ClusterError] = None):
        super().__init__(message)
        self.cause = cause


class DeadlineExceeded(RolloutManagerError):
    """A rollout or rollback exceeded its deadline."""

    pass


class HealthVerificationError(RolloutManagerError):
    """A health verification could not be completed."""

    pass


class InvalidTransitionError(RolloutManagerError):
    """A rollout attempt was asked to make a transition its state machine forbids."""

    def __init__(self, current: str, requested: str):
        super().__init__(f"Invalid rollout transition {current} -> {requested}")
        self.current = current
        self.requested = requested


class ConcurrentRolloutError(RolloutManagerError):
    """A second non-terminal attempt was registered for a target."""

    pass


class RolloutCancelled(RolloutManagerError):
    """The operator cancelled the run while an attempt was in flight."""

    pass
