"""
Rollout orchestration: plans, state machines and the run sequencer.
"""

from rollout_manager.deployment.deadline import Deadline
from rollout_manager.deployment.locks import TargetLockRegistry
from rollout_manager.deployment.plan import build_plan, parse_image_args
from rollout_manager.deployment.rollback import RollbackController
from rollout_manager.deployment.rollout import RolloutController
from rollout_manager.deployment.sequencer import DeploymentSequencer, compute_run_status
from rollout_manager.deployment.state import RunHistoryStore, add_event

__all__ = [
    "Deadline",
    "DeploymentSequencer",
    "RollbackController",
    "RolloutController",
    "RunHistoryStore",
    "TargetLockRegistry",
    "add_event",
    "build_plan",
    "compute_run_status",
    "parse_image_args",
]
