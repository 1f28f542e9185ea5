"""
Deployment sequencer.

Coordinates one run: prerequisite check, one backup for the whole run,
each target's rollout in plan order, continue-vs-abort per policy, and a
final cross-service health pass over every target that reached healthy.
"""

import asyncio
import logging
import time
from pathlib import Path
from typing import Callable, Optional, Union

from rollout_manager.audit import audit_rollout_action
from rollout_manager.backup import BackupManager
from rollout_manager.cluster import ClusterClient, RetryPolicy
from rollout_manager.config import RolloutSettings
from rollout_manager.deployment.locks import TargetLockRegistry
from rollout_manager.deployment.rollout import RolloutController
from rollout_manager.deployment.state import RunHistoryStore, add_event
from rollout_manager.errors import BackupError, PlanError, PrerequisiteError
from rollout_manager.health import HealthVerifier
from rollout_manager.logging_config import LogContext
from rollout_manager.models import (
    DeploymentPlan,
    DeploymentTarget,
    FailurePolicy,
    FailureReason,
    RolloutAttempt,
    RolloutStatus,
    RunResult,
    RunStatus,
    TargetOutcome,
    TargetStatus,
    utc_now,
)
from rollout_manager.notifications import WebhookNotifier
from rollout_manager.utils.log_sanitizer import sanitize_target_name

logger = logging.getLogger(__name__)

_TARGET_STATUS = {
    RolloutStatus.HEALTHY: TargetStatus.HEALTHY,
    RolloutStatus.ROLLED_BACK: TargetStatus.ROLLED_BACK,
    RolloutStatus.FAILED: TargetStatus.FAILED,
}


def compute_run_status(result: RunResult, plan: DeploymentPlan) -> RunStatus:
    """
    Overall result: success only when every target is healthy and the final
    aggregate check passed; failure when every target is healthy but the
    aggregate check failed; partial failure otherwise.
    """
    all_healthy = len(result.outcomes) == len(plan.targets) and all(
        outcome.status == TargetStatus.HEALTHY for outcome in result.outcomes
    )
    if all_healthy:
        return RunStatus.FAILURE if result.aggregate_passed is False else RunStatus.SUCCESS
    return RunStatus.PARTIAL_FAILURE


class DeploymentSequencer:
    """Runs a DeploymentPlan end to end."""

    def __init__(
        self,
        cluster: ClusterClient,
        verifier: HealthVerifier,
        backups: Optional[BackupManager] = None,
        settings: Optional[RolloutSettings] = None,
        retry_policy: Optional[RetryPolicy] = None,
        history: Optional[RunHistoryStore] = None,
        audit_log: Optional[Union[str, Path]] = None,
        user: Optional[str] = None,
        locks: Optional[TargetLockRegistry] = None,
        notifier: Optional[WebhookNotifier] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize deployment sequencer.

        Args:
            cluster: Cluster adapter
            verifier: Health verifier for per-target gates and the aggregate pass
            backups: Backup manager; required unless plans disable backups
            settings: Rollout timings
            retry_policy: Retry bounds for control-plane mutations
            history: Run history store; nothing is persisted when omitted
            audit_log: Audit trail path
            user: Operator recorded in the audit trail
            locks: Shared per-target lock registry
            notifier: Webhook for run summaries and rollback alerts
            clock: Monotonic clock used for deadlines
        """
        self.cluster = cluster
        self.verifier = verifier
        self.backups = backups
        self.settings = settings or RolloutSettings()
        self.history = history
        self.audit_log = audit_log
        self.user = user
        self.locks = locks or TargetLockRegistry()
        self.notifier = notifier
        self.cancel_event = asyncio.Event()
        self.controller = RolloutController(
            cluster,
            verifier,
            settings=self.settings,
            retry_policy=retry_policy,
            cancel_event=self.cancel_event,
            clock=clock,
        )
        self.last_result: Optional[RunResult] = None

    def cancel(self) -> None:
        """Operator abort: in-flight polling stops and remaining targets are skipped."""
        if not self.cancel_event.is_set():
            logger.warning("Cancellation requested; stopping in-flight rollout")
        self.cancel_event.set()

    def _audit(self, action: str, result: RunResult, details: dict, success=None) -> None:
        audit_rollout_action(
            action,
            run_id=result.run_id,
            details=details,
            user=self.user,
            success=success,
            path=self.audit_log,
        )

    async def run(self, plan: DeploymentPlan) -> RunResult:
        """
        Execute ``plan``.

        Returns:
            The run result; every target has a terminal outcome

        Raises:
            PlanError: if a target has no policy
            asyncio.CancelledError: re-raised after the partial result is recorded
        """
        missing = [t.name for t in plan.targets if t.name not in plan.target_policies]
        if missing:
            raise PlanError(f"No policy for targets: {', '.join(missing)}")

        # A sequencer is reusable once the previous run, cancelled or not, has finished
        self.cancel_event.clear()

        result = RunResult(
            run_id=plan.id,
            environment=plan.environment,
            deployment_type=plan.deployment_type,
        )
        self.last_result = result

        with LogContext(run_id=plan.id):
            logger.info(
                f"Starting {plan.deployment_type} deployment {plan.id} to {plan.environment}: "
                f"{' -> '.join(t.name for t in plan.targets)} (policy {plan.policy.value})"
            )
            add_event(
                result,
                "started",
                f"Deployment {plan.deployment_type} to {plan.environment} started",
                {"targets": {t.name: t.desired_image for t in plan.targets}},
            )
            self._audit(
                "run_started",
                result,
                {
                    "environment": plan.environment,
                    "deployment_type": plan.deployment_type,
                    "images": {t.name: t.desired_image for t in plan.targets},
                    "policy": plan.policy.value,
                },
            )
            try:
                await self._run(plan, result)
            except asyncio.CancelledError:
                result.error = "Run cancelled"
                self._skip_remaining(plan, result, FailureReason.CANCELLED, "run cancelled")
                result.status = compute_run_status(result, plan)
                raise
            finally:
                await self._finish(result)

        return result

    async def _run(self, plan: DeploymentPlan, result: RunResult) -> None:
        namespace = plan.namespace

        try:
            await self.cluster.check_prerequisites(namespace)
        except PrerequisiteError as e:
            self._abort(plan, result, f"Prerequisites not met: {e}")
            return
        add_event(result, "prerequisites_ok", f"Control plane reachable, namespace: {namespace}")

        if not await self._backup(plan, result):
            return

        abort_reason: Optional[str] = None
        for target in plan.targets:
            if abort_reason is None and self.cancel_event.is_set():
                abort_reason = "run cancelled"
            if abort_reason is not None:
                reason = (
                    FailureReason.CANCELLED
                    if self.cancel_event.is_set()
                    else FailureReason.ABORTED
                )
                result.outcomes.append(self._skipped(target, reason, abort_reason))
                continue

            outcome = await self._deploy_target(plan, target, result)
            if outcome.status != TargetStatus.HEALTHY:
                if plan.policy == FailurePolicy.ABORT_ON_FIRST_FAILURE:
                    abort_reason = f"{target.name} {outcome.display_status}"
                    logger.error(f"Aborting run: {abort_reason}")
                    add_event(result, "aborted", f"Run aborted after {target.name} failed")
                else:
                    logger.warning(f"{target.name} {outcome.display_status}; continuing (best effort)")

        if self.cancel_event.is_set():
            result.error = "Run cancelled by operator"
            add_event(result, "cancelled", result.error)
        else:
            await self._aggregate(plan, result)
        result.status = compute_run_status(result, plan)

    async def _backup(self, plan: DeploymentPlan, result: RunResult) -> bool:
        """Take the run's single snapshot. Returns False when the run must abort."""
        if not plan.backup_enabled:
            result.backup_skipped = True
            logger.warning("Backups disabled; deploying without a snapshot")
            add_event(result, "backup_skipped", "Backups disabled by configuration")
            return True

        try:
            if self.backups is None:
                raise BackupError("Backups enabled but no backup manager is configured")
            result.backup = await self.backups.snapshot(plan.namespace, plan.backup_scope)
        except BackupError as e:
            if not plan.force_backup:
                self._abort(plan, result, f"Backup failed: {e}")
                return False
            result.backup_error = str(e)
            logger.warning(f"Backup failed but forced to continue: {e}")
            add_event(result, "backup_failed", "Backup failed, continuing (forced)", {"error": str(e)})
            return True

        add_event(
            result,
            "backup_created",
            f"Snapshot {result.backup.id} written",
            {"location": result.backup.storage_location},
        )
        return True

    def _abort(self, plan: DeploymentPlan, result: RunResult, error: str) -> None:
        """Hard failure before any mutation: every target is skipped."""
        logger.error(error)
        result.error = error
        result.status = RunStatus.FAILURE
        add_event(result, "failed", error)
        self._skip_remaining(plan, result, FailureReason.ABORTED, error)

    def _skipped(self, target: DeploymentTarget, reason: FailureReason, message: str) -> TargetOutcome:
        return TargetOutcome(
            target=target.name,
            status=TargetStatus.SKIPPED,
            reason=reason.value,
            message=f"Skipped: {message}",
            image=target.desired_image,
            revision_before=target.current_revision,
            revision_after=target.current_revision,
        )

    def _skip_remaining(
        self, plan: DeploymentPlan, result: RunResult, reason: FailureReason, message: str
    ) -> None:
        done = {outcome.target for outcome in result.outcomes}
        for target in plan.targets:
            if target.name not in done:
                result.outcomes.append(self._skipped(target, reason, message))

    async def _deploy_target(
        self, plan: DeploymentPlan, target: DeploymentTarget, result: RunResult
    ) -> TargetOutcome:
        revision_before = target.current_revision
        attempt = RolloutAttempt(
            target=target, new_image=target.desired_image, previous_revision=revision_before
        )

        async with self.locks.hold(target):
            self.locks.register(attempt)
            try:
                await self.controller.run(attempt, plan.policy_for(target), timeout=plan.rollout_timeout)
            except asyncio.CancelledError:
                result.outcomes.append(self._outcome(attempt, revision_before))
                raise
            except Exception as e:
                logger.exception(f"Unexpected error deploying {target.name}")
                if not attempt.is_terminal:
                    attempt.transition(
                        RolloutStatus.FAILED,
                        reason=FailureReason.CLUSTER_ERROR,
                        message=f"Unexpected error: {type(e).__name__}: {e}",
                    )
            finally:
                self.locks.release(attempt)

        outcome = self._outcome(attempt, revision_before)
        result.outcomes.append(outcome)
        add_event(
            result,
            f"target_{outcome.status.value}",
            f"{target.name}: {outcome.display_status}",
            {"attempt_id": attempt.id, "message": attempt.message},
        )
        self._audit(
            "target_rollout",
            result,
            {
                "target": target.name,
                "image": target.desired_image,
                "status": outcome.status.value,
                "reason": outcome.reason,
                "revision_before": revision_before,
                "revision_after": outcome.revision_after,
            },
            success=outcome.status == TargetStatus.HEALTHY,
        )
        if outcome.status == TargetStatus.ROLLED_BACK or (
            outcome.reason == FailureReason.ROLLBACK_FAILED.value
        ):
            await self._notify_rollback(result, outcome)
        return outcome

    async def _notify_rollback(self, result: RunResult, outcome: TargetOutcome) -> None:
        if self.notifier is None:
            return
        if not await self.notifier.notify_rollback(result, outcome):
            add_event(result, "notification_failed", f"Rollback notification for {outcome.target} failed")

    def _outcome(self, attempt: RolloutAttempt, revision_before: Optional[int]) -> TargetOutcome:
        return TargetOutcome(
            target=attempt.target.name,
            status=_TARGET_STATUS[attempt.status],
            reason=attempt.reason.value if attempt.reason else None,
            message=attempt.message,
            image=attempt.new_image,
            revision_before=revision_before,
            revision_after=attempt.target.current_revision,
            attempt=attempt,
        )

    async def _aggregate(self, plan: DeploymentPlan, result: RunResult) -> None:
        """Fresh cross-service pass over every target that reached healthy."""
        healthy_names = set(result.targets_with_status(TargetStatus.HEALTHY))
        healthy = [target for target in plan.targets if target.name in healthy_names]
        if not healthy:
            logger.info("No healthy targets; skipping aggregate health verification")
            return

        reports = await self.verifier.verify_all(
            [(target, plan.policy_for(target).health) for target in healthy]
        )
        result.aggregate_reports = reports

        failing = []
        for target, report in zip(healthy, reports):
            threshold = plan.policy_for(target).health_threshold
            if report.all_errored or not report.passed(threshold):
                failing.append(f"{target.name} ({report.score:.0f} < {threshold:.0f})")
        result.aggregate_passed = not failing

        if failing:
            logger.error(f"Aggregate health verification failed: {', '.join(failing)}")
            add_event(result, "aggregate_failed", "Aggregate health check failed", {"targets": failing})
        else:
            logger.info(f"Aggregate health verification passed for {len(healthy)} targets")
            add_event(result, "aggregate_passed", "Aggregate health check passed")

    async def _finish(self, result: RunResult) -> None:
        result.completed_at = utc_now()
        add_event(result, "completed", f"Run finished: {result.status.value}")

        if self.backups is not None:
            await self.backups.drain()
            for error in self.backups.upload_errors:
                add_event(result, "backup_upload_failed", error)

        if self.notifier is not None:
            if not await self.notifier.notify_run(result):
                add_event(result, "notification_failed", "Run notification failed")

        if self.history is not None:
            await self.history.append(result)

        self._audit(
            "run_completed",
            result,
            {
                "status": result.status.value,
                "targets": {
                    sanitize_target_name(o.target): o.display_status for o in result.outcomes
                },
                "backup": result.backup.id if result.backup else None,
                "error": result.error,
            },
            success=result.status == RunStatus.SUCCESS,
        )
        logger.info(f"Deployment {result.run_id} finished: {result.status.value}")
