"""
Rollout state machine.

One controller run drives one RolloutAttempt:

    pending -> updating -> awaiting_health -> healthy
                   |              |
                   v              v
                 failed     rolling_back -> rolled_back | failed

``pending -> healthy`` is the idempotent no-op taken when the target
already runs the desired image and is fully available.
"""

import asyncio
import logging
import time
from typing import Callable, Optional, Tuple

from rollout_manager.cluster import ClusterClient, RetryPolicy, call_with_retries
from rollout_manager.config import RolloutSettings
from rollout_manager.deployment.deadline import Deadline
from rollout_manager.deployment.helpers import (
    interruptible_sleep,
    raise_if_cancelled,
    wait_until_ready,
)
from rollout_manager.deployment.rollback import RollbackController
from rollout_manager.errors import (
    ClusterError,
    ClusterMutationError,
    DeadlineExceeded,
    HealthVerificationError,
    RolloutCancelled,
)
from rollout_manager.health import HealthVerifier
from rollout_manager.logging_config import LogContext, log_rollout_transition
from rollout_manager.models import (
    FailureReason,
    HealthReport,
    RolloutAttempt,
    RolloutStatus,
    TargetPolicy,
)
from rollout_manager.utils.log_sanitizer import sanitize_image

logger = logging.getLogger(__name__)


class RolloutController:
    """Moves one target to a new image under availability and health gates."""

    def __init__(
        self,
        cluster: ClusterClient,
        verifier: HealthVerifier,
        settings: Optional[RolloutSettings] = None,
        retry_policy: Optional[RetryPolicy] = None,
        rollback: Optional[RollbackController] = None,
        cancel_event: Optional[asyncio.Event] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize rollout controller.

        Args:
            cluster: Cluster adapter
            verifier: Health verifier for the post-rollout gate
            settings: Poll interval, timeouts, settle delay
            retry_policy: Retry bounds for control-plane mutations
            rollback: Rollback controller; built from the same settings when omitted
            cancel_event: Set by the operator to abort in-flight polling
            clock: Monotonic clock used for deadlines
        """
        self.cluster = cluster
        self.verifier = verifier
        self.settings = settings or RolloutSettings()
        self.retry_policy = retry_policy or RetryPolicy()
        self.cancel_event = cancel_event
        self._clock = clock
        self.rollback = rollback or RollbackController(
            cluster,
            settings=self.settings,
            retry_policy=self.retry_policy,
            cancel_event=cancel_event,
            clock=clock,
        )

    async def _sleep(self, seconds: float) -> None:
        await interruptible_sleep(seconds, self.cancel_event)

    def _transition(
        self,
        attempt: RolloutAttempt,
        status: RolloutStatus,
        reason: Optional[FailureReason] = None,
        message: Optional[str] = None,
    ) -> None:
        previous = attempt.status.value
        attempt.transition(status, reason=reason, message=message)
        log_rollout_transition(
            attempt.target.name,
            previous,
            status.value,
            reason=reason.value if reason else None,
            details={"message": message} if message else None,
        )

    def _fail(self, attempt: RolloutAttempt, reason: FailureReason, message: str) -> None:
        if not attempt.is_terminal:
            self._transition(attempt, RolloutStatus.FAILED, reason, message)

    async def run(
        self,
        attempt: RolloutAttempt,
        policy: TargetPolicy,
        timeout: Optional[float] = None,
    ) -> RolloutAttempt:
        """
        Drive ``attempt`` to a terminal state.

        Args:
            attempt: A pending attempt
            policy: Health threshold and rollback behaviour for the target
            timeout: Rollout deadline in seconds; ``settings.rollout_timeout`` when omitted

        Returns:
            The same attempt, always terminal

        Raises:
            asyncio.CancelledError: re-raised after the attempt is marked cancelled
        """
        if attempt.status != RolloutStatus.PENDING:
            raise ValueError(f"Rollout requires a pending attempt, got {attempt.status.value}")

        with LogContext(target=attempt.target.name, attempt_id=attempt.id):
            try:
                await self._run(attempt, policy, timeout or self.settings.rollout_timeout)
            except RolloutCancelled as e:
                self._fail(attempt, FailureReason.CANCELLED, str(e))
            except asyncio.CancelledError:
                self._fail(attempt, FailureReason.CANCELLED, "Rollout task cancelled")
                raise
            except ClusterMutationError as e:
                self._fail(attempt, FailureReason.CLUSTER_ERROR, str(e))
            except ClusterError as e:
                self._fail(
                    attempt, FailureReason.CLUSTER_ERROR, f"{type(e).__name__}: {e}"
                )
        return attempt

    async def _run(self, attempt: RolloutAttempt, policy: TargetPolicy, timeout: float) -> None:
        target = attempt.target
        deadline = Deadline(timeout, clock=self._clock)
        attempt.deadline_at = deadline.at
        raise_if_cancelled(self.cancel_event)

        status = await call_with_retries(
            lambda: self.cluster.get_status(target),
            self.retry_policy,
            f"Read status of {target.key}",
            sleep=self._sleep,
        )
        history = await call_with_retries(
            lambda: self.cluster.get_revision_history(target),
            self.retry_policy,
            f"Read revision history of {target.key}",
            sleep=self._sleep,
        )
        if history:
            attempt.previous_revision = history[-1].number

        if status.image == attempt.new_image and status.is_ready:
            if target.current_revision is None and history:
                target.current_revision = history[-1].number
            attempt.deployed_revision = target.current_revision
            self._transition(
                attempt,
                RolloutStatus.HEALTHY,
                FailureReason.ALREADY_AT_DESIRED_IMAGE,
                f"{target.key} already runs {sanitize_image(attempt.new_image)}",
            )
            return

        self._transition(attempt, RolloutStatus.UPDATING)
        try:
            await call_with_retries(
                lambda: self.cluster.apply_image(target, attempt.new_image),
                self.retry_policy,
                f"Apply image to {target.key}",
                sleep=self._sleep,
            )
        except ClusterError as e:
            raise ClusterMutationError(f"Applying image to {target.key} failed: {e}", cause=e) from e

        try:
            await wait_until_ready(
                self.cluster,
                target,
                deadline,
                self.settings.poll_interval,
                sleep=self._sleep,
                cancel_event=self.cancel_event,
            )
        except DeadlineExceeded as e:
            self._transition(attempt, RolloutStatus.FAILED, FailureReason.ROLLOUT_TIMEOUT, str(e))
            return

        self._transition(attempt, RolloutStatus.AWAITING_HEALTH)
        try:
            history = await call_with_retries(
                lambda: self.cluster.get_revision_history(target),
                self.retry_policy,
                f"Read revision history of {target.key}",
                sleep=self._sleep,
            )
            if history:
                attempt.deployed_revision = history[-1].number
        except ClusterError as e:
            logger.warning(f"Could not read deployed revision of {target.key}: {e}")

        if self.settings.settle_delay:
            logger.info(
                f"Waiting {self.settings.settle_delay:.0f}s for {target.key} to settle "
                "before health verification"
            )
            await self._sleep(self.settings.settle_delay)

        report, error = await self._verify(attempt, policy)
        attempt.health_report = report

        if report is not None and not report.all_errored and report.passed(policy.health_threshold):
            if attempt.deployed_revision is not None:
                target.current_revision = attempt.deployed_revision
            self._transition(
                attempt,
                RolloutStatus.HEALTHY,
                message=f"Health score {report.score:.0f} >= {policy.health_threshold:.0f}",
            )
            return

        if report is None or report.all_errored:
            reason = FailureReason.HEALTH_VERIFICATION_ERROR
            message = f"Health verification could not complete: {error}"
        else:
            reason = FailureReason.HEALTH_CHECK_FAILED
            message = f"Health score {report.score:.0f} < {policy.health_threshold:.0f}"

        if policy.rollback_enabled:
            self._transition(attempt, RolloutStatus.ROLLING_BACK, reason, message)
            await self.rollback.run(attempt)
        else:
            self._transition(attempt, RolloutStatus.FAILED, reason, message + " (rollback disabled)")

    async def _verify(
        self, attempt: RolloutAttempt, policy: TargetPolicy
    ) -> Tuple[Optional[HealthReport], Optional[str]]:
        """
        Verify, retrying while every category errors.

        Returns:
            The last report (None if verification could not run) and the last error text
        """
        target = attempt.target
        report: Optional[HealthReport] = None
        error: Optional[str] = None
        attempts = self.settings.max_verification_attempts

        for number in range(1, attempts + 1):
            raise_if_cancelled(self.cancel_event)
            try:
                report = await self.verifier.verify(target, policy.health)
            except HealthVerificationError as e:
                # Nothing to probe; another attempt cannot change that
                return None, str(e)

            if not report.all_errored:
                return report, None

            error = "; ".join(f"{category}: {text}" for category, text in report.errors.items())
            if number < attempts:
                logger.warning(
                    f"Every health category errored for {target.key} "
                    f"(verification {number}/{attempts}): {error}"
                )
                await self._sleep(self.settings.poll_interval)

        return report, error
