"""
Rollback state machine.

Entered only from ``rolling_back`` after a failed health gate. The previous
revision is the entry immediately preceding the one just deployed, i.e. the
second-most-recent entry of the target's revision history.
"""

import asyncio
import logging
import time
from typing import Callable, Optional

from rollout_manager.cluster import ClusterClient, RetryPolicy, call_with_retries
from rollout_manager.config import RolloutSettings
from rollout_manager.deployment.deadline import Deadline
from rollout_manager.deployment.helpers import interruptible_sleep, wait_until_ready
from rollout_manager.errors import ClusterError, DeadlineExceeded
from rollout_manager.logging_config import log_rollout_transition
from rollout_manager.models import FailureReason, RolloutAttempt, RolloutStatus

logger = logging.getLogger(__name__)


class RollbackController:
    """Returns a target to its previous revision."""

    def __init__(
        self,
        cluster: ClusterClient,
        settings: Optional[RolloutSettings] = None,
        retry_policy: Optional[RetryPolicy] = None,
        cancel_event: Optional[asyncio.Event] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.cluster = cluster
        self.settings = settings or RolloutSettings()
        self.retry_policy = retry_policy or RetryPolicy()
        self.cancel_event = cancel_event
        self._clock = clock

    async def _sleep(self, seconds: float) -> None:
        await interruptible_sleep(seconds, self.cancel_event)

    def _finish(
        self,
        attempt: RolloutAttempt,
        status: RolloutStatus,
        reason: Optional[FailureReason],
        message: str,
    ) -> RolloutAttempt:
        previous = attempt.status.value
        attempt.transition(status, reason=reason, message=message)
        log_rollout_transition(
            attempt.target.name,
            previous,
            status.value,
            reason=attempt.reason.value if attempt.reason else None,
            details={"message": message},
        )
        return attempt

    async def run(self, attempt: RolloutAttempt) -> RolloutAttempt:
        """
        Drive ``attempt`` from ``rolling_back`` to ``rolled_back`` or ``failed``.

        ``rolled_back`` keeps the health-gate reason that triggered it.
        """
        if attempt.status != RolloutStatus.ROLLING_BACK:
            raise ValueError(f"Rollback requires a rolling_back attempt, got {attempt.status.value}")

        target = attempt.target
        try:
            history = await call_with_retries(
                lambda: self.cluster.get_revision_history(target),
                self.retry_policy,
                f"Read revision history of {target.key}",
                sleep=self._sleep,
            )
        except ClusterError as e:
            return self._finish(
                attempt,
                RolloutStatus.FAILED,
                FailureReason.ROLLBACK_FAILED,
                f"Could not read revision history: {e}",
            )

        if len(history) < 2:
            return self._finish(
                attempt,
                RolloutStatus.FAILED,
                FailureReason.NO_ROLLBACK_TARGET,
                f"Revision history of {target.key} has {len(history)} entries; nothing to roll back to",
            )

        previous = history[-2]
        attempt.rollback_revision = previous.number
        logger.warning(
            f"Rolling back {target.key} from revision {history[-1].number} "
            f"to {previous.number} ({previous.image})"
        )

        try:
            await call_with_retries(
                lambda: self.cluster.rollback_to(target, previous),
                self.retry_policy,
                f"Roll back {target.key}",
                sleep=self._sleep,
            )
        except ClusterError as e:
            return self._finish(
                attempt,
                RolloutStatus.FAILED,
                FailureReason.ROLLBACK_FAILED,
                f"Rollback to revision {previous.number} rejected: {e}",
            )

        deadline = Deadline(self.settings.rollback_timeout, clock=self._clock)
        try:
            await wait_until_ready(
                self.cluster,
                target,
                deadline,
                self.settings.poll_interval,
                sleep=self._sleep,
                cancel_event=self.cancel_event,
            )
        except DeadlineExceeded:
            return self._finish(
                attempt,
                RolloutStatus.FAILED,
                FailureReason.ROLLBACK_FAILED,
                f"Rollback to revision {previous.number} not available within "
                f"{self.settings.rollback_timeout:.0f}s; manual intervention required",
            )
        except ClusterError as e:
            return self._finish(
                attempt,
                RolloutStatus.FAILED,
                FailureReason.ROLLBACK_FAILED,
                f"Rollback to revision {previous.number} could not be observed: {e}",
            )

        return self._finish(
            attempt,
            RolloutStatus.ROLLED_BACK,
            None,
            f"Rolled back to revision {previous.number}",
        )
