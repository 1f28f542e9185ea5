"""
Helpers shared by the rollout and rollback state machines.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from rollout_manager.cluster import ClusterClient
from rollout_manager.deployment.deadline import Deadline
from rollout_manager.errors import ConnectivityError, DeadlineExceeded, RolloutCancelled
from rollout_manager.models import ClusterStatus, DeploymentTarget

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


def raise_if_cancelled(cancel_event: Optional[asyncio.Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise RolloutCancelled("Run cancelled by operator")


async def interruptible_sleep(seconds: float, cancel_event: Optional[asyncio.Event]) -> None:
    """
    Sleep for ``seconds`` unless the operator cancels first.

    Raises:
        RolloutCancelled: if ``cancel_event`` is set before or during the sleep
    """
    raise_if_cancelled(cancel_event)
    if cancel_event is None:
        await asyncio.sleep(seconds)
        return
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=max(seconds, 0))
    except asyncio.TimeoutError:
        return
    raise RolloutCancelled("Run cancelled by operator")


def _deadline_exceeded(target: DeploymentTarget, deadline: Deadline) -> DeadlineExceeded:
    return DeadlineExceeded(f"{target.key} not available within {deadline.timeout:.0f}s")


async def wait_until_ready(
    cluster: ClusterClient,
    target: DeploymentTarget,
    deadline: Deadline,
    poll_interval: float,
    sleep: SleepFn,
    cancel_event: Optional[asyncio.Event] = None,
) -> ClusterStatus:
    """
    Poll the target until every desired replica is available.

    Connectivity errors are logged and polled through until the deadline.
    Each poll logs a warning when fewer than half the expected replicas are
    available; that never changes the outcome.

    Returns:
        The ready status

    Raises:
        DeadlineExceeded: if the deadline passed first
        NotFoundError, ClusterError: non-transient control-plane errors
        RolloutCancelled: on operator cancellation
    """
    polls = 0
    while True:
        raise_if_cancelled(cancel_event)
        if deadline.expired():
            raise _deadline_exceeded(target, deadline)

        polls += 1
        try:
            status = await asyncio.wait_for(cluster.get_status(target), timeout=deadline.remaining())
        except asyncio.TimeoutError:
            logger.warning(f"Status read for {target.key} did not return before the deadline")
            raise _deadline_exceeded(target, deadline)
        except ConnectivityError as e:
            logger.warning(f"Status read for {target.key} failed, will retry: {e}")
            status = None

        if status is not None:
            if status.is_ready:
                logger.info(
                    f"{target.key} available: {status.available}/{status.desired} "
                    f"after {deadline.elapsed():.1f}s ({polls} polls)"
                )
                return status

            expected = target.replica_count or status.desired
            if not status.observed:
                logger.debug(
                    f"Waiting for {target.key}: generation {status.generation} "
                    f"not yet observed (at {status.observed_generation})"
                )
            elif expected and status.available < expected / 2:
                logger.warning(
                    f"Low availability for {target.key}: {status.available}/{expected} replicas"
                )
            else:
                logger.debug(
                    f"Waiting for {target.key}: {status.available}/{status.desired} available, "
                    f"{status.updated} updated"
                )

        if deadline.expired():
            raise _deadline_exceeded(target, deadline)
        await sleep(min(poll_interval, deadline.remaining()))
