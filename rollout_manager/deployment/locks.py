"""
Per-target serialization of rollout attempts.

At most one non-terminal attempt may exist for a target at any time. The
registry hands out one ``asyncio.Lock`` per target key and tracks which
attempt currently owns it.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict

from rollout_manager.errors import ConcurrentRolloutError
from rollout_manager.models import DeploymentTarget, RolloutAttempt

logger = logging.getLogger(__name__)


class TargetLockRegistry:
    """Locks and active-attempt bookkeeping keyed by ``namespace/name``."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._active: Dict[str, RolloutAttempt] = {}

    def lock_for(self, target: DeploymentTarget) -> asyncio.Lock:
        lock = self._locks.get(target.key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[target.key] = lock
        return lock

    @asynccontextmanager
    async def hold(self, target: DeploymentTarget) -> AsyncIterator[None]:
        """Wait for and hold the target's lock."""
        lock = self.lock_for(target)
        if lock.locked():
            logger.info(f"Waiting for in-flight rollout on {target.key}")
        async with lock:
            yield

    def register(self, attempt: RolloutAttempt) -> None:
        """
        Record ``attempt`` as the active attempt for its target.

        Raises:
            ConcurrentRolloutError: if another non-terminal attempt is registered
        """
        key = attempt.target.key
        current = self._active.get(key)
        if current is not None and current is not attempt and not current.is_terminal:
            raise ConcurrentRolloutError(
                f"Attempt {current.id} is still {current.status.value} for {key}"
            )
        self._active[key] = attempt

    def release(self, attempt: RolloutAttempt) -> None:
        key = attempt.target.key
        if self._active.get(key) is attempt:
            del self._active[key]

    def active(self, target: DeploymentTarget) -> RolloutAttempt | None:
        return self._active.get(target.key)
