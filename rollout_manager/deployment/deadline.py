"""
Deadline carried explicitly through every polling loop.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable


@dataclass
class Deadline:
    """A point in time after which a loop must stop waiting."""

    timeout: float
    clock: Callable[[], float] = time.monotonic
    started: float = field(init=False)
    at: str = field(init=False)

    def __post_init__(self) -> None:
        self.started = self.clock()
        self.at = (datetime.now(timezone.utc) + timedelta(seconds=self.timeout)).isoformat()

    def elapsed(self) -> float:
        return self.clock() - self.started

    def remaining(self) -> float:
        """Seconds left, never negative."""
        return max(0.0, self.timeout - self.elapsed())

    def expired(self) -> bool:
        return self.elapsed() >= self.timeout
