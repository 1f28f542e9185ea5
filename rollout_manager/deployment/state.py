"""
Run history persistence.

Handles loading and saving completed run results to disk.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiofiles  # type: ignore
from pydantic import ValidationError

from rollout_manager.models import RunResult

logger = logging.getLogger(__name__)


class RunHistoryStore:
    """
    Manages persistent storage of run results.

    Handles serialization/deserialization of runs to JSON and atomic file
    writes. Only the most recent ``max_runs`` runs are kept.
    """

    def __init__(self, state_dir: Optional[Path] = None, max_runs: int = 100) -> None:
        """
        Initialize run history store.

        Args:
            state_dir: Directory for state files. Defaults to /var/lib/rollout-manager
                      with fallback to temp directory.
            max_runs: Number of runs to keep
        """
        if state_dir:
            self.state_dir = Path(state_dir)
        else:
            self.state_dir = Path("/var/lib/rollout-manager")
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
        except PermissionError:
            import tempfile

            self.state_dir = Path(tempfile.gettempdir()) / "rollout-manager"
            self.state_dir.mkdir(parents=True, exist_ok=True)
            logger.warning(f"State directory not writable, using {self.state_dir}")

        self.max_runs = max_runs
        self.state_file = self.state_dir / "run_history.json"

    def load(self) -> List[RunResult]:
        """Load stored runs, oldest first. A corrupt file yields an empty history."""
        if not self.state_file.exists():
            return []

        try:
            with open(self.state_file, "r") as f:
                state = json.load(f)
            runs = [RunResult.model_validate(run) for run in state.get("runs", [])]
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            logger.warning(f"Failed to load run history: {e}")
            return []

        logger.debug(f"Loaded run history with {len(runs)} runs")
        return runs

    def recent(self, limit: int = 10) -> List[RunResult]:
        """Most recent runs, newest first."""
        return list(reversed(self.load()))[:limit]

    def _serialize(self, runs: List[RunResult]) -> Dict[str, Any]:
        return {
            "runs": [run.model_dump(mode="json") for run in runs[-self.max_runs :]],
            "saved_at": datetime.now(timezone.utc).isoformat(),
        }

    async def save_async(self, runs: List[RunResult]) -> None:
        """Save run history asynchronously."""
        try:
            state = self._serialize(runs)

            # Write to temp file first, then move atomically
            temp_file = self.state_file.with_suffix(".tmp")
            async with aiofiles.open(temp_file, "w") as f:
                await f.write(json.dumps(state, indent=2))

            # Atomic rename (still sync as it's a filesystem operation)
            temp_file.replace(self.state_file)
            logger.debug(f"Saved run history with {len(state['runs'])} runs")
        except OSError as e:
            logger.error(f"Failed to save run history: {e}")

    async def append(self, result: RunResult) -> None:
        runs = self.load()
        runs.append(result)
        await self.save_async(runs)


def add_event(
    result: Optional[RunResult],
    event_type: str,
    message: str,
    details: Optional[dict] = None,
) -> None:
    """
    Add an event to a run's timeline.

    Args:
        result: The run to add the event to (can be None)
        event_type: Type of event (e.g., "started", "backup_skipped", "completed")
        message: Human-readable event message
        details: Optional additional details dict
    """
    if not result:
        return

    event: Dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "type": event_type,
        "message": message,
    }
    if details:
        event["details"] = details
    result.events.append(event)
