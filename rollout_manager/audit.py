"""
Audit logging for deployment actions.

Every run start, per-target result and run completion is appended to a
JSONL file for compliance and analysis.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union

logger = logging.getLogger(__name__)

# Audit log location
AUDIT_LOG_PATH = Path("/var/log/rollout-manager/audit.jsonl")


def audit_rollout_action(
    action: str,
    run_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    user: Optional[str] = None,
    success: Optional[bool] = None,
    path: Optional[Union[str, Path]] = None,
) -> None:
    """
    Log a deployment action for audit purposes.

    Args:
        action: Action taken (run_started, target_rollout, run_completed, backup_restore, ...)
        run_id: Run identifier
        details: Additional details about the action
        user: Operator who started the run
        success: Whether the action succeeded
        path: Audit file; defaults to AUDIT_LOG_PATH
    """
    audit_path = Path(path) if path else AUDIT_LOG_PATH
    try:
        audit_path.parent.mkdir(parents=True, exist_ok=True)

        audit_entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "action": action,
            "run_id": run_id,
            "user": user or "system",
            "details": details or {},
        }

        if success is not None:
            audit_entry["success"] = success

        # Append to audit log (JSONL format)
        with open(audit_path, "a") as f:
            f.write(json.dumps(audit_entry, default=str) + "\n")

        logger.debug(f"Audit: {action} run {run_id} by {user or 'system'}")

    except Exception as e:
        # Don't fail operations due to audit logging issues
        logger.error(f"Failed to write audit log: {e}")
