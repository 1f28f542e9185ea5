"""
Pre-deployment snapshots.
"""

from rollout_manager.backup.manager import BackupManager

__all__ = ["BackupManager"]
