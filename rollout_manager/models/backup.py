"""
Pydantic models for pre-deployment snapshots.
"""

from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field


class BackupRecord(BaseModel):
    """
    A snapshot of cluster state taken before a deployment run mutates anything.

    Created once per run and never modified afterwards.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Backup name, e.g. kaldrix-backup-20240101-120000")
    timestamp: str = Field(..., description="ISO 8601 timestamp when the snapshot was taken")
    namespace: str = Field(..., description="Namespace the snapshot was taken from")
    scope: List[str] = Field(..., description="Resource kinds included in the snapshot")
    storage_location: str = Field(..., description="Path of the local snapshot file")
    remote_location: Optional[str] = Field(
        None, description="Remote object URI when an upload was requested"
    )
