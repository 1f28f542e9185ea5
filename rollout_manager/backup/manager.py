"""
Pre-deployment snapshots.

Exports the configured resource kinds of a namespace through the cluster
adapter and writes them as one YAML ``List`` document, the same shape
``kubectl get -o yaml`` produces. An optional S3 upload runs in the
background so it never delays the deployment. Stored snapshots can be
listed, restored by re-applying their items, and deleted.
"""

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Set

import aiofiles  # type: ignore
import boto3
import yaml

from rollout_manager.cluster import ClusterClient
from rollout_manager.config import BackupSettings
from rollout_manager.errors import BackupError, ClusterError
from rollout_manager.models import BackupRecord
from rollout_manager.utils.log_sanitizer import sanitize_target_name

logger = logging.getLogger(__name__)

BACKUP_TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"


def _default_s3_client() -> Any:
    session = boto3.session.Session()
    return session.client(service_name="s3")


class BackupManager:
    """Takes and stores namespace snapshots."""

    def __init__(
        self,
        cluster: Optional[ClusterClient],
        settings: Optional[BackupSettings] = None,
        s3_client_factory: Callable[[], Any] = _default_s3_client,
    ) -> None:
        """
        Initialize backup manager.

        Args:
            cluster: Cluster adapter used to export and restore resources; None for
                managing stored snapshots only
            settings: Backup directory, timeouts and optional bucket
            s3_client_factory: Builds the boto3 S3 client on first upload
        """
        self.cluster = cluster
        self.settings = settings or BackupSettings()
        self._s3_client_factory = s3_client_factory
        self._s3_client: Any = None
        self._background_tasks: Set[asyncio.Task] = set()
        self.upload_errors: List[str] = []

    async def snapshot(self, namespace: str, scope: Optional[Sequence[str]] = None) -> BackupRecord:
        """
        Snapshot ``scope`` in ``namespace`` to a local YAML file.

        Args:
            namespace: Namespace to export
            scope: Resource kinds; defaults to ``settings.scope``

        Returns:
            The immutable BackupRecord

        Raises:
            BackupError: if the export or the write fails or exceeds ``settings.timeout``
        """
        kinds = list(scope or self.settings.scope)
        try:
            record = await asyncio.wait_for(
                self._snapshot(namespace, kinds), timeout=self.settings.timeout
            )
        except asyncio.TimeoutError as e:
            raise BackupError(
                f"Snapshot of {namespace} timed out after {self.settings.timeout}s"
            ) from e
        except (ClusterError, OSError, ValueError, yaml.YAMLError) as e:
            raise BackupError(f"Snapshot of {namespace} failed: {e}") from e

        if self.settings.s3_bucket:
            self._schedule_upload(Path(record.storage_location), record.remote_location)
        return record

    def _require_cluster(self) -> ClusterClient:
        if self.cluster is None:
            raise BackupError("No cluster connection configured for backups")
        return self.cluster

    async def _snapshot(self, namespace: str, kinds: List[str]) -> BackupRecord:
        now = datetime.now(timezone.utc)
        stamp = now.strftime(BACKUP_TIMESTAMP_FORMAT)
        backup_id = f"{sanitize_target_name(namespace)}-backup-{stamp}"

        exported = await self._require_cluster().export_resources(namespace, kinds)
        items: List[Dict[str, Any]] = []
        for kind in kinds:
            items.extend(exported.get(kind, []))
        document = {
            "apiVersion": "v1",
            "kind": "List",
            "metadata": {"name": backup_id, "namespace": namespace, "scope": kinds},
            "items": items,
        }

        directory = Path(self.settings.directory)
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / f"{backup_id}.yaml"

        # Write to temp file first, then move atomically
        temp_file = path.with_suffix(".tmp")
        async with aiofiles.open(temp_file, "w") as f:
            await f.write(yaml.safe_dump(document, default_flow_style=False, sort_keys=False))
        temp_file.replace(path)

        remote_location = None
        if self.settings.s3_bucket:
            remote_location = f"s3://{self.settings.s3_bucket}/{self._object_key(path)}"

        logger.info(f"Snapshot {backup_id}: {len(items)} resources ({', '.join(kinds)}) -> {path}")
        return BackupRecord(
            id=backup_id,
            timestamp=now.isoformat(),
            namespace=namespace,
            scope=kinds,
            storage_location=str(path),
            remote_location=remote_location,
        )

    def _object_key(self, path: Path) -> str:
        prefix = self.settings.s3_prefix
        if prefix and not prefix.endswith("/"):
            prefix += "/"
        return f"{prefix}{path.name}"

    def _schedule_upload(self, path: Path, remote_location: Optional[str]) -> None:
        task = asyncio.create_task(self._upload(path, remote_location))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _upload(self, path: Path, remote_location: Optional[str]) -> None:
        """Upload one snapshot. Failure is logged, never raised."""
        bucket = self.settings.s3_bucket
        key = self._object_key(path)
        try:
            if self._s3_client is None:
                self._s3_client = self._s3_client_factory()
            await asyncio.wait_for(
                asyncio.to_thread(self._s3_client.upload_file, str(path), bucket, key),
                timeout=self.settings.upload_timeout,
            )
            logger.info(f"Uploaded snapshot to {remote_location}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            message = f"Upload of {path.name} to {remote_location} failed: {e}"
            self.upload_errors.append(message)
            logger.error(message)

    @property
    def pending_uploads(self) -> int:
        return len(self._background_tasks)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for outstanding uploads; cancel whatever is left after ``timeout``."""
        if not self._background_tasks:
            return
        tasks = list(self._background_tasks)
        _, pending = await asyncio.wait(tasks, timeout=timeout or self.settings.upload_timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning(f"Cancelled {len(pending)} snapshot uploads still running")
            await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------
    # Stored snapshots
    # ------------------------------------------------------------------

    @staticmethod
    def _timestamp_from_id(backup_id: str, path: Path) -> str:
        try:
            stamp = datetime.strptime(backup_id[-15:], BACKUP_TIMESTAMP_FORMAT)
            return stamp.replace(tzinfo=timezone.utc).isoformat()
        except ValueError:
            return datetime.fromtimestamp(path.stat().st_mtime, timezone.utc).isoformat()

    async def _load_document(self, path: Path) -> Dict[str, Any]:
        async with aiofiles.open(path, "r") as f:
            document = yaml.safe_load(await f.read())
        if not isinstance(document, dict) or document.get("kind") != "List":
            raise ValueError(f"{path.name} is not a snapshot document")
        return document

    async def list_backups(self) -> List[BackupRecord]:
        """
        Snapshots in ``settings.directory``, newest first.

        Files that cannot be parsed are logged and left out.
        """
        directory = Path(self.settings.directory)
        if not directory.is_dir():
            return []

        records: List[BackupRecord] = []
        for path in directory.glob("*-backup-*.yaml"):
            try:
                document = await self._load_document(path)
            except (OSError, ValueError, yaml.YAMLError) as e:
                logger.warning(f"Skipping unreadable snapshot {path.name}: {e}")
                continue
            metadata = document.get("metadata") or {}
            backup_id = metadata.get("name") or path.stem
            records.append(
                BackupRecord(
                    id=backup_id,
                    timestamp=self._timestamp_from_id(backup_id, path),
                    namespace=metadata.get("namespace", ""),
                    scope=list(metadata.get("scope") or []),
                    storage_location=str(path),
                )
            )
        records.sort(key=lambda record: record.timestamp, reverse=True)
        return records

    async def get_backup(self, backup_id: str) -> BackupRecord:
        """
        Look up a stored snapshot by id.

        Raises:
            BackupError: if no snapshot has that id
        """
        for record in await self.list_backups():
            if record.id == backup_id:
                return record
        raise BackupError(f"Backup {backup_id} not found in {self.settings.directory}")

    async def restore(self, record: BackupRecord, dry_run: bool = False) -> int:
        """
        Re-apply every resource in ``record`` to its namespace.

        Args:
            record: Snapshot to restore
            dry_run: Only count the resources that would be applied

        Returns:
            Number of resources applied (or that would be)

        Raises:
            BackupError: if the snapshot cannot be read or applied
        """
        try:
            document = await self._load_document(Path(record.storage_location))
        except (OSError, ValueError, yaml.YAMLError) as e:
            raise BackupError(f"Cannot read backup {record.id}: {e}") from e

        items = document.get("items") or []
        if dry_run:
            logger.info(f"Dry run: would restore {len(items)} resources from {record.id}")
            return len(items)

        logger.warning(f"Restoring {len(items)} resources from {record.id} into {record.namespace}")
        try:
            applied = await self._require_cluster().apply_resources(record.namespace, items)
        except (ClusterError, ValueError) as e:
            raise BackupError(f"Restore of {record.id} failed: {e}") from e
        logger.info(f"Restored {applied} resources from {record.id}")
        return applied

    async def delete(self, record: BackupRecord) -> None:
        """
        Remove a stored snapshot file. Remote copies are left in place.

        Raises:
            BackupError: if the file cannot be removed
        """
        try:
            Path(record.storage_location).unlink()
        except OSError as e:
            raise BackupError(f"Cannot delete backup {record.id}: {e}") from e
        logger.info(f"Deleted backup {record.id}")
