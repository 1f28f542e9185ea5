"""
Cluster control-plane contract.

The orchestrator needs four capabilities from the control plane: set an
image, read availability, read revision history, and revert to a revision.
Supporting calls serve the run as a whole: a prerequisite check, plus a
resource export for backups and the re-apply used to restore one.
"""

from typing import Any, Dict, List, Protocol, Sequence, runtime_checkable

from rollout_manager.models import ClusterStatus, DeploymentTarget, Revision


@runtime_checkable
class ClusterClient(Protocol):
    """Protocol for a cluster control plane."""

    async def apply_image(self, target: DeploymentTarget, image: str) -> None:
        """
        Declaratively set ``image`` on every container of the target.

        Raises:
            ConnectivityError, NotFoundError, ConflictError
        """
        ...

    async def get_status(self, target: DeploymentTarget) -> ClusterStatus:
        """
        Read live replica availability. Never served from a cache.

        Raises:
            ConnectivityError, NotFoundError
        """
        ...

    async def get_revision_history(self, target: DeploymentTarget) -> List[Revision]:
        """
        Read the target's revision history, oldest first (most recent last).

        Raises:
            ConnectivityError, NotFoundError
        """
        ...

    async def rollback_to(self, target: DeploymentTarget, revision: Revision) -> None:
        """
        Revert the target to ``revision``.

        Raises:
            ConnectivityError, NotFoundError, ConflictError
        """
        ...

    async def check_prerequisites(self, namespace: str) -> None:
        """
        Confirm the control plane is reachable and ``namespace`` exists.

        Raises:
            PrerequisiteError
        """
        ...

    async def export_resources(
        self, namespace: str, kinds: Sequence[str]
    ) -> Dict[str, List[Dict[str, Any]]]:
        """
        Serialize every resource of the given kinds in ``namespace``.

        Raises:
            ConnectivityError, ValueError for an unsupported kind
        """
        ...

    async def apply_resources(self, namespace: str, items: Sequence[Dict[str, Any]]) -> int:
        """
        Re-apply serialized resources (as produced by ``export_resources``)
        into ``namespace``, creating any that no longer exist.

        Returns:
            Number of resources applied

        Raises:
            ConnectivityError, ConflictError, ValueError for an unsupported kind
        """
        ...
