"""
Kubernetes implementation of the cluster control-plane contract.

Wraps the synchronous kubernetes client; every call runs in a worker thread
so polling loops stay responsive to cancellation.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError as Urllib3HTTPError

from rollout_manager.config import ClusterSettings
from rollout_manager.errors import (
    ClusterError,
    ConflictError,
    ConnectivityError,
    NotFoundError,
    PrerequisiteError,
)
from rollout_manager.models import ClusterStatus, DeploymentTarget, Revision
from rollout_manager.utils.log_sanitizer import sanitize_for_log

logger = logging.getLogger(__name__)

T = TypeVar("T")

REVISION_ANNOTATION = "deployment.kubernetes.io/revision"
POD_TEMPLATE_HASH_LABEL = "pod-template-hash"

# Snapshot kind -> (apiVersion, Kind, client method suffix)
RESOURCE_KINDS: Dict[str, Tuple[str, str, str]] = {
    "deployment": ("apps/v1", "Deployment", "deployment"),
    "statefulset": ("apps/v1", "StatefulSet", "stateful_set"),
    "service": ("v1", "Service", "service"),
    "configmap": ("v1", "ConfigMap", "config_map"),
    "secret": ("v1", "Secret", "secret"),
}
KIND_NAMES = {kind_name: kind for kind, (_, kind_name, _) in RESOURCE_KINDS.items()}

SERVER_METADATA_FIELDS = frozenset(
    {
        "uid",
        "resourceVersion",
        "creationTimestamp",
        "generation",
        "managedFields",
        "selfLink",
        "ownerReferences",
    }
)


def translate_api_exception(e: ApiException, what: str) -> ClusterError:
    """Map a kubernetes API error to the cluster error taxonomy."""
    status = getattr(e, "status", None)
    reason = getattr(e, "reason", None) or str(e)
    message = f"{what}: {reason}"
    if status == 404:
        return NotFoundError(message, status_code=status)
    if status == 409:
        return ConflictError(message, status_code=status)
    if status is None or status == 0 or status == 429 or status >= 500:
        return ConnectivityError(message, status_code=status)
    # 4xx other than the above: the request itself was rejected
    return ClusterError(message, status_code=status)


class KubernetesClusterClient:
    """Cluster client backed by the Kubernetes apps/v1 and core/v1 APIs."""

    def __init__(
        self,
        settings: Optional[ClusterSettings] = None,
        apps_api: Optional[Any] = None,
        core_api: Optional[Any] = None,
    ) -> None:
        """
        Initialize Kubernetes client.

        Args:
            settings: Connection settings; in-cluster or kubeconfig context
            apps_api: Pre-built AppsV1Api (skips config loading when both APIs are given)
            core_api: Pre-built CoreV1Api
        """
        self.settings = settings or ClusterSettings()

        if apps_api is None or core_api is None:
            try:
                if self.settings.in_cluster:
                    config.load_incluster_config()
                elif self.settings.context:
                    config.load_kube_config(context=self.settings.context)
                else:
                    config.load_kube_config()
            except Exception as e:
                raise PrerequisiteError(f"Failed to load Kubernetes configuration: {e}") from e

        self.apps_api = apps_api or client.AppsV1Api()
        self.core_api = core_api or client.CoreV1Api()
        self._serializer = client.ApiClient()

    async def _call(self, what: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run a blocking API call in a thread and translate its errors."""
        kwargs.setdefault("_request_timeout", self.settings.request_timeout)
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except ApiException as e:
            raise translate_api_exception(e, what) from e
        except (Urllib3HTTPError, OSError) as e:
            raise ConnectivityError(f"{what}: {e}") from e

    async def _read_deployment(self, target: DeploymentTarget) -> Any:
        return await self._call(
            f"read deployment {target.key}",
            self.apps_api.read_namespaced_deployment,
            name=target.resource_name,
            namespace=target.namespace,
        )

    async def apply_image(self, target: DeploymentTarget, image: str) -> None:
        """Set ``image`` on every container of the deployment's pod template."""
        deployment = await self._read_deployment(target)
        containers = [
            {"name": container.name, "image": image}
            for container in deployment.spec.template.spec.containers
        ]
        body = {"spec": {"template": {"spec": {"containers": containers}}}}
        await self._call(
            f"patch deployment {target.key}",
            self.apps_api.patch_namespaced_deployment,
            name=target.resource_name,
            namespace=target.namespace,
            body=body,
        )
        logger.info(
            f"Applied image {sanitize_for_log(image)} to {target.key} "
            f"({len(containers)} containers)"
        )

    async def get_status(self, target: DeploymentTarget) -> ClusterStatus:
        deployment = await self._read_deployment(target)
        status = deployment.status
        conditions = (status.conditions if status else None) or []
        condition_available = any(
            c.type == "Available" and c.status == "True" for c in conditions
        )
        containers = deployment.spec.template.spec.containers or []

        return ClusterStatus(
            available=(status.available_replicas if status else None) or 0,
            desired=deployment.spec.replicas or 0,
            condition_available=condition_available,
            updated=(status.updated_replicas if status else None) or 0,
            replicas=status.replicas if status else None,
            generation=deployment.metadata.generation,
            observed_generation=status.observed_generation if status else None,
            image=containers[0].image if containers else None,
        )

    async def _owned_replica_sets(self, target: DeploymentTarget) -> List[Any]:
        deployment = await self._read_deployment(target)
        match_labels = deployment.spec.selector.match_labels or {}
        selector = ",".join(f"{key}={value}" for key, value in sorted(match_labels.items()))
        replica_sets = await self._call(
            f"list replica sets for {target.key}",
            self.apps_api.list_namespaced_replica_set,
            namespace=target.namespace,
            label_selector=selector,
        )
        owner_uid = deployment.metadata.uid
        return [
            rs
            for rs in replica_sets.items
            if any(ref.uid == owner_uid for ref in (rs.metadata.owner_references or []))
        ]

    async def get_revision_history(self, target: DeploymentTarget) -> List[Revision]:
        revisions: List[Revision] = []
        for rs in await self._owned_replica_sets(target):
            annotations = rs.metadata.annotations or {}
            raw_revision = annotations.get(REVISION_ANNOTATION)
            if raw_revision is None:
                continue
            try:
                number = int(raw_revision)
            except ValueError:
                logger.warning(
                    f"Ignoring replica set {rs.metadata.name} with invalid revision "
                    f"{sanitize_for_log(raw_revision)}"
                )
                continue
            containers = rs.spec.template.spec.containers or []
            created = rs.metadata.creation_timestamp
            revisions.append(
                Revision(
                    number=number,
                    image=containers[0].image if containers else None,
                    created_at=created.isoformat() if created else None,
                )
            )
        revisions.sort(key=lambda revision: revision.number)
        return revisions

    async def rollback_to(self, target: DeploymentTarget, revision: Revision) -> None:
        """
        Copy the pod template of ``revision``'s replica set back into the deployment.

        This is what ``rollout undo --to-revision`` does client-side.
        """
        for rs in await self._owned_replica_sets(target):
            annotations = rs.metadata.annotations or {}
            if annotations.get(REVISION_ANNOTATION) == str(revision.number):
                template = self._serializer.sanitize_for_serialization(rs.spec.template)
                labels = template.get("metadata", {}).get("labels", {})
                labels.pop(POD_TEMPLATE_HASH_LABEL, None)
                patch = [{"op": "replace", "path": "/spec/template", "value": template}]
                await self._call(
                    f"rollback deployment {target.key}",
                    self.apps_api.patch_namespaced_deployment,
                    name=target.resource_name,
                    namespace=target.namespace,
                    body=patch,
                )
                logger.info(f"Rolled back {target.key} to revision {revision.number}")
                return

        raise NotFoundError(f"Revision {revision.number} not found for {target.key}")

    async def check_prerequisites(self, namespace: str) -> None:
        try:
            await self._call(
                f"read namespace {namespace}", self.core_api.read_namespace, name=namespace
            )
        except NotFoundError as e:
            raise PrerequisiteError(f"Namespace {namespace} does not exist") from e
        except ClusterError as e:
            raise PrerequisiteError(f"Cluster control plane unreachable: {e}") from e

    def _resource_api(self, kind: str, operation: str) -> Callable[..., Any]:
        try:
            api_version, _, suffix = RESOURCE_KINDS[kind]
        except KeyError:
            raise ValueError(f"Unsupported resource kind: {kind}") from None
        api = self.apps_api if api_version == "apps/v1" else self.core_api
        return getattr(api, f"{operation}_namespaced_{suffix}")

    async def export_resources(
        self, namespace: str, kinds: Sequence[str]
    ) -> Dict[str, List[Dict[str, Any]]]:
        exported: Dict[str, List[Dict[str, Any]]] = {}
        for kind in kinds:
            lister = self._resource_api(kind, "list")
            api_version, kind_name, _ = RESOURCE_KINDS[kind]
            result = await self._call(f"list {kind} in {namespace}", lister, namespace=namespace)
            items = []
            for item in result.items:
                # List responses leave kind and apiVersion unset on their items
                serialized = self._serializer.sanitize_for_serialization(item)
                serialized["apiVersion"] = api_version
                serialized["kind"] = kind_name
                items.append(serialized)
            exported[kind] = items
        return exported

    async def apply_resources(self, namespace: str, items: Sequence[Dict[str, Any]]) -> int:
        """
        Re-apply exported resources: patch each one in place, create it if missing.

        Server-populated fields (status, uid, resourceVersion, ...) are dropped
        before sending.
        """
        applied = 0
        for item in items:
            kind = KIND_NAMES.get(item.get("kind", ""))
            if kind is None:
                raise ValueError(f"Unsupported resource kind: {item.get('kind')}")
            body = {key: value for key, value in item.items() if key != "status"}
            metadata = {
                key: value
                for key, value in (item.get("metadata") or {}).items()
                if key not in SERVER_METADATA_FIELDS
            }
            metadata["namespace"] = namespace
            body["metadata"] = metadata
            name = metadata.get("name")
            if not name:
                raise ValueError(f"{item.get('kind')} without a name cannot be applied")

            what = f"{kind} {namespace}/{name}"
            try:
                await self._call(
                    f"patch {what}",
                    self._resource_api(kind, "patch"),
                    name=name,
                    namespace=namespace,
                    body=body,
                )
                logger.info(f"Restored {what}")
            except NotFoundError:
                await self._call(
                    f"create {what}",
                    self._resource_api(kind, "create"),
                    namespace=namespace,
                    body=body,
                )
                logger.info(f"Recreated {what}")
            applied += 1
        return applied
