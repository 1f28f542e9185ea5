"""
Pytest configuration and fixtures for rollout-manager tests.

The fake cluster keeps per-deployment image, replica counts and revision
history in memory and records every call, so tests can assert on what was
(or was not) mutated.
"""

import os
from typing import Any, Dict, List, Optional

import pytest

from rollout_manager.cluster import RetryPolicy
from rollout_manager.config import BackupSettings, RolloutSettings
from rollout_manager.errors import PrerequisiteError
from rollout_manager.health import HealthVerifier
from rollout_manager.models import (
    CategoryOutcome,
    ClusterStatus,
    DeploymentPlan,
    DeploymentTarget,
    FailurePolicy,
    HealthCheckConfig,
    HealthReport,
    Revision,
    TargetPolicy,
    utc_now,
)


def pytest_configure(config):
    """Keep tests away from the real configuration file."""
    os.environ["ROLLOUT_MANAGER_CONFIG"] = "/nonexistent/rollout-manager/config.yml"


class FakeClusterClient:
    """In-memory cluster control plane."""

    def __init__(self) -> None:
        self.deployments: Dict[str, Dict[str, Any]] = {}
        self.namespaces = {"kaldrix", "kaldrix-staging"}
        self.unreachable = False
        # Names whose apply (or rollback) never becomes available
        self.never_ready: set = set()
        self.rollback_never_ready: set = set()
        # Number of polls before an applied change becomes available
        self.polls_until_ready: Dict[str, int] = {}
        # Number of polls during which the controller has not observed a new spec
        self.observe_lag: Dict[str, int] = {}
        # Exceptions raised, in order, by the named method before it behaves normally
        self.errors: Dict[str, List[Exception]] = {}
        self.calls: List[tuple] = []
        self.applied: List[Dict[str, Any]] = []

    def add(
        self,
        name: str,
        image: str = "registry/app:v1",
        replicas: int = 3,
        revisions: Optional[List[str]] = None,
    ) -> None:
        images = revisions if revisions is not None else [image]
        self.deployments[name] = {
            "image": image,
            "desired": replicas,
            "available": replicas,
            "pending_polls": 0,
            "rolled_back": False,
            "generation": 1,
            "observe_lag": 0,
            "revisions": [
                Revision(number=i + 1, image=img, created_at=utc_now())
                for i, img in enumerate(images)
            ],
        }

    def _raise_scripted(self, method: str) -> None:
        queue = self.errors.get(method)
        if queue:
            raise queue.pop(0)

    def calls_to(self, method: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == method]

    def _next_revision(self, state: Dict[str, Any], image: str) -> None:
        number = state["revisions"][-1].number + 1 if state["revisions"] else 1
        state["revisions"].append(Revision(number=number, image=image, created_at=utc_now()))

    async def apply_image(self, target: DeploymentTarget, image: str) -> None:
        self.calls.append(("apply_image", target.resource_name, image))
        self._raise_scripted("apply_image")
        state = self.deployments[target.resource_name]
        state["generation"] += 1
        state["observe_lag"] = self.observe_lag.get(target.resource_name, 0)
        state["image"] = image
        state["rolled_back"] = False
        self._next_revision(state, image)
        if target.resource_name in self.never_ready:
            state["available"] = 0
        else:
            state["pending_polls"] = self.polls_until_ready.get(target.resource_name, 0)

    async def get_status(self, target: DeploymentTarget) -> ClusterStatus:
        self.calls.append(("get_status", target.resource_name))
        self._raise_scripted("get_status")
        state = self.deployments[target.resource_name]
        if state["observe_lag"] > 0:
            # Controller still reporting on the previous spec, which looked healthy
            state["observe_lag"] -= 1
            return ClusterStatus(
                available=state["desired"],
                desired=state["desired"],
                condition_available=True,
                updated=state["desired"],
                replicas=state["desired"],
                generation=state["generation"],
                observed_generation=state["generation"] - 1,
                image=state["image"],
            )
        if state["pending_polls"] > 0:
            state["pending_polls"] -= 1
            available = 0
        else:
            stuck = (
                target.resource_name in self.rollback_never_ready
                if state["rolled_back"]
                else target.resource_name in self.never_ready and state["available"] == 0
            )
            available = 0 if stuck else state["desired"]
            state["available"] = available
        return ClusterStatus(
            available=available,
            desired=state["desired"],
            condition_available=available == state["desired"],
            updated=available,
            generation=state["generation"],
            observed_generation=state["generation"],
            image=state["image"],
        )

    async def get_revision_history(self, target: DeploymentTarget) -> List[Revision]:
        self.calls.append(("get_revision_history", target.resource_name))
        self._raise_scripted("get_revision_history")
        return list(self.deployments[target.resource_name]["revisions"])

    async def rollback_to(self, target: DeploymentTarget, revision: Revision) -> None:
        self.calls.append(("rollback_to", target.resource_name, revision.number))
        self._raise_scripted("rollback_to")
        state = self.deployments[target.resource_name]
        state["image"] = revision.image
        state["rolled_back"] = True
        state["generation"] += 1
        self._next_revision(state, revision.image)

    async def check_prerequisites(self, namespace: str) -> None:
        self.calls.append(("check_prerequisites", namespace))
        if self.unreachable:
            raise PrerequisiteError("Cluster control plane unreachable: connection refused")
        if namespace not in self.namespaces:
            raise PrerequisiteError(f"Namespace {namespace} does not exist")

    async def export_resources(self, namespace: str, kinds) -> Dict[str, List[Dict[str, Any]]]:
        self.calls.append(("export_resources", namespace, tuple(kinds)))
        self._raise_scripted("export_resources")
        exported: Dict[str, List[Dict[str, Any]]] = {}
        for kind in kinds:
            if kind == "deployment":
                exported[kind] = [
                    {"kind": "Deployment", "metadata": {"name": name}, "image": state["image"]}
                    for name, state in self.deployments.items()
                ]
            else:
                exported[kind] = [{"kind": kind, "metadata": {"name": f"{namespace}-{kind}"}}]
        return exported

    async def apply_resources(self, namespace: str, items) -> int:
        self.calls.append(("apply_resources", namespace, len(items)))
        self._raise_scripted("apply_resources")
        self.applied.extend(items)
        return len(items)


class ScriptedVerifier(HealthVerifier):
    """
    Verifier returning configured scores instead of probing.

    ``scores`` maps target name to a score or a list of scores consumed one per
    call (the last one repeats). Targets in ``errored`` produce reports where
    every category errored.
    """

    def __init__(self, scores: Optional[Dict[str, Any]] = None, errored=()) -> None:
        super().__init__(probe_timeout=0.1, aggregate_timeout=0.5)
        self.scores: Dict[str, Any] = dict(scores or {})
        self.errored = set(errored)
        self.calls: List[str] = []

    def _next_score(self, name: str) -> float:
        value = self.scores.get(name, 100.0)
        if isinstance(value, list):
            return value.pop(0) if len(value) > 1 else value[0]
        return value

    async def verify(self, target: DeploymentTarget, config: HealthCheckConfig) -> HealthReport:
        self.calls.append(target.name)
        if target.name in self.errored:
            return HealthReport(
                target=target.name,
                score=0,
                category_results={
                    "liveness": CategoryOutcome.ERROR,
                    "api": CategoryOutcome.ERROR,
                },
                errors={"liveness": "connection refused", "api": "connection refused"},
                measured_at=utc_now(),
            )
        score = self._next_score(target.name)
        outcome = CategoryOutcome.PASS if score >= 100 else CategoryOutcome.FAIL
        return HealthReport(
            target=target.name,
            score=score,
            category_results={"liveness": CategoryOutcome.PASS, "api": outcome},
            measured_at=utc_now(),
        )


@pytest.fixture
def fake_cluster():
    """Fake cluster with the three default deployments, all at v1."""
    cluster = FakeClusterClient()
    cluster.add("blockchain-deployment", image="registry/chain:v1")
    cluster.add("backend-deployment", image="registry/backend:v1")
    cluster.add("frontend-deployment", image="registry/frontend:v1")
    return cluster


@pytest.fixture
def scripted_verifier():
    """Factory for verifiers with per-target scores."""

    def _make(scores: Optional[Dict[str, Any]] = None, errored=()) -> ScriptedVerifier:
        return ScriptedVerifier(scores, errored)

    return _make


@pytest.fixture
def fast_settings():
    """Rollout timings shrunk so state machines finish in milliseconds."""
    return RolloutSettings(
        poll_interval=0.01,
        rollout_timeout=0.3,
        settle_delay=0,
        rollback_timeout=0.3,
        max_verification_attempts=2,
    )


@pytest.fixture
def no_backoff():
    return RetryPolicy(max_retries=2, backoff=0)


@pytest.fixture
def backup_settings(tmp_path):
    return BackupSettings(directory=str(tmp_path / "backups"), timeout=2)


@pytest.fixture
def make_target():
    """Factory for targets named after the default deployments."""
    deployments = {
        "chain-node": "blockchain-deployment",
        "backend": "backend-deployment",
        "frontend": "frontend-deployment",
    }

    def _make(name: str = "backend", image: Optional[str] = None, **kwargs) -> DeploymentTarget:
        short = "chain" if name == "chain-node" else name
        return DeploymentTarget(
            name=name,
            namespace=kwargs.pop("namespace", "kaldrix"),
            desired_image=image or f"registry/{short}:v2",
            deployment_name=kwargs.pop("deployment_name", deployments.get(name, name)),
            **kwargs,
        )

    return _make


@pytest.fixture
def make_plan(make_target):
    """Factory for plans over the default targets."""

    def _make(
        names=("chain-node", "backend", "frontend"),
        policy: FailurePolicy = FailurePolicy.ABORT_ON_FIRST_FAILURE,
        threshold: float = 80,
        rollback_enabled: bool = True,
        **kwargs,
    ) -> DeploymentPlan:
        targets = [make_target(name) for name in names]
        return DeploymentPlan(
            environment="production",
            deployment_type="full" if len(names) > 1 else names[0],
            targets=targets,
            policy=policy,
            target_policies={
                name: TargetPolicy(
                    health_threshold=threshold,
                    rollback_enabled=rollback_enabled,
                    health=HealthCheckConfig(liveness_url=f"https://{name}.test/health"),
                )
                for name in names
            },
            **kwargs,
        )

    return _make
