"""
Turning operator input into a DeploymentPlan.

The environment selects a namespace and timeout overrides, the deployment
type selects the ordered subset of targets, and ``--image TARGET=IMAGE``
pairs supply the images.
"""

import logging
from typing import Dict, Iterable, Optional

from rollout_manager.config import RolloutManagerConfig
from rollout_manager.errors import PlanError
from rollout_manager.models import (
    DeploymentPlan,
    DeploymentTarget,
    FailurePolicy,
    HealthCheckConfig,
    TargetPolicy,
)

logger = logging.getLogger(__name__)


def parse_image_args(values: Iterable[str]) -> Dict[str, str]:
    """
    Parse ``TARGET=IMAGE`` pairs.

    Raises:
        PlanError: on a malformed or repeated pair
    """
    images: Dict[str, str] = {}
    for value in values:
        name, sep, image = value.partition("=")
        name, image = name.strip(), image.strip()
        if not sep or not name or not image:
            raise PlanError(f"Invalid image argument {value!r}, expected TARGET=IMAGE")
        if name in images:
            raise PlanError(f"Image given twice for target {name}")
        images[name] = image
    return images


def build_plan(
    config: RolloutManagerConfig,
    environment: str,
    deployment_type: str,
    images: Dict[str, str],
    policy: Optional[FailurePolicy] = None,
    backup_enabled: Optional[bool] = None,
    force_backup: Optional[bool] = None,
    rollback_enabled: Optional[bool] = None,
) -> DeploymentPlan:
    """
    Build the plan for one run.

    Args:
        config: Loaded configuration
        environment: Environment selector, e.g. ``production``
        deployment_type: Deployment type selector, e.g. ``full``
        images: Image per target name
        policy: Failure policy; ``config.policy`` when omitted
        backup_enabled: Override ``backup.enabled``
        force_backup: Override ``backup.force``
        rollback_enabled: Override rollback for every target

    Raises:
        PlanError: unknown environment or deployment type, or images that do
            not match the deployment type's targets
    """
    env = config.environments.get(environment)
    if env is None:
        raise PlanError(
            f"Unknown environment {environment!r}; "
            f"expected one of: {', '.join(sorted(config.environments))}"
        )

    target_names = config.deployment_types.get(deployment_type)
    if target_names is None:
        raise PlanError(
            f"Unknown deployment type {deployment_type!r}; "
            f"expected one of: {', '.join(sorted(config.deployment_types))}"
        )
    if not target_names:
        raise PlanError(f"Deployment type {deployment_type!r} has no targets")

    missing = [name for name in target_names if name not in images]
    if missing:
        raise PlanError(f"No image given for: {', '.join(missing)}")
    extra = sorted(set(images) - set(target_names))
    if extra:
        raise PlanError(
            f"Images given for targets outside deployment type {deployment_type!r}: "
            f"{', '.join(extra)}"
        )

    targets = []
    target_policies: Dict[str, TargetPolicy] = {}
    for name in target_names:
        target_config = config.targets[name]
        targets.append(
            DeploymentTarget(
                name=name,
                namespace=env.namespace,
                desired_image=images[name],
                replica_count=target_config.replica_count,
                deployment_name=target_config.deployment_name,
            )
        )

        if rollback_enabled is not None:
            target_rollback = rollback_enabled
        elif target_config.rollback_enabled is not None:
            target_rollback = target_config.rollback_enabled
        else:
            target_rollback = config.rollout.rollback_enabled

        health = env.health.get(name)
        if health is None:
            logger.warning(f"No health endpoints configured for {name} in {environment}")
            health = HealthCheckConfig()

        target_policies[name] = TargetPolicy(
            health_threshold=target_config.health_threshold,
            rollback_enabled=target_rollback,
            health=health,
        )

    return DeploymentPlan(
        environment=environment,
        deployment_type=deployment_type,
        targets=targets,
        policy=policy or config.policy,
        target_policies=target_policies,
        backup_enabled=config.backup.enabled if backup_enabled is None else backup_enabled,
        force_backup=config.backup.force if force_backup is None else force_backup,
        backup_scope=list(config.backup.scope),
        rollout_timeout=env.rollout_timeout,
    )
