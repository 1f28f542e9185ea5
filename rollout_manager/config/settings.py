"""
Configuration for rollout-manager.

Loaded from YAML into pydantic models. The defaults describe the
production and staging environments with the full chain-node -> backend ->
frontend ordering, 10s polling, a 600s rollout timeout, a 30s settle delay
and a 300s rollback timeout.
"""

import os
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, model_validator

from rollout_manager.models import FailurePolicy, HealthCheckConfig

DEFAULT_CONFIG_PATH = "/etc/rollout-manager/config.yml"
CONFIG_PATH_ENV = "ROLLOUT_MANAGER_CONFIG"


def default_config_path() -> str:
    return os.getenv(CONFIG_PATH_ENV, DEFAULT_CONFIG_PATH)


class ClusterSettings(BaseModel):
    """Control-plane connection and retry behaviour."""

    in_cluster: bool = Field(default=False, description="Use in-cluster service account config")
    context: Optional[str] = Field(None, description="kubeconfig context name")
    request_timeout: float = Field(default=30.0, description="Per-call timeout in seconds")
    max_retries: int = Field(default=3, ge=0, description="Retries for connectivity/conflict errors")
    retry_backoff: float = Field(default=1.0, ge=0, description="Initial backoff in seconds")


class RolloutSettings(BaseModel):
    """Timings for the rollout and rollback state machines."""

    poll_interval: float = Field(default=10.0, ge=0, description="Seconds between status checks")
    rollout_timeout: float = Field(default=600.0, gt=0, description="Rollout deadline in seconds")
    settle_delay: float = Field(
        default=30.0, ge=0, description="Pause between availability and health verification"
    )
    rollback_timeout: float = Field(default=300.0, gt=0, description="Rollback deadline in seconds")
    rollback_enabled: bool = Field(default=True, description="Roll back on a failed health gate")
    max_verification_attempts: int = Field(
        default=3, ge=1, description="Verifications tried when every category errors"
    )


class HealthSettings(BaseModel):
    """Health verifier timeouts."""

    probe_timeout: float = Field(default=5.0, gt=0, description="Per-category probe timeout")
    aggregate_timeout: float = Field(default=30.0, gt=0, description="Timeout for one verify() call")


class BackupSettings(BaseModel):
    """Pre-deployment snapshot behaviour."""

    enabled: bool = Field(default=True, description="Take a snapshot before mutating")
    force: bool = Field(default=False, description="Proceed when the snapshot fails")
    directory: str = Field(default="./backups", description="Local snapshot directory")
    scope: List[str] = Field(
        default_factory=lambda: ["deployment", "service", "configmap"],
        description="Resource kinds to snapshot",
    )
    timeout: float = Field(default=60.0, gt=0, description="Snapshot timeout in seconds")
    s3_bucket: Optional[str] = Field(None, description="Optional bucket for remote upload")
    s3_prefix: str = Field(default="backups/", description="Key prefix for remote upload")
    upload_timeout: float = Field(default=120.0, gt=0, description="Remote upload timeout")


class NotificationSettings(BaseModel):
    """Webhook notifications for finished runs and rollbacks."""

    webhook_url: Optional[str] = Field(
        None, description="Slack-compatible incoming webhook; notifications are off when unset"
    )
    timeout: float = Field(default=10.0, gt=0, description="Webhook request timeout in seconds")


class LoggingSettings(BaseModel):
    """Log destinations."""

    directory: str = Field(default="/var/log/rollout-manager", description="Log directory")
    console_level: str = Field(default="INFO", description="Console log level")
    file_level: str = Field(default="DEBUG", description="File log level")
    use_json: bool = Field(default=False, description="JSON lines in log files")


class EnvironmentConfig(BaseModel):
    """Environment selector: namespace plus timeout overrides."""

    namespace: str = Field(..., description="Cluster namespace for this environment")
    rollout_timeout: Optional[float] = Field(None, description="Override rollout timeout")
    health_check_timeout: Optional[float] = Field(
        None, description="Override health aggregate timeout"
    )
    health: Dict[str, HealthCheckConfig] = Field(
        default_factory=dict, description="Probe endpoints per target for this environment"
    )


class TargetConfig(BaseModel):
    """Static description of a deployable target."""

    deployment_name: Optional[str] = Field(None, description="Cluster object name")
    replica_count: Optional[int] = Field(None, ge=0, description="Expected replicas")
    health_threshold: float = Field(
        ..., ge=0, le=100, description="Minimum composite score for promotion"
    )
    rollback_enabled: Optional[bool] = Field(
        None, description="Override rollout.rollback_enabled for this target"
    )


def _environment_health(prefix: str) -> Dict[str, HealthCheckConfig]:
    host = "kaldrix.com" if not prefix else f"{prefix}.kaldrix.com"
    dashed = "" if not prefix else f"{prefix}-"
    return {
        "frontend": HealthCheckConfig(
            liveness_url=f"https://{host}/api/health",
            api_url=f"https://{dashed}api.kaldrix.com/api/health",
        ),
        "backend": HealthCheckConfig(
            liveness_url=f"https://{dashed}api.kaldrix.com/api/health",
            api_url=f"https://{dashed}node.kaldrix.com",
            api_rpc_method="eth_blockNumber",
        ),
        "chain-node": HealthCheckConfig(
            liveness_url=f"https://{dashed}node.kaldrix.com/health",
            api_url=f"https://{dashed}node.kaldrix.com",
            api_rpc_method="eth_blockNumber",
            channel_url=f"wss://{dashed}ws.kaldrix.com",
        ),
    }


def _default_environments() -> Dict[str, EnvironmentConfig]:
    return {
        "production": EnvironmentConfig(
            namespace="kaldrix", health_check_timeout=300, health=_environment_health("")
        ),
        "staging": EnvironmentConfig(
            namespace="kaldrix-staging",
            health_check_timeout=180,
            health=_environment_health("staging"),
        ),
    }


def _default_targets() -> Dict[str, TargetConfig]:
    return {
        "chain-node": TargetConfig(deployment_name="blockchain-deployment", health_threshold=100),
        "backend": TargetConfig(deployment_name="backend-deployment", health_threshold=80),
        "frontend": TargetConfig(deployment_name="frontend-deployment", health_threshold=80),
    }


def _default_deployment_types() -> Dict[str, List[str]]:
    return {
        "full": ["chain-node", "backend", "frontend"],
        "chain-node": ["chain-node"],
        "backend": ["backend"],
        "frontend": ["frontend"],
    }


class RolloutManagerConfig(BaseModel):
    """Top-level configuration."""

    cluster: ClusterSettings = Field(default_factory=ClusterSettings)
    rollout: RolloutSettings = Field(default_factory=RolloutSettings)
    health: HealthSettings = Field(default_factory=HealthSettings)
    backup: BackupSettings = Field(default_factory=BackupSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)
    policy: FailurePolicy = Field(
        default=FailurePolicy.ABORT_ON_FIRST_FAILURE, description="Default failure policy"
    )
    state_dir: str = Field(default="/var/lib/rollout-manager", description="Run history directory")
    audit_log: str = Field(
        default="/var/log/rollout-manager/audit.jsonl", description="Audit trail path"
    )
    environments: Dict[str, EnvironmentConfig] = Field(default_factory=_default_environments)
    targets: Dict[str, TargetConfig] = Field(default_factory=_default_targets)
    deployment_types: Dict[str, List[str]] = Field(default_factory=_default_deployment_types)

    @model_validator(mode="after")
    def validate_deployment_types(self) -> "RolloutManagerConfig":
        """Every deployment type must only name configured targets."""
        for type_name, target_names in self.deployment_types.items():
            unknown = [name for name in target_names if name not in self.targets]
            if unknown:
                raise ValueError(
                    f"Deployment type {type_name} references unknown targets: {', '.join(unknown)}"
                )
        return self

    @classmethod
    def from_file(cls, path: str) -> "RolloutManagerConfig":
        """
        Load configuration from a YAML file.

        Raises:
            FileNotFoundError: if the file does not exist
            pydantic.ValidationError: if the content is invalid
        """
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
        return cls.model_validate(data)

    def save(self, path: str) -> None:
        """Write configuration as YAML, creating parent directories."""
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.safe_dump(self.model_dump(mode="json"), f, default_flow_style=False, sort_keys=False)
