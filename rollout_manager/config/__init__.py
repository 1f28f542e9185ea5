"""
Configuration loading for rollout-manager.
"""

from rollout_manager.config.settings import (
    BackupSettings,
    ClusterSettings,
    EnvironmentConfig,
    HealthSettings,
    LoggingSettings,
    NotificationSettings,
    RolloutManagerConfig,
    RolloutSettings,
    TargetConfig,
    default_config_path,
)

__all__ = [
    "BackupSettings",
    "ClusterSettings",
    "EnvironmentConfig",
    "HealthSettings",
    "LoggingSettings",
    "NotificationSettings",
    "RolloutManagerConfig",
    "RolloutSettings",
    "TargetConfig",
    "default_config_path",
]
