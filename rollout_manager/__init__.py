"""rollout-manager - Zero-downtime rolling deployments with health gates and automatic rollback."""

__version__ = "1.0.0"
