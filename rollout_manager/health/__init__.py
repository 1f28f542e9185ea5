"""
Health verification for deployed targets.
"""

from rollout_manager.health.probes import (
    API,
    CHANNEL,
    LIVENESS,
    ApiProbe,
    ChannelProbe,
    HealthProbe,
    HttpLivenessProbe,
)
from rollout_manager.health.verifier import HealthVerifier

__all__ = [
    "API",
    "CHANNEL",
    "LIVENESS",
    "ApiProbe",
    "ChannelProbe",
    "HealthProbe",
    "HealthVerifier",
    "HttpLivenessProbe",
]
