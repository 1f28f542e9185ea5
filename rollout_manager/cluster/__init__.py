"""
Cluster control-plane adapter.
"""

from rollout_manager.cluster.protocol import ClusterClient
from rollout_manager.cluster.retry import RetryPolicy, call_with_retries

__all__ = ["ClusterClient", "RetryPolicy", "call_with_retries"]
