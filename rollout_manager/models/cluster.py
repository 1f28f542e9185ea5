"""
Control-plane views of a deployment target.

These are read models only. The orchestrator never keeps them across poll
iterations; every status check produces a fresh ``ClusterStatus``.
"""

from typing import Optional
from pydantic import BaseModel, Field


class ClusterStatus(BaseModel):
    """Replica availability of a target as reported by the control plane."""

    available: int = Field(default=0, description="Replicas currently available")
    desired: int = Field(default=0, description="Replicas requested by the deployment spec")
    condition_available: bool = Field(
        default=False, description="Whether the Available condition is True"
    )
    updated: Optional[int] = Field(
        None,
        description="Replicas running the current pod template; None when the control plane does not report it",
    )
    replicas: Optional[int] = Field(
        None, description="All replicas, old and new; None when the control plane does not report it"
    )
    generation: Optional[int] = Field(
        None, description="Generation of the requested deployment spec"
    )
    observed_generation: Optional[int] = Field(
        None, description="Latest generation the controller has acted on"
    )
    image: Optional[str] = Field(
        None, description="Image currently set in the target's pod template"
    )

    @property
    def observed(self) -> bool:
        """The controller has processed the latest spec change."""
        if self.generation is None:
            return True
        return self.observed_generation is not None and self.observed_generation >= self.generation

    @property
    def is_ready(self) -> bool:
        """
        All desired replicas are available and the Available condition holds.

        The same rules as ``rollout status``: counts describing a generation
        the controller has not observed yet say nothing about the new spec,
        and old replicas still counting towards availability mid-rollout do
        not make the target ready.
        """
        if not self.observed:
            return False
        if self.updated is not None:
            if self.updated < self.desired:
                return False
            if self.replicas is not None and self.replicas > self.updated:
                return False
        return self.condition_available and self.available == self.desired


class Revision(BaseModel):
    """One addressable entry of a target's rollout history."""

    number: int = Field(..., description="Monotonic revision number")
    image: Optional[str] = Field(None, description="Image recorded for this revision")
    created_at: Optional[str] = Field(
        None, description="ISO 8601 timestamp when the revision was created"
    )
