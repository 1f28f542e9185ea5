"""
Health verification models.

A ``HealthReport`` is produced fresh by every verification call and is never
reused across attempts.
"""

from enum import Enum
from typing import Dict, List, Optional
from pydantic import BaseModel, Field


class CategoryOutcome(str, Enum):
    """Result of a single health category."""

    PASS = "pass"
    FAIL = "fail"  # checked and failed
    ERROR = "error"  # could not check


class HealthCheckConfig(BaseModel):
    """
    Probe endpoints for one target.

    A category is only part of the battery when its endpoint is configured,
    so a target without a websocket channel is scored on two categories.
    """

    liveness_url: Optional[str] = Field(None, description="HTTP endpoint that must return 2xx")
    api_url: Optional[str] = Field(None, description="Dependent API-layer endpoint")
    api_rpc_method: Optional[str] = Field(
        None,
        description="JSON-RPC method POSTed to api_url; plain GET health check when unset",
    )
    channel_url: Optional[str] = Field(
        None, description="Websocket endpoint for the bidirectional-channel probe"
    )


class HealthReport(BaseModel):
    """Composite health signal for one target at one point in time."""

    target: str = Field(..., description="Target name")
    score: float = Field(..., ge=0, le=100, description="Percentage of categories that passed")
    category_results: Dict[str, CategoryOutcome] = Field(
        default_factory=dict, description="Outcome per category"
    )
    errors: Dict[str, str] = Field(
        default_factory=dict,
        description="Diagnostic message for categories that errored or failed",
    )
    measured_at: str = Field(..., description="ISO 8601 timestamp of the measurement")

    def passed(self, threshold: float) -> bool:
        """Whether the composite score meets ``threshold``."""
        return self.score >= threshold

    @property
    def error_categories(self) -> List[str]:
        return [
            name
            for name, outcome in self.category_results.items()
            if outcome == CategoryOutcome.ERROR
        ]

    @property
    def all_errored(self) -> bool:
        """True when no category could be checked at all."""
        return bool(self.category_results) and len(self.error_categories) == len(
            self.category_results
        )
