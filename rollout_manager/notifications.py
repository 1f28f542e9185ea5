"""
Webhook notifications for finished runs and rollbacks.

Messages are Slack-style ``{"text": ...}`` JSON posts. Delivery is best
effort: a failed post is logged and never changes the run result.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional

import httpx

from rollout_manager.models import RunResult, RunStatus, TargetOutcome, TargetStatus

logger = logging.getLogger(__name__)

_RUN_HEADLINES = {
    RunStatus.SUCCESS: "Deployment Completed",
    RunStatus.PARTIAL_FAILURE: "Deployment Partially Failed",
    RunStatus.FAILURE: "Deployment Failed",
}


def format_run_message(result: RunResult) -> str:
    """Summary text for a finished run."""
    lines: List[str] = [
        f"{result.environment.title()} {_RUN_HEADLINES[result.status]}",
        "",
        f"Run: {result.run_id}",
        f"Type: {result.deployment_type}",
        f"Environment: {result.environment}",
        f"Timestamp: {result.completed_at or datetime.now(timezone.utc).isoformat()}",
        "",
    ]
    for outcome in result.outcomes:
        lines.append(f"{outcome.target}: {outcome.display_status}")
    if result.aggregate_passed is not None:
        lines.append(
            "All health checks passed" if result.aggregate_passed else "Aggregate health check failed"
        )
    if result.error:
        lines.append(f"Error: {result.error}")
    return "\n".join(lines)


def format_rollback_message(result: RunResult, outcome: TargetOutcome) -> str:
    """Alert text for a target that was rolled back or could not be."""
    if outcome.status == TargetStatus.ROLLED_BACK:
        headline = f"Rollback Completed: {outcome.target}"
    else:
        headline = f"Rollback Failed: {outcome.target}, manual intervention required"
    return "\n".join(
        [
            headline,
            "",
            f"Run: {result.run_id}",
            f"Environment: {result.environment}",
            f"Image: {outcome.image}",
            f"Reason: {outcome.message or outcome.reason}",
        ]
    )


class WebhookNotifier:
    """Posts run and rollback messages to an incoming webhook."""

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self._transport = transport

    async def _post(self, text: str) -> bool:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.url, json={"text": text})
                response.raise_for_status()
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.warning(f"Notification to webhook failed: {type(e).__name__}: {e}")
            return False
        logger.debug(f"Notification delivered ({response.status_code})")
        return True

    async def notify_run(self, result: RunResult) -> bool:
        """Post the run summary. Returns False when delivery failed."""
        logger.info(f"Sending deployment notification for run {result.run_id}")
        return await self._post(format_run_message(result))

    async def notify_rollback(self, result: RunResult, outcome: TargetOutcome) -> bool:
        """Post a rollback alert for ``outcome``. Returns False when delivery failed."""
        logger.info(f"Sending rollback notification for {outcome.target}")
        return await self._post(format_rollback_message(result, outcome))
