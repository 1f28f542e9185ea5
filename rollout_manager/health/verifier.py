"""
Health verifier.

Runs the probe battery for a target concurrently and folds the results into
a composite score: the percentage of categories that passed. Categories
that errored count as failed for the score and are reported separately.
"""

import asyncio
import logging
from typing import Dict, List, Optional, Sequence, Tuple

from rollout_manager.errors import HealthVerificationError
from rollout_manager.health.probes import ApiProbe, ChannelProbe, HealthProbe, HttpLivenessProbe
from rollout_manager.models import (
    CategoryOutcome,
    DeploymentTarget,
    HealthCheckConfig,
    HealthReport,
    utc_now,
)
from rollout_manager.utils.log_sanitizer import sanitize_target_name

logger = logging.getLogger(__name__)

ProbeResult = Tuple[CategoryOutcome, Optional[str]]


class HealthVerifier:
    """Verifies a deployed target against its probe battery."""

    def __init__(self, probe_timeout: float = 5.0, aggregate_timeout: float = 30.0) -> None:
        """
        Initialize health verifier.

        Args:
            probe_timeout: Timeout for each category probe in seconds
            aggregate_timeout: Timeout for a whole verify() call; categories
                still running when it expires are marked ``error``
        """
        self.probe_timeout = probe_timeout
        self.aggregate_timeout = aggregate_timeout

    def build_probes(self, config: HealthCheckConfig) -> List[HealthProbe]:
        """Build the battery for a target; a category is included only when configured."""
        probes: List[HealthProbe] = []
        if config.liveness_url:
            probes.append(HttpLivenessProbe(config.liveness_url, timeout=self.probe_timeout))
        if config.api_url:
            probes.append(
                ApiProbe(config.api_url, rpc_method=config.api_rpc_method, timeout=self.probe_timeout)
            )
        if config.channel_url:
            probes.append(ChannelProbe(config.channel_url, timeout=self.probe_timeout))
        return probes

    async def _run_probe(self, probe: HealthProbe) -> ProbeResult:
        try:
            passed = await asyncio.wait_for(probe.check(), timeout=self.probe_timeout)
        except asyncio.TimeoutError:
            return CategoryOutcome.ERROR, f"timed out after {self.probe_timeout}s"
        except asyncio.CancelledError:
            raise
        except Exception as e:
            return CategoryOutcome.ERROR, f"{type(e).__name__}: {e}"

        if passed:
            return CategoryOutcome.PASS, None
        return CategoryOutcome.FAIL, "check failed"

    async def verify(self, target: DeploymentTarget, config: HealthCheckConfig) -> HealthReport:
        """
        Run every configured category against ``target`` and score the result.

        Args:
            target: Target being verified
            config: Probe endpoints for the target

        Returns:
            A fresh HealthReport

        Raises:
            HealthVerificationError: if no category is configured for the target
        """
        probes = self.build_probes(config)
        if not probes:
            raise HealthVerificationError(f"No health categories configured for {target.name}")

        tasks: Dict[str, asyncio.Task] = {
            probe.category: asyncio.create_task(self._run_probe(probe)) for probe in probes
        }
        try:
            _, pending = await asyncio.wait(tasks.values(), timeout=self.aggregate_timeout)
        finally:
            unfinished = [task for task in tasks.values() if not task.done()]
            for task in unfinished:
                task.cancel()
            if unfinished:
                await asyncio.gather(*unfinished, return_exceptions=True)

        results: Dict[str, CategoryOutcome] = {}
        errors: Dict[str, str] = {}
        for category, task in tasks.items():
            if task in pending:
                outcome, message = (
                    CategoryOutcome.ERROR,
                    f"unfinished after aggregate timeout of {self.aggregate_timeout}s",
                )
            else:
                outcome, message = task.result()
            results[category] = outcome
            if message:
                errors[category] = message

        passed = sum(1 for outcome in results.values() if outcome == CategoryOutcome.PASS)
        score = round(100.0 * passed / len(results), 2)

        report = HealthReport(
            target=target.name,
            score=score,
            category_results=results,
            errors=errors,
            measured_at=utc_now(),
        )
        logger.info(
            f"Health of {sanitize_target_name(target.name)}: score {score:.0f} "
            f"({passed}/{len(results)} passed"
            + (f", errored: {', '.join(report.error_categories)}" if report.error_categories else "")
            + ")"
        )
        return report

    async def verify_all(
        self, items: Sequence[Tuple[DeploymentTarget, HealthCheckConfig]]
    ) -> List[HealthReport]:
        """
        Verify several targets concurrently for the cross-service pass.

        A target whose verification cannot run at all gets a zero-score report
        instead of aborting the whole pass.
        """

        async def _one(target: DeploymentTarget, config: HealthCheckConfig) -> HealthReport:
            try:
                return await self.verify(target, config)
            except HealthVerificationError as e:
                logger.error(f"Aggregate verification of {target.name} could not run: {e}")
                return HealthReport(
                    target=target.name,
                    score=0,
                    errors={"verification": str(e)},
                    measured_at=utc_now(),
                )

        return list(await asyncio.gather(*(_one(target, config) for target, config in items)))
