"""
Tests for the deployment sequencer.
"""

import asyncio
import json

import httpx
import pytest

from rollout_manager.backup import BackupManager
from rollout_manager.deployment import DeploymentSequencer, RunHistoryStore
from rollout_manager.errors import PlanError
from rollout_manager.models import (
    FailurePolicy,
    FailureReason,
    RunStatus,
    TargetStatus,
)
from rollout_manager.notifications import WebhookNotifier


@pytest.fixture
def sequencer_factory(fake_cluster, fast_settings, no_backoff, scripted_verifier, backup_settings, tmp_path):
    def _make(scores=None, errored=(), backups=True, history=True, notifier=None):
        verifier = scripted_verifier(scores, errored)
        sequencer = DeploymentSequencer(
            fake_cluster,
            verifier,
            backups=BackupManager(fake_cluster, backup_settings) if backups else None,
            settings=fast_settings,
            retry_policy=no_backoff,
            history=RunHistoryStore(tmp_path / "state") if history else None,
            audit_log=tmp_path / "audit.jsonl",
            user="operator",
            notifier=notifier,
        )
        return sequencer, verifier

    return _make


def statuses(result):
    return {outcome.target: outcome.status for outcome in result.outcomes}


class TestSuccessfulRun:
    @pytest.mark.asyncio
    async def test_full_run(self, sequencer_factory, fake_cluster, make_plan):
        sequencer, verifier = sequencer_factory()
        plan = make_plan()

        result = await sequencer.run(plan)

        assert result.status == RunStatus.SUCCESS
        assert statuses(result) == {
            "chain-node": TargetStatus.HEALTHY,
            "backend": TargetStatus.HEALTHY,
            "frontend": TargetStatus.HEALTHY,
        }
        assert [call[1] for call in fake_cluster.calls_to("apply_image")] == [
            "blockchain-deployment",
            "backend-deployment",
            "frontend-deployment",
        ]
        assert result.aggregate_passed is True
        assert [r.target for r in result.aggregate_reports] == ["chain-node", "backend", "frontend"]
        # three gates plus the aggregate pass
        assert len(verifier.calls) == 6
        assert result.backup is not None
        assert result.completed_at is not None

    @pytest.mark.asyncio
    async def test_backup_taken_once_before_any_mutation(self, sequencer_factory, fake_cluster, make_plan):
        sequencer, _ = sequencer_factory()

        await sequencer.run(make_plan())

        methods = [call[0] for call in fake_cluster.calls]
        assert methods.count("export_resources") == 1
        assert methods.index("export_resources") < methods.index("apply_image")
        assert methods[0] == "check_prerequisites"

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self, sequencer_factory, fake_cluster, make_plan):
        sequencer, _ = sequencer_factory()
        first = await sequencer.run(make_plan())
        applies_after_first = len(fake_cluster.calls_to("apply_image"))

        second = await sequencer.run(make_plan())

        assert first.status == RunStatus.SUCCESS
        assert second.status == RunStatus.SUCCESS
        assert len(fake_cluster.calls_to("apply_image")) == applies_after_first
        assert fake_cluster.calls_to("rollback_to") == []
        assert all(
            outcome.reason == FailureReason.ALREADY_AT_DESIRED_IMAGE.value
            for outcome in second.outcomes
        )

    @pytest.mark.asyncio
    async def test_current_revision_advances_only_for_healthy(
        self, sequencer_factory, make_plan
    ):
        sequencer, _ = sequencer_factory(scores={"backend": 60})
        plan = make_plan(policy=FailurePolicy.BEST_EFFORT)
        for target in plan.targets:
            target.current_revision = 1

        result = await sequencer.run(plan)

        by_name = {outcome.target: outcome for outcome in result.outcomes}
        assert by_name["chain-node"].revision_after == 2
        assert by_name["frontend"].revision_after == 2
        assert by_name["backend"].status == TargetStatus.ROLLED_BACK
        assert by_name["backend"].revision_after == by_name["backend"].revision_before == 1


class TestFailurePolicy:
    @pytest.mark.asyncio
    async def test_abort_on_first_failure_skips_remaining(
        self, sequencer_factory, fake_cluster, make_plan
    ):
        fake_cluster.never_ready.add("backend-deployment")
        sequencer, _ = sequencer_factory()

        result = await sequencer.run(make_plan())

        assert statuses(result) == {
            "chain-node": TargetStatus.HEALTHY,
            "backend": TargetStatus.FAILED,
            "frontend": TargetStatus.SKIPPED,
        }
        assert result.outcome_for("backend").reason == FailureReason.ROLLOUT_TIMEOUT.value
        assert result.outcome_for("frontend").reason == FailureReason.ABORTED.value
        assert result.status == RunStatus.PARTIAL_FAILURE
        assert "frontend-deployment" not in [c[1] for c in fake_cluster.calls_to("apply_image")]

    @pytest.mark.asyncio
    async def test_best_effort_continues(self, sequencer_factory, fake_cluster, make_plan):
        fake_cluster.never_ready.add("backend-deployment")
        sequencer, _ = sequencer_factory()

        result = await sequencer.run(make_plan(policy=FailurePolicy.BEST_EFFORT))

        assert statuses(result) == {
            "chain-node": TargetStatus.HEALTHY,
            "backend": TargetStatus.FAILED,
            "frontend": TargetStatus.HEALTHY,
        }
        assert result.status == RunStatus.PARTIAL_FAILURE

    @pytest.mark.asyncio
    async def test_rolled_back_target_aborts_run(self, sequencer_factory, fake_cluster, make_plan):
        sequencer, _ = sequencer_factory(scores={"chain-node": 50})

        result = await sequencer.run(make_plan())

        assert statuses(result) == {
            "chain-node": TargetStatus.ROLLED_BACK,
            "backend": TargetStatus.SKIPPED,
            "frontend": TargetStatus.SKIPPED,
        }
        assert result.status == RunStatus.PARTIAL_FAILURE
        assert result.aggregate_passed is None

    @pytest.mark.asyncio
    async def test_rollback_failure_reported_distinctly(self, sequencer_factory, fake_cluster, make_plan):
        fake_cluster.add(
            "backend-deployment",
            image="registry/backend:v1",
            revisions=[],
        )
        sequencer, _ = sequencer_factory(scores={"backend": 10})

        result = await sequencer.run(make_plan(names=("backend",)))

        assert result.outcome_for("backend").display_status == "failed: no-rollback-target"

    @pytest.mark.asyncio
    async def test_no_attempt_left_non_terminal(self, sequencer_factory, fake_cluster, make_plan):
        fake_cluster.never_ready.add("frontend-deployment")
        sequencer, _ = sequencer_factory(scores={"backend": 40})

        result = await sequencer.run(make_plan(policy=FailurePolicy.BEST_EFFORT))

        assert len(result.outcomes) == 3
        for outcome in result.outcomes:
            assert outcome.attempt is None or outcome.attempt.is_terminal
        assert sequencer.locks.active(make_plan().targets[0]) is None


class TestAggregateCheck:
    @pytest.mark.asyncio
    async def test_aggregate_failure_despite_healthy_targets(self, sequencer_factory, make_plan):
        # Gate passes at 100, the later aggregate pass sees 50
        sequencer, _ = sequencer_factory(scores={"frontend": [100, 50]})

        result = await sequencer.run(make_plan())

        assert all(s == TargetStatus.HEALTHY for s in statuses(result).values())
        assert result.aggregate_passed is False
        assert result.status == RunStatus.FAILURE

    @pytest.mark.asyncio
    async def test_aggregate_only_covers_healthy_targets(
        self, sequencer_factory, fake_cluster, make_plan
    ):
        fake_cluster.never_ready.add("backend-deployment")
        sequencer, _ = sequencer_factory()

        result = await sequencer.run(make_plan(policy=FailurePolicy.BEST_EFFORT))

        assert [r.target for r in result.aggregate_reports] == ["chain-node", "frontend"]


class TestRunAborts:
    @pytest.mark.asyncio
    async def test_backup_failure_aborts_before_cluster_mutation(
        self, sequencer_factory, fake_cluster, make_plan
    ):
        fake_cluster.errors["export_resources"] = [OSError("disk full")]
        sequencer, _ = sequencer_factory()

        result = await sequencer.run(make_plan())

        assert result.status == RunStatus.FAILURE
        assert "Backup failed" in result.error
        assert fake_cluster.calls_to("apply_image") == []
        assert fake_cluster.calls_to("get_status") == []
        assert all(s == TargetStatus.SKIPPED for s in statuses(result).values())

    @pytest.mark.asyncio
    async def test_forced_backup_failure_continues(self, sequencer_factory, fake_cluster, make_plan):
        fake_cluster.errors["export_resources"] = [OSError("disk full")]
        sequencer, _ = sequencer_factory()

        result = await sequencer.run(make_plan(force_backup=True))

        assert result.status == RunStatus.SUCCESS
        assert "disk full" in result.backup_error
        assert result.backup is None

    @pytest.mark.asyncio
    async def test_backup_disabled_is_recorded(self, sequencer_factory, fake_cluster, make_plan):
        sequencer, _ = sequencer_factory()

        result = await sequencer.run(make_plan(backup_enabled=False))

        assert result.backup_skipped is True
        assert fake_cluster.calls_to("export_resources") == []
        assert any(event["type"] == "backup_skipped" for event in result.events)

    @pytest.mark.asyncio
    async def test_missing_backup_manager_aborts(self, sequencer_factory, fake_cluster, make_plan):
        sequencer, _ = sequencer_factory(backups=False)

        result = await sequencer.run(make_plan())

        assert result.status == RunStatus.FAILURE
        assert "no backup manager" in result.error
        assert result.backup_skipped is False
        assert fake_cluster.calls_to("apply_image") == []

    @pytest.mark.asyncio
    async def test_missing_backup_manager_forced(self, sequencer_factory, fake_cluster, make_plan):
        sequencer, _ = sequencer_factory(backups=False)

        result = await sequencer.run(make_plan(force_backup=True))

        assert result.status == RunStatus.SUCCESS
        assert "no backup manager" in result.backup_error
        assert not any(event["type"] == "backup_skipped" for event in result.events)

    @pytest.mark.asyncio
    async def test_snapshot_taken_in_plan_namespace(self, sequencer_factory, fake_cluster, make_plan):
        sequencer, _ = sequencer_factory()
        plan = make_plan()
        for target in plan.targets:
            target.namespace = "kaldrix-staging"

        result = await sequencer.run(plan)

        assert result.backup.namespace == "kaldrix-staging"
        assert fake_cluster.calls_to("check_prerequisites") == [
            ("check_prerequisites", "kaldrix-staging")
        ]
        assert fake_cluster.calls_to("export_resources")[0][1] == "kaldrix-staging"

    @pytest.mark.asyncio
    async def test_unreachable_control_plane(self, sequencer_factory, fake_cluster, make_plan):
        fake_cluster.unreachable = True
        sequencer, _ = sequencer_factory()

        result = await sequencer.run(make_plan())

        assert result.status == RunStatus.FAILURE
        assert "Prerequisites not met" in result.error
        assert fake_cluster.calls_to("export_resources") == []
        assert fake_cluster.calls_to("apply_image") == []

    @pytest.mark.asyncio
    async def test_missing_policy_rejected(self, sequencer_factory, make_plan):
        sequencer, _ = sequencer_factory()
        plan = make_plan()
        del plan.target_policies["backend"]
        with pytest.raises(PlanError):
            await sequencer.run(plan)


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_mid_run(self, sequencer_factory, fake_cluster, make_plan, fast_settings):
        fake_cluster.never_ready.add("backend-deployment")
        sequencer, _ = sequencer_factory()
        sequencer.settings.rollout_timeout = 30
        asyncio.get_running_loop().call_later(0.2, sequencer.cancel)

        result = await sequencer.run(make_plan(policy=FailurePolicy.BEST_EFFORT))

        assert statuses(result) == {
            "chain-node": TargetStatus.HEALTHY,
            "backend": TargetStatus.FAILED,
            "frontend": TargetStatus.SKIPPED,
        }
        assert result.outcome_for("backend").reason == FailureReason.CANCELLED.value
        assert result.outcome_for("frontend").reason == FailureReason.CANCELLED.value
        assert result.error == "Run cancelled by operator"
        assert result.status == RunStatus.PARTIAL_FAILURE

    @pytest.mark.asyncio
    async def test_sequencer_reusable_after_cancel(self, sequencer_factory, fake_cluster, make_plan):
        fake_cluster.never_ready.add("backend-deployment")
        sequencer, _ = sequencer_factory()
        sequencer.settings.rollout_timeout = 30
        asyncio.get_running_loop().call_later(0.2, sequencer.cancel)

        first = await sequencer.run(make_plan(policy=FailurePolicy.BEST_EFFORT))
        assert first.outcome_for("frontend").status == TargetStatus.SKIPPED

        fake_cluster.never_ready.discard("backend-deployment")
        second = await sequencer.run(make_plan(policy=FailurePolicy.BEST_EFFORT))

        assert second.status == RunStatus.SUCCESS
        assert set(statuses(second).values()) == {TargetStatus.HEALTHY}
        assert ("apply_image", "frontend-deployment", "registry/frontend:v2") in fake_cluster.calls


def recording_notifier(status_code=200):
    requests = []

    def handler(request):
        requests.append(json.loads(request.content))
        return httpx.Response(status_code)

    notifier = WebhookNotifier("https://hooks.test/services/T0", transport=httpx.MockTransport(handler))
    return notifier, requests


class TestNotifications:
    @pytest.mark.asyncio
    async def test_run_summary_posted(self, sequencer_factory, make_plan):
        notifier, requests = recording_notifier()
        sequencer, _ = sequencer_factory(notifier=notifier)

        await sequencer.run(make_plan())

        assert len(requests) == 1
        assert requests[0]["text"].startswith("Production Deployment Completed")
        assert "backend: healthy" in requests[0]["text"]

    @pytest.mark.asyncio
    async def test_rollback_alert_posted(self, sequencer_factory, make_plan):
        notifier, requests = recording_notifier()
        sequencer, _ = sequencer_factory(scores={"chain-node": 50}, notifier=notifier)

        result = await sequencer.run(make_plan())

        assert result.outcome_for("chain-node").status == TargetStatus.ROLLED_BACK
        texts = [request["text"] for request in requests]
        assert len(texts) == 2
        assert texts[0].startswith("Rollback Completed: chain-node")
        assert texts[1].startswith("Production Deployment Partially Failed")
        assert "chain-node: rolled_back" in texts[1]

    @pytest.mark.asyncio
    async def test_failed_rollback_alert_posted(self, sequencer_factory, fake_cluster, make_plan):
        fake_cluster.rollback_never_ready.add("backend-deployment")
        notifier, requests = recording_notifier()
        sequencer, _ = sequencer_factory(scores={"backend": 40}, notifier=notifier)

        result = await sequencer.run(make_plan(names=("backend",)))

        assert result.outcome_for("backend").reason == FailureReason.ROLLBACK_FAILED.value
        assert requests[0]["text"].startswith("Rollback Failed: backend")

    @pytest.mark.asyncio
    async def test_webhook_failure_not_fatal(self, sequencer_factory, make_plan):
        notifier, requests = recording_notifier(status_code=500)
        sequencer, _ = sequencer_factory(notifier=notifier)

        result = await sequencer.run(make_plan())

        assert result.status == RunStatus.SUCCESS
        assert len(requests) == 1
        assert any(event["type"] == "notification_failed" for event in result.events)


class TestPersistence:
    @pytest.mark.asyncio
    async def test_run_recorded_in_history(self, sequencer_factory, make_plan, tmp_path):
        sequencer, _ = sequencer_factory()
        result = await sequencer.run(make_plan())

        runs = RunHistoryStore(tmp_path / "state").load()
        assert [run.run_id for run in runs] == [result.run_id]
        assert runs[0].status == RunStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_audit_trail(self, sequencer_factory, make_plan, tmp_path):
        sequencer, _ = sequencer_factory()
        result = await sequencer.run(make_plan())

        entries = [
            json.loads(line) for line in (tmp_path / "audit.jsonl").read_text().splitlines()
        ]
        actions = [entry["action"] for entry in entries]
        assert actions == ["run_started"] + ["target_rollout"] * 3 + ["run_completed"]
        assert all(entry["run_id"] == result.run_id for entry in entries)
        assert entries[-1]["success"] is True
        assert entries[0]["user"] == "operator"

    @pytest.mark.asyncio
    async def test_events_timeline(self, sequencer_factory, make_plan):
        sequencer, _ = sequencer_factory()
        result = await sequencer.run(make_plan())

        types = [event["type"] for event in result.events]
        assert types[0] == "started"
        assert "backup_created" in types
        assert "aggregate_passed" in types
        assert types[-1] == "completed"
