"""
rollout-manager CLI entry point.
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from pathlib import Path
from typing import List, Optional

import yaml
from pydantic import ValidationError

from rollout_manager.backup import BackupManager
from rollout_manager.cluster import RetryPolicy
from rollout_manager.cluster.kube_client import KubernetesClusterClient
from rollout_manager.config import RolloutManagerConfig, default_config_path
from rollout_manager.deployment import (
    DeploymentSequencer,
    RunHistoryStore,
    build_plan,
    parse_image_args,
)
from rollout_manager.audit import audit_rollout_action
from rollout_manager.errors import BackupError, PlanError, PrerequisiteError
from rollout_manager.health import HealthVerifier
from rollout_manager.logging_config import setup_console_logging, setup_logging
from rollout_manager.models import DeploymentPlan, FailurePolicy, RunResult, RunStatus
from rollout_manager.notifications import WebhookNotifier
from rollout_manager.output import format_backups, format_history, format_run_result, formatter

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_PARTIAL_FAILURE = 3

EXIT_CODES = {
    RunStatus.SUCCESS: EXIT_SUCCESS,
    RunStatus.FAILURE: EXIT_FAILURE,
    RunStatus.PARTIAL_FAILURE: EXIT_PARTIAL_FAILURE,
}

POLICY_CHOICES = {
    "abort": FailurePolicy.ABORT_ON_FIRST_FAILURE,
    "best-effort": FailurePolicy.BEST_EFFORT,
}


def exit_code_for(result: RunResult) -> int:
    return EXIT_CODES[result.status]


def configure_logging(config: RolloutManagerConfig, verbose: bool = False) -> None:
    """Setup file logging, falling back to console logging when the directory is not writable."""
    console_level = "DEBUG" if verbose else config.logging.console_level

    log_dir = config.logging.directory
    if not os.access(Path(log_dir).parent, os.W_OK) and not os.access(log_dir, os.W_OK):
        log_dir = str(Path.home() / ".local" / "log" / "rollout-manager")

    try:
        setup_logging(
            log_dir=log_dir,
            console_level=console_level,
            file_level=config.logging.file_level,
            use_json=config.logging.use_json,
        )
    except PermissionError:
        setup_console_logging(console_level)


def load_config(path: str) -> RolloutManagerConfig:
    """Load configuration, using built-in defaults when the file does not exist."""
    if not Path(path).exists():
        logger.warning(f"Configuration file {path} not found, using defaults")
        return RolloutManagerConfig()
    return RolloutManagerConfig.from_file(path)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rollout-manager",
        description="rollout-manager - zero-downtime rolling deployments",
    )
    parser.add_argument(
        "--config",
        "-c",
        type=str,
        default=default_config_path(),
        help="Path to configuration file",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    parser.add_argument(
        "--generate-config",
        action="store_true",
        help="Generate default configuration file and exit",
    )
    parser.add_argument(
        "--validate-config", action="store_true", help="Validate configuration file and exit"
    )

    subparsers = parser.add_subparsers(dest="command")

    deploy = subparsers.add_parser("deploy", help="Roll out new images to an environment")
    deploy.add_argument("environment", help="Environment, e.g. production or staging")
    deploy.add_argument("deployment_type", help="Deployment type, e.g. full or frontend")
    deploy.add_argument(
        "--image",
        "-i",
        action="append",
        default=[],
        metavar="TARGET=IMAGE",
        help="Image for a target (repeatable)",
    )
    deploy.add_argument(
        "--policy",
        choices=sorted(POLICY_CHOICES),
        default=None,
        help="Stop at the first failed target (abort) or continue (best-effort)",
    )
    deploy.add_argument("--no-backup", action="store_true", help="Skip the pre-deployment snapshot")
    deploy.add_argument(
        "--force-backup",
        action="store_true",
        help="Continue even if the pre-deployment snapshot fails",
    )
    deploy.add_argument(
        "--no-rollback", action="store_true", help="Do not roll back targets that fail health checks"
    )
    deploy.add_argument(
        "--dry-run", action="store_true", help="Print the plan without touching the cluster"
    )
    deploy.add_argument(
        "--format",
        "-f",
        choices=["table", "json", "yaml"],
        default="table",
        help="Output format",
    )
    deploy.add_argument("--output", "-o", type=str, help="Also write the run result as JSON to FILE")

    history = subparsers.add_parser("history", help="Show recent deployment runs")
    history.add_argument("--limit", "-n", type=int, default=10, help="Number of runs to show")
    history.add_argument(
        "--format",
        "-f",
        choices=["table", "json", "yaml"],
        default="table",
        help="Output format",
    )

    backups = subparsers.add_parser("backups", help="List, restore or delete pre-deployment snapshots")
    backup_actions = backups.add_subparsers(dest="backup_action", required=True)

    backup_list = backup_actions.add_parser("list", help="List stored snapshots, newest first")
    backup_list.add_argument(
        "--format",
        "-f",
        choices=["table", "json", "yaml"],
        default="table",
        help="Output format",
    )

    for action, help_text in (
        ("restore", "Re-apply a snapshot to its namespace"),
        ("delete", "Delete a stored snapshot"),
    ):
        action_parser = backup_actions.add_parser(action, help=help_text)
        action_parser.add_argument("backup_id", help="Backup id as shown by 'backups list'")
        action_parser.add_argument("--force", action="store_true", help="Skip confirmation")
        action_parser.add_argument(
            "--dry-run", action="store_true", help="Show what would happen without doing it"
        )

    return parser


def plan_from_args(config: RolloutManagerConfig, args: argparse.Namespace) -> DeploymentPlan:
    return build_plan(
        config,
        args.environment,
        args.deployment_type,
        parse_image_args(args.image),
        policy=POLICY_CHOICES[args.policy] if args.policy else None,
        backup_enabled=False if args.no_backup else None,
        force_backup=True if args.force_backup else None,
        rollback_enabled=False if args.no_rollback else None,
    )


def describe_plan(plan: DeploymentPlan) -> str:
    rows = [
        {
            "order": index,
            "target": target.name,
            "namespace": target.namespace,
            "deployment": target.resource_name,
            "image": target.desired_image,
            "threshold": plan.policy_for(target).health_threshold,
            "rollback": plan.policy_for(target).rollback_enabled,
        }
        for index, target in enumerate(plan.targets, start=1)
    ]
    header = (
        f"Plan {plan.id}: {plan.deployment_type} -> {plan.environment} "
        f"(policy {plan.policy.value}, backup {'on' if plan.backup_enabled else 'off'}"
        f"{', forced' if plan.force_backup else ''})"
    )
    columns = ["order", "target", "namespace", "deployment", "image", "threshold", "rollback"]
    return f"{header}\n\n{formatter.format_table(rows, columns)}"


def build_sequencer(config: RolloutManagerConfig, plan: DeploymentPlan) -> DeploymentSequencer:
    """
    Wire the cluster adapter, verifier, backups, history and notifier for a run.

    Raises:
        PrerequisiteError: if the cluster configuration cannot be loaded
    """
    environment = config.environments[plan.environment]
    cluster = KubernetesClusterClient(config.cluster)
    verifier = HealthVerifier(
        probe_timeout=config.health.probe_timeout,
        aggregate_timeout=environment.health_check_timeout or config.health.aggregate_timeout,
    )
    notifier = None
    if config.notifications.webhook_url:
        notifier = WebhookNotifier(
            config.notifications.webhook_url, timeout=config.notifications.timeout
        )
    return DeploymentSequencer(
        cluster,
        verifier,
        backups=BackupManager(cluster, config.backup),
        settings=config.rollout,
        retry_policy=RetryPolicy(
            max_retries=config.cluster.max_retries, backoff=config.cluster.retry_backoff
        ),
        history=RunHistoryStore(Path(config.state_dir)),
        audit_log=config.audit_log,
        user=os.getenv("USER"),
        notifier=notifier,
    )


async def run_deployment(sequencer: DeploymentSequencer, plan: DeploymentPlan) -> RunResult:
    """Run the plan; SIGINT and SIGTERM cancel in-flight rollouts."""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, sequencer.cancel)
        except (NotImplementedError, RuntimeError):
            # Not supported outside the main thread or on this platform
            pass
    try:
        return await sequencer.run(plan)
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError):
                pass


def cmd_deploy(config: RolloutManagerConfig, args: argparse.Namespace) -> int:
    try:
        plan = plan_from_args(config, args)
    except PlanError as e:
        print(f"Invalid deployment request: {e}", file=sys.stderr)
        return EXIT_FAILURE

    if args.dry_run:
        print(describe_plan(plan))
        return EXIT_SUCCESS

    try:
        sequencer = build_sequencer(config, plan)
    except PrerequisiteError as e:
        logger.error(f"Prerequisites not met: {e}")
        print(f"Prerequisites not met: {e}", file=sys.stderr)
        return EXIT_FAILURE

    result = asyncio.run(run_deployment(sequencer, plan))

    print(format_run_result(result, args.format))
    if args.output:
        Path(args.output).parent.mkdir(parents=True, exist_ok=True)
        with open(args.output, "w") as f:
            f.write(format_run_result(result, "json"))
    return exit_code_for(result)


def cmd_history(config: RolloutManagerConfig, args: argparse.Namespace) -> int:
    store = RunHistoryStore(Path(config.state_dir))
    print(format_history(store.recent(args.limit), args.format))
    return EXIT_SUCCESS


def build_backup_manager(config: RolloutManagerConfig, connect: bool = False) -> BackupManager:
    """
    Backup manager for the ``backups`` command; only restores need the cluster.

    Raises:
        PrerequisiteError: if ``connect`` and the cluster configuration cannot be loaded
    """
    cluster = KubernetesClusterClient(config.cluster) if connect else None
    return BackupManager(cluster, config.backup)


def confirm(message: str) -> bool:
    print(message)
    try:
        answer = input("Are you sure? [y/N]: ")
    except EOFError:
        return False
    return answer.strip().lower() == "y"


def cmd_backups(config: RolloutManagerConfig, args: argparse.Namespace) -> int:
    action = args.backup_action
    dry_run = getattr(args, "dry_run", False)
    try:
        manager = build_backup_manager(config, connect=action == "restore" and not dry_run)
    except PrerequisiteError as e:
        print(f"Prerequisites not met: {e}", file=sys.stderr)
        return EXIT_FAILURE

    if action == "list":
        print(format_backups(asyncio.run(manager.list_backups()), args.format))
        return EXIT_SUCCESS

    try:
        record = asyncio.run(manager.get_backup(args.backup_id))

        if action == "restore":
            if not dry_run and not args.force:
                if not confirm(f"About to restore {record.id} into namespace {record.namespace}"):
                    print("Cancelled.")
                    return EXIT_SUCCESS
            count = asyncio.run(manager.restore(record, dry_run=dry_run))
            if dry_run:
                print(f"Would restore {count} resources from {record.id} into {record.namespace}")
                return EXIT_SUCCESS
            print(f"Restored {count} resources from {record.id} into {record.namespace}")
        else:
            if dry_run:
                print(f"Would delete {record.id} ({record.storage_location})")
                return EXIT_SUCCESS
            if not args.force and not confirm(f"About to delete backup {record.id}"):
                print("Cancelled.")
                return EXIT_SUCCESS
            asyncio.run(manager.delete(record))
            print(f"Deleted backup {record.id}")
    except BackupError as e:
        print(f"Backup {action} failed: {e}", file=sys.stderr)
        return EXIT_FAILURE

    audit_rollout_action(
        f"backup_{action}",
        details={"backup": record.id, "namespace": record.namespace},
        user=os.getenv("USER"),
        success=True,
        path=config.audit_log,
    )
    return EXIT_SUCCESS


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    # Handle config generation
    if args.generate_config:
        RolloutManagerConfig().save(args.config)
        print(f"Generated default configuration at: {args.config}")
        return EXIT_SUCCESS

    # Handle config validation
    if args.validate_config:
        try:
            RolloutManagerConfig.from_file(args.config)
            print(f"Configuration valid: {args.config}")
            return EXIT_SUCCESS
        except (OSError, ValidationError, ValueError, yaml.YAMLError) as e:
            print(f"Configuration invalid: {e}")
            return EXIT_FAILURE

    if args.command is None:
        parser.print_help()
        return EXIT_FAILURE

    try:
        config = load_config(args.config)
    except (OSError, ValidationError, ValueError, yaml.YAMLError) as e:
        print(f"Configuration invalid: {e}", file=sys.stderr)
        return EXIT_FAILURE

    configure_logging(config, args.verbose)

    try:
        if args.command == "deploy":
            return cmd_deploy(config, args)
        if args.command == "backups":
            return cmd_backups(config, args)
        return cmd_history(config, args)
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return EXIT_FAILURE
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        print(f"Error running rollout-manager: {e}", file=sys.stderr)
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
