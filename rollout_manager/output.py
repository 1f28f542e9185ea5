"""
Output formatting for run results.

A human summary as a table (tabulate) and machine output as JSON or YAML.
"""

import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import yaml
from tabulate import tabulate  # type: ignore[import-untyped]

from rollout_manager.models import BackupRecord, RunResult

SUMMARY_COLUMNS = ["target", "status", "image", "revision_before", "revision_after", "message"]
HISTORY_COLUMNS = ["run_id", "started_at", "environment", "deployment_type", "status", "targets"]
BACKUP_COLUMNS = ["id", "timestamp", "namespace", "scope", "size"]


class OutputFormatter:
    """Formats plain data as table, JSON or YAML."""

    def format_table(self, data: List[Dict[str, Any]], columns: Optional[List[str]] = None) -> str:
        """
        Format data as a table using tabulate.

        Args:
            data: List of dictionaries to format
            columns: Optional list of column names to include (defaults to all keys)

        Returns:
            Formatted table string
        """
        if not data:
            return "No data available."

        if columns is None:
            all_keys: set[str] = set()
            for item in data:
                all_keys.update(item.keys())
            columns = sorted(all_keys)

        table_data = []
        for item in data:
            row = []
            for col in columns:
                value = item.get(col)
                if value is None:
                    row.append("")
                elif isinstance(value, (dict, list)):
                    row.append(json.dumps(value))
                elif isinstance(value, bool):
                    row.append("Yes" if value else "No")
                else:
                    row.append(str(value))
            table_data.append(row)

        result: str = tabulate(table_data, headers=columns, tablefmt="simple")
        return result

    def format_json(self, data: Any) -> str:
        if data is None:
            return "{}"
        return json.dumps(data, indent=2, default=str)

    def format_yaml(self, data: Any) -> str:
        if data is None:
            return "{}"
        return yaml.safe_dump(data, default_flow_style=False, sort_keys=False, allow_unicode=True)

    def format_output(self, data: Any, format: str, columns: Optional[List[str]] = None) -> str:
        """
        Format output based on format string.

        Raises:
            ValueError: If format is not recognized
        """
        format = format.lower()
        if format == "json":
            return self.format_json(data)
        elif format == "yaml":
            return self.format_yaml(data)
        elif format == "table":
            if not isinstance(data, list):
                data = [data]
            return self.format_table(data, columns)
        else:
            raise ValueError(f"Unknown format: {format}. Use 'table', 'json', or 'yaml'.")


formatter = OutputFormatter()


def summary_rows(result: RunResult) -> List[Dict[str, Any]]:
    """One row per target with its terminal state and reason."""
    return [
        {
            "target": outcome.target,
            "status": outcome.display_status,
            "image": outcome.image,
            "revision_before": outcome.revision_before,
            "revision_after": outcome.revision_after,
            "message": outcome.message,
        }
        for outcome in result.outcomes
    ]


def format_run_summary(result: RunResult) -> str:
    """Human summary: per-target table plus backup and aggregate lines."""
    lines = [
        f"Deployment {result.run_id} ({result.deployment_type} -> {result.environment}): "
        f"{result.status.value.upper()}",
        "",
        formatter.format_table(summary_rows(result), SUMMARY_COLUMNS),
        "",
    ]

    if result.backup:
        backup_line = f"Backup: {result.backup.id} at {result.backup.storage_location}"
        if result.backup.remote_location:
            backup_line += f" (upload: {result.backup.remote_location})"
        lines.append(backup_line)
    elif result.backup_skipped:
        lines.append("Backup: skipped (disabled)")
    elif result.backup_error:
        lines.append(f"Backup: FAILED, continued with force ({result.backup_error})")

    if result.aggregate_passed is not None:
        scores = ", ".join(f"{r.target}={r.score:.0f}" for r in result.aggregate_reports)
        verdict = "passed" if result.aggregate_passed else "FAILED"
        lines.append(f"Aggregate health check: {verdict} ({scores})")

    if result.error:
        lines.append(f"Error: {result.error}")

    needs_attention = [
        o.target for o in result.outcomes if o.reason == "rollback-failed"
    ]
    if needs_attention:
        lines.append(f"Manual intervention required: {', '.join(needs_attention)}")

    return "\n".join(lines)


def format_run_result(result: RunResult, format: str = "table") -> str:
    if format == "table":
        return format_run_summary(result)
    return formatter.format_output(result.model_dump(mode="json"), format)


def format_history(runs: Sequence[RunResult], format: str = "table") -> str:
    if format != "table":
        return formatter.format_output([run.model_dump(mode="json") for run in runs], format)

    rows = [
        {
            "run_id": run.run_id,
            "started_at": run.started_at,
            "environment": run.environment,
            "deployment_type": run.deployment_type,
            "status": run.status.value,
            "targets": ", ".join(f"{o.target}:{o.display_status}" for o in run.outcomes),
        }
        for run in runs
    ]
    return formatter.format_table(rows, HISTORY_COLUMNS)


def _file_size(path: str) -> Optional[str]:
    file = Path(path)
    if not file.exists():
        return None
    size = float(file.stat().st_size)
    for unit in ("B", "KB", "MB"):
        if size < 1024:
            return f"{size:.0f}{unit}"
        size /= 1024
    return f"{size:.1f}GB"


def format_backups(records: Sequence[BackupRecord], format: str = "table") -> str:
    if format != "table":
        return formatter.format_output([record.model_dump(mode="json") for record in records], format)

    rows = [
        {
            "id": record.id,
            "timestamp": record.timestamp,
            "namespace": record.namespace,
            "scope": ", ".join(record.scope),
            "size": _file_size(record.storage_location),
        }
        for record in records
    ]
    return formatter.format_table(rows, BACKUP_COLUMNS)
