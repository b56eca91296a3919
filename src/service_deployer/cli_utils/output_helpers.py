"""Output helpers for service-deployer CLI commands.

Provides the JSON envelope used by ``--json`` output and the rich step table
printed after every pipeline run.
"""

import json
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

from rich.markup import escape
from rich.table import Table

_STATUS_STYLES = {
    "applied": "yellow",
    "satisfied": "green",
    "failed": "red",
    "skipped": "dim",
}


def format_json_success(data: Any, metadata: Optional[Dict[str, Any]] = None) -> str:
    """Format successful result as JSON with standard structure.

    Args:
        data: The data to include in the response
        metadata: Optional additional metadata

    Returns:
        JSON string with format: {"success": true, "data": ..., "metadata": {...}}
    """
    result_metadata = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if metadata:
        result_metadata.update(metadata)

    return json.dumps(
        {"success": True, "data": data, "metadata": result_metadata},
        indent=2,
        default=str,
    )


def format_json_error(error_message: str, error_type: Optional[str] = None) -> str:
    """Format error result as JSON: {"success": false, "error": ..., "error_type": ...}."""
    return json.dumps(
        {"success": False, "error": error_message, "error_type": error_type or "Error"},
        indent=2,
    )


def build_step_table(steps: Iterable[Dict[str, Any]], title: Optional[str] = None) -> Table:
    """Render step dicts (as produced by StepResult.to_dict) as a rich table."""
    table = Table(title=title)
    table.add_column("Step", style="cyan")
    table.add_column("Status")
    table.add_column("Duration", justify="right", style="dim")
    table.add_column("Details", style="dim")

    for step in steps:
        status = step.get("status", "unknown")
        style = _STATUS_STYLES.get(status)
        status_display = f"[{style}]{status}[/{style}]" if style else status

        error = step.get("error") or {}
        details = error.get("message", "-")
        if error:
            details = f"{details} (exit {step.get('exit_code')})"

        duration = step.get("duration_seconds")
        table.add_row(
            step.get("name", "?"),
            status_display,
            f"{duration:.1f}s" if duration else "-",
            escape(details),
        )

    return table
