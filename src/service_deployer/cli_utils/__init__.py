"""CLI utilities package for service-deployer.

Provides reusable output patterns for CLI commands:
- JSON output formatting
- Step table rendering for pipeline reports
"""

from .output_helpers import (
    build_step_table,
    format_json_error,
    format_json_success,
)

__all__ = [
    "build_step_table",
    "format_json_error",
    "format_json_success",
]
