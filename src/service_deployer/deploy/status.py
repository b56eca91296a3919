"""Deployment status file - last run's outcome and step log on the target host."""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from service_deployer.correlation import get_correlation_id
from service_deployer.deploy.pipeline import PipelineReport

logger = logging.getLogger(__name__)

STATUS_FILE_NAME = "status.json"


class DeploymentStatus:
    """Reads and writes ``<config_dir>/status.json``."""

    def __init__(self, config_dir: Path):
        self.path = Path(config_dir) / STATUS_FILE_NAME

    def write(
        self,
        report: PipelineReport,
        branch: Optional[str] = None,
        domain: Optional[str] = None,
    ) -> None:
        """Record a pipeline report.

        A failure to write is logged and otherwise ignored; the status file is
        diagnostic only and must not change the deploy's exit status.
        """
        from service_deployer import __version__

        failed = report.failed_step
        if failed is None:
            status, details = "success", "Deployment completed"
        else:
            status = "failed"
            details = f"Step '{failed.name}' failed"
            if failed.error is not None:
                details += f": {failed.error.message}"

        status_data = {
            "status": status,
            "version": __version__,
            "timestamp": datetime.now().isoformat(),
            "details": details,
            "branch": branch,
            "domain": domain,
            "correlation_id": get_correlation_id(),
            "exit_code": report.exit_code,
            "steps": [step.to_dict() for step in report.steps],
        }

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "w") as f:
                json.dump(status_data, f, indent=2)
            logger.debug(
                f"Wrote status file: {status}",
                extra={"correlation_id": get_correlation_id()},
            )
        except OSError as e:
            logger.warning(
                f"Could not write status file: {e}",
                extra={"correlation_id": get_correlation_id()},
            )

    def read(self) -> Optional[dict]:
        """Read the last recorded status.

        Returns:
            Status dict, or None if the file doesn't exist or is corrupted
        """
        try:
            if not self.path.exists():
                return None

            with open(self.path, "r") as f:
                return json.load(f)

        except (json.JSONDecodeError, IOError) as e:
            logger.warning(
                f"Could not read status file: {e}",
                extra={"correlation_id": get_correlation_id()},
            )
            return None
