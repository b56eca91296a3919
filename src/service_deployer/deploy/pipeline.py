"""Ordered pipeline of named, idempotent deploy steps.

Each step is a reconciliation function returning True when it changed host
state and False when the desired state already held. The driver runs steps
strictly in order and halts on the first failure; steps after the failure are
reported as skipped so a re-run shows where it resumes.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Type

from service_deployer.correlation import get_correlation_id
from service_deployer.deploy.errors import CommandError, DeployError
from service_deployer.logging_utils import format_error_log, get_log_extra

logger = logging.getLogger(__name__)


class StepStatus(Enum):
    """Outcome of one step."""

    APPLIED = "applied"
    SATISFIED = "satisfied"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class Step:
    """A named reconciliation function.

    error_class is the category a raw CommandError from this step is reported
    under, e.g. BuildError for the compile step.
    """

    name: str
    apply: Callable[[], bool]
    error_class: Type[DeployError] = DeployError


@dataclass
class StepResult:
    name: str
    status: StepStatus
    duration_seconds: float = 0.0
    exit_code: int = 0
    error: Optional[DeployError] = None

    @property
    def changed(self) -> bool:
        return self.status == StepStatus.APPLIED

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "name": self.name,
            "status": self.status.value,
            "changed": self.changed,
            "duration_seconds": round(self.duration_seconds, 3),
            "exit_code": self.exit_code,
        }
        if self.error is not None:
            data["error"] = {
                "category": self.error.category,
                "message": self.error.message,
                "command": self.error.command,
                "output": self.error.output,
            }
        return data


@dataclass
class PipelineReport:
    """Aggregated step log for one pipeline run."""

    name: str
    steps: List[StepResult] = field(default_factory=list)
    started_at: str = field(default_factory=lambda: datetime.now().isoformat())
    finished_at: Optional[str] = None

    @property
    def failed_step(self) -> Optional[StepResult]:
        for step in self.steps:
            if step.status == StepStatus.FAILED:
                return step
        return None

    @property
    def success(self) -> bool:
        return self.failed_step is None

    @property
    def exit_code(self) -> int:
        failed = self.failed_step
        return failed.exit_code if failed else 0

    @property
    def changed(self) -> bool:
        return any(step.changed for step in self.steps)

    @property
    def pending_steps(self) -> List[str]:
        """Steps a re-run still has to get past (the failed one and those skipped)."""
        return [
            step.name
            for step in self.steps
            if step.status in (StepStatus.FAILED, StepStatus.SKIPPED)
        ]

    def extend(self, other: "PipelineReport") -> None:
        """Append the steps of a nested pipeline run."""
        self.steps.extend(other.steps)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "success": self.success,
            "exit_code": self.exit_code,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "steps": [step.to_dict() for step in self.steps],
        }


class Pipeline:
    """Runs steps in order, halting and reporting on the first failure."""

    def __init__(self, name: str, steps: Optional[List[Step]] = None):
        self.name = name
        self.steps: List[Step] = list(steps or [])

    def add(
        self,
        name: str,
        apply: Callable[[], bool],
        error_class: Type[DeployError] = DeployError,
    ) -> "Pipeline":
        self.steps.append(Step(name=name, apply=apply, error_class=error_class))
        return self

    @property
    def step_names(self) -> List[str]:
        return [step.name for step in self.steps]

    def run(self) -> PipelineReport:
        """Execute every step until one fails.

        Returns:
            PipelineReport with one StepResult per step
        """
        report = PipelineReport(name=self.name)
        failed = False

        for step in self.steps:
            if failed:
                report.steps.append(StepResult(name=step.name, status=StepStatus.SKIPPED))
                continue

            result = self._run_step(step)
            report.steps.append(result)
            failed = result.status == StepStatus.FAILED

        report.finished_at = datetime.now().isoformat()
        return report

    def _run_step(self, step: Step) -> StepResult:
        logger.info(
            f"[{self.name}] {step.name}",
            extra={"correlation_id": get_correlation_id()},
        )
        start = time.monotonic()

        try:
            changed = step.apply()
        except CommandError as e:
            error = step.error_class.from_error(e)
        except DeployError as e:
            error = e
        except OSError as e:
            error = step.error_class(f"{step.name}: {e}", exit_code=1)
        else:
            duration = time.monotonic() - start
            status = StepStatus.APPLIED if changed else StepStatus.SATISFIED
            logger.info(
                f"[{self.name}] {step.name}: {status.value} ({duration:.1f}s)",
                extra={"correlation_id": get_correlation_id()},
            )
            return StepResult(name=step.name, status=status, duration_seconds=duration)

        duration = time.monotonic() - start
        logger.error(
            format_error_log(
                "DEPLOY-PIPELINE-001",
                f"[{self.name}] step '{step.name}' failed: {error.message}",
                category=error.category,
                exit_code=error.exit_code,
            ),
            extra=get_log_extra("DEPLOY-PIPELINE-001"),
        )
        if error.output:
            logger.error(error.output, extra={"correlation_id": get_correlation_id()})

        return StepResult(
            name=step.name,
            status=StepStatus.FAILED,
            duration_seconds=duration,
            exit_code=error.exit_code,
            error=error,
        )
