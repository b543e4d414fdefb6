# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    UNKNOWN_DEPENDENCY = "unknown_dependency"
    CYCLE = "cycle"
    UNKNOWN_AXIS = "unknown_axis"
    UNKNOWN_REFERENCE = "unknown_reference"
    DUPLICATE_JOB = "duplicate_job"
    INVALID_DEFINITION = "invalid_definition"
    EXPRESSION_SYNTAX = "expression_syntax"
    EVALUATION = "evaluation"
    EXECUTION = "execution"
    CANCELLED = "cancelled"
    VALIDATION_FAILED = "validation_failed"


@dataclass(eq=False)
class StepflowError(Exception):
    """
    Structured engine error with enough context for:
      - clean CLI output
      - run result export (kind + location)
      - debugging without full tracebacks
    """
    kind: ErrorKind
    message: str
    job: Optional[str] = None
    step: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind.value}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)

    def info(self) -> "FailureInfo":
        return FailureInfo(kind=self.kind, message=self.message, job=self.job, step=self.step)


class ValidationError(StepflowError):
    """Workflow structure problem. Always fatal to the run."""


class EvalError(StepflowError):
    """Expression could not be evaluated against its context."""


class ExecutionError(StepflowError):
    """A step's command or action failed inside the runner."""


class CancellationError(StepflowError):
    """Cooperative cancellation was observed."""


class RunError(StepflowError):
    """Raised by the coordinator before any job executes."""

    @property
    def cause(self) -> Optional[StepflowError]:
        return self.details.get("cause")


@dataclass(frozen=True)
class FailureInfo:
    """Where a failure happened and why. Recorded on step and job results."""
    kind: ErrorKind
    message: str
    job: Optional[str] = None
    step: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "job": self.job,
            "step": self.step,
        }
