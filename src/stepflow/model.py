# model.py
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .errors import ErrorKind, FailureInfo, ValidationError


def _freeze_map(value: Optional[Mapping]) -> Mapping:
    return MappingProxyType(dict(value or {}))


class StepKind(str, Enum):
    RUN = "run"
    USES = "uses"


class JobStatus(str, Enum):
    PENDING = "pending"
    BLOCKED = "blocked"
    ELIGIBLE = "eligible"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = frozenset({JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.SKIPPED, JobStatus.CANCELLED})


class StepStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class Step:
    """
    A single step inside a job: either a shell command (`run`) or a call to a
    registered action (`uses`). `id` makes its outputs addressable as
    steps.<id>.outputs.<name>.
    """
    name: str
    run: Optional[str] = None
    uses: Optional[str] = None
    id: Optional[str] = None
    condition: Optional[str] = None
    env: Mapping[str, str] = field(default_factory=dict)
    with_: Mapping[str, Any] = field(default_factory=dict)
    cwd: Optional[str] = None
    continue_on_error: bool = False
    timeout: Optional[float] = None

    def __post_init__(self) -> None:
        if (self.run is None) == (self.uses is None):
            raise ValidationError(
                kind=ErrorKind.INVALID_DEFINITION,
                message=f"step {self.name!r} must define exactly one of run/uses",
                step=self.name,
            )
        object.__setattr__(self, "env", _freeze_map(self.env))
        object.__setattr__(self, "with_", _freeze_map(self.with_))

    @property
    def kind(self) -> StepKind:
        return StepKind.RUN if self.run is not None else StepKind.USES


@dataclass(frozen=True)
class MatrixSpec:
    """Axis name -> ordered values, plus include/exclude partial combinations."""
    axes: Mapping[str, Tuple[Any, ...]] = field(default_factory=dict)
    include: Tuple[Mapping[str, Any], ...] = ()
    exclude: Tuple[Mapping[str, Any], ...] = ()

    def __post_init__(self) -> None:
        for name, values in dict(self.axes).items():
            if isinstance(values, (str, bytes)) or not hasattr(values, "__iter__"):
                raise ValidationError(
                    kind=ErrorKind.INVALID_DEFINITION,
                    message=f"matrix axis {name!r} must be a list of values, got {values!r}",
                    details={"axis": name},
                )
        object.__setattr__(self, "axes", MappingProxyType({k: tuple(v) for k, v in dict(self.axes).items()}))
        object.__setattr__(self, "include", tuple(_freeze_map(e) for e in self.include))
        object.__setattr__(self, "exclude", tuple(_freeze_map(e) for e in self.exclude))


@dataclass(frozen=True)
class Job:
    """
    A CI job: ordered steps + dependencies + matrix/condition policy.

    `name` is the job id: unique within the workflow, referenced by `needs`
    and by the needs.<name> expression namespace.
    """
    name: str
    steps: Tuple[Step, ...]
    needs: Tuple[str, ...] = ()
    matrix: Optional[MatrixSpec] = None
    condition: Optional[str] = None
    max_parallel: Optional[int] = None
    fail_fast: bool = True
    outputs: Mapping[str, str] = field(default_factory=dict)
    env: Mapping[str, str] = field(default_factory=dict)
    runs_on: Tuple[str, ...] = ()
    continue_on_error: bool = False
    timeout: Optional[float] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "steps", tuple(self.steps))
        object.__setattr__(self, "needs", tuple(self.needs))
        object.__setattr__(self, "runs_on", tuple(self.runs_on))
        object.__setattr__(self, "outputs", _freeze_map(self.outputs))
        object.__setattr__(self, "env", _freeze_map(self.env))
        if self.max_parallel is not None and self.max_parallel < 1:
            raise ValidationError(
                kind=ErrorKind.INVALID_DEFINITION,
                message=f"max_parallel must be >= 1, got {self.max_parallel}",
                job=self.name,
            )
        ids = [s.id for s in self.steps if s.id]
        if len(set(ids)) != len(ids):
            dupes = sorted({i for i in ids if ids.count(i) > 1})
            raise ValidationError(
                kind=ErrorKind.INVALID_DEFINITION,
                message=f"duplicate step ids: {dupes}",
                job=self.name,
            )


@dataclass(frozen=True)
class Trigger:
    """An event the workflow runs on, with optional branch and path filters (fnmatch globs)."""
    event: str
    branches: Optional[Tuple[str, ...]] = None
    paths: Optional[Tuple[str, ...]] = None

    def __post_init__(self) -> None:
        if self.branches is not None:
            object.__setattr__(self, "branches", tuple(self.branches))
        if self.paths is not None:
            object.__setattr__(self, "paths", tuple(self.paths))


@dataclass(frozen=True)
class Workflow:
    name: str
    jobs: Tuple[Job, ...]
    env: Mapping[str, str] = field(default_factory=dict)
    triggers: Tuple[Trigger, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "jobs", tuple(self.jobs))
        object.__setattr__(self, "triggers", tuple(self.triggers))
        object.__setattr__(self, "env", _freeze_map(self.env))

    def job(self, name: str) -> Job:
        for j in self.jobs:
            if j.name == name:
                return j
        raise KeyError(name)


@dataclass(frozen=True)
class Event:
    """The trigger event a run was started for."""
    name: str = "manual"
    ref: Optional[str] = None
    sha: Optional[str] = None
    changed_files: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "ref": self.ref or "",
            "sha": self.sha or "",
            "changed_files": list(self.changed_files),
        }


# ----------------------------------------------------------------------
# Results
# ----------------------------------------------------------------------

@dataclass
class StepResult:
    name: str
    id: Optional[str]
    status: StepStatus
    conclusion: StepStatus
    exit_code: Optional[int] = None
    outputs: Dict[str, str] = field(default_factory=dict)
    duration: float = 0.0
    stdout: str = ""
    stderr: str = ""
    failure: Optional[FailureInfo] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "id": self.id,
            "status": self.status.value,
            "conclusion": self.conclusion.value,
            "exit_code": self.exit_code,
            "outputs": dict(self.outputs),
            "duration": round(self.duration, 3),
            "failure": self.failure.to_dict() if self.failure else None,
        }


@dataclass
class JobOutcome:
    status: JobStatus
    steps: List[StepResult] = field(default_factory=list)
    outputs: Dict[str, str] = field(default_factory=dict)
    failure: Optional[FailureInfo] = None


class InvalidTransition(RuntimeError):
    pass


@dataclass(eq=False)
class JobInstance:
    """
    One concrete execution unit: a job definition plus one matrix assignment.

    Only the scheduling thread changes `status`; workers observe
    `cancel_requested` at step boundaries.
    """
    job: Job
    assignment: Mapping[str, Any]
    key: str
    status: JobStatus = JobStatus.PENDING
    outcome: Optional[JobOutcome] = None
    failure: Optional[FailureInfo] = None
    reason: Optional[str] = None
    cancel_requested: threading.Event = field(default_factory=threading.Event)

    @property
    def name(self) -> str:
        if not self.key:
            return self.job.name
        return f"{self.job.name} ({self.key})"

    @property
    def success_like(self) -> bool:
        if self.status == JobStatus.SUCCEEDED:
            return True
        return self.status == JobStatus.FAILED and self.job.continue_on_error

    def transition(self, new: JobStatus) -> None:
        if self.status.terminal:
            raise InvalidTransition(f"{self.name}: cannot leave terminal state {self.status.value}")
        self.status = new
