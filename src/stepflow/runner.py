# runner.py
# Run coordinator: validates a workflow, expands it into job instances and
# drives the scheduler with a thread pool until every instance is terminal.
from __future__ import annotations

import runpy
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from .actions import ActionRegistry
from .artifacts import ArtifactStore
from .backends import LocalRunner, Runner, SecretStore
from .config import EngineConfig
from .dag import JobGraph, build_graph
from .errors import ErrorKind, EvalError, FailureInfo, RunError, StepflowError, ValidationError
from .executor import RESULT_WORDS, StepExecutor, resolve_env
from .expressions import Context, SecretsView, StatusFlags, embedded, evaluate_condition, references, strip_wrapper, validate
from .matrix import expand, matrix_key
from .model import Event, Job, JobInstance, JobOutcome, JobStatus, StepResult, Workflow
from .scheduler import Scheduler
from .triggers import matches
from .ui.console import get_console


class RunStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


# ----------------------------------------------------------------------
# Output store
# ----------------------------------------------------------------------

class OutputStore:
    """
    Job outputs, one slot per (job, matrix key).

    Each slot is written once, by the scheduling thread, after its instance
    reached a success-like terminal state. Reads may come from any thread.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._slots: Dict[str, Dict[str, Dict[str, str]]] = {}

    def publish(self, job: str, key: str, outputs: Mapping[str, str]) -> None:
        with self._lock:
            slots = self._slots.setdefault(job, {})
            if key in slots:
                raise RuntimeError(f"outputs for {job!r} [{key}] already published")
            slots[key] = dict(outputs)

    def get(self, job: str, key: str = "") -> Dict[str, str]:
        with self._lock:
            return dict(self._slots.get(job, {}).get(key, {}))

    def merged(self, job: str, keys: Sequence[str]) -> Dict[str, str]:
        """Outputs of every published instance of job, merged in the given (matrix) order."""
        out: Dict[str, str] = {}
        with self._lock:
            slots = self._slots.get(job, {})
            for key in keys:
                out.update(slots.get(key, {}))
        return out


# ----------------------------------------------------------------------
# Results
# ----------------------------------------------------------------------

@dataclass
class InstanceResult:
    job: str
    key: str
    name: str
    status: JobStatus
    assignment: Dict[str, Any] = field(default_factory=dict)
    steps: List[StepResult] = field(default_factory=list)
    outputs: Dict[str, str] = field(default_factory=dict)
    failure: Optional[FailureInfo] = None
    reason: Optional[str] = None

    @classmethod
    def from_instance(cls, inst: JobInstance) -> "InstanceResult":
        outcome = inst.outcome
        return cls(
            job=inst.job.name,
            key=inst.key,
            name=inst.name,
            status=inst.status,
            assignment=dict(inst.assignment),
            steps=list(outcome.steps) if outcome else [],
            outputs=dict(outcome.outputs) if outcome else {},
            failure=inst.failure,
            reason=inst.reason,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "matrix": dict(self.assignment),
            "steps": [s.to_dict() for s in self.steps],
            "outputs": dict(self.outputs),
            "failure": self.failure.to_dict() if self.failure else None,
            "reason": self.reason,
        }


@dataclass
class RunResult:
    workflow: str
    status: RunStatus
    event: Event
    jobs: Dict[str, Dict[str, InstanceResult]] = field(default_factory=dict)
    outputs: Dict[str, Dict[str, str]] = field(default_factory=dict)
    duration: float = 0.0
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status in (RunStatus.SUCCEEDED, RunStatus.SKIPPED)

    def instance(self, job: str, key: str = "") -> InstanceResult:
        return self.jobs[job][key]

    def failures(self) -> List[FailureInfo]:
        """Every recorded failure: instance level first, then step failures not already listed."""
        found: List[FailureInfo] = []
        for instances in self.jobs.values():
            for inst in instances.values():
                if inst.failure and inst.failure not in found:
                    found.append(inst.failure)
                for step in inst.steps:
                    if step.failure and step.failure not in found:
                        found.append(step.failure)
        return found

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workflow": self.workflow,
            "status": self.status.value,
            "reason": self.reason,
            "event": self.event.to_dict(),
            "duration": round(self.duration, 3),
            "jobs": {
                job: {key: inst.to_dict() for key, inst in instances.items()}
                for job, instances in self.jobs.items()
            },
            "outputs": {job: dict(v) for job, v in self.outputs.items()},
            "failures": [f.to_dict() for f in self.failures()],
        }


# ----------------------------------------------------------------------
# Run state
# ----------------------------------------------------------------------

@dataclass
class RunState:
    """Everything one run owns. Built fresh by RunCoordinator.prepare()."""
    graph: JobGraph
    groups: Dict[str, List[JobInstance]]
    outputs: OutputStore = field(default_factory=OutputStore)

    def instances(self) -> List[JobInstance]:
        return [i for name in self.graph.order for i in self.groups[name]]

    def keys(self, job: str) -> List[str]:
        return [i.key for i in self.groups[job]]


def _validation_failed(workflow: Workflow, err: StepflowError) -> RunError:
    if not isinstance(err, ValidationError):
        err = ValidationError(kind=err.kind, message=err.message, job=err.job, step=err.step, details=dict(err.details))
    return RunError(
        kind=ErrorKind.VALIDATION_FAILED,
        message=f"workflow {workflow.name!r} is invalid: {err.message}",
        job=err.job,
        step=err.step,
        details={"cause": err},
    )


def _check_expressions(job: Job) -> None:
    """
    Parse every expression a job carries and make sure `needs.<x>` only names
    a direct dependency.
    """
    located: List[Tuple[Optional[str], str]] = []
    if job.condition:
        located.append((None, job.condition))
    for expr in job.outputs.values():
        inner = strip_wrapper(expr)
        located.extend((None, e) for e in (embedded(inner) if "${{" in inner else [expr]))
    located.extend((None, e) for e in embedded(dict(job.env)))
    for step in job.steps:
        if step.condition:
            located.append((step.name, step.condition))
        exprs = embedded(step.run or "") + embedded(dict(step.with_)) + embedded(dict(step.env))
        located.extend((step.name, e) for e in exprs)

    for step_name, expr in located:
        try:
            validate(expr)
        except EvalError as e:
            raise ValidationError(
                kind=e.kind,
                message=e.message,
                job=job.name,
                step=step_name,
                details=dict(e.details),
            ) from None
        for path in references(expr, "needs"):
            target = path.split(".")[1]
            if target not in job.needs:
                raise ValidationError(
                    kind=ErrorKind.UNKNOWN_REFERENCE,
                    message=f"{path!r} refers to {target!r}, which is not in needs {list(job.needs)}",
                    job=job.name,
                    step=step_name,
                    details={"reference": path},
                )


def _aggregate_result(instances: Sequence[JobInstance]) -> str:
    if any(i.status == JobStatus.FAILED and not i.success_like for i in instances):
        return RESULT_WORDS[JobStatus.FAILED]
    if any(i.status == JobStatus.CANCELLED for i in instances):
        return RESULT_WORDS[JobStatus.CANCELLED]
    if instances and all(i.status == JobStatus.SKIPPED for i in instances):
        return RESULT_WORDS[JobStatus.SKIPPED]
    return RESULT_WORDS[JobStatus.SUCCEEDED]


# ----------------------------------------------------------------------
# Coordinator
# ----------------------------------------------------------------------

class RunCoordinator:
    """
    Owns one workflow run.

        coordinator = RunCoordinator(workflow, runner=LocalRunner("."))
        result = coordinator.run()

    Only the thread calling run() touches scheduler state; abort() may be
    called from any thread.
    """

    def __init__(
        self,
        workflow: Workflow,
        *,
        runner: Optional[Runner] = None,
        secrets: Optional[SecretStore] = None,
        artifacts: Optional[ArtifactStore] = None,
        actions: Optional[ActionRegistry] = None,
        config: Optional[EngineConfig] = None,
        event: Optional[Event] = None,
    ):
        self.workflow = workflow
        self.runner = runner or LocalRunner()
        self.config = config or EngineConfig()
        self.event = event or Event()
        # without an explicit event, trigger filters do not apply
        self.filter_triggers = event is not None
        self.artifacts = artifacts
        self.actions = actions or ActionRegistry()
        names = secrets.names() if secrets is not None and hasattr(secrets, "names") else None
        self.secrets = SecretsView(secrets, names)
        self.state: Optional[RunState] = None

        self._abort = threading.Event()
        self._lock = threading.Lock()
        self._running: Dict[Future, JobInstance] = {}
        self._contexts: Dict[Tuple[str, str], Context] = {}

    # ------------------------------------------------------------------
    # Validation / expansion
    # ------------------------------------------------------------------

    def prepare(self) -> RunState:
        """
        Validate the workflow and expand every job into its instances.

        Raises:
            RunError(VALIDATION_FAILED) wrapping the first ValidationError.
        """
        try:
            graph = build_graph(self.workflow.jobs)
            groups: Dict[str, List[JobInstance]] = {}
            for name in graph.order:
                job = graph.jobs[name]
                _check_expressions(job)
                groups[name] = self._instances(job)
            for expr in embedded(dict(self.workflow.env)):
                validate(expr)
        except (ValidationError, EvalError) as e:
            raise _validation_failed(self.workflow, e) from e
        return RunState(graph=graph, groups=groups)

    def _instances(self, job: Job) -> List[JobInstance]:
        instances: List[JobInstance] = []
        seen: Dict[str, int] = {}
        for assignment in expand(job.matrix, job=job.name):
            key = matrix_key(assignment)
            if key in seen:
                # identical renderings from distinct includes
                seen[key] += 1
                key = f"{key} #{seen[key]}"
            else:
                seen[key] = 1
            instances.append(JobInstance(job=job, assignment=assignment, key=key))
        return instances

    def plan(self) -> List[List[JobInstance]]:
        """Instances grouped by topological level, without executing anything."""
        state = self.prepare()
        return [[i for name in level for i in state.groups[name]] for level in state.graph.levels]

    # ------------------------------------------------------------------
    # Context
    # ------------------------------------------------------------------

    def _needs(self, inst: JobInstance) -> Dict[str, Any]:
        state = self.state
        needs: Dict[str, Any] = {}
        for dep in inst.job.needs:
            group = state.groups[dep]
            if not all(i.status.terminal for i in group):
                continue
            needs[dep] = {
                "result": _aggregate_result(group),
                "outputs": state.outputs.merged(dep, state.keys(dep)),
            }
        return needs

    def _context(self, inst: JobInstance, flags: StatusFlags) -> Context:
        base = Context(
            secrets=self.secrets,
            matrix=inst.assignment,
            needs=self._needs(inst),
            event=self.event.to_dict(),
            status=flags,
        )
        return base.evolve(env=resolve_env(self.workflow.env, base))

    def _gate(self, inst: JobInstance, flags: StatusFlags) -> bool:
        ctx = self._context(inst, flags)
        allowed = evaluate_condition(inst.job.condition, ctx)
        if allowed:
            self._contexts[(inst.job.name, inst.key)] = ctx.evolve(status=StatusFlags())
        return allowed

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def abort(self) -> None:
        """Request cooperative cancellation; running instances stop at their next step boundary."""
        with self._lock:
            self._abort.set()
            for inst in self._running.values():
                inst.cancel_requested.set()

    def run(self) -> RunResult:
        started = time.monotonic()
        console = get_console()
        state = self.prepare()
        self.state = state
        instances = state.instances()
        console.print_run_started(self.workflow.name, self.event.name, len(state.groups), len(instances))

        ok, reason = matches(self.workflow, self.event)
        if self.filter_triggers and not ok:
            for inst in instances:
                inst.transition(JobStatus.SKIPPED)
                inst.reason = f"trigger: {reason}"
            console.print_info(f"Workflow skipped: {reason}")
            return self._result(RunStatus.SKIPPED, started, reason)

        scheduler = Scheduler(
            state.graph,
            state.groups,
            gate=self._gate,
            parallel_scope=self.config.parallel_scope,
        )
        executor = StepExecutor(
            self.runner,
            actions=self.actions,
            artifacts=self.artifacts,
            output_tail=self.config.output_tail,
        )
        workers = self.config.max_workers

        with ThreadPoolExecutor(max_workers=workers) as pool:
            while True:
                if self._abort.is_set() and not scheduler.aborted:
                    scheduler.abort()
                # after an abort only always()/cancelled() jobs are admitted, and they run normally
                aborted = scheduler.aborted

                for inst in scheduler.tick(workers - len(self._running)):
                    ctx = self._contexts.pop((inst.job.name, inst.key))
                    # registered before the worker starts so abort() always sees it
                    with self._lock:
                        if self._abort.is_set() and not aborted:
                            inst.cancel_requested.set()
                        fut = pool.submit(executor.run, inst, ctx)
                        self._running[fut] = inst

                if not self._running:
                    if scheduler.done:
                        break
                    waiting = [i.name for i in scheduler.instances() if not i.status.terminal]
                    raise RuntimeError(f"scheduler stalled with waiting instances: {waiting}")

                # wait for one completion, then loop to admit newly eligible instances
                fut = next(as_completed(list(self._running)))
                with self._lock:
                    inst = self._running.pop(fut)
                try:
                    outcome = fut.result()
                except Exception as e:
                    outcome = JobOutcome(
                        status=JobStatus.FAILED,
                        failure=FailureInfo(kind=ErrorKind.EXECUTION, message=f"{type(e).__name__}: {e}", job=inst.name),
                    )
                scheduler.complete(inst, outcome)
                if inst.success_like:
                    state.outputs.publish(inst.job.name, inst.key, outcome.outputs)

        return self._result(self._status(instances), started)

    def _status(self, instances: Sequence[JobInstance]) -> RunStatus:
        if self._abort.is_set():
            return RunStatus.CANCELLED
        for inst in instances:
            if inst.success_like:
                continue
            if inst.status == JobStatus.SKIPPED and inst.failure is None:
                continue
            return RunStatus.FAILED
        return RunStatus.SUCCEEDED

    def _result(self, status: RunStatus, started: float, reason: Optional[str] = None) -> RunResult:
        state = self.state
        jobs = {
            name: {inst.key: InstanceResult.from_instance(inst) for inst in state.groups[name]}
            for name in state.graph.order
        }
        outputs = {name: state.outputs.merged(name, state.keys(name)) for name in state.graph.order}
        return RunResult(
            workflow=self.workflow.name,
            status=status,
            event=self.event,
            jobs=jobs,
            outputs=outputs,
            duration=time.monotonic() - started,
            reason=reason,
        )


def run_workflow(
    workflow: Workflow,
    *,
    runner: Optional[Runner] = None,
    secrets: Optional[SecretStore] = None,
    artifacts: Optional[ArtifactStore] = None,
    actions: Optional[ActionRegistry] = None,
    config: Optional[EngineConfig] = None,
    event: Optional[Event] = None,
) -> RunResult:
    return RunCoordinator(
        workflow,
        runner=runner,
        secrets=secrets,
        artifacts=artifacts,
        actions=actions,
        config=config,
        event=event,
    ).run()


# ----------------------------------------------------------------------
# Workflow loading (local file)
# ----------------------------------------------------------------------

def load_workflow(path: str | Path) -> Workflow:
    """
    Load a workflow from a python file path.

    The file must define one of:
      - workflow() -> Workflow | List[Job]
      - WORKFLOW = Workflow(...)
      - JOBS = [Job, ...]
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix != ".py":
        raise ValueError(f"Workflow must be a .py file, got: {wf_path.name}")

    globals_dict = runpy.run_path(str(wf_path), run_name=f"stepflow_workflow_{wf_path.stem}")

    loaded: Any = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        try:
            loaded = globals_dict["workflow"]()
        except TypeError as e:
            if "positional argument" in str(e):
                raise TypeError(
                    "Your workflow() is being called with arguments (name collision with the helper). "
                    "Use the 'wf' helper instead: `from stepflow import wf, job, sh` then "
                    "`def workflow(): return wf(job(...), job(...), name='ci')`"
                ) from e
            raise
    elif "WORKFLOW" in globals_dict:
        loaded = globals_dict["WORKFLOW"]
    elif "JOBS" in globals_dict:
        loaded = globals_dict["JOBS"]

    if isinstance(loaded, Workflow):
        return loaded
    if isinstance(loaded, (list, tuple)) and all(isinstance(j, Job) for j in loaded):
        return Workflow(name=wf_path.stem, jobs=tuple(loaded))
    raise TypeError(
        "Workflow file must return/define a Workflow or a list of Job. "
        "Define workflow() -> Workflow, WORKFLOW = Workflow(...) or JOBS = [Job, ...]."
    )
