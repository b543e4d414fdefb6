# scheduler.py
# Per-instance state machine:
#
#   PENDING -> BLOCKED -> ELIGIBLE -> RUNNING -> SUCCEEDED | FAILED
#       \          \          \
#        +----------+----------+--> SKIPPED | CANCELLED
#
# Only the coordinator's scheduling thread calls into the Scheduler, so no
# locking is needed here; workers only ever see instance.cancel_requested.
from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Dict, Iterator, List, Mapping, Optional, Sequence

from .dag import JobGraph
from .errors import CancellationError, ErrorKind, EvalError
from .expressions import StatusFlags, opts_in
from .model import JobInstance, JobOutcome, JobStatus
from .ui.console import get_console

# gate(instance, flags) -> evaluates the job-level `if`; may raise EvalError
JobGate = Callable[[JobInstance, StatusFlags], bool]

_WAITING = (JobStatus.PENDING, JobStatus.BLOCKED, JobStatus.ELIGIBLE)
_ABORT_OPT_IN = frozenset({"always", "cancelled"})


class ParallelScope(str, Enum):
    """What `max_parallel` counts: the job's own matrix group, or every running instance."""
    GROUP = "group"
    GLOBAL = "global"


@dataclass(frozen=True)
class Transition:
    instance: str
    old: JobStatus
    new: JobStatus
    reason: Optional[str] = None


class Scheduler:
    """
    Decides which job instances may run now.

    Driven by the coordinator:
      - tick(capacity) moves waiting instances forward and returns those
        admitted to RUNNING (at most `capacity` of them)
      - complete(instance, outcome) applies the terminal transition and the
        fail-fast policy
      - abort() requests cooperative cancellation of the whole run
    """

    def __init__(
        self,
        graph: JobGraph,
        groups: Mapping[str, Sequence[JobInstance]],
        *,
        gate: JobGate,
        parallel_scope: ParallelScope = ParallelScope.GROUP,
    ):
        self.graph = graph
        self.groups: Dict[str, List[JobInstance]] = {name: list(groups.get(name, [])) for name in graph.order}
        self.parallel_scope = ParallelScope(parallel_scope)
        self.aborted = False
        self.transitions: List[Transition] = []
        self._gate = gate

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def instances(self) -> Iterator[JobInstance]:
        for name in self.graph.order:
            yield from self.groups[name]

    def running(self) -> List[JobInstance]:
        return [i for i in self.instances() if i.status == JobStatus.RUNNING]

    @property
    def done(self) -> bool:
        return all(i.status.terminal for i in self.instances())

    def dependencies(self, instance: JobInstance) -> List[JobInstance]:
        return [d for dep in self.graph.needs[instance.job.name] for d in self.groups[dep]]

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _set(self, inst: JobInstance, new: JobStatus, reason: Optional[str] = None) -> None:
        old = inst.status
        inst.transition(new)
        if reason:
            inst.reason = reason
        self.transitions.append(Transition(inst.name, old, new, reason))
        suffix = f" ({reason})" if reason else ""
        get_console().print_debug(f"{inst.name}: {old.value} -> {new.value}{suffix}")
        if new == JobStatus.SKIPPED:
            get_console().print_job_skipped(inst.name, reason or "skipped")
        elif new == JobStatus.CANCELLED and inst.failure is None:
            inst.failure = CancellationError(
                kind=ErrorKind.CANCELLED,
                message=reason or "cancelled",
                job=inst.name,
            ).info()
            get_console().print_job_cancelled(inst.name, reason or "cancelled")

    def _advance(self, inst: JobInstance) -> None:
        job = inst.job

        if self.aborted and not opts_in(job.condition, _ABORT_OPT_IN):
            self._set(inst, JobStatus.CANCELLED, "run cancelled")
            return
        if inst.status == JobStatus.ELIGIBLE:
            return

        deps = self.dependencies(inst)
        if any(not d.status.terminal for d in deps):
            if inst.status == JobStatus.PENDING:
                self._set(inst, JobStatus.BLOCKED)
            return

        not_ok = [d for d in deps if not d.success_like]
        if not_ok and not opts_in(job.condition):
            first = not_ok[0]
            self._set(inst, JobStatus.SKIPPED, f"dependency {first.name} {first.status.value}")
            return

        flags = StatusFlags(
            failed=any(d.status == JobStatus.FAILED and not d.success_like for d in deps),
            cancelled=self.aborted or any(d.status == JobStatus.CANCELLED for d in deps),
        )
        try:
            allowed = self._gate(inst, flags)
        except EvalError as e:
            inst.failure = replace(e.info(), job=inst.name)
            self._set(inst, JobStatus.SKIPPED, f"condition error: {e.message}")
            return

        if allowed:
            self._set(inst, JobStatus.ELIGIBLE)
        else:
            self._set(inst, JobStatus.SKIPPED, "condition evaluated to false")

    def _slot_free(self, inst: JobInstance) -> bool:
        limit = inst.job.max_parallel
        if limit is None:
            return True
        if self.parallel_scope == ParallelScope.GROUP:
            pool = self.groups[inst.job.name]
        else:
            pool = list(self.instances())
        return sum(1 for i in pool if i.status == JobStatus.RUNNING) < limit

    def tick(self, capacity: int) -> List[JobInstance]:
        for inst in self.instances():
            if inst.status in _WAITING:
                self._advance(inst)

        admitted: List[JobInstance] = []
        for inst in self.instances():
            if len(admitted) >= capacity:
                break
            if inst.status == JobStatus.ELIGIBLE and self._slot_free(inst):
                self._set(inst, JobStatus.RUNNING)
                admitted.append(inst)
        return admitted

    def complete(self, inst: JobInstance, outcome: JobOutcome) -> None:
        inst.outcome = outcome
        if outcome.failure is not None:
            inst.failure = outcome.failure
        reason = None
        if outcome.status == JobStatus.CANCELLED:
            reason = "cancelled at step boundary"
        self._set(inst, outcome.status, reason)

        if outcome.status == JobStatus.FAILED:
            self._fail_fast(inst)

    def _fail_fast(self, failed: JobInstance) -> None:
        job = failed.job
        group = self.groups[job.name]
        if not job.fail_fast or job.continue_on_error or len(group) < 2:
            return
        for sib in group:
            if sib is failed:
                continue
            if sib.status in _WAITING:
                self._set(sib, JobStatus.CANCELLED, f"fail-fast: {failed.name} failed")
            elif sib.status == JobStatus.RUNNING:
                sib.cancel_requested.set()

    def abort(self) -> None:
        self.aborted = True
        for inst in self.running():
            inst.cancel_requested.set()
