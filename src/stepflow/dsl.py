# dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from .model import Job, MatrixSpec, Step, Trigger, Workflow


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    id: Optional[str] = None,
    if_: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
    cwd: str | None = None,
    continue_on_error: bool = False,
    timeout: Optional[float] = None,
) -> Step:
    """Create a shell step."""
    return Step(
        name=name,
        run=cmd,
        id=id,
        condition=if_,
        env=env or {},
        cwd=cwd,
        continue_on_error=continue_on_error,
        timeout=timeout,
    )


def uses(
    name: str,
    action: str,
    *,
    with_: Optional[Dict[str, Any]] = None,
    id: Optional[str] = None,
    if_: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
    continue_on_error: bool = False,
) -> Step:
    """Create a step that calls a registered action, e.g. uses("Upload", "upload-artifact", with_={...})."""
    return Step(
        name=name,
        uses=action,
        with_=with_ or {},
        id=id,
        condition=if_,
        env=env or {},
        continue_on_error=continue_on_error,
    )


# ---------------------------------------------------------------------
# Matrix / triggers
# ---------------------------------------------------------------------

def matrix(
    axes: Optional[Mapping[str, Iterable[Any]]] = None,
    *,
    include: Optional[Sequence[Mapping[str, Any]]] = None,
    exclude: Optional[Sequence[Mapping[str, Any]]] = None,
    **more_axes: Iterable[Any],
) -> MatrixSpec:
    """
    Example:
        matrix(os=["ubuntu", "windows"], node=["18", "20"],
               exclude=[{"os": "windows", "node": "18"}])

    Axis names that are not identifiers go in the mapping:
        matrix({"node-version": ["18", "20"]})
    """
    all_axes: Dict[str, Any] = dict(axes or {})
    all_axes.update(more_axes)
    return MatrixSpec(axes=all_axes, include=tuple(include or ()), exclude=tuple(exclude or ()))


def on(event: str, *, branches: Optional[List[str]] = None, paths: Optional[List[str]] = None) -> Trigger:
    return Trigger(event=event, branches=branches, paths=paths)


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    needs: Optional[List[str]] = None,
    matrix: Optional[MatrixSpec] = None,
    if_: Optional[str] = None,
    max_parallel: Optional[int] = None,
    fail_fast: bool = True,
    outputs: Optional[Dict[str, str]] = None,
    env: Optional[Dict[str, str]] = None,
    runs_on: Optional[List[str]] = None,
    continue_on_error: bool = False,
    timeout: Optional[float] = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    return Job(
        name=name,
        steps=tuple(steps_final),
        needs=tuple(needs or ()),
        matrix=matrix,
        condition=if_,
        max_parallel=max_parallel,
        fail_fast=fail_fast,
        outputs=outputs or {},
        env=env or {},
        runs_on=tuple(runs_on or ()),
        continue_on_error=continue_on_error,
        timeout=timeout,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}
        self._outputs: dict[str, str] = {}
        self._runs_on: list[str] = []
        self._matrix: Optional[MatrixSpec] = None
        self._condition: Optional[str] = None
        self._max_parallel: Optional[int] = None
        self._fail_fast: bool = True
        self._continue_on_error: bool = False

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def runs_on(self, *labels: str):
        self._runs_on.extend(labels)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None, **kwargs):
        self._steps.append(sh(name, run, cwd=cwd, **kwargs))
        return self

    def use_action(self, name: str, action: str, **kwargs):
        self._steps.append(uses(name, action, **kwargs))
        return self

    def with_env(self, **env):
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def with_matrix(self, spec: MatrixSpec, *, max_parallel: Optional[int] = None, fail_fast: bool = True):
        self._matrix = spec
        self._max_parallel = max_parallel
        self._fail_fast = fail_fast
        return self

    def when(self, condition: str):
        self._condition = condition
        return self

    def output(self, name: str, expr: str):
        self._outputs[name] = expr
        return self

    def allow_failure(self, enabled: bool = True):
        self._continue_on_error = enabled
        return self

    def build(self) -> Job:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")
        return job(
            self.name,
            steps_list=self._steps,
            needs=self._needs,
            matrix=self._matrix,
            if_=self._condition,
            max_parallel=self._max_parallel,
            fail_fast=self._fail_fast,
            outputs=self._outputs,
            env=self._env,
            runs_on=self._runs_on,
            continue_on_error=self._continue_on_error,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(
    *jobs: Job,
    name: str = "workflow",
    env: Optional[Dict[str, str]] = None,
    triggers: Optional[List[Trigger]] = None,
) -> Workflow:
    """
    Workflow definition helper. Use this name so you can define your own
    def workflow(): return wf(job(...), job(...)).

    Users can write:
        from stepflow import wf, job, sh, on

        def workflow():
            return wf(
                job(...),
                job(...),
                name="ci",
                triggers=[on("push", branches=["main"])],
            )

    Or define WORKFLOW directly:
        WORKFLOW = wf(job(...), job(...))
    """
    return Workflow(name=name, jobs=tuple(jobs), env=env or {}, triggers=tuple(triggers or ()))


workflow = wf  # alias (avoid naming your function workflow if you use it)
