# executor.py
from __future__ import annotations

import re
import time
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .actions import ActionCall, ActionRegistry
from .artifacts import ArtifactStore
from .backends import Command, Runner, hint_for
from .errors import CancellationError, ErrorKind, EvalError, ExecutionError, FailureInfo, StepflowError
from .expressions import (
    Context,
    Secret,
    StatusFlags,
    evaluate,
    evaluate_condition,
    interpolate,
    interpolate_value,
    opts_in,
    redact,
    render,
    strip_wrapper,
)
from .model import JobInstance, JobOutcome, JobStatus, Step, StepKind, StepResult, StepStatus
from .ui.console import get_console

# Words used by the steps.<id>.outcome / needs.<job>.result namespaces
RESULT_WORDS = {
    StepStatus.SUCCEEDED: "success",
    StepStatus.FAILED: "failure",
    StepStatus.SKIPPED: "skipped",
    StepStatus.CANCELLED: "cancelled",
    JobStatus.SUCCEEDED: "success",
    JobStatus.FAILED: "failure",
    JobStatus.SKIPPED: "skipped",
    JobStatus.CANCELLED: "cancelled",
}

_SET_OUTPUT_RE = re.compile(r"^::set-output name=([^:]+)::(.*?)\r?$", re.MULTILINE)
_WHOLE_EXPR_RE = re.compile(r"^\s*\$\{\{(.*)\}\}\s*$", re.DOTALL)
_CANCEL_OPT_IN = frozenset({"always", "cancelled"})


def parse_outputs(stdout: str) -> Dict[str, str]:
    """Step outputs are written to stdout as `::set-output name=<key>::<value>` lines."""
    return {m.group(1).strip(): m.group(2) for m in _SET_OUTPUT_RE.finditer(stdout or "")}


def resolve_env(env: Mapping[str, Any], context: Context) -> Dict[str, Any]:
    """
    Interpolate env values. A value that is one whole ${{ }} expression keeps
    its type, so `${{ secrets.X }}` stays a Secret inside the env namespace.
    """
    out: Dict[str, Any] = {}
    for key, value in env.items():
        if isinstance(value, str):
            m = _WHOLE_EXPR_RE.match(value)
            if m and "${{" not in m.group(1):
                value = evaluate(m.group(1).strip(), context)
                out[key] = value if isinstance(value, Secret) else render(value)
                continue
            out[key] = interpolate(value, context, reveal=True)
        else:
            out[key] = render(value)
    return out


def _tail(text: str, limit: int) -> str:
    return text[-limit:] if limit and len(text) > limit else text


class StepExecutor:
    """
    Runs the steps of one job instance, strictly in declared order, inside one
    runner environment.

    The returned JobOutcome carries every StepResult; failures are recorded
    (kind + job + step), never raised.
    """

    def __init__(
        self,
        runner: Runner,
        *,
        actions: Optional[ActionRegistry] = None,
        artifacts: Optional[ArtifactStore] = None,
        output_tail: int = 4000,
    ):
        self.runner = runner
        self.actions = actions or ActionRegistry()
        self.artifacts = artifacts
        self.output_tail = output_tail

    def run(self, instance: JobInstance, context: Context) -> JobOutcome:
        job = instance.job
        console = get_console()
        console.print_job_start(instance.name)

        try:
            context = context.evolve(env={**context.env, **resolve_env(job.env, context)})
            handle = self.runner.acquire(job.runs_on)
        except Exception as e:
            failure = self._failure_from(e, instance.name, None, context)
            console.print_failure(instance.name, failure.message, is_job=True)
            return JobOutcome(status=JobStatus.FAILED, failure=failure)

        try:
            return self._run_steps(instance, handle, context)
        finally:
            self.runner.release(handle)

    # ------------------------------------------------------------------

    def _failure_from(self, exc: Exception, job: str, step: Optional[str], context: Context) -> FailureInfo:
        secrets = context.secret_values()
        if isinstance(exc, StepflowError):
            kind, message = exc.kind, exc.message
        else:
            kind, message = ErrorKind.EXECUTION, f"{type(exc).__name__}: {exc}"
        return FailureInfo(kind=kind, message=redact(message, secrets), job=job, step=step)

    def _run_steps(self, instance: JobInstance, handle: Any, context: Context) -> JobOutcome:
        job = instance.job
        console = get_console()
        results: List[StepResult] = []
        step_ctx: Dict[str, Dict[str, Any]] = {}
        failed = False
        cancelled = False
        first_failure: Optional[FailureInfo] = None

        for step in job.steps:
            # cooperative cancellation: only ever observed between steps
            if instance.cancel_requested.is_set():
                cancelled = True
            ctx = context.evolve(steps=step_ctx, status=StatusFlags(failed=failed, cancelled=cancelled))

            if cancelled and not opts_in(step.condition, _CANCEL_OPT_IN):
                result = StepResult(step.name, step.id, StepStatus.CANCELLED, StepStatus.CANCELLED)
                console.print_step_skipped(instance.name, step.name, "cancelled")
            else:
                try:
                    should_run = evaluate_condition(step.condition, ctx)
                except EvalError as e:
                    should_run = False
                    skip_failure = self._failure_from(e, instance.name, step.name, ctx)
                else:
                    skip_failure = None

                if should_run:
                    result = self._run_step(instance, step, handle, ctx)
                else:
                    result = StepResult(step.name, step.id, StepStatus.SKIPPED, StepStatus.SKIPPED, failure=skip_failure)
                    console.print_step_skipped(instance.name, step.name, "condition evaluated to false")

            results.append(result)
            if step.id:
                step_ctx = {
                    **step_ctx,
                    step.id: {
                        "outputs": dict(result.outputs),
                        "outcome": RESULT_WORDS[result.status],
                        "conclusion": RESULT_WORDS[result.conclusion],
                    },
                }
            if result.conclusion == StepStatus.FAILED:
                failed = True
                first_failure = first_failure or result.failure

        final_ctx = context.evolve(steps=step_ctx, status=StatusFlags(failed=failed, cancelled=cancelled))
        outputs, output_failure = self._job_outputs(instance, final_ctx)

        if failed or output_failure:
            status = JobStatus.FAILED
            failure = first_failure or output_failure
        elif cancelled and any(r.status == StepStatus.CANCELLED for r in results):
            status = JobStatus.CANCELLED
            failure = CancellationError(
                kind=ErrorKind.CANCELLED,
                message="cancellation requested",
                job=instance.name,
            ).info()
        else:
            status = JobStatus.SUCCEEDED
            failure = None

        if status == JobStatus.SUCCEEDED:
            console.print_success(instance.name)
        elif status == JobStatus.FAILED:
            console.print_failure(instance.name, failure.message if failure else "failed", is_job=True)
        else:
            console.print_job_cancelled(instance.name, "cancellation requested")

        return JobOutcome(status=status, steps=results, outputs=outputs, failure=failure)

    def _job_outputs(self, instance: JobInstance, ctx: Context) -> Tuple[Dict[str, str], Optional[FailureInfo]]:
        outputs: Dict[str, str] = {}
        failure: Optional[FailureInfo] = None
        for name, expr in instance.job.outputs.items():
            try:
                if "${{" in strip_wrapper(expr):
                    # text with embedded ${{ }} blocks
                    value = interpolate(expr, ctx, reveal=True)
                else:
                    value = render(evaluate(expr, ctx), reveal=True)
            except EvalError as e:
                failure = failure or FailureInfo(
                    kind=e.kind,
                    message=f"output {name!r}: {e.message}",
                    job=instance.name,
                )
                continue
            outputs[name] = redact(value, ctx.secret_values())
        return outputs, failure

    def _run_step(self, instance: JobInstance, step: Step, handle: Any, ctx: Context) -> StepResult:
        console = get_console()
        console.print_step(instance.name, step.name)
        started = time.monotonic()

        exit_code: Optional[int] = None
        outputs: Dict[str, str] = {}
        stdout = stderr = ""
        failure: Optional[FailureInfo] = None
        hint: Optional[str] = None

        try:
            step_env = resolve_env(step.env, ctx)
            ctx = ctx.evolve(env={**ctx.env, **step_env})
            env = {k: render(v, reveal=True) for k, v in ctx.env.items()}
            timeout = step.timeout if step.timeout is not None else instance.job.timeout

            if step.kind == StepKind.RUN:
                command = interpolate(step.run, ctx, reveal=True)
                res = self.runner.execute(handle, Command(run=command, env=env, cwd=step.cwd, timeout=timeout))
                exit_code, stdout, stderr = res.exit_code, res.stdout, res.stderr
                outputs = parse_outputs(stdout)
                if exit_code != 0:
                    hint = hint_for(command, exit_code)
                    raise ExecutionError(
                        kind=ErrorKind.EXECUTION,
                        message=f"step '{step.name}' failed (exit={exit_code}): {step.run}",
                        details={"exit_code": exit_code},
                    )
            else:
                action = self.actions.resolve(step.uses)
                call = ActionCall(
                    job=instance.name,
                    step=step.name,
                    inputs=interpolate_value(dict(step.with_), ctx, reveal=True),
                    env=env,
                    runner=self.runner,
                    handle=handle,
                    artifacts=self.artifacts,
                    workdir=getattr(handle, "root", None),
                )
                returned = action(call) or {}
                outputs = {str(k): render(v, reveal=True) for k, v in returned.items()}
        except Exception as e:
            # runner/action/interpolation errors all end the step as Failed
            failure = self._failure_from(e, instance.name, step.name, ctx)

        secrets = ctx.secret_values()
        status = StepStatus.FAILED if failure else StepStatus.SUCCEEDED
        conclusion = StepStatus.SUCCEEDED if failure and step.continue_on_error else status
        if failure:
            console.print_failure(f"{instance.name} / {step.name}", failure.message, exit_code=exit_code, hint=hint)

        return StepResult(
            name=step.name,
            id=step.id,
            status=status,
            conclusion=conclusion,
            exit_code=exit_code,
            outputs={k: redact(v, secrets) for k, v in outputs.items()},
            duration=time.monotonic() - started,
            stdout=redact(_tail(stdout, self.output_tail), secrets),
            stderr=redact(_tail(stderr, self.output_tail), secrets),
            failure=failure,
        )
