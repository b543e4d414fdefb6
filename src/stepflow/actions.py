# actions.py
# Referenced actions (`uses:` steps). An action is a plain callable that takes
# an ActionCall and returns its outputs as a mapping.
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional

from .artifacts import ArtifactStore
from .backends import Command, Runner
from .errors import ErrorKind, ExecutionError


@dataclass
class ActionCall:
    job: str
    step: str
    inputs: Mapping[str, Any]
    env: Mapping[str, str]
    runner: Runner
    handle: Any
    artifacts: Optional[ArtifactStore] = None
    workdir: Optional[Path] = None

    def require(self, name: str) -> Any:
        value = self.inputs.get(name)
        if value in (None, ""):
            raise ExecutionError(
                kind=ErrorKind.EXECUTION,
                message=f"missing required input {name!r}",
                job=self.job,
                step=self.step,
            )
        return value


Action = Callable[[ActionCall], Optional[Mapping[str, Any]]]


class ActionRegistry:
    def __init__(self, actions: Optional[Mapping[str, Action]] = None, *, builtins: bool = True):
        self._actions: Dict[str, Action] = {}
        if builtins:
            self._actions.update(BUILTIN_ACTIONS)
        self._actions.update(actions or {})

    def register(self, name: str, action: Optional[Action] = None):
        """Register directly, or use as a decorator: @registry.register("name")."""
        if action is not None:
            self._actions[name] = action
            return action

        def deco(fn: Action) -> Action:
            self._actions[name] = fn
            return fn

        return deco

    def resolve(self, name: str) -> Action:
        # `uses: name@v2` resolves like `uses: name`
        base = name.split("@", 1)[0]
        try:
            return self._actions[base]
        except KeyError:
            raise ExecutionError(
                kind=ErrorKind.EXECUTION,
                message=f"unknown action {name!r}. Known actions: {sorted(self._actions)}",
            ) from None

    def __contains__(self, name: str) -> bool:
        return name.split("@", 1)[0] in self._actions


# ---------------------------------------------------------------------
# Built-in actions
# ---------------------------------------------------------------------

def upload_artifact(call: ActionCall) -> Dict[str, str]:
    """Store `path` (relative to the workdir) in the artifact sink under `name`."""
    if call.artifacts is None:
        raise ExecutionError(
            kind=ErrorKind.EXECUTION,
            message="upload-artifact needs an artifact store",
            job=call.job,
            step=call.step,
        )
    name = str(call.require("name"))
    path = Path(str(call.require("path")))
    if not path.is_absolute() and call.workdir is not None:
        path = call.workdir / path
    try:
        ref = call.artifacts.store(name, path)
    except (OSError, ValueError) as e:
        raise ExecutionError(kind=ErrorKind.EXECUTION, message=str(e), job=call.job, step=call.step) from e
    return {"artifact-name": ref.name, "artifact-digest": ref.digest, "artifact-size": str(ref.size)}


def run_script(call: ActionCall) -> Dict[str, str]:
    """Run the `script` input through the job's runner handle."""
    script = str(call.require("script"))
    result = call.runner.execute(call.handle, Command(run=script, env=dict(call.env)))
    if result.exit_code != 0:
        raise ExecutionError(
            kind=ErrorKind.EXECUTION,
            message=f"script exited with {result.exit_code}",
            job=call.job,
            step=call.step,
            details={"exit_code": result.exit_code},
        )
    return {"stdout": result.stdout.strip()}


BUILTIN_ACTIONS: Dict[str, Action] = {
    "upload-artifact": upload_artifact,
    "run-script": run_script,
}
