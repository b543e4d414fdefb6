# backends.py
# Interfaces the engine consumes (runner, secret store) plus the local
# implementations used by the CLI and the tests.
from __future__ import annotations

import os
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Protocol, Sequence, Tuple, runtime_checkable

from .errors import ErrorKind, ExecutionError


TOOL_HINTS = {
    "npm": "Install Node.js (includes npm) or fix PATH.",
    "node": "Install Node.js or fix PATH.",
    "pytest": "Install pytest (e.g., pip install pytest).",
    "ruff": "Install ruff (e.g., pip install ruff).",
    "docker": "Install Docker and ensure the daemon is running.",
    "python3": "Install Python 3 or fix PATH (python3).",
}


def hint_for(command: str, exit_code: Optional[int]) -> Optional[str]:
    """Shell exit code 127 means 'command not found'; point at the missing tool."""
    if exit_code != 127 or not command.strip():
        return None
    tool = command.strip().split()[0]
    return TOOL_HINTS.get(tool, f"Install {tool} or fix PATH.")


# ----------------------------------------------------------------------
# Runner
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class Command:
    """What a step asks the runner to execute. `run` may contain revealed secrets."""
    run: str
    env: Mapping[str, str] = field(default_factory=dict)
    cwd: Optional[str] = None
    timeout: Optional[float] = None


@dataclass(frozen=True)
class ExecResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""


@runtime_checkable
class Runner(Protocol):
    def acquire(self, requirements: Sequence[str]) -> Any: ...

    def execute(self, handle: Any, command: Command) -> ExecResult: ...

    def release(self, handle: Any) -> None: ...


@dataclass(frozen=True)
class LocalHandle:
    root: Path
    requirements: Tuple[str, ...] = ()


class LocalRunner:
    """
    Runs step commands with the local shell.

    No isolation: every handle shares `root` as its working tree. `labels`,
    when given, is the set of runs_on requirements this machine satisfies.
    """

    def __init__(
        self,
        root: str | Path = ".",
        *,
        labels: Optional[Sequence[str]] = None,
        inherit_env: bool = True,
    ):
        self.root = Path(root).resolve()
        self.labels = set(labels) if labels is not None else None
        self.inherit_env = inherit_env

    def acquire(self, requirements: Sequence[str]) -> LocalHandle:
        if self.labels is not None:
            missing = sorted(set(requirements) - self.labels)
            if missing:
                raise ExecutionError(
                    kind=ErrorKind.EXECUTION,
                    message=f"no local environment satisfies runs_on {missing}",
                    details={"labels": sorted(self.labels)},
                )
        return LocalHandle(root=self.root, requirements=tuple(requirements))

    def execute(self, handle: LocalHandle, command: Command) -> ExecResult:
        cwd = (handle.root / (command.cwd or ".")).resolve()
        if not cwd.exists():
            raise ExecutionError(
                kind=ErrorKind.EXECUTION,
                message=f"working directory not found: {cwd}",
            )

        env: Dict[str, str] = os.environ.copy() if self.inherit_env else {}
        env.update({k: str(v) for k, v in command.env.items()})

        try:
            proc = subprocess.run(
                command.run,
                shell=True,
                cwd=str(cwd),
                env=env,
                text=True,
                capture_output=True,
                timeout=command.timeout,
            )
        except subprocess.TimeoutExpired:
            raise ExecutionError(
                kind=ErrorKind.EXECUTION,
                message=f"command timed out after {command.timeout}s",
            ) from None
        except OSError as e:
            raise ExecutionError(kind=ErrorKind.EXECUTION, message=f"could not start command: {e}") from e

        return ExecResult(exit_code=proc.returncode, stdout=proc.stdout, stderr=proc.stderr)

    def release(self, handle: LocalHandle) -> None:
        return None


# ----------------------------------------------------------------------
# Secrets
# ----------------------------------------------------------------------

class SecretNotFound(KeyError):
    pass


@runtime_checkable
class SecretStore(Protocol):
    def resolve(self, name: str) -> str: ...


class DictSecretStore:
    """In-memory secret store."""

    def __init__(self, secrets: Optional[Mapping[str, str]] = None):
        self._secrets = dict(secrets or {})

    def resolve(self, name: str) -> str:
        try:
            return self._secrets[name]
        except KeyError:
            raise SecretNotFound(name) from None

    def names(self) -> list[str]:
        return sorted(self._secrets)

    def __repr__(self) -> str:
        return f"DictSecretStore({self.names()})"


class EnvSecretStore:
    """Secrets from environment variables: resolve('TOKEN') reads <prefix>TOKEN."""

    def __init__(self, prefix: str = "STEPFLOW_SECRET_", environ: Optional[Mapping[str, str]] = None):
        self.prefix = prefix
        self._environ = environ if environ is not None else os.environ

    def resolve(self, name: str) -> str:
        value = self._environ.get(self.prefix + name)
        if value is None:
            raise SecretNotFound(name)
        return value

    def names(self) -> list[str]:
        return sorted(k[len(self.prefix):] for k in self._environ if k.startswith(self.prefix))
