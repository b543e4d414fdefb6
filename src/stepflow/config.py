# config.py
from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import Mapping, Optional

from .scheduler import ParallelScope


def default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


def _flag(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _scope(raw: str) -> ParallelScope:
    try:
        return ParallelScope(raw.strip().lower())
    except ValueError:
        choices = ", ".join(s.value for s in ParallelScope)
        raise ValueError(f"STEPFLOW_PARALLEL_SCOPE must be one of {choices}, got {raw!r}") from None


@dataclass(frozen=True)
class EngineConfig:
    max_workers: int = 0
    parallel_scope: ParallelScope = ParallelScope.GROUP
    debug: bool = False
    output_tail: int = 4000
    artifact_root: str = ".stepflow/artifacts"

    def __post_init__(self) -> None:
        if self.max_workers <= 0:
            object.__setattr__(self, "max_workers", default_workers())
        object.__setattr__(self, "parallel_scope", ParallelScope(self.parallel_scope))

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "EngineConfig":
        env = os.environ if environ is None else environ
        return cls(
            max_workers=_int(env, "STEPFLOW_MAX_WORKERS", 0),
            parallel_scope=_scope(env.get("STEPFLOW_PARALLEL_SCOPE", "group")),
            debug=_flag(env.get("STEPFLOW_DEBUG")),
            output_tail=_int(env, "STEPFLOW_OUTPUT_TAIL", 4000),
            artifact_root=env.get("STEPFLOW_ARTIFACT_ROOT", ".stepflow/artifacts"),
        )

    def override(self, **changes) -> "EngineConfig":
        """Copy with every change that is not None applied (CLI flags over env)."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})
