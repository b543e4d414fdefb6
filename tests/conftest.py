"""Shared fixtures: a scripted runner and a silent console."""

from __future__ import annotations

import shutil
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

import pytest

from stepflow.backends import Command, ExecResult
from stepflow.ui.console import Console, set_console


@dataclass
class Script:
    exit_code: int = 0
    stdout: str = ""
    stderr: str = ""
    delay: float = 0.0
    wait_for: Optional[threading.Event] = None
    signal: Optional[threading.Event] = None
    raises: Optional[Exception] = None


class FakeRunner:
    """
    Runner double. Commands are matched against registered substrings in
    registration order; unmatched commands succeed with empty output.
    """

    def __init__(self) -> None:
        self._scripts: List[tuple[str, Script]] = []
        self._lock = threading.Lock()
        self.commands: List[Command] = []
        self.acquired: List[tuple[str, ...]] = []
        self.released = 0
        self.refuse: Optional[Exception] = None

    def on(self, pattern: str, **kwargs) -> "FakeRunner":
        self._scripts.append((pattern, Script(**kwargs)))
        return self

    def acquire(self, requirements: Sequence[str]):
        if self.refuse is not None:
            raise self.refuse
        with self._lock:
            self.acquired.append(tuple(requirements))
        return {"requirements": tuple(requirements)}

    def execute(self, handle, command: Command) -> ExecResult:
        with self._lock:
            self.commands.append(command)
        script = next((s for p, s in self._scripts if p in command.run), Script())
        if script.signal is not None:
            script.signal.set()
        if script.wait_for is not None:
            script.wait_for.wait(timeout=5)
        if script.delay:
            time.sleep(script.delay)
        if script.raises is not None:
            raise script.raises
        return ExecResult(exit_code=script.exit_code, stdout=script.stdout, stderr=script.stderr)

    def release(self, handle) -> None:
        with self._lock:
            self.released += 1

    def ran(self, pattern: str) -> bool:
        return any(pattern in c.run for c in self.commands)

    def runs(self) -> List[str]:
        return [c.run for c in self.commands]


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture(autouse=True)
def quiet_console():
    console = Console(quiet=True)
    set_console(console)
    yield console
    set_console(Console())


requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


def git(repo: Path, *args: str) -> str:
    """Run git in repo with a throwaway identity; returns stdout."""
    proc = subprocess.run(
        [
            "git",
            "-c", "user.name=stepflow",
            "-c", "user.email=stepflow@example.com",
            "-c", "commit.gpgsign=false",
            *args,
        ],
        cwd=repo,
        check=True,
        capture_output=True,
        text=True,
    )
    return proc.stdout.strip()


def commit(repo: Path, files: dict, message: str = "change") -> str:
    for rel, content in files.items():
        path = repo / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    git(repo, "add", *files)
    git(repo, "commit", "-q", "-m", message)
    return git(repo, "rev-parse", "HEAD")


@pytest.fixture
def git_repo(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """An empty repository on branch main; git never looks above tmp_path."""
    monkeypatch.setenv("GIT_CEILING_DIRECTORIES", str(tmp_path))
    repo = tmp_path / "repo"
    repo.mkdir()
    git(repo, "init", "-q")
    git(repo, "symbolic-ref", "HEAD", "refs/heads/main")
    return repo
