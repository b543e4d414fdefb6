# git.py
# Thin wrapper around the Git CLI, used to describe the event a local run is
# started for (ref, sha, changed files). The engine itself never calls git.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Optional, Set

from .model import Event


class GitError(RuntimeError):
    pass


def _git(args: List[str], cwd: Optional[Path] = None) -> str:
    """
    Run `git <args>` and return stdout with surrounding whitespace removed.

    Raises:
        GitError if git is missing or exits non-zero.
    """
    try:
        out = subprocess.check_output(
            ["git", *args],
            cwd=str(cwd) if cwd else None,
            text=True,
            stderr=subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise GitError("git executable not found") from e
    except subprocess.CalledProcessError as e:
        raise GitError(f"git {' '.join(args)} failed: {(e.stderr or '').strip()}") from e
    return out.strip()


def _lines(out: str) -> List[str]:
    return out.splitlines() if out else []


def repo_root(cwd: Optional[Path] = None) -> Path:
    """Absolute path of the enclosing repository, as git reports it."""
    return Path(_git(["rev-parse", "--show-toplevel"], cwd))


def head_sha(cwd: Optional[Path] = None) -> str:
    return _git(["rev-parse", "HEAD"], cwd)


def current_ref(cwd: Optional[Path] = None) -> Optional[str]:
    """refs/heads/<branch>, or None on a detached HEAD."""
    try:
        return _git(["symbolic-ref", "-q", "HEAD"], cwd) or None
    except GitError:
        return None


def is_dirty(cwd: Optional[Path] = None) -> bool:
    """Modified, staged or untracked files present."""
    return _git(["status", "--porcelain"], cwd) != ""


def merge_base(with_ref: str = "origin/main", cwd: Optional[Path] = None) -> str:
    return _git(["merge-base", "HEAD", with_ref], cwd)


def changed_files(base: str, head: str = "HEAD", cwd: Optional[Path] = None) -> List[str]:
    """Paths (relative to the repo root) changed between two refs."""
    return _lines(_git(["diff", "--name-only", f"{base}..{head}"], cwd))


def working_tree_changes(cwd: Optional[Path] = None) -> List[str]:
    """Unstaged, staged and untracked paths."""
    files: Set[str] = set()
    files.update(_lines(_git(["diff", "--name-only"], cwd)))
    files.update(_lines(_git(["diff", "--name-only", "--cached"], cwd)))
    files.update(_lines(_git(["ls-files", "--others", "--exclude-standard"], cwd)))
    return sorted(files)


def local_event(
    name: str = "push",
    *,
    ref: Optional[str] = None,
    compare_ref: str = "origin/main",
    cwd: Optional[Path] = None,
) -> Event:
    """
    Describe the local checkout as a trigger event.

    Dirty tree: changed files are the working-tree changes and sha is empty.
    Clean tree: changed files are HEAD against its merge-base with
    compare_ref, falling back to HEAD~1, then to every tracked file.
    """
    root = repo_root(cwd)
    ref = ref or current_ref(root)

    if is_dirty(root):
        return Event(name=name, ref=ref, sha=None, changed_files=tuple(working_tree_changes(root)))

    sha = head_sha(root)
    try:
        base = merge_base(compare_ref, root)
    except GitError:
        base = "HEAD~1"
    try:
        changed = changed_files(base, "HEAD", root)
    except GitError:
        changed = _lines(_git(["ls-files"], root))
    return Event(name=name, ref=ref, sha=sha, changed_files=tuple(changed))
