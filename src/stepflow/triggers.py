# triggers.py
# Decides whether a workflow runs for a given event. Filters are fnmatch
# globs, the same matching used for per-job path filters.
from __future__ import annotations

from fnmatch import fnmatch
from typing import Iterable, Optional, Tuple

from .model import Event, Trigger, Workflow


def _matches_any(value: str, patterns: Iterable[str]) -> bool:
    return any(fnmatch(value, p) for p in patterns)


def branch_of(ref: Optional[str]) -> Optional[str]:
    """refs/heads/main -> main; other refs are returned as given."""
    if not ref:
        return None
    prefix = "refs/heads/"
    return ref[len(prefix):] if ref.startswith(prefix) else ref


def trigger_matches(trigger: Trigger, event: Event) -> Tuple[bool, str]:
    if trigger.event != event.name:
        return False, f"event {event.name!r} is not {trigger.event!r}"

    if trigger.branches is not None:
        branch = branch_of(event.ref)
        if branch is None or not _matches_any(branch, trigger.branches):
            return False, f"branch {branch!r} does not match {list(trigger.branches)}"

    if trigger.paths is not None:
        hit = any(_matches_any(f, trigger.paths) for f in event.changed_files)
        if not hit:
            return False, f"no changed file matches {list(trigger.paths)}"

    return True, f"matched {trigger.event!r}"


def matches(workflow: Workflow, event: Event) -> Tuple[bool, str]:
    """
    (True, reason) if any trigger accepts the event.
    A workflow without triggers runs for every event.
    """
    if not workflow.triggers:
        return True, "no triggers declared"
    reasons = []
    for trigger in workflow.triggers:
        ok, reason = trigger_matches(trigger, event)
        if ok:
            return True, reason
        reasons.append(reason)
    return False, "; ".join(reasons)
