# matrix.py
from __future__ import annotations

from itertools import product
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .errors import ErrorKind, ValidationError
from .expressions import render
from .model import Job, MatrixSpec

Assignment = Dict[str, Any]


def validate_matrix(spec: MatrixSpec, *, job: Optional[str] = None) -> None:
    """
    Reject matrix definitions that cannot expand cleanly:
      - axes with no values, or a bare string instead of a value list
      - exclude entries naming an undeclared axis
      - include entries sharing no key with the declared axes
    """
    axes = dict(spec.axes)
    for name, values in axes.items():
        if len(values) == 0:
            raise ValidationError(
                kind=ErrorKind.INVALID_DEFINITION,
                message=f"matrix axis {name!r} has no values",
                job=job,
                details={"axis": name},
            )

    for entry in spec.exclude:
        for key in entry:
            if key not in axes:
                raise ValidationError(
                    kind=ErrorKind.UNKNOWN_AXIS,
                    message=f"exclude entry {dict(entry)} names unknown axis {key!r}. Known axes: {sorted(axes)}",
                    job=job,
                    details={"axis": key, "entry": "exclude"},
                )

    if axes:
        for entry in spec.include:
            if not any(key in axes for key in entry):
                raise ValidationError(
                    kind=ErrorKind.UNKNOWN_AXIS,
                    message=f"include entry {dict(entry)} names no declared axis. Known axes: {sorted(axes)}",
                    job=job,
                    details={"axis": sorted(entry), "entry": "include"},
                )


def _matches(combo: Mapping[str, Any], entry: Mapping[str, Any], keys: Sequence[str]) -> bool:
    return all(k in combo and combo[k] == entry[k] for k in keys)


def expand(spec: Optional[MatrixSpec], *, job: Optional[str] = None) -> List[Assignment]:
    """
    Expand a matrix into concrete assignments.

    Order: Cartesian product of the axes in declaration order, then appended
    include combinations, with exclusions removed last.

    An include entry already covered by a combination (every key it names is
    present there with the same value) adds nothing; any other include entry
    becomes a new combination of its own.
    """
    if spec is None:
        return [{}]
    validate_matrix(spec, job=job)

    axes = dict(spec.axes)
    names = list(axes)

    combos: List[Assignment]
    if names:
        combos = [dict(zip(names, values)) for values in product(*(axes[n] for n in names))]
    elif spec.include:
        combos = []
    else:
        return [{}]

    for entry in spec.include:
        entry = dict(entry)
        if not any(_matches(combo, entry, list(entry)) for combo in combos):
            combos.append(entry)

    for entry in spec.exclude:
        keys = list(entry)
        combos = [c for c in combos if not _matches(c, entry, keys)]

    return combos


def matrix_key(assignment: Mapping[str, Any]) -> str:
    """Stable instance key: axis values joined in order, e.g. 'ubuntu, 20'."""
    return ", ".join(render(v) for v in assignment.values())


def instance_name(job: Job, assignment: Mapping[str, Any]) -> str:
    key = matrix_key(assignment)
    return f"{job.name} ({key})" if key else job.name
