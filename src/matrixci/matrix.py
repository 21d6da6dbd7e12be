# matrix.py
from __future__ import annotations

from itertools import product
from typing import Any, Dict, Iterable, List, Sequence

from .model import JobSpec, MatrixAxis


def matrix_size(axes: Sequence[MatrixAxis]) -> int:
    """Number of jobs the axes expand to (0 if there are no axes or one is empty)."""
    if not axes:
        return 0
    n = 1
    for a in axes:
        n *= len(a.values)
    return n


def expand_matrix(axes: Iterable[MatrixAxis]) -> List[JobSpec]:
    """
    Cartesian product of the axes, one JobSpec per combination.

    Order is nested iteration in declaration order (first axis varies slowest):
        version=[stable, beta], target=[a, b]
        -> stable-a, stable-b, beta-a, beta-b

    An empty axis (or no axes at all) means "nothing to run" and yields [].
    """
    axes = list(axes)
    names = [a.name for a in axes]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ValueError(f"Duplicate axis names found: {dupes}")

    if matrix_size(axes) == 0:
        return []

    specs: List[JobSpec] = []
    for idx, combo in enumerate(product(*(a.values for a in axes))):
        specs.append(JobSpec(values=tuple(zip(names, combo)), index=idx))
    return specs


def to_github_matrix(axes: Iterable[MatrixAxis]) -> Dict[str, Any]:
    """Render the expanded matrix as a GitHub Actions style {"include": [...]}."""
    include = []
    for spec in expand_matrix(axes):
        entry: Dict[str, Any] = {"name": spec.name}
        entry.update(spec.as_dict())
        include.append(entry)
    return {"include": include}
