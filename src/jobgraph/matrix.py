# matrix.py
from __future__ import annotations

import itertools
import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .errors import ExpressionError, MatrixConfigurationError
from .expressions import ExpressionContext, evaluate, evaluate_value, to_string
from .model import JobInstance, JobTemplate, MatrixSpec


@dataclass(frozen=True)
class MatrixExpansion:
    """
    Ordered matrix combinations of one template, plus the strategy knobs the
    scheduler enforces (they are not expansion-time concerns).
    """
    template: str
    combinations: List[Dict[str, Any]] = field(default_factory=list)
    fail_fast: bool = True
    max_parallel: int = 1
    is_matrix: bool = False

    def __len__(self) -> int:
        return len(self.combinations)


def instance_id(name: str, combination: Mapping[str, Any]) -> str:
    """
    `build` for plain jobs, `test (ubuntu, 3.11)` for matrix instances.
    Values an include entry overlays are part of the id.
    """
    if not combination:
        return name
    return f"{name} ({', '.join(to_string(v) for v in combination.values())})"


def _matches(combination: Mapping[str, Any], entry: Mapping[str, Any]) -> bool:
    # unnamed axes are wildcards
    return all(k in combination and combination[k] == v for k, v in entry.items())


# ---------------------------------------------------------------------
# Dynamic values
# ---------------------------------------------------------------------

def _resolve_dynamic(job: str, source: str, context: Optional[ExpressionContext]) -> Any:
    """
    Resolve an expression-sourced matrix value. A string result is parsed as
    JSON right here; malformed JSON is a configuration error for the job.
    """
    if context is None:
        raise MatrixConfigurationError(job, "Dynamic matrix cannot be expanded before its needs have finished", source=source)
    try:
        value = evaluate_value(source, context) if "${{" in source else evaluate(source, context)
    except ExpressionError as e:
        raise MatrixConfigurationError(job, f"Dynamic matrix expression failed: {e}", source=source) from e

    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError as e:
            raise MatrixConfigurationError(
                job,
                "Dynamic matrix value is not valid JSON",
                source=source,
                error=e.msg,
            ) from e
    return value


def _resolve_spec(job: str, spec: MatrixSpec, context: Optional[ExpressionContext]) -> MatrixSpec:
    """Return a MatrixSpec with every dynamic axis replaced by concrete values."""
    axes: Dict[str, Any] = {}
    include = list(spec.include)
    exclude = list(spec.exclude)

    if spec.source is not None:
        whole = _resolve_dynamic(job, spec.source, context)
        if not isinstance(whole, Mapping):
            raise MatrixConfigurationError(job, "Dynamic matrix must be a JSON object", source=spec.source)
        for key, values in whole.items():
            if key == "include":
                include.extend(values)
            elif key == "exclude":
                exclude.extend(values)
            else:
                axes[key] = values

    for axis, values in spec.axes.items():
        axes[axis] = _resolve_dynamic(job, values, context) if isinstance(values, str) else values

    for axis, values in axes.items():
        if not isinstance(values, list):
            raise MatrixConfigurationError(job, f"Matrix axis '{axis}' must be a JSON array", axis=axis)
    for entry in include + exclude:
        if not isinstance(entry, Mapping):
            raise MatrixConfigurationError(job, "Matrix include/exclude entries must be objects", entry=entry)

    return MatrixSpec(
        axes=axes,
        include=tuple(include),
        exclude=tuple(exclude),
        fail_fast=spec.fail_fast,
        max_parallel=spec.max_parallel,
    )


# ---------------------------------------------------------------------
# Expansion
# ---------------------------------------------------------------------

def expand_matrix(spec: MatrixSpec, *, job: str = "", context: Optional[ExpressionContext] = None) -> List[Dict[str, Any]]:
    """
    Expand a matrix spec into ordered combinations.

    1. Cartesian product of the axes in declaration order (first axis slowest).
    2. `exclude` removes every combination matching all pairs of an entry.
    3. `include` overlays its extra fields onto the first combination whose
       values agree on every axis the entry names; an entry naming no axis
       applies to every combination. An entry that matches nothing becomes a
       new combination holding only its own fields.
    """
    if spec.is_dynamic:
        spec = _resolve_spec(job, spec, context)

    axis_names = list(spec.axes.keys())
    if axis_names:
        base = [dict(zip(axis_names, values)) for values in itertools.product(*(spec.axes[a] for a in axis_names))]
    else:
        base = []

    base = [c for c in base if not any(_matches(c, ex) for ex in spec.exclude)]

    synthesized: List[Dict[str, Any]] = []
    for entry in spec.include:
        named = {k: v for k, v in entry.items() if k in spec.axes}
        extras = {k: v for k, v in entry.items() if k not in spec.axes}

        if base and not named:
            for c in base:
                c.update(extras)
            continue

        target = next((c for c in base if named and _matches(c, named)), None)
        if target is not None:
            target.update(extras)
        else:
            synthesized.append(dict(entry))

    return base + synthesized


def expand(template: JobTemplate, context: Optional[ExpressionContext] = None) -> MatrixExpansion:
    """Expand one job template; templates without a strategy yield one combination."""
    spec = template.strategy
    if spec is None:
        return MatrixExpansion(template=template.name, combinations=[{}], fail_fast=False, max_parallel=1)

    combinations = expand_matrix(spec, job=template.name, context=context)
    if spec.max_parallel is not None and spec.max_parallel < 1:
        raise MatrixConfigurationError(template.name, "max-parallel must be at least 1", max_parallel=spec.max_parallel)
    return MatrixExpansion(
        template=template.name,
        combinations=combinations,
        fail_fast=spec.fail_fast,
        max_parallel=spec.max_parallel or max(1, len(combinations)),
        is_matrix=True,
    )


def instantiate(template: JobTemplate, expansion: MatrixExpansion) -> List[JobInstance]:
    """Create one JobInstance per combination, rejecting duplicate ids."""
    instances: List[JobInstance] = []
    seen: Dict[str, int] = {}
    for combination in expansion.combinations:
        iid = instance_id(template.name, combination) if expansion.is_matrix else template.name
        if iid in seen:
            raise MatrixConfigurationError(template.name, f"Matrix produced duplicate instance '{iid}'", instance=iid)
        seen[iid] = 1
        instances.append(JobInstance(id=iid, template=template, matrix=dict(combination)))
    return instances
