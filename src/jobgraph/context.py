# context.py
from __future__ import annotations

import threading
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Sequence

from .errors import NotReady
from .expressions import StatusFunctions
from .model import Status, StepInstance


# ---------------------------------------------------------------------
# Trigger metadata (immutable per run)
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class TriggerContext:
    """
    What the event delivery hands the engine. Exposed to expressions as
    `github.*` (plus `inputs.*`).
    """
    event_name: str = "workflow_dispatch"
    ref: str = "refs/heads/main"
    sha: str = ""
    actor: str = ""
    repository: str = ""
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    run_number: int = 1
    event: Dict[str, Any] = field(default_factory=dict)
    inputs: Dict[str, Any] = field(default_factory=dict)

    def as_github(self) -> Dict[str, Any]:
        ref_name = self.ref.split("/", 2)[-1] if self.ref.startswith("refs/") else self.ref
        return {
            "event_name": self.event_name,
            "ref": self.ref,
            "ref_name": ref_name,
            "sha": self.sha,
            "actor": self.actor,
            "repository": self.repository,
            "run_id": self.run_id,
            "run_number": self.run_number,
            "event": self.event,
        }


# ---------------------------------------------------------------------
# Environment accumulator (replaces the GITHUB_ENV side channel)
# ---------------------------------------------------------------------

class EnvAccumulator:
    """
    Per-job environment passed down the step sequence.

    Steps add variables with `update()`; every later step sees them folded
    into its resolved environment.
    """

    def __init__(self, base: Optional[Mapping[str, str]] = None):
        self._env: Dict[str, str] = dict(base or {})

    def update(self, values: Mapping[str, str]) -> None:
        self._env.update({k: str(v) for k, v in values.items()})

    def resolve(self, step_env: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        env = dict(self._env)
        env.update(step_env or {})
        return env

    def snapshot(self) -> Dict[str, str]:
        return dict(self._env)


# ---------------------------------------------------------------------
# Run result table
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class JobResult:
    instance_id: str
    template: str
    status: Status
    outputs: Mapping[str, str] = field(default_factory=dict)
    # set when this job or any job upstream of it failed / was cancelled
    failed_chain: bool = False
    cancelled_chain: bool = False


class RunResultTable:
    """
    Append-only instance id -> JobResult map, shared by the scheduler and
    the expression contexts of one run. Entries are never replaced.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._results: Dict[str, JobResult] = {}

    def record(self, result: JobResult) -> None:
        if not result.status.is_terminal:
            raise ValueError(f"Cannot record non-terminal status {result.status.value} for '{result.instance_id}'")
        with self._lock:
            if result.instance_id in self._results:
                raise ValueError(f"Result for '{result.instance_id}' already recorded")
            self._results[result.instance_id] = result

    def get(self, instance_id: str) -> Optional[JobResult]:
        with self._lock:
            return self._results.get(instance_id)

    def require(self, instance_id: str) -> JobResult:
        result = self.get(instance_id)
        if result is None:
            raise NotReady(instance_id)
        return result

    def __contains__(self, instance_id: object) -> bool:
        with self._lock:
            return instance_id in self._results

    def __len__(self) -> int:
        with self._lock:
            return len(self._results)

    def snapshot(self) -> Dict[str, JobResult]:
        with self._lock:
            return dict(self._results)


# ---------------------------------------------------------------------
# Expression views
# ---------------------------------------------------------------------

def aggregate_result(statuses: Sequence[Status]) -> str:
    """Collapse the statuses of a template's instances into one `result`."""
    if any(s is Status.FAILED for s in statuses):
        return "failure"
    if any(s is Status.CANCELLED for s in statuses):
        return "cancelled"
    if statuses and all(s is Status.SKIPPED for s in statuses):
        return "skipped"
    return "success"


class _NeedView(Mapping):
    """`needs.<job>`: exposes `result` and `outputs` of one needed job."""

    def __init__(self, table: RunResultTable, instance_ids: Sequence[str]):
        self._table = table
        self._ids = list(instance_ids)

    def _results(self) -> List[JobResult]:
        return [self._table.require(i) for i in self._ids]

    def __getitem__(self, key: str) -> Any:
        if key == "result":
            return aggregate_result([r.status for r in self._results()])
        if key == "outputs":
            merged: Dict[str, str] = {}
            for r in self._results():
                merged.update(r.outputs)
            return merged
        raise KeyError(key)

    def __contains__(self, key: object) -> bool:
        return key in ("result", "outputs")

    def __iter__(self) -> Iterator[str]:
        return iter(("result", "outputs"))

    def __len__(self) -> int:
        return 2


class NeedsView(Mapping):
    """
    The `needs` context: template name (or exact instance id) -> _NeedView.
    Reading `result`/`outputs` of a job that has not finished raises NotReady.
    """

    def __init__(self, table: RunResultTable, members: Mapping[str, Sequence[str]]):
        self._table = table
        self._members = dict(members)
        self._instances = {i: t for t, ids in self._members.items() for i in ids}

    def __getitem__(self, key: str) -> _NeedView:
        if key in self._members:
            return _NeedView(self._table, self._members[key])
        if key in self._instances:
            return _NeedView(self._table, [key])
        raise KeyError(key)

    def __contains__(self, key: object) -> bool:
        return key in self._members or key in self._instances

    def __iter__(self) -> Iterator[str]:
        return iter(self._members)

    def __len__(self) -> int:
        return len(self._members)


def steps_view(steps: Sequence[StepInstance]) -> Dict[str, Dict[str, Any]]:
    """The `steps` context: step id -> outputs / outcome / conclusion."""
    view: Dict[str, Dict[str, Any]] = {}
    for s in steps:
        if not s.id:
            continue
        view[s.id] = {
            "outputs": dict(s.outputs),
            "outcome": s.outcome,
            "conclusion": s.conclusion,
        }
    return view


# ---------------------------------------------------------------------
# Status answers
# ---------------------------------------------------------------------

class JobStatusFunctions(StatusFunctions):
    """
    Status functions at a job boundary.

    success():   every direct dependency Succeeded and the run is not cancelled
    failure():   some dependency (or something upstream of it) Failed
    cancelled(): the run was cancelled, or the dependency chain was
    """

    def __init__(self, dependencies: Sequence[JobResult], run_cancelled: bool = False):
        self.dependencies = list(dependencies)
        self.run_cancelled = run_cancelled

    def success(self) -> bool:
        if self.run_cancelled:
            return False
        return all(d.status is Status.SUCCEEDED for d in self.dependencies)

    def failure(self) -> bool:
        return any(d.failed_chain for d in self.dependencies)

    def cancelled(self) -> bool:
        return self.run_cancelled or any(d.cancelled_chain for d in self.dependencies)


class StepStatusFunctions(StatusFunctions):
    """Status functions at a step boundary, answered from the job's progress so far."""

    def __init__(self, job_failed: bool, job_cancelled: bool):
        self.job_failed = job_failed
        self.job_cancelled = job_cancelled

    def success(self) -> bool:
        return not self.job_failed and not self.job_cancelled

    def failure(self) -> bool:
        return self.job_failed

    def cancelled(self) -> bool:
        return self.job_cancelled
