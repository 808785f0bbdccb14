# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union


class Status(str, Enum):
    PENDING = "pending"
    BLOCKED = "blocked"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def result(self) -> str | None:
        """The value dependents see as `needs.<id>.result` (None while not terminal)."""
        return _RESULTS.get(self)


TERMINAL_STATUSES = frozenset({Status.SUCCEEDED, Status.FAILED, Status.CANCELLED, Status.SKIPPED})

_RESULTS = {
    Status.SUCCEEDED: "success",
    Status.FAILED: "failure",
    Status.CANCELLED: "cancelled",
    Status.SKIPPED: "skipped",
}


# ---------------------------------------------------------------------
# Step kinds (tagged variant, dispatched on `kind`)
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class ShellStep:
    run: str
    shell: str = "sh"
    kind: str = field(default="shell", init=False)


@dataclass(frozen=True)
class ContainerStep:
    image: str
    run: str
    volumes: Tuple[str, ...] = ()
    user: Optional[str] = None
    kind: str = field(default="container", init=False)


@dataclass(frozen=True)
class WorkflowCallStep:
    workflow: "WorkflowDefinition"
    with_: Mapping[str, str] = field(default_factory=dict)
    kind: str = field(default="workflow_call", init=False)


@dataclass(frozen=True)
class UploadArtifactStep:
    name: str
    path: str
    kind: str = field(default="upload_artifact", init=False)


@dataclass(frozen=True)
class DownloadArtifactStep:
    name: str
    path: str = "."
    kind: str = field(default="download_artifact", init=False)


StepAction = Union[ShellStep, ContainerStep, WorkflowCallStep, UploadArtifactStep, DownloadArtifactStep]


@dataclass(frozen=True)
class StepTemplate:
    """A single step inside a job template."""
    name: str
    action: StepAction
    id: Optional[str] = None
    if_: Optional[str] = None
    continue_on_error: bool = False
    timeout: Optional[float] = None      # seconds; inherits the job's remaining budget when absent
    env: Mapping[str, str] = field(default_factory=dict)
    cwd: Optional[str] = None


# ---------------------------------------------------------------------
# Strategy / concurrency
# ---------------------------------------------------------------------

# An axis is either a literal list of values or an expression string whose
# value (a JSON array) is only known once the needed jobs have finished.
AxisValues = Union[List[Any], str]


@dataclass(frozen=True)
class MatrixSpec:
    axes: Mapping[str, AxisValues] = field(default_factory=dict)
    include: Tuple[Mapping[str, Any], ...] = ()
    exclude: Tuple[Mapping[str, Any], ...] = ()
    fail_fast: bool = True
    max_parallel: Optional[int] = None
    # Whole-matrix expression (`matrix: ${{ fromJSON(needs.plan.outputs.matrix) }}`)
    source: Optional[str] = None

    @property
    def is_dynamic(self) -> bool:
        return self.source is not None or any(isinstance(v, str) for v in self.axes.values())


@dataclass(frozen=True)
class ConcurrencySpec:
    group: str
    cancel_in_progress: bool = False


# ---------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class JobTemplate:
    """
    The declared, unexpanded definition of a job.

    `needs` names other templates; a matrixed dependency fans out to every
    instance of that template.
    """
    name: str
    steps: Tuple[StepTemplate, ...]
    needs: Tuple[str, ...] = ()
    if_: Optional[str] = None
    strategy: Optional[MatrixSpec] = None
    concurrency: Optional[ConcurrencySpec] = None
    timeout: Optional[float] = None
    env: Mapping[str, str] = field(default_factory=dict)
    outputs: Mapping[str, str] = field(default_factory=dict)
    continue_on_error: bool = False


@dataclass(frozen=True)
class WorkflowDefinition:
    name: str
    jobs: Tuple[JobTemplate, ...]
    env: Mapping[str, str] = field(default_factory=dict)
    concurrency: Optional[ConcurrencySpec] = None
    # workflow_call outputs: name -> template over `jobs.<name>.outputs.<x>`
    outputs: Mapping[str, str] = field(default_factory=dict)

    def job(self, name: str) -> JobTemplate:
        for j in self.jobs:
            if j.name == name:
                return j
        raise KeyError(name)

    @property
    def job_names(self) -> List[str]:
        return [j.name for j in self.jobs]


# ---------------------------------------------------------------------
# Runtime instances
# ---------------------------------------------------------------------

@dataclass
class StepInstance:
    name: str
    id: Optional[str] = None
    status: Status = Status.PENDING
    continue_on_error: bool = False
    outputs: Dict[str, str] = field(default_factory=dict)
    exit_code: Optional[int] = None
    timed_out: bool = False
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def outcome(self) -> str | None:
        return self.status.result

    @property
    def conclusion(self) -> str | None:
        # continue-on-error turns a failed outcome into a successful conclusion
        if self.status is Status.FAILED and self.continue_on_error:
            return "success"
        return self.status.result


@dataclass
class JobInstance:
    """
    One concrete, schedulable unit: a template bound to one matrix combination.

    Only the run that owns the instance mutates it, under that run's lock.
    """
    id: str
    template: JobTemplate
    matrix: Dict[str, Any] = field(default_factory=dict)
    needs: frozenset = frozenset()          # resolved JobInstance ids
    status: Status = Status.PENDING
    outputs: Dict[str, str] = field(default_factory=dict)
    concurrency_key: Optional[str] = None
    steps: List[StepInstance] = field(default_factory=list)
    reason: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def name(self) -> str:
        return self.template.name

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal
