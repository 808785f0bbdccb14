# report.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from .model import JobInstance, Status, StepInstance


def _iso(ts: Optional[datetime]) -> Optional[str]:
    return ts.isoformat() if ts else None


@dataclass(frozen=True)
class StepReport:
    name: str
    id: Optional[str]
    status: Status
    conclusion: Optional[str]
    outputs: Dict[str, str]
    exit_code: Optional[int]
    timed_out: bool
    error: Optional[str]
    started_at: Optional[datetime]
    finished_at: Optional[datetime]

    @classmethod
    def of(cls, step: StepInstance) -> "StepReport":
        return cls(
            name=step.name,
            id=step.id,
            status=step.status,
            conclusion=step.conclusion,
            outputs=dict(step.outputs),
            exit_code=step.exit_code,
            timed_out=step.timed_out,
            error=step.error,
            started_at=step.started_at,
            finished_at=step.finished_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "id": self.id,
            "status": self.status.value,
            "conclusion": self.conclusion,
            "outputs": dict(self.outputs),
            "exit_code": self.exit_code,
            "timed_out": self.timed_out,
            "error": self.error,
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
        }


@dataclass(frozen=True)
class JobReport:
    id: str
    template: str
    matrix: Dict[str, Any]
    status: Status
    outputs: Dict[str, str]
    reason: Optional[str]
    concurrency_key: Optional[str]
    started_at: Optional[datetime]
    finished_at: Optional[datetime]
    steps: List[StepReport] = field(default_factory=list)

    @classmethod
    def of(cls, inst: JobInstance) -> "JobReport":
        return cls(
            id=inst.id,
            template=inst.name,
            matrix=dict(inst.matrix),
            status=inst.status,
            outputs=dict(inst.outputs),
            reason=inst.reason,
            concurrency_key=inst.concurrency_key,
            started_at=inst.started_at,
            finished_at=inst.finished_at,
            steps=[StepReport.of(s) for s in inst.steps],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "template": self.template,
            "matrix": dict(self.matrix),
            "status": self.status.value,
            "outputs": dict(self.outputs),
            "reason": self.reason,
            "concurrency_key": self.concurrency_key,
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "steps": [s.to_dict() for s in self.steps],
        }


@dataclass(frozen=True)
class RunReport:
    """
    Final (or in-progress) state of one run. All four terminal statuses are
    kept apart; nothing is folded into Failed or Succeeded.
    """
    run_id: str
    workflow: str
    conclusion: Status
    jobs: List[JobReport]
    outputs: Dict[str, str] = field(default_factory=dict)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def job(self, instance_id: str) -> JobReport:
        for j in self.jobs:
            if j.id == instance_id:
                return j
        raise KeyError(instance_id)

    def statuses(self) -> Dict[str, Status]:
        return {j.id: j.status for j in self.jobs}

    @property
    def exit_code(self) -> int:
        if self.conclusion is Status.SUCCEEDED:
            return 0
        if self.conclusion is Status.CANCELLED:
            return 2
        return 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "workflow": self.workflow,
            "conclusion": self.conclusion.value,
            "outputs": dict(self.outputs),
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "jobs": [j.to_dict() for j in self.jobs],
        }
