# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


class JobGraphError(Exception):
    """Base class for every error raised by the engine."""


# ----------------------------------------------------------------------
# Configuration errors (fatal, raised before any job starts)
# ----------------------------------------------------------------------

@dataclass(eq=False)
class ConfigurationError(JobGraphError):
    """
    Structured configuration error with enough context for:
      - clean CLI output
      - the HTTP control plane (serialized via to_dict)
      - debugging without full tracebacks
    """
    kind: str
    message: str
    job: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "job": self.job,
            "details": dict(self.details),
        }


class CyclicDependencyError(ConfigurationError):
    def __init__(self, cycle: List[str]):
        super().__init__(
            kind="cyclic_dependency",
            message="Job dependencies form a cycle: " + " -> ".join(cycle),
            job=cycle[0] if cycle else None,
            details={"cycle": list(cycle)},
        )
        self.cycle = list(cycle)


class UnknownJobError(ConfigurationError):
    def __init__(self, job: str, missing: str, known: List[str]):
        super().__init__(
            kind="unknown_job",
            message=f"Job '{job}' needs missing job '{missing}'",
            job=job,
            details={"missing": missing, "known": sorted(known)},
        )


class UndeclaredJobReferenceError(ConfigurationError):
    def __init__(self, job: str, referenced: str, where: str):
        super().__init__(
            kind="undeclared_job_reference",
            message=f"Job '{job}' references needs.{referenced} in {where} but does not declare it in needs",
            job=job,
            details={"referenced": referenced, "where": where},
        )


class MatrixConfigurationError(ConfigurationError):
    def __init__(self, job: str, message: str, **details: Any):
        super().__init__(kind="matrix_configuration", message=message, job=job, details=details)


class ConcurrencyConfigurationError(ConfigurationError):
    def __init__(self, job: Optional[str], message: str, **details: Any):
        super().__init__(kind="concurrency_configuration", message=message, job=job, details=details)


class DuplicateJobError(ConfigurationError):
    def __init__(self, names: List[str]):
        super().__init__(
            kind="duplicate_job",
            message=f"Duplicate job ids found: {names}",
            details={"duplicates": list(names)},
        )


# ----------------------------------------------------------------------
# Expression errors
# ----------------------------------------------------------------------

class ExpressionError(JobGraphError):
    """Raised for syntax errors and invalid function calls in expressions."""

    def __init__(self, message: str, expression: str | None = None):
        self.expression = expression
        if expression is not None:
            message = f"{message} (expression: {expression})"
        super().__init__(message)


class UndefinedReference(ExpressionError):
    """A strict evaluation hit a context value that does not exist."""

    def __init__(self, path: str, expression: str | None = None):
        self.path = path
        super().__init__(f"Undefined context value '{path}'", expression)


class NotReady(JobGraphError):
    """Outputs or results of a job were requested before the job reached a terminal state."""

    def __init__(self, instance_id: str):
        self.instance_id = instance_id
        super().__init__(f"Job '{instance_id}' has not finished; its outputs are not available yet")


# ----------------------------------------------------------------------
# Execution errors (local to one step)
# ----------------------------------------------------------------------

@dataclass(eq=False)
class StepFailure(JobGraphError):
    job: str
    step: str
    exit_code: int
    message: str = ""

    def __str__(self) -> str:
        suffix = f": {self.message}" if self.message else ""
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}){suffix}"


@dataclass(eq=False)
class StepTimeout(JobGraphError):
    job: str
    step: str
    timeout: float

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' timed out after {self.timeout:g}s"


class RunnerUnavailable(JobGraphError):
    """The step runner has no capacity right now; the engine retries with backoff."""


class ArtifactNotFound(JobGraphError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Artifact '{name}' was not published by any finished job")
