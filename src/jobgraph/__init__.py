from .engine import Engine, Run, plan
from .context import TriggerContext
from .model import JobTemplate, Status, StepTemplate, WorkflowDefinition
from .report import RunReport

# Imported last: `matrix` and `concurrency` name both submodules and DSL helpers,
# and the helpers must win.
from .dsl import JobBuilder, build, call, concurrency, container, download, job, matrix, sh, step, upload, wf

__all__ = [
    "JobBuilder",
    "build",
    "call",
    "concurrency",
    "container",
    "download",
    "job",
    "matrix",
    "sh",
    "step",
    "upload",
    "wf",
    "Engine",
    "Run",
    "plan",
    "TriggerContext",
    "JobTemplate",
    "Status",
    "StepTemplate",
    "WorkflowDefinition",
    "RunReport",
]
