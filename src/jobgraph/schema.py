# schema.py
from __future__ import annotations

from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .model import (
    ConcurrencySpec,
    ContainerStep,
    DownloadArtifactStep,
    JobTemplate,
    MatrixSpec,
    ShellStep,
    StepAction,
    StepTemplate,
    UploadArtifactStep,
    WorkflowCallStep,
    WorkflowDefinition,
)

# -------------------- JSON workflow schema --------------------
# Used by the HTTP control plane and by `.json` workflow files.


class _Model(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")


class ArtifactModel(_Model):
    name: str
    path: str = "."


class ConcurrencyModel(_Model):
    group: str
    cancel_in_progress: bool = Field(default=False, alias="cancel-in-progress")

    def to_spec(self) -> ConcurrencySpec:
        return ConcurrencySpec(group=self.group, cancel_in_progress=self.cancel_in_progress)


class MatrixModel(_Model):
    axes: dict[str, Union[list[Any], str]] = Field(default_factory=dict)
    include: list[dict[str, Any]] = Field(default_factory=list)
    exclude: list[dict[str, Any]] = Field(default_factory=list)
    fail_fast: bool = Field(default=True, alias="fail-fast")
    max_parallel: Optional[int] = Field(default=None, alias="max-parallel", ge=1)
    source: Optional[str] = None

    def to_spec(self) -> MatrixSpec:
        return MatrixSpec(
            axes=dict(self.axes),
            include=tuple(self.include),
            exclude=tuple(self.exclude),
            fail_fast=self.fail_fast,
            max_parallel=self.max_parallel,
            source=self.source,
        )


class StepModel(_Model):
    name: str
    id: Optional[str] = None
    if_: Optional[str] = Field(default=None, alias="if")
    continue_on_error: bool = Field(default=False, alias="continue-on-error")
    timeout: Optional[float] = Field(default=None, gt=0)
    env: dict[str, str] = Field(default_factory=dict)
    cwd: Optional[str] = None

    # exactly one of these picks the step kind
    run: Optional[str] = None
    upload: Optional[ArtifactModel] = None
    download: Optional[ArtifactModel] = None
    call: Optional["WorkflowModel"] = None

    shell: str = "sh"
    image: Optional[str] = None
    volumes: list[str] = Field(default_factory=list)
    user: Optional[str] = None
    with_: dict[str, str] = Field(default_factory=dict, alias="with")

    @model_validator(mode="after")
    def _one_kind(self) -> "StepModel":
        chosen = [k for k in ("run", "upload", "download", "call") if getattr(self, k) is not None]
        if len(chosen) != 1:
            raise ValueError(f"step '{self.name}' must set exactly one of run/upload/download/call, got {chosen or 'none'}")
        return self

    def to_action(self) -> StepAction:
        if self.upload is not None:
            return UploadArtifactStep(name=self.upload.name, path=self.upload.path)
        if self.download is not None:
            return DownloadArtifactStep(name=self.download.name, path=self.download.path)
        if self.call is not None:
            return WorkflowCallStep(workflow=self.call.to_definition(), with_=dict(self.with_))
        if self.run is None:
            raise ValueError(f"step '{self.name}' has no command to run")
        if self.image:
            return ContainerStep(image=self.image, run=self.run, volumes=tuple(self.volumes), user=self.user)
        return ShellStep(run=self.run, shell=self.shell)

    def to_template(self) -> StepTemplate:
        return StepTemplate(
            name=self.name,
            action=self.to_action(),
            id=self.id,
            if_=self.if_,
            continue_on_error=self.continue_on_error,
            timeout=self.timeout,
            env=dict(self.env),
            cwd=self.cwd,
        )


class JobModel(_Model):
    name: str
    steps: list[StepModel] = Field(min_length=1)
    needs: list[str] = Field(default_factory=list)
    if_: Optional[str] = Field(default=None, alias="if")
    strategy: Optional[MatrixModel] = None
    concurrency: Optional[ConcurrencyModel] = None
    timeout: Optional[float] = Field(default=None, gt=0)
    env: dict[str, str] = Field(default_factory=dict)
    outputs: dict[str, str] = Field(default_factory=dict)
    continue_on_error: bool = Field(default=False, alias="continue-on-error")

    def to_template(self) -> JobTemplate:
        return JobTemplate(
            name=self.name,
            steps=tuple(s.to_template() for s in self.steps),
            needs=tuple(self.needs),
            if_=self.if_,
            strategy=self.strategy.to_spec() if self.strategy else None,
            concurrency=self.concurrency.to_spec() if self.concurrency else None,
            timeout=self.timeout,
            env=dict(self.env),
            outputs=dict(self.outputs),
            continue_on_error=self.continue_on_error,
        )


class WorkflowModel(_Model):
    name: str = "workflow"
    jobs: list[JobModel]
    env: dict[str, str] = Field(default_factory=dict)
    concurrency: Optional[ConcurrencyModel] = None
    outputs: dict[str, str] = Field(default_factory=dict)

    def to_definition(self) -> WorkflowDefinition:
        return WorkflowDefinition(
            name=self.name,
            jobs=tuple(j.to_template() for j in self.jobs),
            env=dict(self.env),
            concurrency=self.concurrency.to_spec() if self.concurrency else None,
            outputs=dict(self.outputs),
        )


StepModel.model_rebuild()
