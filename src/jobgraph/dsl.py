# src/jobgraph/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

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


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def step(
    name: str,
    action: StepAction,
    *,
    id: Optional[str] = None,
    if_: Optional[str] = None,
    cwd: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
    continue_on_error: bool = False,
    timeout: Optional[float] = None,
) -> StepTemplate:
    """Wrap any step kind with the common step options."""
    return StepTemplate(
        name=name,
        action=action,
        id=id,
        if_=if_,
        cwd=cwd,
        env=dict(env or {}),
        continue_on_error=continue_on_error,
        timeout=timeout,
    )


def sh(name: str, cmd: str, *, shell: str = "sh", **options: Any) -> StepTemplate:
    """Create a shell step."""
    return step(name, ShellStep(run=cmd, shell=shell), **options)


def container(
    name: str,
    cmd: str,
    image: str,
    *,
    volumes: Optional[List[str]] = None,
    user: Optional[str] = None,
    **options: Any,
) -> StepTemplate:
    """Create a step that runs in a Docker container."""
    return step(name, ContainerStep(image=image, run=cmd, volumes=tuple(volumes or ()), user=user), **options)


def call(name: str, workflow: WorkflowDefinition, *, with_: Optional[Dict[str, str]] = None, **options: Any) -> StepTemplate:
    """Run another workflow as one step; its outputs become the step's outputs."""
    return step(name, WorkflowCallStep(workflow=workflow, with_=dict(with_ or {})), **options)


def upload(name: str, artifact: str, path: str, **options: Any) -> StepTemplate:
    return step(name, UploadArtifactStep(name=artifact, path=path), **options)


def download(name: str, artifact: str, path: str = ".", **options: Any) -> StepTemplate:
    return step(name, DownloadArtifactStep(name=artifact, path=path), **options)


# ---------------------------------------------------------------------
# Strategy / concurrency helpers
# ---------------------------------------------------------------------

def matrix(
    axes: Optional[Mapping[str, Union[List[Any], str]]] = None,
    *,
    include: Optional[Sequence[Mapping[str, Any]]] = None,
    exclude: Optional[Sequence[Mapping[str, Any]]] = None,
    fail_fast: bool = True,
    max_parallel: Optional[int] = None,
    source: Optional[str] = None,
    **more_axes: Union[List[Any], str],
) -> MatrixSpec:
    """
    matrix(os=["linux", "mac"], py=["3.11", "3.12"], exclude=[{"os": "mac", "py": "3.11"}])

    An axis given as a string is an expression resolved once the job's
    needs have finished, e.g. "${{ fromJSON(needs.plan.outputs.targets) }}".
    """
    all_axes: Dict[str, Union[List[Any], str]] = dict(axes or {})
    all_axes.update(more_axes)
    return MatrixSpec(
        axes=all_axes,
        include=tuple(dict(e) for e in include or ()),
        exclude=tuple(dict(e) for e in exclude or ()),
        fail_fast=fail_fast,
        max_parallel=max_parallel,
        source=source,
    )


def concurrency(group: str, *, cancel_in_progress: bool = False) -> ConcurrencySpec:
    return ConcurrencySpec(group=group, cancel_in_progress=cancel_in_progress)


def _as_concurrency(value: Union[str, ConcurrencySpec, None]) -> Optional[ConcurrencySpec]:
    if isinstance(value, str):
        return ConcurrencySpec(group=value)
    return value


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: StepTemplate,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[StepTemplate]] = None,  # allow: job("x", steps_list=[...])
    needs: Optional[List[str]] = None,
    if_: Optional[str] = None,
    strategy: Optional[MatrixSpec] = None,
    concurrency: Union[str, ConcurrencySpec, None] = None,
    timeout: Optional[float] = None,
    env: Optional[Dict[str, str]] = None,
    outputs: Optional[Dict[str, str]] = None,
    continue_on_error: bool = False,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> JobTemplate:
    steps_final: List[StepTemplate] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    return JobTemplate(
        name=name,
        steps=tuple(steps_final),
        needs=tuple(needs or ()),
        if_=if_,
        strategy=strategy,
        concurrency=_as_concurrency(concurrency),
        timeout=timeout,
        env=dict(env or {}),
        outputs=dict(outputs or {}),
        continue_on_error=continue_on_error,
    )


def wf(
    *jobs: JobTemplate,
    name: str = "workflow",
    env: Optional[Dict[str, str]] = None,
    concurrency: Union[str, ConcurrencySpec, None] = None,
    outputs: Optional[Dict[str, str]] = None,
) -> WorkflowDefinition:
    """
    Collect jobs into a workflow definition.

    Example:
        def workflow():
            return wf(job("a", sh(...)), job("b", sh(...), needs=["a"]), name="ci")
    """
    return WorkflowDefinition(
        name=name,
        jobs=tuple(jobs),
        env=dict(env or {}),
        concurrency=_as_concurrency(concurrency),
        outputs=dict(outputs or {}),
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[StepTemplate] = []
        self._env: dict[str, str] = {}
        self._outputs: dict[str, str] = {}
        self._if: Optional[str] = None
        self._strategy: Optional[MatrixSpec] = None
        self._concurrency: Optional[ConcurrencySpec] = None
        self._timeout: Optional[float] = None
        self._continue_on_error = False

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None, **options: Any):
        self._steps.append(sh(name, run, cwd=cwd, **options))
        return self

    def add_step(self, *steps: StepTemplate):
        self._steps.extend(steps)
        return self

    def when(self, condition: str):
        self._if = condition
        return self

    def with_env(self, **env):
        # force values to str; they end up in process environments
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def with_outputs(self, **outputs: str):
        self._outputs.update(outputs)
        return self

    def with_matrix(self, spec: MatrixSpec):
        self._strategy = spec
        return self

    def with_concurrency(self, group: str, *, cancel_in_progress: bool = False):
        self._concurrency = ConcurrencySpec(group=group, cancel_in_progress=cancel_in_progress)
        return self

    def with_timeout(self, seconds: float):
        self._timeout = seconds
        return self

    def allow_failure(self, enabled: bool = True):
        self._continue_on_error = enabled
        return self

    def build(self) -> JobTemplate:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")
        return job(
            self.name,
            *self._steps,
            needs=self._needs,
            if_=self._if,
            strategy=self._strategy,
            concurrency=self._concurrency,
            timeout=self._timeout,
            env=self._env,
            outputs=self._outputs,
            continue_on_error=self._continue_on_error,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)
