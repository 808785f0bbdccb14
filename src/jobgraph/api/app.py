# app.py
from __future__ import annotations

from functools import lru_cache
from typing import Any, Optional

from fastapi import Depends, FastAPI, HTTPException
from pydantic import BaseModel, Field

from ..context import TriggerContext
from ..engine import Engine
from ..errors import ConfigurationError
from ..schema import WorkflowModel
from ..settings import Settings
from ..ui.console import Console

app = FastAPI(title="jobgraph control plane")

# -------------------- Schemas --------------------

class TriggerModel(BaseModel):
    event_name: str = "workflow_dispatch"
    ref: str = "refs/heads/main"
    sha: str = ""
    actor: str = ""
    repository: str = ""
    run_number: int = 1
    event: dict[str, Any] = Field(default_factory=dict)
    inputs: dict[str, Any] = Field(default_factory=dict)

    def to_context(self) -> TriggerContext:
        return TriggerContext(
            event_name=self.event_name,
            ref=self.ref,
            sha=self.sha,
            actor=self.actor,
            repository=self.repository,
            run_number=self.run_number,
            event=dict(self.event),
            inputs=dict(self.inputs),
        )

class CreateRunRequest(BaseModel):
    workflow: WorkflowModel
    trigger: TriggerModel = Field(default_factory=TriggerModel)

class CreateRunResponse(BaseModel):
    run_id: str
    job_ids: list[str]

class RunStatusResponse(BaseModel):
    run_id: str
    done: bool
    report: dict[str, Any]

# -------------------- Engine --------------------

@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return Engine(settings=Settings.from_env(), console=Console(quiet=True))

# -------------------- Endpoints --------------------

@app.post("/runs", response_model=CreateRunResponse)
def create_run(req: CreateRunRequest, engine: Engine = Depends(get_engine)):
    definition = req.workflow.to_definition()
    try:
        run = engine.start_run(definition, req.trigger.to_context())
    except ConfigurationError as e:
        raise HTTPException(status_code=422, detail=e.to_dict())
    return CreateRunResponse(run_id=run.run_id, job_ids=[j.id for j in run.report().jobs])

@app.post("/runs/{run_id}/cancel")
def cancel_run(run_id: str, engine: Engine = Depends(get_engine)):
    try:
        engine.cancel_run(run_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Run not found")
    return {"ok": True}

@app.get("/runs/{run_id}", response_model=RunStatusResponse)
def get_run(run_id: str, wait: Optional[float] = None, engine: Engine = Depends(get_engine)):
    """Current report of a run; `?wait=<seconds>` blocks until it is done or the time is up."""
    try:
        run = engine.get_run(run_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Run not found")
    if wait:
        run.wait(min(wait, 60.0))
    return RunStatusResponse(run_id=run_id, done=run.done, report=run.report().to_dict())
