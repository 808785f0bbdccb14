# loader.py
from __future__ import annotations

import json
import runpy
from pathlib import Path

from .model import WorkflowDefinition
from .schema import WorkflowModel


def load_workflow(path: str | Path) -> WorkflowDefinition:
    """
    Load a workflow definition from a file.

    A `.py` file must define either:
      - workflow() -> WorkflowDefinition
      - WORKFLOW = WorkflowDefinition(...)

    A `.json` file is validated against the JSON workflow schema.
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")

    if wf_path.suffix == ".json":
        data = json.loads(wf_path.read_text(encoding="utf-8"))
        return WorkflowModel.model_validate(data).to_definition()

    if wf_path.suffix != ".py":
        raise ValueError(f"Workflow must be a .py or .json file, got: {wf_path.name}")

    module_name = f"jobgraph_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    definition = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        try:
            definition = globals_dict["workflow"]()
        except TypeError as e:
            if "positional argument" in str(e):
                raise TypeError(
                    "Your workflow() is being called with arguments (name collision with a helper). "
                    "Use the 'wf' helper instead: `from jobgraph import wf, job, sh` then "
                    "`def workflow(): return wf(job(...), job(...))`"
                ) from e
            raise
    elif "WORKFLOW" in globals_dict:
        definition = globals_dict["WORKFLOW"]

    if not isinstance(definition, WorkflowDefinition):
        raise TypeError(
            "Workflow must return/define a WorkflowDefinition. "
            "Define workflow() -> WorkflowDefinition (see jobgraph.wf) or WORKFLOW = wf(...)."
        )
    return definition
