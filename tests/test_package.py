# tests/test_package.py
"""
The top-level `jobgraph` namespace and the workflow shipped with the repo.
"""
from pathlib import Path

import jobgraph
from jobgraph import concurrency, matrix
from jobgraph.engine import plan
from jobgraph.loader import load_workflow
from jobgraph.model import ConcurrencySpec, MatrixSpec

REPO_WORKFLOW = Path(__file__).resolve().parents[1] / "jobgraph_workflow.py"


def test_dsl_helpers_are_exported():
    spec = matrix(os=["linux", "mac"], fail_fast=False)
    assert isinstance(spec, MatrixSpec)
    assert spec.axes == {"os": ["linux", "mac"]}

    group = concurrency("deploy", cancel_in_progress=True)
    assert isinstance(group, ConcurrencySpec)
    assert group.cancel_in_progress

    assert jobgraph.matrix is matrix
    assert jobgraph.concurrency is concurrency


def test_every_exported_name_resolves():
    for name in jobgraph.__all__:
        assert getattr(jobgraph, name) is not None, name


def test_repo_workflow_loads_and_plans():
    definition = load_workflow(REPO_WORKFLOW)
    assert definition.name == "jobgraph-ci"

    levels, deferred = plan(definition)
    assert levels == [
        ["lint"],
        ["test (3.11)", "test (3.12)"],
        ["build"],
        ["publish"],
        ["report"],
    ]
    assert deferred == []
