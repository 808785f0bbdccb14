# tests/api/test_app.py
"""
HTTP control plane: create, inspect and cancel runs.
"""
import pytest
from fastapi.testclient import TestClient

from conftest import ScriptedRunner, block_until_cancelled, wait_until
from jobgraph.api.app import app, get_engine


@pytest.fixture
def api_runner():
    return ScriptedRunner({"hang": block_until_cancelled})


@pytest.fixture
def client(make_engine, api_runner):
    engine = make_engine(api_runner)
    app.dependency_overrides[get_engine] = lambda: engine
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def _workflow(*jobs):
    return {"name": "api", "jobs": list(jobs)}


def test_create_and_wait_for_run(client):
    body = {
        "workflow": _workflow(
            {"name": "build", "steps": [{"name": "compile", "run": "make"}]},
            {"name": "test", "needs": ["build"], "strategy": {"axes": {"py": ["3.11", "3.12"]}}, "steps": [{"name": "unit", "run": "pytest"}]},
        ),
        "trigger": {"event_name": "push", "actor": "octocat"},
    }
    created = client.post("/runs", json=body)
    assert created.status_code == 200
    data = created.json()
    assert data["job_ids"] == ["build", "test (3.11)", "test (3.12)"]

    status = client.get(f"/runs/{data['run_id']}", params={"wait": 10}).json()
    assert status["done"] is True
    assert status["report"]["conclusion"] == "succeeded"
    assert [j["status"] for j in status["report"]["jobs"]] == ["succeeded"] * 3


def test_configuration_error_is_422(client):
    body = {
        "workflow": _workflow(
            {"name": "a", "needs": ["b"], "steps": [{"name": "x", "run": "x"}]},
            {"name": "b", "needs": ["a"], "steps": [{"name": "y", "run": "y"}]},
        )
    }
    response = client.post("/runs", json=body)
    assert response.status_code == 422
    assert response.json()["detail"]["kind"] == "cyclic_dependency"


def test_schema_error_is_422(client):
    response = client.post("/runs", json={"workflow": _workflow({"name": "a", "steps": []})})
    assert response.status_code == 422


def test_cancel_run(client, api_runner):
    body = {"workflow": _workflow({"name": "slow", "steps": [{"name": "hang", "run": "sleep 100"}]})}
    run_id = client.post("/runs", json=body).json()["run_id"]
    assert wait_until(lambda: api_runner.active == 1)

    assert client.post(f"/runs/{run_id}/cancel").json() == {"ok": True}
    status = client.get(f"/runs/{run_id}", params={"wait": 10}).json()
    assert status["report"]["conclusion"] == "cancelled"


def test_unknown_run_is_404(client):
    assert client.get("/runs/nope").status_code == 404
    assert client.post("/runs/nope/cancel").status_code == 404
