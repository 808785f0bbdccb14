# tests/test_cli.py
"""
Command line: workflow discovery, `plan`, and `run` exit codes.
"""
import json
import shutil

import pytest
from click.testing import CliRunner

from jobgraph.cli import cli
from jobgraph.settings import Settings

needs_sh = pytest.mark.skipif(shutil.which("sh") is None, reason="requires a POSIX shell")


def _write(path, jobs):
    path.write_text(json.dumps({"name": "cli", "jobs": jobs}), encoding="utf-8")


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("JOBGRAPH_ARTIFACT_DIR", str(tmp_path / "artifacts"))
    return tmp_path


def test_plan_prints_levels(workspace):
    _write(
        workspace / "ci_workflow.json",
        [
            {"name": "build", "steps": [{"name": "b", "run": "true"}]},
            {"name": "test", "needs": ["build"], "strategy": {"axes": {"py": ["3.11", "3.12"]}}, "steps": [{"name": "t", "run": "true"}]},
        ],
    )
    result = CliRunner().invoke(cli, ["plan"])
    assert result.exit_code == 0, result.output
    assert "build" in result.output
    assert "test (3.12)" in result.output


def test_no_workflow_found(workspace):
    result = CliRunner().invoke(cli, ["plan"])
    assert result.exit_code == 1
    assert "No workflow file found" in result.output


def test_multiple_workflows_need_a_choice(workspace):
    _write(workspace / "a_workflow.json", [{"name": "a", "steps": [{"name": "a", "run": "true"}]}])
    _write(workspace / "b_workflow.json", [{"name": "b", "steps": [{"name": "b", "run": "true"}]}])
    result = CliRunner().invoke(cli, ["plan"])
    assert result.exit_code == 1
    assert "Multiple workflow files found" in result.output


def test_invalid_workflow_exits_1(workspace):
    _write(
        workspace / "ci_workflow.json",
        [{"name": "a", "needs": ["ghost"], "steps": [{"name": "a", "run": "true"}]}],
    )
    result = CliRunner().invoke(cli, ["run"])
    assert result.exit_code == 1
    assert "Invalid workflow" in result.output


@needs_sh
def test_run_exit_codes(workspace):
    _write(workspace / "ok_workflow.json", [{"name": "a", "steps": [{"name": "a", "run": "echo ${{ inputs.who }}"}]}])
    _write(workspace / "bad_workflow.json", [{"name": "a", "steps": [{"name": "a", "run": "exit 4"}]}])

    ok = CliRunner().invoke(cli, ["run", "--workflow", "ok_workflow.json", "--input", "who=me", "--sha", "abc", "--ref", "refs/heads/x"])
    assert ok.exit_code == 0, ok.output
    bad = CliRunner().invoke(cli, ["run", "--workflow", "bad_workflow.json", "--sha", "abc", "--ref", "refs/heads/x"])
    assert bad.exit_code == 1


def test_bad_input_pair(workspace):
    _write(workspace / "ok_workflow.json", [{"name": "a", "steps": [{"name": "a", "run": "true"}]}])
    result = CliRunner().invoke(cli, ["run", "--input", "novalue"])
    assert result.exit_code == 2


def test_settings_from_env(monkeypatch):
    monkeypatch.setenv("JOBGRAPH_MAX_WORKERS", "3")
    monkeypatch.setenv("JOBGRAPH_CANCEL_GRACE_SECONDS", "1.5")
    s = Settings.from_env()
    assert (s.max_workers, s.cancel_grace_seconds) == (3, 1.5)
    assert s.override(max_workers=0, artifact_dir="x").max_workers == 1
    assert s.override().artifact_dir == s.artifact_dir


@pytest.mark.parametrize("value", ["0", "-3"])
def test_settings_from_env_keeps_at_least_one_worker(monkeypatch, value):
    monkeypatch.setenv("JOBGRAPH_MAX_WORKERS", value)
    assert Settings.from_env().max_workers == 1
