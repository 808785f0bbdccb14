# tests/conftest.py
"""
Shared fixtures for the jobgraph tests.

Engine tests never spawn processes: steps run through a ScriptedRunner
that answers by (job, step) or by step name and records every request it
receives. Settings keep grace periods and retry backoff short so that
cancellation and retry paths finish quickly.
"""
from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import pytest

from jobgraph.context import TriggerContext
from jobgraph.engine import Engine
from jobgraph.outputs import InMemoryArtifactStore
from jobgraph.runner import StepRequest, StepResult
from jobgraph.settings import Settings
from jobgraph.ui.console import Console

Behaviour = Union[int, StepResult, Callable[[StepRequest, threading.Event], Any], None]


def block_until_cancelled(request: StepRequest, cancel: threading.Event) -> StepResult:
    """A step that only ends when the engine cancels it."""
    cancel.wait(10)
    return StepResult(exit_code=130)


def sleep_for(seconds: float) -> Callable[[StepRequest, threading.Event], StepResult]:
    def _step(request: StepRequest, cancel: threading.Event) -> StepResult:
        cancel.wait(seconds)
        return StepResult()

    return _step


class ScriptedRunner:
    """
    StepRunner whose answers are looked up in `script`:
      (job id, step name) first, then step name, else success.

    A behaviour may be an exit code, a StepResult, or a callable taking
    (request, cancel) that returns either of those (or None for success).
    """

    def __init__(self, script: Optional[Dict[Any, Behaviour]] = None):
        self.script: Dict[Any, Behaviour] = dict(script or {})
        self._lock = threading.Lock()
        self.calls: List[StepRequest] = []
        self.active = 0
        self.peak = 0
        self.peak_by_job: Dict[str, int] = {}
        self._active_by_template: Dict[str, int] = {}

    def run(self, request: StepRequest, cancel: threading.Event) -> StepResult:
        template = request.job.split(" (", 1)[0]
        with self._lock:
            self.calls.append(request)
            self.active += 1
            self.peak = max(self.peak, self.active)
            self._active_by_template[template] = self._active_by_template.get(template, 0) + 1
            self.peak_by_job[template] = max(self.peak_by_job.get(template, 0), self._active_by_template[template])
        try:
            behaviour = self.script.get((request.job, request.step), self.script.get(request.step))
            if callable(behaviour):
                behaviour = behaviour(request, cancel)
            if behaviour is None:
                return StepResult()
            if isinstance(behaviour, int):
                return StepResult(exit_code=behaviour)
            return behaviour
        finally:
            with self._lock:
                self.active -= 1
                self._active_by_template[template] -= 1

    def jobs_run(self) -> List[str]:
        with self._lock:
            return [c.job for c in self.calls]

    def steps_run(self) -> List[Tuple[str, str]]:
        with self._lock:
            return [(c.job, c.step) for c in self.calls]

    def request(self, job: str, step: str) -> StepRequest:
        with self._lock:
            for c in self.calls:
                if c.job == job and c.step == step:
                    return c
        raise KeyError((job, step))


@pytest.fixture
def settings() -> Settings:
    return Settings(
        max_workers=4,
        cancel_grace_seconds=0.5,
        artifact_dir=".unused",
        dispatch_retries=2,
        retry_backoff_seconds=0.01,
    )


@pytest.fixture
def store() -> InMemoryArtifactStore:
    return InMemoryArtifactStore()


@pytest.fixture
def runner() -> ScriptedRunner:
    return ScriptedRunner()


@pytest.fixture
def make_engine(settings, store, tmp_path):
    """Factory: make_engine(runner, **settings_overrides) -> Engine."""

    def _make(step_runner=None, **overrides) -> Engine:
        s = settings
        if overrides:
            s = Settings(**{**settings.__dict__, **overrides})
        return Engine(
            step_runner or ScriptedRunner(),
            settings=s,
            store=store,
            console=Console(quiet=True),
            workdir=tmp_path,
        )

    return _make


@pytest.fixture
def engine(make_engine, runner) -> Engine:
    return make_engine(runner)


@pytest.fixture
def trigger():
    """Factory for TriggerContext with test-friendly defaults."""

    def _make(**overrides) -> TriggerContext:
        values: Dict[str, Any] = {
            "event_name": "push",
            "ref": "refs/heads/main",
            "sha": "abc123",
            "actor": "octocat",
            "repository": "acme/widgets",
        }
        values.update(overrides)
        return TriggerContext(**values)

    return _make


@pytest.fixture
def run_to_end():
    """Start a run and wait for its report, failing the test instead of hanging."""

    def _run(engine: Engine, definition, trigger: Optional[TriggerContext] = None, timeout: float = 15.0):
        started = engine.start_run(definition, trigger)
        report = started.wait(timeout)
        assert report is not None, f"run {started.run_id} did not finish within {timeout}s"
        return report

    return _run


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()
