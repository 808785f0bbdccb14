# tests/core/test_engine.py
"""
End-to-end behaviour of the scheduler: ordering, status propagation,
step sequencing, outputs, matrices, timeouts and cancellation.

Every run goes through a ScriptedRunner, so nothing here spawns a process.
"""
import threading

import pytest

from conftest import ScriptedRunner, block_until_cancelled, sleep_for, wait_until
from jobgraph.dsl import call, concurrency, download, job, matrix, sh, upload, wf
from jobgraph.engine import plan
from jobgraph.errors import ConcurrencyConfigurationError, CyclicDependencyError, RunnerUnavailable
from jobgraph.model import Status
from jobgraph.runner import StepResult


def _steps(report, job_id):
    return {s.name: s for s in report.job(job_id).steps}


# ---------------------------------------------------------------------
# Ordering and status propagation
# ---------------------------------------------------------------------

def test_single_job_succeeds(engine, runner, run_to_end):
    report = run_to_end(engine, wf(job("build", sh("compile", "make"))))

    assert runner.steps_run() == [("build", "compile")]
    assert report.job("build").status is Status.SUCCEEDED
    assert report.job("build").reason is None
    assert report.conclusion is Status.SUCCEEDED


def test_blocking_run_helper_returns_report(engine):
    report = engine.run(wf(job("build", sh("compile", "make"))))
    assert report.conclusion is Status.SUCCEEDED


def test_job_waiting_for_a_worker_is_blocked(make_engine):
    release = threading.Event()
    runner = ScriptedRunner({"hold": lambda request, cancel: release.wait(5) and None})
    started = make_engine(runner, max_workers=1).start_run(
        wf(job("first", sh("hold", "h")), job("second", sh("hold", "h")))
    )
    assert wait_until(lambda: runner.active == 1)

    statuses = started.report().statuses()
    assert sorted(statuses.values(), key=lambda s: s.value) == [Status.BLOCKED, Status.RUNNING]
    release.set()
    assert started.wait(10).conclusion is Status.SUCCEEDED


def test_zero_workers_still_runs(make_engine, run_to_end):
    report = run_to_end(make_engine(max_workers=0), wf(job("a", sh("x", "x")), job("b", sh("y", "y"))))
    assert report.conclusion is Status.SUCCEEDED


def test_diamond_runs_in_dependency_order(engine, runner, run_to_end, trigger):
    definition = wf(
        job("build", sh("compile", "make")),
        job("test-a", sh("unit", "make test-a"), needs=["build"]),
        job("test-b", sh("unit", "make test-b"), needs=["build"]),
        job("deploy", sh("ship", "make deploy"), needs=["test-a", "test-b"]),
        name="ci",
    )
    report = run_to_end(engine, definition, trigger())

    order = runner.jobs_run()
    assert order[0] == "build"
    assert order[-1] == "deploy"
    assert set(order[1:3]) == {"test-a", "test-b"}
    assert report.conclusion is Status.SUCCEEDED
    assert report.exit_code == 0
    assert set(report.statuses().values()) == {Status.SUCCEEDED}
    assert report.to_dict()["workflow"] == "ci"


def test_failure_skips_dependents_but_not_failure_handlers(make_engine, run_to_end):
    runner = ScriptedRunner({("build", "compile"): 1})
    definition = wf(
        job("build", sh("compile", "make")),
        job("test", sh("unit", "make test"), needs=["build"]),
        job("deploy", sh("ship", "make deploy"), needs=["test"]),
        job("notify", sh("page", "page oncall"), needs=["deploy"], if_="failure()"),
        job("summary", sh("write", "summarize"), needs=["test"], if_="always()"),
        job("on-cancel", sh("x", "true"), needs=["test"], if_="cancelled()"),
    )
    report = run_to_end(make_engine(runner), definition)

    assert report.statuses() == {
        "build": Status.FAILED,
        "test": Status.SKIPPED,
        "deploy": Status.SKIPPED,
        "notify": Status.SUCCEEDED,
        "summary": Status.SUCCEEDED,
        "on-cancel": Status.SKIPPED,
    }
    assert report.conclusion is Status.FAILED
    assert report.exit_code == 1
    assert "build" in runner.jobs_run()
    assert "test" not in runner.jobs_run()


def test_job_condition_reads_trigger(engine, runner, run_to_end, trigger):
    definition = wf(
        job("build", sh("compile", "make")),
        job("release", sh("tag", "git tag"), needs=["build"], if_="github.ref_name == 'release'"),
        job("announce", sh("post", "post"), needs=["release"]),
    )
    report = run_to_end(engine, definition, trigger(ref="refs/heads/main"))

    assert report.job("release").status is Status.SKIPPED
    assert report.job("release").reason == "condition"
    assert report.job("announce").status is Status.SKIPPED
    assert report.conclusion is Status.SUCCEEDED


def test_continue_on_error_job_does_not_block_dependents(make_engine, run_to_end):
    runner = ScriptedRunner({("flaky", "try"): 3})
    definition = wf(
        job("flaky", sh("try", "maybe"), continue_on_error=True),
        job("after", sh("go", "go"), needs=["flaky"]),
    )
    report = run_to_end(make_engine(runner), definition)

    assert report.job("flaky").status is Status.FAILED
    assert report.job("after").status is Status.SUCCEEDED
    assert report.conclusion is Status.SUCCEEDED


# ---------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------

def test_step_failure_skips_rest_except_status_conditions(make_engine, run_to_end):
    runner = ScriptedRunner({"a": 2})
    definition = wf(
        job(
            "build",
            sh("a", "step a", id="a"),
            sh("b", "step b"),
            sh("c", "on failure", if_="failure()"),
            sh("d", "always", if_="always()"),
            sh("e", "implicit success", if_="steps.a.outcome == 'failure'"),
        )
    )
    report = run_to_end(make_engine(runner), definition)
    steps = _steps(report, "build")

    assert report.job("build").status is Status.FAILED
    assert report.job("build").reason == "step 'a' failed"
    assert steps["a"].status is Status.FAILED and steps["a"].exit_code == 2
    assert steps["b"].status is Status.SKIPPED
    assert steps["c"].status is Status.SUCCEEDED
    assert steps["d"].status is Status.SUCCEEDED
    assert steps["e"].status is Status.SKIPPED
    assert [s for _, s in runner.steps_run()] == ["a", "c", "d"]


def test_continue_on_error_step(make_engine, run_to_end):
    runner = ScriptedRunner({"lint": 1})
    definition = wf(
        job(
            "check",
            sh("lint", "ruff", id="lint", continue_on_error=True),
            sh("report", "report", if_="steps.lint.outcome == 'failure'"),
        )
    )
    report = run_to_end(make_engine(runner), definition)
    lint = _steps(report, "check")["lint"]

    assert report.job("check").status is Status.SUCCEEDED
    assert lint.status is Status.FAILED
    assert lint.conclusion == "success"
    assert _steps(report, "check")["report"].status is Status.SUCCEEDED


class _SilentRunner:
    def run(self, request, cancel):
        return None


def test_runner_without_result_fails_the_step(make_engine, run_to_end):
    report = run_to_end(make_engine(_SilentRunner()), wf(job("build", sh("compile", "make"))))
    step = _steps(report, "build")["compile"]

    assert step.status is Status.FAILED
    assert step.error == "step runner returned no result"
    assert report.job("build").status is Status.FAILED


def test_outputs_flow_from_steps_to_dependents(make_engine, run_to_end):
    runner = ScriptedRunner({"version": StepResult(outputs={"version": "1.2.3"})})
    definition = wf(
        job("build", sh("version", "compute", id="ver"), outputs={"version": "${{ steps.ver.outputs.version }}"}),
        job("deploy", sh("ship", "deploy v${{ needs.build.outputs.version }}"), needs=["build"]),
        outputs={"released": "${{ jobs.build.outputs.version }}"},
    )
    report = run_to_end(make_engine(runner), definition)

    assert report.job("build").outputs == {"version": "1.2.3"}
    assert runner.request("deploy", "ship").run == "deploy v1.2.3"
    assert report.outputs == {"released": "1.2.3"}


def test_environment_accumulates_across_steps(engine, runner, run_to_end, trigger):
    runner.script["login"] = StepResult(env={"TOKEN": "secret"})
    definition = wf(
        job(
            "deploy",
            sh("login", "login"),
            sh("push", "push", env={"EXTRA": "${{ github.actor }}"}),
            env={"BRANCH": "${{ github.ref_name }}"},
        ),
        env={"STAGE": "ci"},
    )
    run_to_end(engine, definition, trigger())

    first = runner.request("deploy", "login").env
    second = runner.request("deploy", "push").env
    assert first == {"STAGE": "ci", "BRANCH": "main"}
    assert second == {"STAGE": "ci", "BRANCH": "main", "TOKEN": "secret", "EXTRA": "octocat"}


def test_runner_unavailable_is_retried(make_engine, run_to_end):
    attempts = []

    def flaky(request, cancel):
        attempts.append(request.step)
        if len(attempts) < 3:
            raise RunnerUnavailable("no capacity")
        return 0

    report = run_to_end(make_engine(ScriptedRunner({"go": flaky})), wf(job("j", sh("go", "go"))))
    assert len(attempts) == 3
    assert report.job("j").status is Status.SUCCEEDED


def test_runner_unavailable_gives_up(make_engine, run_to_end):
    def never(request, cancel):
        raise RunnerUnavailable("no capacity")

    report = run_to_end(make_engine(ScriptedRunner({"go": never})), wf(job("j", sh("go", "go"))))
    step = _steps(report, "j")["go"]
    assert step.status is Status.FAILED
    assert "runner unavailable" in step.error


# ---------------------------------------------------------------------
# Matrices
# ---------------------------------------------------------------------

def test_matrix_instances_see_their_combination(engine, runner, run_to_end):
    definition = wf(
        job("test", sh("run", "tox -e ${{ matrix.os }}-${{ matrix.py }}"), strategy=matrix(os=["linux", "mac"], py=["3.12"])),
        job("gate", sh("ok", "ok"), needs=["test"]),
    )
    report = run_to_end(engine, definition)

    assert runner.request("test (linux, 3.12)", "run").run == "tox -e linux-3.12"
    assert runner.request("test (mac, 3.12)", "run").run == "tox -e mac-3.12"
    assert report.job("test (mac, 3.12)").matrix == {"os": "mac", "py": "3.12"}
    assert runner.jobs_run()[-1] == "gate"


def test_matrix_max_parallel(make_engine, run_to_end):
    runner = ScriptedRunner({"run": sleep_for(0.05)})
    definition = wf(job("test", sh("run", "t"), strategy=matrix(shard=[1, 2, 3, 4], max_parallel=2)))
    report = run_to_end(make_engine(runner), definition)

    assert len(runner.calls) == 4
    assert runner.peak_by_job["test"] <= 2
    assert report.conclusion is Status.SUCCEEDED


def test_max_workers_caps_total_jobs(make_engine, run_to_end):
    runner = ScriptedRunner({"run": sleep_for(0.05)})
    definition = wf(*(job(f"j{i}", sh("run", "t")) for i in range(3)))
    run_to_end(make_engine(runner, max_workers=1), definition)
    assert runner.peak == 1


def test_fail_fast_cancels_siblings(make_engine, run_to_end):
    runner = ScriptedRunner({("test (1)", "run"): 1})
    definition = wf(
        job("test", sh("run", "t"), strategy=matrix(shard=[1, 2, 3], max_parallel=1)),
        job("report", sh("write", "w"), needs=["test"], if_="always()"),
    )
    report = run_to_end(make_engine(runner), definition)

    assert report.job("test (1)").status is Status.FAILED
    assert report.job("test (2)").status is Status.CANCELLED
    assert report.job("test (3)").status is Status.CANCELLED
    assert report.job("test (2)").reason == "fail-fast"
    assert report.job("report").status is Status.SUCCEEDED
    assert report.conclusion is Status.FAILED


def test_fail_fast_disabled_runs_everything(make_engine, run_to_end):
    runner = ScriptedRunner({("test (1)", "run"): 1})
    definition = wf(job("test", sh("run", "t"), strategy=matrix(shard=[1, 2, 3], max_parallel=1, fail_fast=False)))
    report = run_to_end(make_engine(runner), definition)

    assert len(runner.calls) == 3
    assert report.job("test (3)").status is Status.SUCCEEDED


def test_dynamic_matrix_from_job_outputs(make_engine, run_to_end):
    runner = ScriptedRunner({"targets": StepResult(outputs={"list": '["amd64", "arm64"]'})})
    definition = wf(
        job("plan", sh("targets", "list", id="t"), outputs={"targets": "${{ steps.t.outputs.list }}"}),
        job(
            "build",
            sh("compile", "build ${{ matrix.arch }}"),
            needs=["plan"],
            strategy=matrix(arch="${{ fromJSON(needs.plan.outputs.targets) }}"),
        ),
        job("ship", sh("push", "push"), needs=["build"]),
    )
    report = run_to_end(make_engine(runner), definition)

    assert runner.request("build (amd64)", "compile").run == "build amd64"
    assert runner.request("build (arm64)", "compile").run == "build arm64"
    assert runner.jobs_run()[-1] == "ship"
    assert report.conclusion is Status.SUCCEEDED


def test_malformed_dynamic_matrix_fails_only_that_job(make_engine, run_to_end):
    runner = ScriptedRunner({"targets": StepResult(outputs={"list": "[oops"})})
    definition = wf(
        job("plan", sh("targets", "list", id="t"), outputs={"targets": "${{ steps.t.outputs.list }}"}),
        job("build", sh("compile", "c"), needs=["plan"], strategy=matrix(arch="needs.plan.outputs.targets")),
        job("ship", sh("push", "push"), needs=["build"]),
        job("lint", sh("lint", "lint")),
    )
    report = run_to_end(make_engine(runner), definition)

    assert report.job("plan").status is Status.SUCCEEDED
    assert report.job("build").status is Status.FAILED
    assert report.job("ship").status is Status.SKIPPED
    assert report.job("lint").status is Status.SUCCEEDED
    assert report.conclusion is Status.FAILED


def test_dynamic_template_with_false_condition_is_skipped(make_engine, run_to_end):
    runner = ScriptedRunner({"targets": 1})
    definition = wf(
        job("plan", sh("targets", "list")),
        job("build", sh("compile", "c"), needs=["plan"], strategy=matrix(arch="needs.plan.outputs.targets")),
    )
    report = run_to_end(make_engine(runner), definition)
    assert report.job("build").status is Status.SKIPPED


# ---------------------------------------------------------------------
# Timeouts and cancellation
# ---------------------------------------------------------------------

def test_job_timeout(make_engine, run_to_end):
    runner = ScriptedRunner({"slow": block_until_cancelled})
    definition = wf(job("build", sh("slow", "sleep"), sh("next", "n"), timeout=0.2))
    report = run_to_end(make_engine(runner), definition)
    steps = _steps(report, "build")

    assert report.job("build").status is Status.FAILED
    assert report.job("build").reason == "timeout"
    assert steps["slow"].status is Status.CANCELLED
    assert steps["slow"].timed_out
    assert steps["next"].status is Status.SKIPPED


def test_step_timeout_with_continue_on_error(make_engine, run_to_end):
    runner = ScriptedRunner({"slow": block_until_cancelled})
    definition = wf(job("build", sh("slow", "sleep", timeout=0.2, continue_on_error=True), sh("next", "n")))
    report = run_to_end(make_engine(runner), definition)
    steps = _steps(report, "build")

    assert steps["slow"].status is Status.FAILED
    assert steps["slow"].timed_out
    assert steps["next"].status is Status.SUCCEEDED
    assert report.job("build").status is Status.SUCCEEDED


def test_cancel_run(make_engine, run_to_end):
    runner = ScriptedRunner({"compile": block_until_cancelled})
    engine = make_engine(runner)
    definition = wf(
        job(
            "build",
            sh("compile", "make"),
            sh("after", "a"),
            sh("cleanup", "rm -rf tmp", if_="always()"),
        ),
        job("deploy", sh("ship", "s"), needs=["build"]),
    )
    started = engine.start_run(definition)
    assert wait_until(lambda: runner.active == 1)
    assert started.report().conclusion is Status.RUNNING

    engine.cancel_run(started.run_id)
    report = started.wait(10)
    assert report is not None
    steps = _steps(report, "build")

    assert report.conclusion is Status.CANCELLED
    assert report.exit_code == 2
    assert report.job("build").status is Status.CANCELLED
    assert report.job("deploy").status is Status.CANCELLED
    assert steps["compile"].status is Status.CANCELLED
    assert steps["after"].status is Status.SKIPPED
    assert steps["cleanup"].status is Status.SUCCEEDED


def test_unresponsive_step_is_cancelled_after_grace(make_engine):
    stop = threading.Event()
    runner = ScriptedRunner({"stuck": lambda request, cancel: stop.wait(10)})
    engine = make_engine(runner)
    started = engine.start_run(wf(job("build", sh("stuck", "s"))))
    assert wait_until(lambda: runner.active == 1)

    started.cancel()
    report = started.wait(5)
    stop.set()
    assert report is not None
    assert report.job("build").status is Status.CANCELLED


# ---------------------------------------------------------------------
# Concurrency groups
# ---------------------------------------------------------------------

def test_runs_in_same_group_are_serialized(make_engine, trigger):
    release = threading.Event()

    def work(request, cancel):
        if request.run == "echo r1":
            release.wait(10)

    runner = ScriptedRunner({"work": work})
    engine = make_engine(runner)
    definition = wf(job("j", sh("work", "echo ${{ github.run_id }}")), concurrency="ci-${{ github.ref }}")

    first = engine.start_run(definition, trigger(run_id="r1"))
    assert wait_until(lambda: runner.active == 1)
    second = engine.start_run(definition, trigger(run_id="r2"))
    assert second.report().conclusion is Status.PENDING
    assert second.wait(0.2) is None

    release.set()
    assert first.wait(10).conclusion is Status.SUCCEEDED
    assert second.wait(10).conclusion is Status.SUCCEEDED
    assert [c.run for c in runner.calls] == ["echo r1", "echo r2"]


def test_cancel_in_progress_replaces_running_run(make_engine, trigger):
    def work(request, cancel):
        if request.run == "echo r1":
            return block_until_cancelled(request, cancel)

    runner = ScriptedRunner({"work": work})
    engine = make_engine(runner)
    definition = wf(
        job("j", sh("work", "echo ${{ github.run_id }}")),
        concurrency=concurrency("deploy", cancel_in_progress=True),
    )

    first = engine.start_run(definition, trigger(run_id="r1"))
    assert wait_until(lambda: runner.active == 1)
    second = engine.start_run(definition, trigger(run_id="r2"))

    first_report = first.wait(10)
    assert first_report.conclusion is Status.CANCELLED
    assert first_report.job("j").reason == "concurrency"
    assert second.wait(10).conclusion is Status.SUCCEEDED


def test_job_level_group_serializes_instances(make_engine, run_to_end):
    runner = ScriptedRunner({"push": sleep_for(0.05)})
    definition = wf(job("deploy", sh("push", "p"), strategy=matrix(region=["eu", "us"]), concurrency="deploy"))
    report = run_to_end(make_engine(runner), definition)

    assert runner.peak_by_job["deploy"] == 1
    assert report.job("deploy (eu)").concurrency_key == "deploy"
    assert report.conclusion is Status.SUCCEEDED


def test_job_level_cancel_in_progress(make_engine, run_to_end):
    runner = ScriptedRunner({("deploy (eu)", "push"): block_until_cancelled})
    definition = wf(
        job(
            "deploy",
            sh("push", "p"),
            strategy=matrix(region=["eu", "us"]),
            concurrency=concurrency("deploy", cancel_in_progress=True),
        )
    )
    report = run_to_end(make_engine(runner), definition)

    assert report.job("deploy (eu)").status is Status.CANCELLED
    assert report.job("deploy (us)").status is Status.SUCCEEDED


# ---------------------------------------------------------------------
# Composition and artifacts
# ---------------------------------------------------------------------

def test_workflow_call_passes_inputs_and_returns_outputs(make_engine, run_to_end, trigger):
    runner = ScriptedRunner({"hello": lambda request, cancel: StepResult(outputs={"msg": request.run})})
    inner = wf(
        job("greet", sh("hello", "hi ${{ inputs.who }}", id="hello"), outputs={"msg": "${{ steps.hello.outputs.msg }}"}),
        name="inner",
        outputs={"greeting": "${{ jobs.greet.outputs.msg }}"},
    )
    definition = wf(
        job(
            "release",
            call("call inner", inner, id="inner", with_={"who": "${{ github.actor }}"}),
            outputs={"greeting": "${{ steps.inner.outputs.greeting }}"},
        )
    )
    report = run_to_end(make_engine(runner), definition, trigger())

    assert report.job("release").outputs == {"greeting": "hi octocat"}
    assert report.conclusion is Status.SUCCEEDED


def test_failed_called_workflow_fails_the_step(make_engine, run_to_end):
    runner = ScriptedRunner({"boom": 1})
    inner = wf(job("inner", sh("boom", "false")), name="inner")
    report = run_to_end(make_engine(runner), wf(job("outer", call("call", inner))))
    assert report.job("outer").status is Status.FAILED


def test_artifacts_hand_off_between_jobs(make_engine, run_to_end, store, tmp_path):
    dist = tmp_path / "dist"
    dist.mkdir()
    (dist / "app.whl").write_text("wheel", encoding="utf-8")
    definition = wf(
        job("build", upload("upload", "dist", "dist")),
        job("deploy", download("fetch", "dist", "fetched", id="fetch"), needs=["build"]),
    )
    report = run_to_end(make_engine(), definition)

    assert report.conclusion is Status.SUCCEEDED
    assert store.names() == ["dist"]
    assert (tmp_path / "fetched" / "app.whl").read_text(encoding="utf-8") == "wheel"
    assert _steps(report, "deploy")["fetch"].outputs["download-path"] == str(tmp_path.resolve() / "fetched")


def test_download_of_unpublished_artifact_fails(make_engine, run_to_end):
    report = run_to_end(make_engine(), wf(job("deploy", download("fetch", "nothing"))))
    assert report.job("deploy").status is Status.FAILED
    assert "nothing" in _steps(report, "deploy")["fetch"].error


# ---------------------------------------------------------------------
# Configuration errors and planning
# ---------------------------------------------------------------------

def test_configuration_errors_raise_before_anything_runs(engine, runner):
    definition = wf(job("a", sh("x", "x"), needs=["b"]), job("b", sh("y", "y"), needs=["a"]))
    with pytest.raises(CyclicDependencyError):
        engine.start_run(definition)
    assert engine.runs() == []
    assert runner.calls == []


def test_concurrency_key_must_resolve(engine):
    definition = wf(job("deploy", sh("x", "x"), concurrency="deploy-${{ github.nope }}"))
    with pytest.raises(ConcurrencyConfigurationError):
        engine.start_run(definition)


def test_unknown_run(engine):
    with pytest.raises(KeyError):
        engine.get_run("missing")
    with pytest.raises(KeyError):
        engine.cancel_run("missing")


def test_plan_levels_and_deferred():
    definition = wf(
        job("plan", sh("p", "p"), outputs={"t": "x"}),
        job("lint", sh("l", "l")),
        job("build", sh("b", "b"), needs=["plan"], strategy=matrix(t="needs.plan.outputs.t")),
        job("test", sh("t", "t"), needs=["lint"], strategy=matrix(py=["3.11", "3.12"])),
    )
    levels, deferred = plan(definition)
    assert levels == [["lint", "plan"], ["test (3.11)", "test (3.12)"]]
    assert deferred == ["build"]


# ---------------------------------------------------------------------
# Reference scenarios
# ---------------------------------------------------------------------

def test_failed_test_job_skips_deploy(make_engine, run_to_end):
    runner = ScriptedRunner({("test-a", "unit"): 1})
    definition = wf(
        job("build", sh("compile", "make")),
        job("test-a", sh("unit", "make test-a"), needs=["build"]),
        job("test-b", sh("unit", "make test-b"), needs=["build"]),
        job("deploy", sh("ship", "make deploy"), needs=["test-a", "test-b"], if_="success()"),
    )
    report = run_to_end(make_engine(runner), definition)

    assert report.statuses() == {
        "build": Status.SUCCEEDED,
        "test-a": Status.FAILED,
        "test-b": Status.SUCCEEDED,
        "deploy": Status.SKIPPED,
    }
    assert report.conclusion is Status.FAILED


def test_dependent_waits_for_every_matrix_instance(make_engine, run_to_end):
    runner = ScriptedRunner({("test (3)", "run"): sleep_for(0.2)})
    definition = wf(
        job("test", sh("run", "t"), strategy=matrix(shard=[1, 2, 3])),
        job("deploy", sh("ship", "s"), needs=["test"]),
    )
    run_to_end(make_engine(runner), definition)

    order = runner.jobs_run()
    assert order[-1] == "deploy"
    assert set(order[:3]) == {"test (1)", "test (2)", "test (3)"}


def test_always_runs_when_every_dependency_was_cancelled(make_engine, run_to_end):
    runner = ScriptedRunner({("a", "work"): block_until_cancelled})
    group = concurrency("shared", cancel_in_progress=True)
    definition = wf(
        job("a", sh("work", "w"), concurrency=group),
        job("b", sh("work", "w"), concurrency=group),
        job("after", sh("report", "r"), needs=["a"], if_="always()"),
        job("on-cancel", sh("report", "r"), needs=["a"], if_="cancelled()"),
        job("plain", sh("report", "r"), needs=["a"]),
    )
    report = run_to_end(make_engine(runner), definition)

    assert report.job("a").status is Status.CANCELLED
    assert report.job("b").status is Status.SUCCEEDED
    assert report.job("after").status is Status.SUCCEEDED
    assert report.job("on-cancel").status is Status.SUCCEEDED
    assert report.job("plain").status is Status.SKIPPED


def test_cycle_error_names_both_jobs(engine):
    definition = wf(job("A", sh("x", "x"), needs=["B"]), job("B", sh("y", "y"), needs=["A"]))
    with pytest.raises(CyclicDependencyError) as exc:
        engine.start_run(definition)
    assert {"A", "B"} <= set(exc.value.cycle)
    assert "A" in str(exc.value) and "B" in str(exc.value)
