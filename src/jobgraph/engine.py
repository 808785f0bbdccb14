# engine.py
from __future__ import annotations

import queue
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple

from .concurrency import Admission, ConcurrencyGate
from .context import (
    EnvAccumulator,
    JobResult,
    JobStatusFunctions,
    NeedsView,
    RunResultTable,
    StepStatusFunctions,
    TriggerContext,
    steps_view,
)
from .dag import JobGraph, build_graph, validate_definition
from .errors import (
    ConcurrencyConfigurationError,
    ConfigurationError,
    ExpressionError,
    JobGraphError,
    NotReady,
    RunnerUnavailable,
    StepFailure,
    StepTimeout,
)
from .expressions import ExpressionContext, evaluate_condition, evaluate_value, interpolate
from .matrix import MatrixExpansion, expand, instantiate
from .model import (
    ConcurrencySpec,
    ContainerStep,
    DownloadArtifactStep,
    JobInstance,
    JobTemplate,
    ShellStep,
    Status,
    StepInstance,
    StepTemplate,
    UploadArtifactStep,
    WorkflowCallStep,
    WorkflowDefinition,
)
from .outputs import ArtifactStore, LocalArtifactStore, OutputResolver
from .report import JobReport, RunReport
from .runner import StepRequest, StepResult, StepRunner, SubprocessStepRunner
from .settings import Settings
from .ui.console import Console, get_console

# ---------------------------------------------------------------------
# Run lifecycle:
#   start_run -> validate + expand + wire graph (configuration errors raise here)
#             -> run-level concurrency gate
#             -> admission loop (one thread per run)
#
# The admission loop is the only writer of job statuses. Job workers and
# the concurrency gate talk to it by posting events on the run's queue:
#   ("done", iid, status, reason)      job worker finished
#   ("granted", iid)                   job-level concurrency slot handed over
#   ("run_granted",)                   run-level concurrency slot handed over
#   ("cancel", reason)                 cancel the whole run
#   ("cancel_instance", iid, reason)   cancel one job (cancel-in-progress)
#   ("grace", iid)                     cancel grace period elapsed for a job
# Every event wakes the loop, which re-scans blocked instances.
# ---------------------------------------------------------------------


def _now() -> datetime:
    return datetime.now(timezone.utc)


class _JobRuntime:
    """Cancellation state shared by the admission loop and one job worker."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.reason: Optional[str] = None
        self._interrupt = False
        self.wake = threading.Event()
        self.timed_out = False
        self.abandoned = False

    @property
    def cancel_requested(self) -> bool:
        return self.reason is not None

    def request_cancel(self, reason: str) -> bool:
        with self._lock:
            if self.reason is not None:
                return False
            self.reason = reason
            self._interrupt = True
        self.wake.set()
        return True

    def take_interrupt(self) -> bool:
        """True once per cancellation: the step running when it arrived is interrupted."""
        with self._lock:
            pending = self._interrupt
            self._interrupt = False
            return pending


class _JobTicket:
    """A job instance as a concurrency-gate holder."""

    def __init__(self, run: "Run", instance_id: str):
        self.run = run
        self.instance_id = instance_id

    def cancel_for_concurrency(self, key: str) -> None:
        self.run._post(("cancel_instance", self.instance_id, "concurrency"))

    def granted(self) -> None:
        self.run._post(("granted", self.instance_id))


# ---------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------

class Engine:
    """
    Entry point: `start_run(definition, trigger)` and `cancel_run(run_id)`.

    Concurrency groups are shared by every run started from one engine.
    """

    def __init__(
        self,
        runner: Optional[StepRunner] = None,
        *,
        settings: Optional[Settings] = None,
        store: Optional[ArtifactStore] = None,
        gate: Optional[ConcurrencyGate] = None,
        console: Optional[Console] = None,
        workdir: str | Path = ".",
    ):
        self.settings = settings or Settings.from_env()
        self.workdir = Path(workdir).resolve()
        self.runner = runner or SubprocessStepRunner(self.workdir)
        self.store = store if store is not None else LocalArtifactStore(self.settings.artifact_dir)
        self.gate = gate or ConcurrencyGate()
        self._console = console
        self._lock = threading.Lock()
        self._runs: Dict[str, Run] = {}

    @property
    def console(self) -> Console:
        return self._console or get_console()

    def start_run(self, definition: WorkflowDefinition, trigger: Optional[TriggerContext] = None) -> "Run":
        """
        Validate and expand `definition`, then start scheduling it in the
        background. Raises ConfigurationError before any job starts.
        """
        run = Run(self, definition, trigger or TriggerContext())
        with self._lock:
            if run.run_id in self._runs:
                raise ValueError(f"Run id '{run.run_id}' is already in use")
            self._runs[run.run_id] = run
        run.start()
        return run

    def cancel_run(self, run_id: str) -> None:
        self.get_run(run_id).cancel()

    def get_run(self, run_id: str) -> "Run":
        with self._lock:
            run = self._runs.get(run_id)
        if run is None:
            raise KeyError(run_id)
        return run

    def runs(self) -> List["Run"]:
        with self._lock:
            return list(self._runs.values())

    def run(self, definition: WorkflowDefinition, trigger: Optional[TriggerContext] = None) -> RunReport:
        """Start a run and block until it is done."""
        run = self.start_run(definition, trigger)
        report = run.wait()
        if report is None:
            raise JobGraphError(f"Run {run.run_id} did not finish")
        return report


def plan(definition: WorkflowDefinition) -> Tuple[List[List[str]], List[str]]:
    """
    Expand everything that can be expanded without running anything.
    Returns (topological levels of instance ids, templates with run-time matrices).
    """
    validate_definition(definition)
    expansions: Dict[str, Optional[List[JobInstance]]] = {}
    deferred: List[str] = []
    for template in definition.jobs:
        if template.strategy is not None and template.strategy.is_dynamic:
            expansions[template.name] = None
            deferred.append(template.name)
        else:
            expansions[template.name] = instantiate(template, expand(template))
    graph = build_graph(definition, expansions)
    return graph.topo_levels(), deferred


# ---------------------------------------------------------------------
# Run
# ---------------------------------------------------------------------

class Run:
    def __init__(self, engine: Engine, definition: WorkflowDefinition, trigger: TriggerContext):
        self.engine = engine
        self.definition = definition
        self.trigger = trigger
        self.run_id = trigger.run_id
        self.settings = engine.settings
        self.console = engine.console

        self.table = RunResultTable()
        self.resolver = OutputResolver(self.table, engine.store)
        self.started_at: Optional[datetime] = None
        self.finished_at: Optional[datetime] = None

        self._lock = threading.RLock()
        self._events: "queue.Queue[tuple]" = queue.Queue()
        self._done = threading.Event()
        self._report: Optional[RunReport] = None
        self._error: Optional[BaseException] = None

        self._limits: Dict[str, MatrixExpansion] = {}
        self._runtimes: Dict[str, _JobRuntime] = {}
        self._tickets: Dict[str, _JobTicket] = {}
        self._gated: Set[str] = set()
        self._ready: List[str] = []
        self._running_total = 0
        self._running_by_template: Dict[str, int] = {}
        self._cancelled = False
        self._finished = False
        self._run_granted = True

        validate_definition(definition)

        self.run_key: Optional[str] = None
        if definition.concurrency is not None:
            self.run_key = self._concurrency_key(definition.concurrency, None, self._base_values())

        expansions: Dict[str, Optional[List[JobInstance]]] = {}
        for template in definition.jobs:
            if template.strategy is not None and template.strategy.is_dynamic:
                expansions[template.name] = None
                continue
            expansion = expand(template)
            instances = instantiate(template, expansion)
            self._assign_keys(template, instances)
            self._limits[template.name] = expansion
            expansions[template.name] = instances
        self.graph: JobGraph = build_graph(definition, expansions)

        self._worker_slots = max(1, self.settings.max_workers)
        self._pool = ThreadPoolExecutor(
            max_workers=self._worker_slots,
            thread_name_prefix=f"jobgraph-{self.run_id}",
        )

    # -- public surface ---------------------------------------------------

    def start(self) -> None:
        self.started_at = _now()
        if self.run_key is not None:
            admission = self.engine.gate.admit(
                self.run_key,
                self,
                cancel_in_progress=self.definition.concurrency.cancel_in_progress,
                on_grant=lambda: self._post(("run_granted",)),
            )
            self._run_granted = admission is Admission.PROCEED
            if not self._run_granted:
                self.console.print_run_queued(self.run_id, self.run_key)
        self.console.print_run_started(self.run_id, self.definition.name, len(self.definition.jobs))
        threading.Thread(target=self._loop, name=f"jobgraph-run-{self.run_id}", daemon=True).start()

    def cancel(self, reason: str = "cancelled") -> None:
        self._post(("cancel", reason))

    def cancel_for_concurrency(self, key: str) -> None:
        self.cancel("concurrency")

    def wait(self, timeout: Optional[float] = None) -> Optional[RunReport]:
        """Block until the run is done; None if `timeout` elapses first."""
        if not self._done.wait(timeout):
            return None
        if self._error is not None:
            raise self._error
        return self._report

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def report(self) -> RunReport:
        """Snapshot of the run so far (the final report once done)."""
        with self._lock:
            if self._report is not None:
                return self._report
            return self._build_report(Status.RUNNING if self._run_granted else Status.PENDING, {})

    def _post(self, event: tuple) -> None:
        self._events.put(event)

    # -- contexts ---------------------------------------------------------

    def _base_values(self, inst: Optional[JobInstance] = None) -> Dict[str, Any]:
        values: Dict[str, Any] = {
            "github": self.trigger.as_github(),
            "inputs": dict(self.trigger.inputs),
            "env": dict(self.definition.env),
        }
        if inst is not None:
            values["matrix"] = dict(inst.matrix)
        return values

    def _needs_members(self, template: JobTemplate) -> Dict[str, List[str]]:
        return {t: list(self.graph.members.get(t) or []) for t in template.needs}

    def _job_context(self, template: JobTemplate, inst: Optional[JobInstance] = None) -> ExpressionContext:
        members = self._needs_members(template)
        values = self._base_values(inst)
        values["needs"] = NeedsView(self.table, members)
        dependencies = [self.table.require(i) for ids in members.values() for i in ids]
        return ExpressionContext(values, JobStatusFunctions(dependencies, self._cancelled))

    def _concurrency_key(self, spec: ConcurrencySpec, job: Optional[str], values: Dict[str, Any]) -> str:
        ctx = ExpressionContext(values, strict=True)
        try:
            key = interpolate(spec.group, ctx)
        except ExpressionError as e:
            raise ConcurrencyConfigurationError(job, f"Concurrency group could not be evaluated: {e}", group=spec.group) from e
        if not key.strip():
            raise ConcurrencyConfigurationError(job, "Concurrency group evaluated to an empty string", group=spec.group)
        return key

    def _assign_keys(self, template: JobTemplate, instances: List[JobInstance]) -> None:
        if template.concurrency is None:
            return
        for inst in instances:
            inst.concurrency_key = self._concurrency_key(template.concurrency, template.name, self._base_values(inst))

    # -- admission loop -----------------------------------------------------

    def _loop(self) -> None:
        try:
            with self._lock:
                self._schedule()
            while not self._finished:
                event = self._events.get()
                with self._lock:
                    self._handle(event)
                    self._schedule()
        except Exception as e:
            self.console.print_exception(e)
            with self._lock:
                self._error = e
                self._finished = True
                if self.run_key is not None:
                    self.engine.gate.release(self.run_key, self)
            self._pool.shutdown(wait=False)
            self._done.set()

    def _handle(self, event: tuple) -> None:
        kind = event[0]
        if kind == "done":
            _, iid, status, reason = event
            inst = self.graph.instances[iid]
            if not inst.is_terminal:  # late results of force-cancelled jobs are dropped
                self._finalize(inst, status, reason)
        elif kind == "granted":
            iid = event[1]
            inst = self.graph.instances[iid]
            self._gated.discard(iid)
            if inst.is_terminal:
                ticket = self._tickets.pop(iid, None)
                if ticket is not None and inst.concurrency_key:
                    self.engine.gate.release(inst.concurrency_key, ticket)
            else:
                self._ready.append(iid)
        elif kind == "run_granted":
            self._run_granted = True
        elif kind == "cancel":
            self._cancel_all(event[1])
        elif kind == "cancel_instance":
            self._cancel_instance(event[1], event[2])
        elif kind == "grace":
            inst = self.graph.instances[event[1]]
            if not inst.is_terminal:
                self._force_cancel(inst)
        else:
            raise ValueError(f"Unknown run event {event!r}")

    def _schedule(self) -> None:
        if self._finished:
            return
        if self._run_granted or self._cancelled:
            changed = True
            while changed:
                expanded = self._expand_ready_templates()
                admitted = self._admit_ready()
                changed = expanded or admitted
            self._dispatch()
        if self._all_settled():
            self._finish()

    def _all_settled(self) -> bool:
        if any(m is None for m in self.graph.members.values()):
            return False
        return all(inst.is_terminal for inst in self.graph.instances.values())

    # -- dynamic matrices -----------------------------------------------------

    def _expand_ready_templates(self) -> bool:
        if self._cancelled:
            return False
        changed = False
        for name, members in list(self.graph.members.items()):
            if members is not None:
                continue
            template = self.graph.templates[name]
            settled = all(
                self.graph.is_expanded(t) and all(self.graph.instances[i].is_terminal for i in self.graph.members[t] or [])
                for t in template.needs
            )
            if settled:
                self._expand_dynamic(template)
                changed = True
        return changed

    def _expand_dynamic(self, template: JobTemplate) -> None:
        ctx = self._job_context(template)
        try:
            if not evaluate_condition(template.if_, ctx):
                self._placeholder(template, Status.SKIPPED, "condition")
                return
            expansion = expand(template, ctx)
            instances = instantiate(template, expansion)
            self._assign_keys(template, instances)
        except (ConfigurationError, ExpressionError) as e:
            self.console.print_error("Invalid job configuration", str(e), details=[f"job={template.name}"])
            self._placeholder(template, Status.FAILED, str(e).splitlines()[0])
            return
        self._limits[template.name] = expansion
        self.graph.add_expansion(template.name, instances)
        self.console.print_debug(f"{template.name}: expanded into {len(instances)} instance(s)")

    def _placeholder(self, template: JobTemplate, status: Status, reason: str) -> None:
        inst = JobInstance(id=template.name, template=template)
        self._limits[template.name] = MatrixExpansion(template=template.name, combinations=[{}], fail_fast=False)
        self.graph.add_expansion(template.name, [inst])
        self._finalize(inst, status, reason)

    # -- admission -------------------------------------------------------------

    def _admit_ready(self) -> bool:
        if self._cancelled:
            return False
        changed = False
        queued = set(self._ready) | self._gated
        for iid, inst in list(self.graph.instances.items()):
            if inst.status not in (Status.PENDING, Status.BLOCKED) or iid in queued:
                continue
            deps_done = self.graph.needs_settled(iid) and all(self.graph.instances[d].is_terminal for d in inst.needs)
            if not deps_done:
                inst.status = Status.BLOCKED
                continue

            try:
                should_run = evaluate_condition(inst.template.if_, self._job_context(inst.template, inst))
            except (ExpressionError, NotReady) as e:
                self._finalize(inst, Status.FAILED, f"if: {e}")
                changed = True
                continue
            if not should_run:
                self._finalize(inst, Status.SKIPPED, "condition")
                changed = True
                continue

            if inst.concurrency_key is not None:
                ticket = _JobTicket(self, iid)
                self._tickets[iid] = ticket
                admission = self.engine.gate.admit(
                    inst.concurrency_key,
                    ticket,
                    cancel_in_progress=inst.template.concurrency.cancel_in_progress,
                    on_grant=ticket.granted,
                )
                if admission is not Admission.PROCEED:
                    inst.status = Status.BLOCKED
                    self._gated.add(iid)
                    continue
            # queued for a worker slot
            inst.status = Status.BLOCKED
            self._ready.append(iid)
        return changed

    def _dispatch(self) -> None:
        if self._cancelled:
            return
        waiting: List[str] = []
        for iid in self._ready:
            inst = self.graph.instances[iid]
            if inst.is_terminal:
                continue
            cap = self._limits[inst.name].max_parallel
            if self._running_total < self._worker_slots and self._running_by_template.get(inst.name, 0) < cap:
                self._start_job(inst)
            else:
                waiting.append(iid)
        self._ready = waiting

    def _start_job(self, inst: JobInstance) -> None:
        inst.status = Status.RUNNING
        inst.started_at = _now()
        runtime = _JobRuntime()
        self._runtimes[inst.id] = runtime
        self._running_total += 1
        self._running_by_template[inst.name] = self._running_by_template.get(inst.name, 0) + 1
        self.resolver.open(inst.id)
        self.console.print_job_start(inst.id)
        self._pool.submit(self._execute_job, inst, runtime)

    def _execute_job(self, inst: JobInstance, runtime: _JobRuntime) -> None:
        try:
            status, reason = _JobExecution(self, inst, runtime).execute()
        except Exception as e:
            self.console.print_exception(e)
            status, reason = Status.FAILED, f"internal error: {e}"
        self._post(("done", inst.id, status, reason))

    # -- terminal transitions ----------------------------------------------------

    def _finalize(self, inst: JobInstance, status: Status, reason: Optional[str] = None) -> None:
        if inst.is_terminal:
            return
        iid = inst.id
        template = inst.template
        was_running = inst.status is Status.RUNNING

        # what dependents see: a failure absorbed by continue-on-error reads as success
        effective = Status.SUCCEEDED if status is Status.FAILED and template.continue_on_error else status

        outputs = self.resolver.close(iid)
        inst.status = status
        inst.reason = reason
        inst.finished_at = _now()
        if status in (Status.SUCCEEDED, Status.FAILED):
            inst.outputs = dict(outputs)

        upstream = [r for r in (self.table.get(d) for d in inst.needs) if r is not None]
        self.table.record(
            JobResult(
                instance_id=iid,
                template=template.name,
                status=effective,
                outputs=dict(inst.outputs),
                failed_chain=effective is Status.FAILED or any(r.failed_chain for r in upstream),
                cancelled_chain=status is Status.CANCELLED or any(r.cancelled_chain for r in upstream),
            )
        )

        if was_running:
            self._running_total -= 1
            self._running_by_template[inst.name] -= 1
        if iid in self._ready:
            self._ready.remove(iid)
        self._gated.discard(iid)
        ticket = self._tickets.pop(iid, None)
        if ticket is not None and inst.concurrency_key is not None:
            self.engine.gate.release(inst.concurrency_key, ticket)

        try:
            published = self.resolver.publish_artifacts(iid)
        except OSError as e:
            self.console.print_error("Artifact upload failed", str(e), details=[f"job={iid}"])
            inst.reason = reason or f"artifact upload failed: {e}"
        else:
            for name in published:
                self.console.print_debug(f"{iid}: published artifact '{name}'")

        if status is Status.SKIPPED:
            self.console.print_job_skipped(iid, reason or "condition")
        else:
            self.console.print_job_finished(iid, status.value, reason)

        if effective is Status.FAILED:
            expansion = self._limits.get(template.name)
            if expansion is not None and expansion.is_matrix and expansion.fail_fast:
                for sibling in self.graph.instances_of(template.name):
                    if not sibling.is_terminal:
                        self._cancel_instance(sibling.id, "fail-fast")

    def _cancel_instance(self, iid: str, reason: str) -> None:
        inst = self.graph.instances.get(iid)
        if inst is None or inst.is_terminal:
            return
        if inst.status is Status.RUNNING:
            if self._runtimes[iid].request_cancel(reason):
                timer = threading.Timer(self.settings.cancel_grace_seconds, self._post, args=(("grace", iid),))
                timer.daemon = True
                timer.start()
        else:
            self._finalize(inst, Status.CANCELLED, reason)

    def _cancel_all(self, reason: str) -> None:
        if self._cancelled or self._finished:
            return
        self._cancelled = True
        self.console.print_info(f"\nRUN CANCELLING: {self.run_id} ({reason})")
        for iid in list(self.graph.instances):
            self._cancel_instance(iid, reason)
        for name, members in list(self.graph.members.items()):
            if members is None:
                self._placeholder(self.graph.templates[name], Status.CANCELLED, reason)

    def _force_cancel(self, inst: JobInstance) -> None:
        """The grace period is over: stop waiting for the worker and record Cancelled."""
        runtime = self._runtimes[inst.id]
        runtime.abandoned = True
        now = _now()
        for step in inst.steps:
            if step.status is Status.RUNNING:
                step.status = Status.CANCELLED
                step.finished_at = now
            elif step.status is Status.PENDING:
                step.status = Status.SKIPPED
        self._finalize(inst, Status.CANCELLED, runtime.reason)

    def _conclusion(self) -> Status:
        instances = list(self.graph.instances.values())
        if any(i.status is Status.FAILED and not i.template.continue_on_error for i in instances):
            return Status.FAILED
        if any(i.status is Status.CANCELLED for i in instances):
            return Status.CANCELLED
        return Status.SUCCEEDED

    def _workflow_outputs(self) -> Dict[str, str]:
        if not self.definition.outputs:
            return {}
        values = self._base_values()
        values["jobs"] = NeedsView(self.table, {t: list(m or []) for t, m in self.graph.members.items()})
        ctx = ExpressionContext(values)
        outputs: Dict[str, str] = {}
        for name, template in self.definition.outputs.items():
            try:
                outputs[name] = interpolate(template, ctx)
            except (ExpressionError, NotReady) as e:
                self.console.print_error("Workflow output failed", str(e), details=[f"output={name}"])
        return outputs

    def _build_report(self, conclusion: Status, outputs: Dict[str, str]) -> RunReport:
        return RunReport(
            run_id=self.run_id,
            workflow=self.definition.name,
            conclusion=conclusion,
            jobs=[JobReport.of(i) for i in self.graph.instances.values()],
            outputs=outputs,
            started_at=self.started_at,
            finished_at=self.finished_at,
        )

    def _finish(self) -> None:
        self._finished = True
        self.finished_at = _now()
        self._report = self._build_report(self._conclusion(), self._workflow_outputs())
        if self.run_key is not None:
            self.engine.gate.release(self.run_key, self)
        self._pool.shutdown(wait=False)
        self.console.print_results(self._report)
        self._done.set()


# ---------------------------------------------------------------------
# Job execution (runs on a pool thread)
# ---------------------------------------------------------------------

class _JobExecution:
    """
    Runs the steps of one job instance strictly in order.

    Each runner call happens on its own thread so that the job can stop
    waiting the instant it is cancelled or its deadline passes.
    """

    def __init__(self, run: Run, inst: JobInstance, runtime: _JobRuntime):
        self.run = run
        self.inst = inst
        self.runtime = runtime
        self.template = inst.template
        self.env = EnvAccumulator()
        self.job_failed = False
        self.failed_step: Optional[str] = None
        self.deadline = time.monotonic() + self.template.timeout if self.template.timeout else None
        self.steps = [
            StepInstance(name=s.name, id=s.id, continue_on_error=s.continue_on_error)
            for s in self.template.steps
        ]
        with run._lock:
            self.needs = run._needs_members(self.template)
            inst.steps = self.steps

    @property
    def console(self) -> Console:
        return self.run.console

    def context(self, upto: int) -> ExpressionContext:
        values = self.run._base_values(self.inst)
        values["env"] = self.env.snapshot()
        values["needs"] = NeedsView(self.run.table, self.needs)
        values["steps"] = steps_view(self.steps[:upto])
        values["job"] = {"status": "failure" if self.job_failed else "success"}
        return ExpressionContext(values, StepStatusFunctions(self.job_failed, self.runtime.cancel_requested))

    def _update(self, step: StepInstance, **changes: Any) -> None:
        with self.run._lock:
            if self.runtime.abandoned:
                return
            for key, value in changes.items():
                setattr(step, key, value)

    def execute(self) -> Tuple[Status, Optional[str]]:
        try:
            for layer in (self.run.definition.env, self.template.env):
                ctx = self.context(0)
                self.env.update({k: interpolate(v, ctx) for k, v in layer.items()})
        except (ExpressionError, NotReady) as e:
            for step in self.steps:
                self._update(step, status=Status.SKIPPED)
            return Status.FAILED, f"env: {e}"

        for index, (tmpl, step) in enumerate(zip(self.template.steps, self.steps)):
            if self.runtime.abandoned:
                break
            # a cancellation that arrived between steps interrupts nothing
            self.runtime.take_interrupt()
            if self.deadline is not None and time.monotonic() >= self.deadline and not self.runtime.timed_out:
                self.runtime.timed_out = True
                self.job_failed = True
            if self.runtime.timed_out:
                self._update(step, status=Status.SKIPPED)
                continue

            ctx = self.context(index)
            try:
                should_run = evaluate_condition(tmpl.if_, ctx)
            except (ExpressionError, NotReady) as e:
                self._step_failed(tmpl, step, f"if: {e}")
                continue
            if not should_run:
                self._update(step, status=Status.SKIPPED)
                continue
            self._run_step(tmpl, step, ctx)

        if self.runtime.abandoned:
            return Status.CANCELLED, self.runtime.reason

        if self.runtime.timed_out:
            return Status.FAILED, "timeout"
        if self.runtime.cancel_requested:
            return Status.CANCELLED, self.runtime.reason

        status = Status.FAILED if self.job_failed else Status.SUCCEEDED
        reason = f"step '{self.failed_step}' failed" if self.job_failed else None
        ctx = self.context(len(self.steps))
        for name, value in self.template.outputs.items():
            try:
                resolved = interpolate(value, ctx)
            except (ExpressionError, NotReady) as e:
                self.console.print_error("Job output failed", str(e), details=[f"job={self.inst.id}", f"output={name}"])
                return Status.FAILED, f"outputs.{name}: {e}"
            try:
                self.run.resolver.record_output(self.inst.id, name, resolved)
            except ValueError:
                if not self.runtime.abandoned:
                    raise
        return status, reason

    def _step_failed(self, tmpl: StepTemplate, step: StepInstance, error: str, **changes: Any) -> None:
        self._update(step, status=Status.FAILED, error=error, finished_at=_now(), **changes)
        if not tmpl.continue_on_error and not self.job_failed:
            self.job_failed = True
            self.failed_step = tmpl.name

    def _budget(self, tmpl: StepTemplate) -> Optional[float]:
        budgets = []
        if tmpl.timeout is not None:
            budgets.append(tmpl.timeout)
        if self.deadline is not None:
            budgets.append(max(0.0, self.deadline - time.monotonic()))
        return min(budgets) if budgets else None

    def _run_step(self, tmpl: StepTemplate, step: StepInstance, ctx: ExpressionContext) -> None:
        self._update(step, status=Status.RUNNING, started_at=_now())
        self.console.print_step(self.inst.id, tmpl.name)

        result, error, interruption = self._call(tmpl, ctx)

        if interruption == "cancelled":
            self._update(step, status=Status.CANCELLED, error=self.runtime.reason, finished_at=_now())
        elif interruption == "job_timeout":
            self.runtime.timed_out = True
            self.job_failed = True
            self.failed_step = self.failed_step or tmpl.name
            self._update(
                step,
                status=Status.CANCELLED,
                timed_out=True,
                error=f"job timed out after {self.template.timeout:g}s",
                finished_at=_now(),
            )
        elif interruption == "step_timeout":
            timeout = StepTimeout(self.inst.id, tmpl.name, tmpl.timeout or 0.0)
            self.console.print_failure(tmpl.name, str(timeout), hint="Raise the step timeout or speed the step up.")
            self._step_failed(tmpl, step, str(timeout), timed_out=True)
        elif error is not None:
            exit_code = error.exit_code if isinstance(error, StepFailure) else None
            self.console.print_failure(tmpl.name, str(error), exit_code=exit_code)
            self._step_failed(tmpl, step, str(error), exit_code=exit_code)
        elif result is None:
            self.console.print_failure(tmpl.name, "step runner returned no result")
            self._step_failed(tmpl, step, "step runner returned no result")
        else:
            self.env.update(result.env)
            if result.exit_code == 0:
                self._update(
                    step,
                    status=Status.SUCCEEDED,
                    outputs=dict(result.outputs),
                    exit_code=0,
                    finished_at=_now(),
                )
            else:
                failure = StepFailure(self.inst.id, tmpl.name, result.exit_code)
                self.console.print_failure(tmpl.name, result.log or str(failure), exit_code=result.exit_code)
                self._step_failed(tmpl, step, str(failure), outputs=dict(result.outputs), exit_code=result.exit_code)

    def _call(self, tmpl: StepTemplate, ctx: ExpressionContext) -> Tuple[Optional[StepResult], Optional[Exception], Optional[str]]:
        budget = self._budget(tmpl)
        step_cancel = threading.Event()
        done = threading.Event()
        box: Dict[str, Any] = {}

        def target() -> None:
            try:
                box["result"] = self._perform(tmpl, ctx, step_cancel, budget)
            except Exception as e:
                box["error"] = e
            finally:
                done.set()
                self.runtime.wake.set()

        threading.Thread(target=target, name=f"jobgraph-step-{self.inst.id}-{tmpl.name}", daemon=True).start()

        started = time.monotonic()
        step_deadline = started + tmpl.timeout if tmpl.timeout is not None else None
        interruption: Optional[str] = None
        while not done.is_set():
            if self.runtime.take_interrupt():
                interruption = "cancelled"
                break
            now = time.monotonic()
            if self.deadline is not None and now >= self.deadline:
                interruption = "job_timeout"
                break
            if step_deadline is not None and now >= step_deadline:
                interruption = "step_timeout"
                break
            limits = [t - now for t in (self.deadline, step_deadline) if t is not None]
            self.runtime.wake.wait(min(limits) if limits else None)
            self.runtime.wake.clear()

        if interruption is not None:
            step_cancel.set()
            done.wait(self.run.settings.cancel_grace_seconds)
        return box.get("result"), box.get("error"), interruption

    # -- step kinds ------------------------------------------------------------

    def _perform(self, tmpl: StepTemplate, ctx: ExpressionContext, cancel: threading.Event, budget: Optional[float]) -> StepResult:
        action = tmpl.action
        step_env = {k: interpolate(v, ctx) for k, v in tmpl.env.items()}
        workdir = self.run.engine.workdir / (tmpl.cwd or ".")

        if isinstance(action, (ShellStep, ContainerStep)):
            request = StepRequest(
                job=self.inst.id,
                step=tmpl.name,
                kind=action.kind,
                run=interpolate(action.run, ctx),
                shell=action.shell if isinstance(action, ShellStep) else "sh",
                image=interpolate(action.image, ctx) if isinstance(action, ContainerStep) else None,
                volumes=tuple(interpolate(v, ctx) for v in action.volumes) if isinstance(action, ContainerStep) else (),
                user=action.user if isinstance(action, ContainerStep) else None,
                env=self.env.resolve(step_env),
                cwd=tmpl.cwd,
                timeout=budget,
            )
            return self._dispatch(request, cancel)

        if isinstance(action, UploadArtifactStep):
            name = interpolate(action.name, ctx)
            path = workdir / interpolate(action.path, ctx)
            self.run.resolver.stage_artifact(self.inst.id, name, path)
            return StepResult(log=f"staged artifact '{name}' from {path}")

        if isinstance(action, DownloadArtifactStep):
            name = interpolate(action.name, ctx)
            dest = workdir / interpolate(action.path, ctx)
            producer = self.run.resolver.fetch_artifact(name, dest)
            return StepResult(outputs={"download-path": str(dest)}, log=f"downloaded '{name}' from {producer}")

        if isinstance(action, WorkflowCallStep):
            return self._call_workflow(action, ctx, cancel)

        raise ValueError(f"Unknown step kind: {getattr(action, 'kind', action)!r}")

    def _dispatch(self, request: StepRequest, cancel: threading.Event) -> StepResult:
        retries = self.run.settings.dispatch_retries
        backoff = self.run.settings.retry_backoff_seconds
        attempt = 0
        while True:
            try:
                return self.run.engine.runner.run(request, cancel)
            except RunnerUnavailable as e:
                attempt += 1
                if attempt > retries:
                    raise StepFailure(request.job, request.step, 1, f"runner unavailable after {retries} retries: {e}") from e
                self.console.print_debug(f"[{request.job}] runner unavailable, retry {attempt}/{retries}")
                if cancel.wait(backoff * attempt):
                    raise

    def _call_workflow(self, action: WorkflowCallStep, ctx: ExpressionContext, cancel: threading.Event) -> StepResult:
        inputs = {k: evaluate_value(v, ctx) for k, v in action.with_.items()}
        trigger = replace(self.run.trigger, inputs=inputs, run_id=uuid.uuid4().hex[:12])
        nested = self.run.engine.start_run(action.workflow, trigger)

        cancelled = False
        while True:
            report = nested.wait(0.2)
            if report is not None:
                break
            if cancel.is_set() and not cancelled:
                nested.cancel()
                cancelled = True

        return StepResult(
            exit_code=0 if report.conclusion is Status.SUCCEEDED else 1,
            outputs=dict(report.outputs),
            log=f"workflow '{action.workflow.name}' ({nested.run_id}) concluded {report.conclusion.value}",
        )
