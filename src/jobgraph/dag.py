# dag.py
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Set

from .errors import (
    ConcurrencyConfigurationError,
    ConfigurationError,
    CyclicDependencyError,
    DuplicateJobError,
    ExpressionError,
    UndeclaredJobReferenceError,
    UnknownJobError,
)
from .expressions import parse, referenced_contexts, referenced_jobs, template_expressions
from .model import ContainerStep, JobInstance, JobTemplate, ShellStep, WorkflowCallStep, WorkflowDefinition


# ---------------------------------------------------------------------
# Template-level validation
# ---------------------------------------------------------------------

def find_cycle(needs: Dict[str, Sequence[str]]) -> Optional[List[str]]:
    """
    DFS coloring over `name -> needed names`. Returns the first cycle found
    as a closed path (`[a, b, a]`) or None.
    """
    WHITE, GRAY, BLACK = 0, 1, 2
    color = {n: WHITE for n in needs}
    stack: List[str] = []

    def visit(node: str) -> Optional[List[str]]:
        color[node] = GRAY
        stack.append(node)
        for dep in needs.get(node, ()):
            if color.get(dep, BLACK) == GRAY:
                return stack[stack.index(dep):] + [dep]
            if color.get(dep) == WHITE:
                found = visit(dep)
                if found:
                    return found
        stack.pop()
        color[node] = BLACK
        return None

    for name in needs:
        if color[name] == WHITE:
            found = visit(name)
            if found:
                return found
    return None


def _expressions_of(template: JobTemplate) -> Dict[str, List[str]]:
    """Every expression a job evaluates, grouped by where it appears."""
    found: Dict[str, List[str]] = {}

    def add(where: str, text: Optional[str], *, is_template: bool) -> None:
        if not text:
            return
        exprs = template_expressions(text) if is_template else [text]
        if exprs:
            found.setdefault(where, []).extend(exprs)

    add("if", template.if_, is_template=False)
    for name, value in template.outputs.items():
        add(f"outputs.{name}", value, is_template=True)
    for key, value in template.env.items():
        add(f"env.{key}", value, is_template=True)
    if template.strategy is not None:
        if template.strategy.source:
            add("strategy.matrix", template.strategy.source, is_template="${{" in template.strategy.source)
        for axis, values in template.strategy.axes.items():
            if isinstance(values, str):
                add(f"strategy.matrix.{axis}", values, is_template="${{" in values)
    for step in template.steps:
        label = f"steps[{step.name}]"
        add(f"{label}.if", step.if_, is_template=False)
        for key, value in step.env.items():
            add(f"{label}.env.{key}", value, is_template=True)
        action = step.action
        if isinstance(action, (ShellStep, ContainerStep)):
            add(f"{label}.run", action.run, is_template=True)
        if isinstance(action, ContainerStep):
            add(f"{label}.image", action.image, is_template=True)
            for volume in action.volumes:
                add(f"{label}.volumes", volume, is_template=True)
        elif isinstance(action, WorkflowCallStep):
            for key, value in action.with_.items():
                add(f"{label}.with.{key}", value, is_template=True)
    return found


def validate_definition(definition: WorkflowDefinition) -> None:
    """
    Reject structurally invalid workflows before anything is expanded:
    duplicate names, unknown needs, cycles, expressions that read jobs the
    job does not need, and concurrency groups that read job results.
    """
    names = definition.job_names
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise DuplicateJobError(dupes)

    name_set = set(names)
    needs: Dict[str, Sequence[str]] = {}
    for job in definition.jobs:
        for dep in job.needs:
            if dep not in name_set:
                raise UnknownJobError(job.name, dep, names)
        needs[job.name] = list(job.needs)

    cycle = find_cycle(needs)
    if cycle:
        raise CyclicDependencyError(cycle)

    for job in definition.jobs:
        declared = set(job.needs)
        for where, exprs in _expressions_of(job).items():
            try:
                for exprtext in exprs:
                    parse(exprtext)
                referenced = referenced_jobs(exprs)
            except ExpressionError as e:
                raise ConfigurationError(
                    kind="invalid_expression",
                    message=str(e),
                    job=job.name,
                    details={"where": where},
                ) from e
            for ref in sorted(referenced):
                if ref not in declared:
                    raise UndeclaredJobReferenceError(job.name, ref, where)

        if job.concurrency is not None:
            _validate_group(job.concurrency.group, job=job.name)

    if definition.concurrency is not None:
        _validate_group(definition.concurrency.group, job=None)


_GROUP_FORBIDDEN = ("needs", "jobs", "steps")


def _validate_group(group: str, *, job: Optional[str]) -> None:
    """
    A concurrency key is computed once from trigger (and matrix) context. A
    key that reads job results could wait on its own unfinished result.
    """
    try:
        exprs = template_expressions(group)
        refs = set()
        for e in exprs:
            refs |= referenced_contexts(e)
    except ExpressionError as e:
        raise ConcurrencyConfigurationError(job, f"Invalid concurrency group: {e}", group=group) from e
    for ctx, _key in refs:
        if ctx in _GROUP_FORBIDDEN:
            raise ConcurrencyConfigurationError(
                job,
                f"Concurrency group reads '{ctx}', which is not known before the job is admitted",
                group=group,
            )
        if job is None and ctx == "matrix":
            raise ConcurrencyConfigurationError(job, "Workflow concurrency group cannot read 'matrix'", group=group)


# ---------------------------------------------------------------------
# Instance graph
# ---------------------------------------------------------------------

@dataclass
class JobGraph:
    """
    Adjacency lists keyed by stable instance ids.

    `members[template]` lists the instances of a template, or is None while
    the template's matrix still depends on job outputs. Edges of such a
    template are wired exactly once by `add_expansion`, before any of its
    dependents can become ready; existing edges never change.
    """
    templates: Dict[str, JobTemplate]
    instances: Dict[str, JobInstance] = field(default_factory=dict)
    members: Dict[str, Optional[List[str]]] = field(default_factory=dict)
    adj: Dict[str, Set[str]] = field(default_factory=dict)       # instance -> dependents
    deps: Dict[str, Set[str]] = field(default_factory=dict)      # instance -> needed instances
    dependents_of_template: Dict[str, List[str]] = field(default_factory=dict)

    def is_expanded(self, template: str) -> bool:
        return self.members.get(template) is not None

    def instances_of(self, template: str) -> List[JobInstance]:
        return [self.instances[i] for i in (self.members.get(template) or [])]

    def needs_settled(self, instance_id: str) -> bool:
        template = self.instances[instance_id].template
        return all(self.is_expanded(t) for t in template.needs)

    def add_expansion(self, template: str, instances: Iterable[JobInstance]) -> None:
        if self.members.get(template) is not None:
            raise ValueError(f"Template '{template}' already expanded")
        ids: List[str] = []
        for inst in instances:
            if inst.id in self.instances:
                raise DuplicateJobError([inst.id])
            self.instances[inst.id] = inst
            self.adj.setdefault(inst.id, set())
            self.deps.setdefault(inst.id, set())
            ids.append(inst.id)
        self.members[template] = ids

        # this template's instances depend on every instance of what it needs
        for iid in ids:
            for needed in self.templates[template].needs:
                for dep in self.members.get(needed) or []:
                    self._edge(dep, iid)
        # dependents that already exist now also depend on these instances
        for dependent in self.dependents_of_template.get(template, []):
            for did in self.members.get(dependent) or []:
                for iid in ids:
                    self._edge(iid, did)
        for iid in ids:
            inst = self.instances[iid]
            inst.needs = frozenset(self.deps[iid])

    def _edge(self, dep: str, dependent: str) -> None:
        if dependent not in self.adj[dep]:
            self.adj[dep].add(dependent)
            self.deps[dependent].add(dep)
            self.instances[dependent].needs = frozenset(self.deps[dependent])

    def topo_levels(self) -> List[List[str]]:
        """
        Convert the expanded part of the graph into topological "levels".
        Each level can run in parallel.
        """
        indeg = {n: len(d) for n, d in self.deps.items()}
        q = deque(sorted(n for n, d in indeg.items() if d == 0))
        levels: List[List[str]] = []
        processed = 0

        while q:
            level_size = len(q)
            level: List[str] = []
            for _ in range(level_size):
                node = q.popleft()
                level.append(node)
                processed += 1
                for child in sorted(self.adj.get(node, set())):
                    indeg[child] -= 1
                    if indeg[child] == 0:
                        q.append(child)
            levels.append(level)

        if processed != len(indeg):
            remaining = sorted(n for n, d in indeg.items() if d > 0)
            raise CyclicDependencyError(remaining)
        return levels


def build_graph(definition: WorkflowDefinition, expansions: Dict[str, Optional[List[JobInstance]]]) -> JobGraph:
    """
    Wire expanded job instances into a DAG.

    `expansions` maps each template to its instances, or to None for
    templates whose matrix is resolved later from job outputs.
    """
    validate_definition(definition)

    graph = JobGraph(templates={j.name: j for j in definition.jobs})
    for job in definition.jobs:
        graph.members[job.name] = None
        graph.dependents_of_template.setdefault(job.name, [])
        for dep in job.needs:
            graph.dependents_of_template.setdefault(dep, []).append(job.name)

    for job in definition.jobs:
        instances = expansions.get(job.name)
        if instances is not None:
            graph.add_expansion(job.name, instances)
    return graph
