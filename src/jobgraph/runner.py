# runner.py
from __future__ import annotations

import os
import signal
import subprocess
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Protocol, Tuple, Union

from .errors import StepFailure

# ---------------------------------------------------------------------
# Step execution boundary:
#   engine --StepRequest--> runner --StepResult--> engine
#
# The engine resolves expressions and environment before the call; the
# runner only executes and reports exit code, outputs, env updates, log.
# ---------------------------------------------------------------------


@dataclass(frozen=True)
class StepRequest:
    job: str
    step: str
    kind: str
    run: str = ""
    shell: str = "sh"
    image: Optional[str] = None
    volumes: Tuple[str, ...] = ()
    user: Optional[str] = None
    env: Mapping[str, str] = field(default_factory=dict)
    cwd: Optional[str] = None
    timeout: Optional[float] = None


@dataclass
class StepResult:
    exit_code: int = 0
    outputs: Dict[str, str] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)
    log: str = ""


class StepRunner(Protocol):
    def run(self, request: StepRequest, cancel: threading.Event) -> StepResult:
        ...


TOOL_HINTS = {
    "docker": "Install Docker and ensure the daemon is running.",
    "sh": "Install a POSIX shell or fix PATH.",
    "bash": "Install bash or fix PATH.",
}

# how long a terminated process gets before it is killed
TERMINATE_GRACE_SECONDS = 5.0
_POLL_SECONDS = 0.1


def parse_kv_file(path: Path) -> Dict[str, str]:
    """
    Parse a GITHUB_OUTPUT / GITHUB_ENV style file.

    Supports `name=value` lines and multi-line values:

        name<<EOF
        line 1
        line 2
        EOF
    """
    if not path.exists():
        return {}
    lines = path.read_text(encoding="utf-8").splitlines()
    values: Dict[str, str] = {}
    i = 0
    while i < len(lines):
        line = lines[i]
        i += 1
        if not line.strip():
            continue
        if "<<" in line and ("=" not in line or line.index("<<") < line.index("=")):
            name, delimiter = line.split("<<", 1)
            body: List[str] = []
            while i < len(lines) and lines[i] != delimiter:
                body.append(lines[i])
                i += 1
            i += 1  # closing delimiter
            values[name.strip()] = "\n".join(body)
        elif "=" in line:
            name, value = line.split("=", 1)
            values[name.strip()] = value
    return values


def _signal_group(proc: subprocess.Popen, sig: int) -> None:
    """Signal the step's whole process group; the shell may not exec its command."""
    if hasattr(os, "killpg"):
        try:
            os.killpg(proc.pid, sig)
        except ProcessLookupError:
            pass
    elif sig == signal.SIGTERM:
        proc.terminate()
    else:
        proc.kill()


def _communicate(proc: subprocess.Popen, cancel: threading.Event) -> str:
    """Collect combined output, terminating the process group once `cancel` is set."""
    chunks: List[str] = []
    while True:
        try:
            out, _ = proc.communicate(timeout=_POLL_SECONDS)
            chunks.append(out or "")
            return "".join(chunks)
        except subprocess.TimeoutExpired:
            if not cancel.is_set():
                continue
        _signal_group(proc, signal.SIGTERM)
        try:
            out, _ = proc.communicate(timeout=TERMINATE_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            _signal_group(proc, getattr(signal, "SIGKILL", signal.SIGTERM))
            out, _ = proc.communicate()
        chunks.append(out or "")
        return "".join(chunks)


# ---------------------------------------------------------------------
# Shell
# ---------------------------------------------------------------------

class ShellStepRunner:
    """
    Runs `request.run` with a local shell.

    Each step gets fresh GITHUB_OUTPUT / GITHUB_ENV files; whatever the
    command appends there comes back as StepResult.outputs / StepResult.env.
    """

    def __init__(self, workdir: str | Path = "."):
        self.workdir = Path(workdir).resolve()

    def resolve_cwd(self, request: StepRequest) -> Path:
        cwd = (self.workdir / (request.cwd or ".")).resolve()
        if not cwd.exists():
            raise FileNotFoundError(f"[{request.job}] step '{request.step}' cwd not found: {cwd}")
        return cwd

    def build_command(self, request: StepRequest, cwd: Path, io_dir: Path) -> Tuple[List[str], Dict[str, str]]:
        env = os.environ.copy()
        env.update(request.env)
        env["GITHUB_OUTPUT"] = str(io_dir / "output")
        env["GITHUB_ENV"] = str(io_dir / "env")
        return [request.shell, "-c", request.run], env

    def run(self, request: StepRequest, cancel: threading.Event) -> StepResult:
        cwd = self.resolve_cwd(request)
        with tempfile.TemporaryDirectory(prefix="jobgraph-step-") as tmp:
            io_dir = Path(tmp)
            (io_dir / "output").touch()
            (io_dir / "env").touch()
            argv, env = self.build_command(request, cwd, io_dir)
            try:
                proc = subprocess.Popen(
                    argv,
                    cwd=str(cwd),
                    env=env,
                    text=True,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
            except FileNotFoundError as e:
                hint = TOOL_HINTS.get(argv[0], "Install the tool or fix PATH.")
                raise StepFailure(request.job, request.step, 127, f"{argv[0]} not found. {hint}") from e

            log = _communicate(proc, cancel)
            return StepResult(
                exit_code=proc.returncode,
                outputs=parse_kv_file(io_dir / "output"),
                env=parse_kv_file(io_dir / "env"),
                log=log,
            )


# ---------------------------------------------------------------------
# Container (docker run)
# ---------------------------------------------------------------------

CONTAINER_WORKSPACE = "/workspace"
CONTAINER_IO_DIR = "/jobgraph-io"


def check_docker_available(request: StepRequest) -> None:
    try:
        subprocess.run(["docker", "--version"], capture_output=True, check=True)
    except (subprocess.CalledProcessError, FileNotFoundError) as e:
        raise StepFailure(request.job, request.step, 127, f"Docker is not available. {TOOL_HINTS['docker']}") from e


class ContainerStepRunner(ShellStepRunner):
    """Runs `request.run` inside `request.image`, with the workdir mounted at /workspace."""

    def build_command(self, request: StepRequest, cwd: Path, io_dir: Path) -> Tuple[List[str], Dict[str, str]]:
        if not request.image:
            raise StepFailure(request.job, request.step, 2, "Container step has no image")

        rel = cwd.relative_to(self.workdir) if cwd.is_relative_to(self.workdir) else Path(".")
        workdir = CONTAINER_WORKSPACE if rel == Path(".") else f"{CONTAINER_WORKSPACE}/{rel.as_posix()}"

        cmd = ["docker", "run", "--rm"]
        cmd.extend(["-v", f"{self.workdir}:{CONTAINER_WORKSPACE}"])
        cmd.extend(["-v", f"{io_dir}:{CONTAINER_IO_DIR}"])
        for volume in request.volumes:
            cmd.extend(["-v", volume])
        cmd.extend(["-w", workdir])

        container_env = dict(request.env)
        container_env["GITHUB_OUTPUT"] = f"{CONTAINER_IO_DIR}/output"
        container_env["GITHUB_ENV"] = f"{CONTAINER_IO_DIR}/env"
        for key, value in container_env.items():
            cmd.extend(["-e", f"{key}={value}"])

        if request.user:
            cmd.extend(["--user", request.user])

        cmd.extend([request.image, request.shell, "-c", request.run])
        return cmd, os.environ.copy()

    def run(self, request: StepRequest, cancel: threading.Event) -> StepResult:
        check_docker_available(request)
        return super().run(request, cancel)


# ---------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------

class SubprocessStepRunner:
    """Default runner: shell steps locally, container steps through docker."""

    def __init__(self, workdir: str | Path = "."):
        self.shell = ShellStepRunner(workdir)
        self.container = ContainerStepRunner(workdir)

    def run(self, request: StepRequest, cancel: threading.Event) -> StepResult:
        if request.kind == "container":
            return self.container.run(request, cancel)
        if request.kind == "shell":
            return self.shell.run(request, cancel)
        raise ValueError(f"Unsupported step kind for subprocess runner: {request.kind}")


StepFunction = Callable[[StepRequest, threading.Event], Union[StepResult, int, None]]


class CallableStepRunner:
    """
    Wraps a plain function as a runner. The function may return a
    StepResult, an exit code, or None (success).
    """

    def __init__(self, fn: StepFunction):
        self.fn = fn

    def run(self, request: StepRequest, cancel: threading.Event) -> StepResult:
        result = self.fn(request, cancel)
        if result is None:
            return StepResult()
        if isinstance(result, int):
            return StepResult(exit_code=result)
        return result
