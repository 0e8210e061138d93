from __future__ import annotations
import subprocess
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from .channel import Channel, Flow
from .config import ExecutionPlan


class NodeState(str, Enum):
    INACTIVE = "inactive"
    WAITING = "waiting"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


# --------------------------------------------------------------------
# Task description (picklable; shipped to worker processes)
# --------------------------------------------------------------------
@dataclass
class Cmd:
    """One shell-free pipeline: argv lists piped left to right, last stdout optionally to a file."""
    pipeline: List[List[str]]
    stdout: Optional[str] = None

    def render(self) -> str:
        s = " | ".join(" ".join(a) for a in self.pipeline)
        return f"{s} > {self.stdout}" if self.stdout else s


@dataclass
class PyCall:
    """A top-level function run inside the worker (must be importable by name)."""
    func: Callable[..., Any]
    kwargs: Dict[str, Any] = field(default_factory=dict)

    def render(self) -> str:
        args = ", ".join(f"{k}={v!r}" for k, v in sorted(self.kwargs.items()))
        return f"{self.func.__module__}.{self.func.__name__}({args})"


@dataclass
class Task:
    label: str
    steps: List[Cmd | PyCall]
    inputs: List[str] = field(default_factory=list)
    outputs: List[str] = field(default_factory=list)
    version_cmd: Optional[List[str]] = None
    stub_outputs: List[str] = field(default_factory=list)   # touched only by stub runs
    local: bool = False    # pure-Python bookkeeping; also runs in stub mode
    # filled by the scheduler
    stage: str = ""
    workdir: str = ""
    stub: bool = False

    def script(self) -> List[str]:
        return [s.render() for s in self.steps]


@dataclass
class TaskResult:
    stage: str
    label: str
    returncode: int
    duration_sec: float
    stderr_tail: str = ""
    version_text: str = ""
    failed_step: str = ""


@dataclass(frozen=True)
class ToolVersion:
    tool: str
    text: str


# --------------------------------------------------------------------
# Worker side
# --------------------------------------------------------------------
def _tail(path: Path, n: int = 20) -> str:
    try:
        lines = path.read_text(errors="replace").splitlines()
    except FileNotFoundError:
        return ""
    return "\n".join(lines[-n:])


def _touch(p: str) -> None:
    if p.endswith("/"):
        Path(p).mkdir(parents=True, exist_ok=True)
        return
    q = Path(p)
    q.parent.mkdir(parents=True, exist_ok=True)
    q.touch(exist_ok=True)


def _run_cmd(cmd: Cmd, cwd: Path, log) -> int:
    procs: List[subprocess.Popen] = []
    sink = open(cmd.stdout, "wb") if cmd.stdout else log
    try:
        prev = None
        for i, argv in enumerate(cmd.pipeline):
            last = i == len(cmd.pipeline) - 1
            p = subprocess.Popen(
                argv, cwd=str(cwd), stdin=prev,
                stdout=sink if last else subprocess.PIPE, stderr=log,
            )
            if prev is not None:
                prev.close()
            prev = p.stdout
            procs.append(p)
        codes = [p.wait() for p in procs]
    finally:
        if cmd.stdout:
            sink.close()
    # pipefail: first nonzero status wins
    return next((c for c in codes if c != 0), 0)


def execute_task(task: Task) -> TaskResult:
    """Run one task in its work directory. Never raises for tool failures; reports the exit status."""
    wd = Path(task.workdir)
    wd.mkdir(parents=True, exist_ok=True)
    log_path = wd / ".command.log"
    (wd / ".command.sh").write_text("\n".join(task.script()) + "\n")
    started = time.time()

    if task.stub and not task.local:
        for o in [*task.outputs, *task.stub_outputs]:
            _touch(o)
        return TaskResult(task.stage, task.label, 0, round(time.time() - started, 3), version_text="stub")

    for o in task.outputs:
        Path(o.rstrip("/")).parent.mkdir(parents=True, exist_ok=True)

    with open(log_path, "wb") as log:
        for step in task.steps:
            if isinstance(step, PyCall):
                try:
                    step.func(**step.kwargs)
                    rc = 0
                except Exception as e:
                    log.write(f"{type(e).__name__}: {e}\n".encode())
                    rc = 1
            else:
                try:
                    rc = _run_cmd(step, wd, log)
                except FileNotFoundError as e:
                    # executable not on PATH
                    log.write(f"{e}\n".encode())
                    rc = 127
            if rc != 0:
                log.flush()
                return TaskResult(task.stage, task.label, rc, round(time.time() - started, 3),
                                  stderr_tail=_tail(log_path), failed_step=step.render())

    version_text = ""
    if task.version_cmd:
        try:
            cp = subprocess.run(task.version_cmd, capture_output=True, text=True, check=False, timeout=60)
            version_text = (cp.stdout + cp.stderr).strip()
        except (OSError, subprocess.TimeoutExpired) as e:
            version_text = ""
            with open(log_path, "ab") as log:
                log.write(f"version probe failed: {e}\n".encode())
    return TaskResult(task.stage, task.label, 0, round(time.time() - started, 3), version_text=version_text)


# --------------------------------------------------------------------
# Stage node (main-process side)
# --------------------------------------------------------------------
@dataclass
class Ctx:
    plan: ExecutionPlan
    cpus: int
    memory_gb: int
    stage_dir: Path


@dataclass
class Stage:
    """
    One external-tool step of the graph.

    inputs      port -> channel. The port named by `each` is a queue: one task per
                item. All other ports are value ports: the stage waits for their
                single item and hands it to every task.
    command_fn  (item, values, ctx) -> Task        builds the tool invocation
    emit_fn     (item, values, ctx) -> {port: [...]}  typed outputs after success;
                this is also where variable-size results are discovered on disk
    """
    name: str
    inputs: Dict[str, Channel]
    command_fn: Callable[[Any, Dict[str, Any], Ctx], Task]
    emit_fn: Callable[[Any, Dict[str, Any], Ctx], Dict[str, List[Any]]]
    outputs: Sequence[str] = ()
    each: Optional[str] = None
    tool: Optional[str] = None
    state: NodeState = NodeState.WAITING
    out: Dict[str, Channel] = field(default_factory=dict)

    def bind(self, flow: Flow) -> "Stage":
        for port, ch in self.inputs.items():
            ch.claim(f"{self.name}.{port}")
        ports = list(self.outputs)
        if self.tool and "versions" not in ports:
            ports.append("versions")
        self.out = {p: flow.channel(f"{self.name}.{p}") for p in ports}
        return self

    @property
    def value_ports(self) -> List[str]:
        return [p for p in self.inputs if p != self.each]

    def close_outputs(self) -> None:
        for ch in self.out.values():
            if not ch.closed:
                ch.close()
