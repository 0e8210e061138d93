from __future__ import annotations
import time
from collections import Counter
from concurrent.futures import (
    Executor, Future, ProcessPoolExecutor, ThreadPoolExecutor, FIRST_COMPLETED, wait,
)
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from . import __version__
from .channel import Channel, Flow
from .config import ExecutionPlan, Tier, default_tiers
from .exceptions import GraphError, MissingInputError, StageExecutionError
from .log import log, log_ok, log_warn, log_err
from .sentinels import (
    sentinel_path, load_sentinel, write_sentinel, make_payload, fingerprint, sentinel_ok,
)
from .stage import Ctx, NodeState, Stage, Task, ToolVersion, execute_task


@dataclass
class RunStats:
    succeeded: int = 0
    cached: int = 0
    ignored: int = 0
    failed: int = 0
    per_stage: Dict[str, Counter] = field(default_factory=dict)
    states: Dict[str, str] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    started: float = field(default_factory=time.time)
    finished: Optional[float] = None

    def record(self, stage: str, outcome: str) -> None:
        setattr(self, outcome, getattr(self, outcome) + 1)
        self.per_stage.setdefault(stage, Counter())[outcome] += 1

    def tasks(self, stage: str) -> int:
        """Tasks scheduled for a stage, whatever their outcome."""
        return sum(self.per_stage.get(stage, Counter()).values())

    @property
    def ok(self) -> bool:
        return self.failed == 0

    @property
    def duration_sec(self) -> float:
        return round((self.finished or time.time()) - self.started, 3)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "succeeded": self.succeeded, "cached": self.cached,
            "ignored": self.ignored, "failed": self.failed,
            "duration_sec": self.duration_sec,
            "stages": {k: dict(v) for k, v in self.per_stage.items()},
            "states": dict(self.states),
            "errors": list(self.errors),
        }


def topo_sort(requires: Dict[str, List[str]]) -> List[str]:
    order = []
    temp = set()
    perm = set()

    def visit(n: str):
        if n in perm: return
        if n in temp: raise GraphError(f"Cycle at {n}")
        temp.add(n)
        for r in requires[n]:
            visit(r)
        perm.add(n); temp.remove(n); order.append(n)

    for name in requires:
        visit(name)
    return order


class Scheduler:
    """
    Cooperative dataflow scheduler.

    Stages are registered with add(); run() then loops:
      pump channel operators -> dispatch every ready (stage, item) pair to the
      worker pool of the stage's tier -> wait for the first task to finish ->
      emit its typed outputs into the stage's output channels.
    A stage is Done once its inputs are exhausted and no task is in flight; its
    output channels close then, which is what lets collect/if_empty resolve.
    """

    def __init__(
        self,
        flow: Flow,
        plan: Optional[ExecutionPlan] = None,
        *,
        workdir: Optional[Path] = None,
        executor: Optional[str] = None,
        error_strategy: Optional[str] = None,
        resume: Optional[bool] = None,
        stub: Optional[bool] = None,
        tiers: Optional[Dict[str, Tier]] = None,
    ):
        self.flow = flow
        self.plan = plan
        self.workdir = Path(workdir or (plan.workdir if plan else "work"))
        self.executor = executor or (plan.executor if plan else "process")
        self.error_strategy = error_strategy or (plan.error_strategy if plan else "terminate")
        self.resume = resume if resume is not None else bool(plan and plan.resume)
        self.stub = stub if stub is not None else bool(plan and plan.stub)
        self.tiers = dict(tiers or (plan.tiers if plan else default_tiers(4, 16)))
        self.stages: Dict[str, Stage] = {}
        self.stats = RunStats()
        self._values: Dict[str, Dict[str, Any]] = {}
        self._starved: Dict[str, str] = {}
        self._fired: set = set()
        self._versioned: set = set()
        self._labels: Dict[str, set] = {}
        self._running: Dict[Future, Tuple] = {}
        self._pools: Dict[str, Executor] = {}

    # ---- graph construction ----
    def add(self, stage: Stage) -> Stage:
        if stage.name in self.stages:
            raise GraphError(f"Duplicate stage name: {stage.name}")
        stage.bind(self.flow)
        self.stages[stage.name] = stage
        self._values[stage.name] = {}
        self._labels[stage.name] = set()
        if not self.is_active(stage.name):
            stage.state = NodeState.INACTIVE
            stage.close_outputs()
        return stage

    def is_active(self, name: str) -> bool:
        if self.plan is not None and name in self.plan.stages:
            return self.plan.is_active(name)
        return True

    def tier_of(self, stage: Stage) -> Tier:
        if self.plan is not None and stage.name in self.plan.stages:
            return self.tiers[self.plan.stages[stage.name].tier]
        return self.tiers["low"]

    def requires(self) -> Dict[str, List[str]]:
        """Stage -> upstream stages, traced through operator lineage."""
        producer: Dict[int, Any] = {}
        for op in self.flow.operators:
            for o in op.outs:
                producer[id(o)] = op
        for st in self.stages.values():
            for ch in st.out.values():
                producer[id(ch)] = st

        def upstream(ch: Channel, acc: set, seen: set) -> None:
            if id(ch) in seen:
                return
            seen.add(id(ch))
            p = producer.get(id(ch))
            if p is None:
                return
            if isinstance(p, Stage):
                acc.add(p.name)
                return
            for i in p.inputs:
                upstream(i, acc, seen)

        out: Dict[str, List[str]] = {}
        for name, st in self.stages.items():
            acc: set = set()
            for ch in st.inputs.values():
                upstream(ch, acc, set())
            out[name] = sorted(acc)
        return out

    def order(self) -> List[str]:
        return topo_sort(self.requires())

    # ---- execution ----
    def _pool(self, tier: Tier) -> Executor:
        if tier.name not in self._pools:
            cls = ProcessPoolExecutor if self.executor == "process" else ThreadPoolExecutor
            self._pools[tier.name] = cls(max_workers=tier.max_parallel)
        return self._pools[tier.name]

    def _ctx(self, stage: Stage) -> Ctx:
        tier = self.tier_of(stage)
        return Ctx(plan=self.plan, cpus=tier.cpus, memory_gb=tier.memory_gb,
                   stage_dir=self.workdir / stage.name)

    def _flags(self, name: str) -> Dict[str, Any]:
        if self.plan is not None and name in self.plan.stages:
            return dict(self.plan.flags(name))
        return {}

    def _submit(self, stage: Stage, item: Any) -> None:
        ctx = self._ctx(stage)
        values = dict(self._values[stage.name])
        task: Task = stage.command_fn(item, values, ctx)
        if task.label in self._labels[stage.name]:
            raise GraphError(f"{stage.name}: duplicate task label '{task.label}'")
        self._labels[stage.name].add(task.label)
        task = replace(task, stage=stage.name, stub=self.stub,
                       workdir=str(self.workdir / stage.name / task.label))

        for p in task.inputs:
            if not Path(p).exists():
                raise MissingInputError(p, what=f"{stage.name}[{task.label}] input")

        fp = fingerprint(task, self._flags(stage.name))
        spath = sentinel_path(self.workdir, stage.name, task.label)
        if self.resume:
            existing = load_sentinel(spath)
            if sentinel_ok(existing, fp, task.outputs):
                log(f"[{stage.name}] {task.label}: cached")
                self.stats.record(stage.name, "cached")
                self._emit(stage, item, values, ctx, existing.get("version_text", ""))
                return

        log(f"[{stage.name}] → {task.label}")
        fut = self._pool(self.tier_of(stage)).submit(execute_task, task)
        self._running[fut] = (stage, item, values, ctx, task, fp, spath)
        stage.state = NodeState.RUNNING

    def _emit(self, stage: Stage, item: Any, values: Dict[str, Any], ctx: Ctx, version_text: str) -> None:
        outs = stage.emit_fn(item, values, ctx) or {}
        for port, items in outs.items():
            if port not in stage.out:
                raise GraphError(f"{stage.name}: unknown output port '{port}'")
            stage.out[port].emit_all(items)
        if stage.tool and stage.name not in self._versioned:
            self._versioned.add(stage.name)
            stage.out["versions"].emit(ToolVersion(stage.tool, version_text))

    def _complete(self, fut: Future) -> None:
        stage, item, values, ctx, task, fp, spath = self._running.pop(fut)
        res = fut.result()
        if res.returncode == 0:
            write_sentinel(spath, make_payload(task, fp, res, __version__))
            self.stats.record(stage.name, "succeeded")
            log_ok(f"[{stage.name}] ✓ {task.label} ({res.duration_sec}s)")
            self._emit(stage, item, values, ctx, res.version_text)
            return

        err = StageExecutionError(stage.name, task.label, res.returncode,
                                  command=task.script(), stderr=res.stderr_tail)
        msg = f"{err}: {res.failed_step}"
        self.stats.errors.append(msg)
        if self.error_strategy == "ignore":
            self.stats.record(stage.name, "ignored")
            log_warn(f"[{stage.name}] {task.label}: exit {res.returncode} -- ignoring")
            return
        self.stats.record(stage.name, "failed")
        stage.state = NodeState.FAILED
        log_err(f"[{stage.name}] {task.label}: exit {res.returncode}")
        if res.stderr_tail:
            log_err(res.stderr_tail)
        raise err

    def _in_flight(self, name: str) -> int:
        return sum(1 for v in self._running.values() if v[0].name == name)

    def _dispatch(self, stage: Stage) -> bool:
        name = stage.name
        moved = False
        vals = self._values[name]
        for p in stage.value_ports:
            if p in vals or name in self._starved:
                continue
            got = stage.inputs[p].take()
            if got:
                vals[p] = got[0]
                moved = True
            elif stage.inputs[p].exhausted:
                # optional upstream produced nothing and no default was supplied
                self._starved[name] = p
                log_warn(f"[dag] {name}: input '{p}' closed empty; stage will not run")
                moved = True
        if name in self._starved:
            if stage.each:
                stage.inputs[stage.each].take()
            return moved
        if len(vals) < len(stage.value_ports):
            return moved

        if stage.each:
            for item in stage.inputs[stage.each].take():
                self._submit(stage, item)
                moved = True
        elif name not in self._fired:
            self._fired.add(name)
            self._submit(stage, None)
            moved = True
        return moved

    def _maybe_finish(self, stage: Stage) -> bool:
        name = stage.name
        if stage.state in (NodeState.INACTIVE, NodeState.DONE, NodeState.FAILED):
            return False
        if self._in_flight(name):
            return False
        if name not in self._starved:
            if len(self._values[name]) < len(stage.value_ports):
                return False
            if stage.each and not stage.inputs[stage.each].exhausted:
                return False
            if not stage.each and name not in self._fired:
                return False
        stage.state = NodeState.DONE
        stage.close_outputs()
        return True

    def run(self) -> RunStats:
        order = self.order()
        log(f"[dag] stages: {', '.join(n for n in order if self.stages[n].state != NodeState.INACTIVE)}")
        try:
            while True:
                moved = self.flow.pump()
                for name in order:
                    st = self.stages[name]
                    if st.state in (NodeState.WAITING, NodeState.RUNNING):
                        moved = self._dispatch(st) or moved
                        moved = self._maybe_finish(st) or moved
                if moved:
                    continue
                if not self._running:
                    break
                done, _ = wait(list(self._running), return_when=FIRST_COMPLETED)
                for fut in done:
                    self._complete(fut)
        except BaseException:
            for ex in self._pools.values():
                ex.shutdown(wait=True, cancel_futures=True)
            self._pools.clear()
            raise
        finally:
            self.stats.states = {n: s.state.value for n, s in self.stages.items()}
            self.stats.finished = time.time()

        for ex in self._pools.values():
            ex.shutdown(wait=True)
        self._pools.clear()

        stalled = [n for n, s in self.stages.items() if s.state in (NodeState.WAITING, NodeState.RUNNING)]
        if stalled:
            open_inputs = {n: [p for p, ch in self.stages[n].inputs.items() if not ch.closed] for n in stalled}
            raise GraphError(f"Stalled stages (inputs never closed): {open_inputs}")
        self.stats.states = {n: s.state.value for n, s in self.stages.items()}
        return self.stats
