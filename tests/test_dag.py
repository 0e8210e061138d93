import pathlib

import pytest

from nanoflow.channel import Flow
from nanoflow.dag import Scheduler, topo_sort
from nanoflow.exceptions import GraphError, MissingInputError, StageExecutionError
from nanoflow.stage import Cmd, NodeState, PyCall, Stage, Task


# ---- worker-side helpers (must be importable top-level functions) ----
def write_text(path: str, text: str) -> None:
    pathlib.Path(path).parent.mkdir(parents=True, exist_ok=True)
    pathlib.Path(path).write_text(text)


def explode(path: str, text: str) -> None:
    raise RuntimeError(f"cannot make {path}")


def _writer(tmp: pathlib.Path, fail_on=()):
    def build(item, values, ctx):
        out = tmp / "out" / f"{item}.txt"
        func = explode if item in fail_on else write_text
        return Task(label=str(item), steps=[PyCall(func, {"path": str(out), "text": f"{item}\n"})],
                    outputs=[str(out)])
    return build


def _emit_path(tmp: pathlib.Path):
    def emit(item, values, ctx):
        return {"out": [tmp / "out" / f"{item}.txt"]}
    return emit


def _sched(flow, tmp, **kw):
    kw.setdefault("executor", "thread")
    return Scheduler(flow, workdir=tmp / "work", **kw)


def _aggregate(tmp: pathlib.Path):
    def build(item, values, ctx):
        files = sorted(pathlib.Path(p).name for p in values["files"])
        dest = tmp / "report.txt"
        return Task(label="all", steps=[PyCall(write_text, {"path": str(dest), "text": ",".join(files) + "\n"})],
                    outputs=[str(dest)])
    return build


def test_topo_sort_and_cycle():
    assert topo_sort({"a": [], "b": ["a"], "c": ["b", "a"]}) == ["a", "b", "c"]
    with pytest.raises(GraphError, match="Cycle"):
        topo_sort({"a": ["b"], "b": ["a"]})


def test_fan_out_then_aggregate(tmp_path):
    flow = Flow()
    sched = _sched(flow, tmp_path)
    per = sched.add(Stage("per", {"item": flow.of("S1", "S2", "S3")}, _writer(tmp_path), _emit_path(tmp_path),
                          outputs=("out",), each="item"))
    agg = sched.add(Stage("agg", {"files": per.out["out"].collect().if_empty([])},
                          _aggregate(tmp_path), lambda i, v, c: {}))
    assert sched.order() == ["per", "agg"]
    stats = sched.run()
    assert stats.ok and stats.succeeded == 4
    assert stats.tasks("per") == 3
    assert (tmp_path / "report.txt").read_text() == "S1.txt,S2.txt,S3.txt\n"
    assert per.state == agg.state == NodeState.DONE
    assert (tmp_path / "work" / "_sentinels" / "per" / "S2.ok.json").exists()
    assert (tmp_path / "work" / "per" / "S2" / ".command.sh").exists()


def test_empty_upstream_resolves_aggregate(tmp_path):
    flow = Flow()
    sched = _sched(flow, tmp_path)
    per = sched.add(Stage("per", {"item": flow.empty()}, _writer(tmp_path), _emit_path(tmp_path),
                          outputs=("out",), each="item"))
    sched.add(Stage("agg", {"files": per.out["out"].collect().if_empty([])},
                    _aggregate(tmp_path), lambda i, v, c: {}))
    stats = sched.run()
    assert stats.succeeded == 1
    assert (tmp_path / "report.txt").read_text() == "\n"


def test_starved_value_port_skips_stage(tmp_path, capsys):
    flow = Flow()
    sched = _sched(flow, tmp_path)
    st = sched.add(Stage("needs_value", {"files": flow.empty().collect()},
                         _aggregate(tmp_path), lambda i, v, c: {}, outputs=("out",)))
    stats = sched.run()
    assert st.state == NodeState.DONE and st.out["out"].closed
    assert stats.succeeded == 0
    assert "closed empty" in capsys.readouterr().err


def test_terminate_strategy_raises(tmp_path):
    flow = Flow()
    sched = _sched(flow, tmp_path, error_strategy="terminate")
    sched.add(Stage("per", {"item": flow.of("ok", "bad")}, _writer(tmp_path, fail_on={"bad"}),
                    _emit_path(tmp_path), outputs=("out",), each="item"))
    with pytest.raises(StageExecutionError) as ei:
        sched.run()
    assert ei.value.stage == "per" and ei.value.label == "bad"
    assert ei.value.returncode == 1
    assert "RuntimeError" in ei.value.stderr
    assert sched.stats.failed == 1
    assert not (tmp_path / "work" / "_sentinels" / "per" / "bad.ok.json").exists()


def test_ignore_strategy_counts_separately(tmp_path):
    flow = Flow()
    sched = _sched(flow, tmp_path, error_strategy="ignore")
    per = sched.add(Stage("per", {"item": flow.of("a", "bad", "c")}, _writer(tmp_path, fail_on={"bad"}),
                          _emit_path(tmp_path), outputs=("out",), each="item"))
    sched.add(Stage("agg", {"files": per.out["out"].collect().if_empty([])},
                    _aggregate(tmp_path), lambda i, v, c: {}))
    stats = sched.run()
    assert (stats.succeeded, stats.ignored, stats.failed) == (3, 1, 0)
    assert stats.ok
    assert (tmp_path / "report.txt").read_text() == "a.txt,c.txt\n"
    assert "per[bad] exited with status 1" in stats.errors[0]


def test_missing_executable_is_status_127(tmp_path):
    flow = Flow()
    sched = _sched(flow, tmp_path, error_strategy="ignore")

    def build(item, values, ctx):
        return Task(label="x", steps=[Cmd([["nanoflow-no-such-tool-xyz", "--flag"]])])
    sched.add(Stage("tool", {"item": flow.of(1)}, build, lambda i, v, c: {}, each="item"))
    stats = sched.run()
    assert stats.ignored == 1
    assert "status 127" in stats.errors[0]


def test_resume_reports_cached(tmp_path):
    def graph():
        flow = Flow()
        sched = _sched(flow, tmp_path, resume=True)
        sched.add(Stage("per", {"item": flow.of("S1", "S2")}, _writer(tmp_path), _emit_path(tmp_path),
                        outputs=("out",), each="item"))
        return sched

    first = graph().run()
    assert (first.succeeded, first.cached) == (2, 0)
    second = graph().run()
    assert (second.succeeded, second.cached) == (0, 2)

    (tmp_path / "out" / "S1.txt").unlink()
    third = graph().run()
    assert (third.succeeded, third.cached) == (1, 1)


def test_missing_input_is_fatal(tmp_path):
    flow = Flow()
    sched = _sched(flow, tmp_path)

    def build(item, values, ctx):
        return Task(label="x", steps=[], inputs=[str(tmp_path / "absent.bam")])
    sched.add(Stage("reader", {"item": flow.of(1)}, build, lambda i, v, c: {}, each="item"))
    with pytest.raises(MissingInputError, match="absent.bam"):
        sched.run()


def test_duplicate_labels_and_ports_rejected(tmp_path):
    flow = Flow()
    sched = _sched(flow, tmp_path)

    def build(item, values, ctx):
        return Task(label="same", steps=[])
    sched.add(Stage("dup", {"item": flow.of(1, 2)}, build, lambda i, v, c: {}, each="item"))
    with pytest.raises(GraphError, match="duplicate task label"):
        sched.run()

    flow = Flow()
    sched = _sched(flow, tmp_path / "b")
    sched.add(Stage("bad_port", {"item": flow.of(1)}, lambda i, v, c: Task(label="one", steps=[]),
                    lambda i, v, c: {"nope": [1]}, each="item"))
    with pytest.raises(GraphError, match="unknown output port"):
        sched.run()


def test_version_reported_once_per_stage(tmp_path):
    flow = Flow()
    sched = _sched(flow, tmp_path, stub=True)
    per = sched.add(Stage("per", {"item": flow.of("S1", "S2")}, _writer(tmp_path), _emit_path(tmp_path),
                          outputs=("out",), each="item", tool="writer"))
    versions = per.out["versions"].collect()
    stats = sched.run()
    flow.pump()
    assert stats.succeeded == 2
    (got,) = versions.items
    assert [v.tool for v in got] == ["writer"]
    # stub runs only touch declared outputs
    assert (tmp_path / "out" / "S1.txt").read_text() == ""


def test_process_pool_runs_package_callables(tmp_path):
    from nanoflow.tools import link_file
    src = tmp_path / "src.txt"
    src.write_text("data\n")
    dst = tmp_path / "linked" / "dst.txt"

    def build(item, values, ctx):
        return Task(label="link", steps=[PyCall(link_file, {"src": str(src), "dst": str(dst)})],
                    inputs=[str(src)], outputs=[str(dst)])
    flow = Flow()
    sched = Scheduler(flow, workdir=tmp_path / "work", executor="process")
    sched.add(Stage("link", {"item": flow.of(1)}, build, lambda i, v, c: {}, each="item"))
    stats = sched.run()
    assert stats.succeeded == 1
    assert dst.is_symlink() and dst.read_text() == "data\n"
