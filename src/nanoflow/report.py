# src/nanoflow/report.py
"""
Run-level aggregation: the MultiQC report and pipeline_info/run_summary.tsv.

Both stages take collected lists (`collect().if_empty([])`), so an inactive
upstream subgraph hands them an empty list instead of blocking them.
"""
from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import pandas as pd

from .stage import Cmd, Ctx, PyCall, Task

_MAPPED = re.compile(r"^(\d+)\s*\+\s*\d+\s+mapped\s", re.MULTILINE)
_TOTAL = re.compile(r"^(\d+)\s*\+\s*\d+\s+in total", re.MULTILINE)


def parse_flagstat(path: str | Path) -> Dict[str, Optional[int]]:
    """Total and mapped read counts from `samtools flagstat` output (None when unreadable)."""
    p = Path(path)
    text = p.read_text() if p.exists() else ""
    total, mapped = _TOTAL.search(text), _MAPPED.search(text)
    return {
        "total_reads": int(total.group(1)) if total else None,
        "mapped_reads": int(mapped.group(1)) if mapped else None,
    }


def summary_table(
    samples: Sequence[str],
    reads: Sequence[Dict[str, Any]],
    bams: Sequence[Dict[str, Any]],
    tracks: Sequence[Dict[str, Any]],
    stats: Sequence[str],
) -> pd.DataFrame:
    """One row per samplesheet sample; columns stay empty for anything that was not produced."""
    by_reads = {r["sample"]: r for r in reads}
    by_bam = {b["sample"]: b for b in bams}
    flagstat = {Path(s).name.split(".sorted.bam")[0]: s for s in stats if str(s).endswith(".flagstat")}
    rows = []
    for s in samples:
        r, b = by_reads.get(s, {}), by_bam.get(s, {})
        row = {
            "sample": s,
            "genome": r.get("genome", ""),
            "fastq": r.get("fastq", ""),
            "bam": b.get("bam", ""),
            "bigwig": "",
            "bigbed": "",
        }
        for t in tracks:
            if t["sample"] == s:
                row[t["kind"]] = t["path"]
        row.update(parse_flagstat(flagstat[s]) if s in flagstat else {"total_reads": None, "mapped_reads": None})
        rows.append(row)
    df = pd.DataFrame(rows, columns=["sample", "genome", "fastq", "bam", "bigwig", "bigbed",
                                     "total_reads", "mapped_reads"])
    return df.astype({"total_reads": "Int64", "mapped_reads": "Int64"})


def write_run_summary(out_tsv: str, **kwargs: Any) -> None:
    df = summary_table(**kwargs)
    Path(out_tsv).parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(out_tsv, sep="\t", index=False)


# --------------------------------------------------------------------
# run_summary stage
# --------------------------------------------------------------------
def _summary_path(ctx: Ctx) -> Path:
    return ctx.plan.dir_info() / "run_summary.tsv"


def run_summary_task(samples: Sequence[str]):
    sample_ids = list(samples)

    def build(item: Any, values: Dict[str, Any], ctx: Ctx) -> Task:
        reads = [{"sample": r.sample, "fastq": str(r.fastq),
                  "genome": r.genome.identity if r.genome else ""} for r in values.get("reads") or []]
        bams = [{"sample": b.sample, "bam": str(b.bam)} for b in values.get("bams") or []]
        tracks = [{"sample": t.sample, "kind": t.kind, "path": str(t.path)} for t in values.get("tracks") or []]
        stats = [str(s) for s in values.get("stats") or []]
        out = _summary_path(ctx)
        return Task(
            label="summary",
            steps=[PyCall(write_run_summary, {
                "out_tsv": str(out), "samples": sample_ids,
                "reads": reads, "bams": bams, "tracks": tracks, "stats": stats,
            })],
            outputs=[str(out)],
            local=True,
        )
    return build


def run_summary_emit(item: Any, values: Dict[str, Any], ctx: Ctx) -> Dict[str, List[Any]]:
    return {"summary": [_summary_path(ctx)]}


# --------------------------------------------------------------------
# multiqc stage
# --------------------------------------------------------------------
def _multiqc_paths(ctx: Ctx) -> Dict[str, Path]:
    d = ctx.plan.dir_multiqc()
    return {"dir": d, "html": d / "multiqc_report.html", "data": d / "multiqc_data"}


def multiqc_task(item: Any, values: Dict[str, Any], ctx: Ctx) -> Task:
    p = _multiqc_paths(ctx)
    files = [str(f) for f in values.get("qc") or []]
    files += [str(f) for f in values.get("versions") or []]
    return Task(
        label="report",
        steps=[Cmd([["multiqc", "-f", "-o", str(p["dir"]), "--filename", p["html"].name, *files]])],
        inputs=files,
        outputs=[str(p["html"]), str(p["data"]) + "/"],
    )


def multiqc_emit(item: Any, values: Dict[str, Any], ctx: Ctx) -> Dict[str, List[Any]]:
    return {"report": [_multiqc_paths(ctx)["html"]]}
