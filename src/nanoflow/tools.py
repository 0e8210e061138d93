# src/nanoflow/tools.py
"""
Command builders for the wrapped external tools.

Every stage has a `<stage>_task(item, values, ctx) -> Task` builder and a
`<stage>_emit(item, values, ctx) -> {port: [...]}` function; both derive
paths from the same `_<stage>_paths` helper so the declared outputs and the
emitted records never disagree. Helpers that run inside the worker
(`gather_fastq`, `gzip_fastqs`, `write_chrom_sizes`, `link_file`) are
top-level so the process pool can pickle them.
"""
from __future__ import annotations

import gzip
import os
import shutil
import sys
from pathlib import Path
from typing import Any, Dict, List, Tuple

import pandas as pd
import pysam

from .records import (
    AlignInput, Alignment, ChromSizes, DemuxFastq, Interval, RawRun, ReadSet,
    ReferenceBundle, SequencingSummary, SortedBam, Track,
)
from .samplesheet import GenomeReference
from .stage import Cmd, Ctx, PyCall, Task

FASTQ_GLOB = "*.fastq.gz"


# --------------------------------------------------------------------
# Worker-side helpers
# --------------------------------------------------------------------
def _concat(parts: List[Path], out: Path) -> None:
    # gzip members concatenate into a valid gzip stream
    out.parent.mkdir(parents=True, exist_ok=True)
    with open(out, "wb") as w:
        for p in parts:
            with open(p, "rb") as r:
                shutil.copyfileobj(r, w)


def gather_fastq(basecall_dir: str, fastq_dir: str, name: str) -> None:
    """One FASTQ per barcode directory, or a single '<name>.fastq.gz' if the run was not barcoded."""
    src, dst = Path(basecall_dir), Path(fastq_dir)
    dst.mkdir(parents=True, exist_ok=True)
    groups: Dict[str, List[Path]] = {}
    for d in sorted([*src.glob("barcode*"), *src.glob("pass/barcode*")]):
        if d.is_dir():
            groups.setdefault(d.name, []).extend(sorted(d.glob(FASTQ_GLOB)))
    if groups:
        for bc, parts in groups.items():
            _concat(parts, dst / f"{bc}.fastq.gz")
    else:
        _concat(sorted(src.rglob(FASTQ_GLOB)), dst / f"{name}.fastq.gz")


def gzip_fastqs(fastq_dir: str) -> None:
    for p in sorted(Path(fastq_dir).glob("*.fastq")):
        with open(p, "rb") as r, gzip.open(f"{p}.gz", "wb") as w:
            shutil.copyfileobj(r, w)
        p.unlink()


def link_file(src: str, dst: str) -> None:
    d = Path(dst)
    d.parent.mkdir(parents=True, exist_ok=True)
    if d.is_symlink() or d.exists():
        d.unlink()
    os.symlink(os.path.abspath(src), d)


def write_chrom_sizes(fasta: str, fai: str, sizes: str) -> None:
    """samtools faidx via pysam, then keep (name, length) columns."""
    pysam.faidx(fasta, "--fai-idx", fai)
    df = pd.read_csv(fai, sep="\t", header=None, usecols=[0, 1], dtype={0: str})
    df.to_csv(sizes, sep="\t", header=False, index=False)


def discover_fastq(fastq_dir: Path) -> Tuple[DemuxFastq, ...]:
    """Typed listing of a demultiplexed output directory (unclassified reads are dropped)."""
    found = sorted(Path(fastq_dir).glob(FASTQ_GLOB))
    return tuple(DemuxFastq.from_path(p) for p in found if not p.name.startswith("unclassified"))


def minimap2_preset(protocol: str, stranded: bool) -> List[str]:
    if protocol == "DNA":
        return ["-ax", "map-ont"]
    preset = ["-ax", "splice"]
    if stranded:
        preset.append("-uf")
    if protocol == "directRNA":
        preset.append("-k14")
    return preset


def _task_dir(ctx: Ctx, label: str) -> Path:
    return ctx.stage_dir / label


# --------------------------------------------------------------------
# Basecalling / demultiplexing
# --------------------------------------------------------------------
def _guppy_paths(ctx: Ctx) -> Dict[str, Path]:
    out = ctx.plan.dir_basecalling()
    return {"basecalling": out / "basecalling", "fastq": out / "fastq",
            "summary": out / "basecalling" / "sequencing_summary.txt"}


def guppy_task(run: RawRun, values: Dict[str, Any], ctx: Ctx) -> Task:
    f = ctx.plan.flags("guppy")
    p = _guppy_paths(ctx)
    argv = ["guppy_basecaller", "--input_path", str(run.path), "--save_path", str(p["basecalling"]),
            "--records_per_fastq", "0", "--compress_fastq"]
    if f["barcode_kit"]:
        argv += ["--barcode_kits", f["barcode_kit"]]
    if f["config"]:
        argv += ["--config", str(f["config"])]
    else:
        argv += ["--flowcell", f["flowcell"], "--kit", f["kit"]]
    if f["gpu"]:
        argv += ["--device", f["gpu_device"], "--num_callers", str(ctx.cpus),
                 "--cpu_threads_per_caller", str(f["cpu_threads"]),
                 "--gpu_runners_per_device", str(f["gpu_runners"])]
    else:
        argv += ["--num_callers", "2", "--cpu_threads_per_caller", str(max(1, ctx.cpus // 2))]
    fastqs = [str(p["fastq"] / f"{k}.fastq.gz") for k in run.expected_keys]
    return Task(
        label=run.name,
        steps=[Cmd([argv]), PyCall(gather_fastq, {"basecall_dir": str(p["basecalling"]),
                                                   "fastq_dir": str(p["fastq"]), "name": run.name})],
        inputs=[str(run.path)],
        outputs=[str(p["summary"]), str(p["fastq"]) + "/"],
        stub_outputs=fastqs,
        version_cmd=["guppy_basecaller", "--version"],
    )


def guppy_emit(run: RawRun, values: Dict[str, Any], ctx: Ctx) -> Dict[str, List[Any]]:
    p = _guppy_paths(ctx)
    return {"fastq": [discover_fastq(p["fastq"])], "summary": [SequencingSummary(p["summary"])]}


def qcat_task(run: RawRun, values: Dict[str, Any], ctx: Ctx) -> Task:
    fq_dir = ctx.plan.dir_demux() / "fastq"
    kit = ctx.plan.flags("qcat")["barcode_kit"]
    return Task(
        label=run.name,
        steps=[Cmd([["qcat", "-f", str(run.path), "-b", str(fq_dir), "--kit", kit, "--detect-middle"]]),
               PyCall(gzip_fastqs, {"fastq_dir": str(fq_dir)})],
        inputs=[str(run.path)],
        outputs=[str(fq_dir) + "/"],
        stub_outputs=[str(fq_dir / f"{k}.fastq.gz") for k in run.expected_keys],
        version_cmd=["qcat", "--version"],
    )


def qcat_emit(run: RawRun, values: Dict[str, Any], ctx: Ctx) -> Dict[str, List[Any]]:
    return {"fastq": [discover_fastq(ctx.plan.dir_demux() / "fastq")]}


# --------------------------------------------------------------------
# QC
# --------------------------------------------------------------------
def _pycoqc_paths(ctx: Ctx) -> Tuple[Path, Path]:
    d = ctx.plan.dir_qc("pycoqc")
    return d / "pycoQC_output.html", d / "pycoQC_output.json"


def pycoqc_task(summary: SequencingSummary, values: Dict[str, Any], ctx: Ctx) -> Task:
    html, js = _pycoqc_paths(ctx)
    return Task(
        label="summary",
        steps=[Cmd([["pycoQC", "-f", str(summary.path), "-o", str(html), "-j", str(js)]])],
        inputs=[str(summary.path)],
        outputs=[str(html), str(js)],
        version_cmd=["pycoQC", "--version"],
    )


def pycoqc_emit(summary: SequencingSummary, values: Dict[str, Any], ctx: Ctx) -> Dict[str, List[Any]]:
    return {"mqc": [_pycoqc_paths(ctx)[1]]}


def nanoplot_summary_task(summary: SequencingSummary, values: Dict[str, Any], ctx: Ctx) -> Task:
    out = ctx.plan.dir_qc("nanoplot") / "summary"
    return Task(
        label="summary",
        steps=[Cmd([["NanoPlot", "-t", str(ctx.cpus), "--summary", str(summary.path), "-o", str(out)]])],
        inputs=[str(summary.path)],
        outputs=[str(out / "NanoStats.txt")],
        version_cmd=["NanoPlot", "--version"],
    )


def nanoplot_fastq_task(reads: ReadSet, values: Dict[str, Any], ctx: Ctx) -> Task:
    out = ctx.plan.dir_qc("nanoplot") / "fastq" / reads.sample
    return Task(
        label=reads.sample,
        steps=[Cmd([["NanoPlot", "-t", str(ctx.cpus), "--fastq", str(reads.fastq), "-o", str(out)]])],
        inputs=[str(reads.fastq)],
        outputs=[str(out / "NanoStats.txt")],
        version_cmd=["NanoPlot", "--version"],
    )


def no_emit(item: Any, values: Dict[str, Any], ctx: Ctx) -> Dict[str, List[Any]]:
    return {}


def _fastqc_paths(reads: ReadSet, ctx: Ctx) -> Tuple[Path, Path]:
    d = ctx.plan.dir_qc("fastqc")
    return d / f"{reads.sample}_fastqc.html", d / f"{reads.sample}_fastqc.zip"


def fastqc_task(reads: ReadSet, values: Dict[str, Any], ctx: Ctx) -> Task:
    link = _task_dir(ctx, reads.sample) / f"{reads.sample}.fastq.gz"
    html, zipf = _fastqc_paths(reads, ctx)
    return Task(
        label=reads.sample,
        steps=[PyCall(link_file, {"src": str(reads.fastq), "dst": str(link)}),
               Cmd([["fastqc", "-q", "-t", str(ctx.cpus), "-o", str(html.parent), link.name]])],
        inputs=[str(reads.fastq)],
        outputs=[str(html), str(zipf)],
        version_cmd=["fastqc", "--version"],
    )


def fastqc_emit(reads: ReadSet, values: Dict[str, Any], ctx: Ctx) -> Dict[str, List[Any]]:
    return {"mqc": [_fastqc_paths(reads, ctx)[1]]}


# --------------------------------------------------------------------
# Reference genome bundle
# --------------------------------------------------------------------
def _sizes_path(genome: GenomeReference, ctx: Ctx) -> Path:
    return _task_dir(ctx, genome.stem) / f"{genome.stem}.sizes"


def chrom_sizes_task(genome: GenomeReference, values: Dict[str, Any], ctx: Ctx) -> Task:
    d = _task_dir(ctx, genome.stem)
    sizes = _sizes_path(genome, ctx)
    return Task(
        label=genome.stem,
        steps=[PyCall(write_chrom_sizes, {"fasta": str(genome.fasta), "fai": str(d / f"{genome.stem}.fai"),
                                          "sizes": str(sizes)})],
        inputs=[str(genome.fasta)],
        outputs=[str(sizes)],
        version_cmd=[sys.executable, "-c", "import pysam; print(pysam.__version__)"],
    )


def chrom_sizes_emit(genome: GenomeReference, values: Dict[str, Any], ctx: Ctx) -> Dict[str, List[Any]]:
    return {"sizes": [ChromSizes(genome=genome, sizes=_sizes_path(genome, ctx))]}


def _index_paths(cs: ChromSizes, ctx: Ctx) -> Tuple[Path, Path]:
    d = _task_dir(ctx, cs.genome.stem)
    fasta = d / cs.genome.fasta.name
    if ctx.plan.aligner == "graphmap2":
        return fasta, Path(f"{fasta}.gmidx")
    return fasta, d / f"{cs.genome.stem}.mmi"


def index_task(cs: ChromSizes, values: Dict[str, Any], ctx: Ctx) -> Task:
    f = ctx.plan.flags("index")
    fasta, index = _index_paths(cs, ctx)
    link = PyCall(link_file, {"src": str(cs.genome.fasta), "dst": str(fasta)})
    if f["aligner"] == "graphmap2":
        cmd = Cmd([["graphmap2", "align", "-t", str(ctx.cpus), "-I", "-r", str(fasta)]])
        version = ["graphmap2", "align", "--version"]
    else:
        cmd = Cmd([["minimap2", *minimap2_preset(f["protocol"], f["stranded"]), "-t", str(ctx.cpus),
                    "-d", str(index), str(fasta)]])
        version = ["minimap2", "--version"]
    return Task(
        label=cs.genome.stem,
        steps=[link, cmd],
        inputs=[str(cs.genome.fasta), str(cs.sizes)],
        outputs=[str(index)],
        version_cmd=version,
    )


def index_emit(cs: ChromSizes, values: Dict[str, Any], ctx: Ctx) -> Dict[str, List[Any]]:
    fasta, index = _index_paths(cs, ctx)
    return {"bundle": [ReferenceBundle(genome=cs.genome, fasta=fasta, index=index, sizes=cs.sizes)]}


# --------------------------------------------------------------------
# Alignment and BAM processing
# --------------------------------------------------------------------
def _sam_path(ai: AlignInput, ctx: Ctx) -> Path:
    return _task_dir(ctx, ai.sample) / f"{ai.sample}.sam"


def align_task(ai: AlignInput, values: Dict[str, Any], ctx: Ctx) -> Task:
    f = ctx.plan.flags("align")
    sam = _sam_path(ai, ctx)
    b, fq = ai.bundle, ai.reads.fastq
    if f["aligner"] == "graphmap2":
        cmd = Cmd([["graphmap2", "align", "-t", str(ctx.cpus), "-r", str(b.fasta), "-i", str(b.index),
                    "-d", str(fq), "-o", str(sam), "--extcigar"]])
    else:
        cmd = Cmd([["minimap2", *minimap2_preset(f["protocol"], f["stranded"]), "-t", str(ctx.cpus),
                    str(b.index), str(fq)]], stdout=str(sam))
    return Task(label=ai.sample, steps=[cmd], inputs=[str(b.index), str(fq)], outputs=[str(sam)])


def align_emit(ai: AlignInput, values: Dict[str, Any], ctx: Ctx) -> Dict[str, List[Any]]:
    return {"sam": [Alignment(sample=ai.sample, sam=_sam_path(ai, ctx), sizes=ai.bundle.sizes)]}


def _samtools_paths(aln: Alignment, ctx: Ctx) -> Dict[str, Path]:
    plan = ctx.plan
    keep = plan.flags("samtools")["save_intermeds"]
    bam_dir = plan.dir_align() if keep else _task_dir(ctx, aln.sample)
    sorted_bam = plan.dir_align() / f"{aln.sample}.sorted.bam"
    stats = plan.dir_stats()
    return {
        "bam": bam_dir / f"{aln.sample}.bam",
        "sorted": sorted_bam,
        "bai": Path(f"{sorted_bam}.bai"),
        "flagstat": stats / f"{sorted_bam.name}.flagstat",
        "idxstats": stats / f"{sorted_bam.name}.idxstats",
        "stats": stats / f"{sorted_bam.name}.stats",
    }


def samtools_task(aln: Alignment, values: Dict[str, Any], ctx: Ctx) -> Task:
    p = _samtools_paths(aln, ctx)
    t = str(ctx.cpus)
    sb = str(p["sorted"])
    return Task(
        label=aln.sample,
        steps=[
            Cmd([["samtools", "view", "-b", "-h", "-O", "BAM", "-@", t, "-o", str(p["bam"]), str(aln.sam)]]),
            Cmd([["samtools", "sort", "-@", t, "-o", sb, "-T", aln.sample, str(p["bam"])]]),
            Cmd([["samtools", "index", sb]]),
            Cmd([["samtools", "flagstat", sb]], stdout=str(p["flagstat"])),
            Cmd([["samtools", "idxstats", sb]], stdout=str(p["idxstats"])),
            Cmd([["samtools", "stats", sb]], stdout=str(p["stats"])),
        ],
        inputs=[str(aln.sam)],
        outputs=[str(p[k]) for k in ("sorted", "bai", "flagstat", "idxstats", "stats")],
        version_cmd=["samtools", "--version"],
    )


def samtools_emit(aln: Alignment, values: Dict[str, Any], ctx: Ctx) -> Dict[str, List[Any]]:
    p = _samtools_paths(aln, ctx)
    return {
        "bam": [SortedBam(sample=aln.sample, bam=p["sorted"], bai=p["bai"], sizes=aln.sizes)],
        "mqc": [p["flagstat"], p["idxstats"], p["stats"]],
    }


# --------------------------------------------------------------------
# Coverage / feature tracks
# --------------------------------------------------------------------
def _interval_path(bam: SortedBam, ctx: Ctx, ext: str) -> Path:
    return _task_dir(ctx, bam.sample) / f"{bam.sample}.{ext}"


def bedgraph_task(bam: SortedBam, values: Dict[str, Any], ctx: Ctx) -> Task:
    out = _interval_path(bam, ctx, "bedGraph")
    return Task(
        label=bam.sample,
        steps=[Cmd([["bedtools", "genomecov", "-split", "-ibam", str(bam.bam), "-bg"],
                    ["sort", "-k1,1", "-k2,2n"]], stdout=str(out))],
        inputs=[str(bam.bam)],
        outputs=[str(out)],
        version_cmd=["bedtools", "--version"],
    )


def bedgraph_emit(bam: SortedBam, values: Dict[str, Any], ctx: Ctx) -> Dict[str, List[Any]]:
    return {"interval": [Interval(bam.sample, _interval_path(bam, ctx, "bedGraph"), bam.sizes)]}


def bed12_task(bam: SortedBam, values: Dict[str, Any], ctx: Ctx) -> Task:
    out = _interval_path(bam, ctx, "bed12")
    return Task(
        label=bam.sample,
        steps=[Cmd([["bedtools", "bamtobed", "-bed12", "-cigar", "-i", str(bam.bam)],
                    ["sort", "-k1,1", "-k2,2n"]], stdout=str(out))],
        inputs=[str(bam.bam)],
        outputs=[str(out)],
        version_cmd=["bedtools", "--version"],
    )


def bed12_emit(bam: SortedBam, values: Dict[str, Any], ctx: Ctx) -> Dict[str, List[Any]]:
    return {"interval": [Interval(bam.sample, _interval_path(bam, ctx, "bed12"), bam.sizes)]}


_UCSC = {
    "bigwig": ("bedGraphToBigWig", "bigWig"),
    "bigbed": ("bedToBigBed", "bigBed"),
}


def _track_path(kind: str, iv: Interval, ctx: Ctx) -> Path:
    d = ctx.plan.dir_bigwig() if kind == "bigwig" else ctx.plan.dir_bigbed()
    return d / f"{iv.sample}.{_UCSC[kind][1]}"


def ucsc_task(kind: str):
    tool = _UCSC[kind][0]

    def build(iv: Interval, values: Dict[str, Any], ctx: Ctx) -> Task:
        out = _track_path(kind, iv, ctx)
        return Task(
            label=iv.sample,
            steps=[Cmd([[tool, str(iv.path), str(iv.sizes), str(out)]])],
            inputs=[str(iv.path), str(iv.sizes)],
            outputs=[str(out)],
        )
    return build


def ucsc_emit(kind: str):
    def emit(iv: Interval, values: Dict[str, Any], ctx: Ctx) -> Dict[str, List[Any]]:
        return {"track": [Track(sample=iv.sample, kind=kind, path=_track_path(kind, iv, ctx))]}
    return emit
