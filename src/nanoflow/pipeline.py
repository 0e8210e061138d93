# src/nanoflow/pipeline.py
from __future__ import annotations

from typing import Any, Dict, List, Optional

from .channel import Channel, Flow
from .completion import notify
from .config import ExecutionPlan
from .dag import RunStats, Scheduler
from .exceptions import ConfigValidationError
from .log import log, log_ok, log_err, set_verbose
from .records import AlignInput, RawRun, ReadSet
from .report import multiqc_emit, multiqc_task, run_summary_emit, run_summary_task
from .samplesheet import SampleCatalog
from .stage import Stage
from . import tools as T
from .versions import versions_emit, versions_task

# --------------------------------------------------------------------
# Public entrypoint
# --------------------------------------------------------------------
def run_pipeline(plan: ExecutionPlan) -> RunStats:
    """
    Execute one run of the pipeline.

    Samplesheet problems and missing genomes abort before any stage starts.
    A completion report is attempted whatever the outcome; the exception that
    ended the run (if any) is re-raised afterwards.

    Returns:
      RunStats with succeeded / cached / ignored / failed task counts.
    """
    set_verbose(plan.verbose)
    sched: Optional[Scheduler] = None
    error: Optional[BaseException] = None
    try:
        if plan.profile == "awsbatch":
            raise ConfigValidationError(
                "The awsbatch profile submits tasks to AWS Batch and cannot be run by the local scheduler",
                flag="--profile")
        catalog = SampleCatalog.from_csv(plan.samplesheet, plan)
        valid = catalog.write_normalized(plan.dir_info() / "samplesheet.valid.csv")
        log(f"[run] {len(catalog)} sample(s); normalized samplesheet: {valid}")
        sched = build_graph(plan, catalog)
        stats = sched.run()
    except Exception as e:
        error = e
        raise
    finally:
        s = sched.stats if sched is not None else RunStats()
        notify(plan, s.as_dict(), error)
        msg = (f"[run] {s.succeeded} succeeded, {s.cached} cached, "
               f"{s.ignored} ignored, {s.failed} failed ({s.duration_sec}s)")
        if error is None and s.ok:
            log_ok(msg)
        else:
            log_err(msg)
    return stats


# --------------------------------------------------------------------
# Graph
# --------------------------------------------------------------------
# stage -> tool name reported in the version manifest
TOOLS: Dict[str, str] = {
    "guppy": "guppy_basecaller",
    "qcat": "qcat",
    "pycoqc": "pycoQC",
    "nanoplot_summary": "NanoPlot",
    "nanoplot_fastq": "NanoPlot",
    "fastqc": "FastQC",
    "chrom_sizes": "pysam",
    "samtools": "samtools",
    "bedgraph": "bedtools",
    "bed12": "bedtools",
    "bigwig": "bedGraphToBigWig",
    "bigbed": "bedToBigBed",
}


def _genome_key(item: Any) -> Optional[str]:
    g = item.genome
    return g.key if g is not None else None


def _raw_run(plan: ExecutionPlan, catalog: SampleCatalog) -> Optional[RawRun]:
    if plan.input_path is None:
        return None
    if plan.demultiplex:
        keys = tuple(r.join_key for r in catalog)
    else:
        keys = (catalog.representative_sample,)
    return RawRun(path=plan.input_path, name=catalog.representative_sample, expected_keys=keys)


def build_graph(plan: ExecutionPlan, catalog: SampleCatalog, flow: Optional[Flow] = None) -> Scheduler:
    """
    Wire every stage of the pipeline into a Scheduler.

    The graph is always complete: stages the plan switches off are still
    added, and the Scheduler closes their outputs empty so that everything
    downstream (joins, collects, aggregators) resolves instead of waiting.
    """
    flow = flow or Flow()
    sched = Scheduler(flow, plan)
    stages: List[Stage] = []

    def add(name: str, inputs: Dict[str, Channel], command_fn, emit_fn, outputs=(), each=None,
            tool: Optional[str] = None) -> Stage:
        st = sched.add(Stage(name=name, inputs=inputs, command_fn=command_fn, emit_fn=emit_fn,
                             outputs=outputs, each=each, tool=tool))
        stages.append(st)
        return st

    produced = plan.basecall or plan.demultiplex
    raw = _raw_run(plan, catalog)

    # ---- basecalling / demultiplexing ----
    guppy = add("guppy", {"run": flow.of(raw) if raw and plan.basecall else flow.empty("guppy.in")},
                T.guppy_task, T.guppy_emit, outputs=("fastq", "summary"), each="run", tool=TOOLS["guppy"])
    qcat = add("qcat", {"run": flow.of(raw) if raw and not plan.basecall else flow.empty("qcat.in")},
               T.qcat_task, T.qcat_emit, outputs=("fastq",), each="run", tool=TOOLS["qcat"])

    records = flow.from_list(catalog.records, name="samplesheet")
    rec_join, rec_direct, rec_genome = records.split(3)

    demuxed = (guppy.out["fastq"].mix(qcat.out["fastq"]).flatten()
               .join(rec_join.filter(lambda r: produced),
                     key=lambda fq: fq.key, other_key=lambda r: r.join_key, name="demux.join")
               .map(ReadSet.joined))
    direct = rec_direct.filter(lambda r: not produced).map(ReadSet.from_record)
    reads_qc1, reads_qc2, reads_align, reads_report = demuxed.mix(direct, name="reads").split(4)

    # ---- QC ----
    summary_a, summary_b = guppy.out["summary"].split(2)
    pycoqc = add("pycoqc", {"summary": summary_a}, T.pycoqc_task, T.pycoqc_emit,
                 outputs=("mqc",), each="summary", tool=TOOLS["pycoqc"])
    add("nanoplot_summary", {"summary": summary_b}, T.nanoplot_summary_task, T.no_emit,
        each="summary", tool=TOOLS["nanoplot_summary"])
    add("nanoplot_fastq", {"reads": reads_qc1}, T.nanoplot_fastq_task, T.no_emit,
        each="reads", tool=TOOLS["nanoplot_fastq"])
    fastqc = add("fastqc", {"reads": reads_qc2}, T.fastqc_task, T.fastqc_emit,
                 outputs=("mqc",), each="reads", tool=TOOLS["fastqc"])

    # ---- reference bundle, built once per distinct genome ----
    genomes = (rec_genome.filter(lambda r: r.genome is not None)
               .map(lambda r: r.genome)
               .unique(key=lambda g: g.key, name="genomes"))
    sizes = add("chrom_sizes", {"genome": genomes}, T.chrom_sizes_task, T.chrom_sizes_emit,
                outputs=("sizes",), each="genome", tool=TOOLS["chrom_sizes"])
    index = add("index", {"sizes": sizes.out["sizes"]}, T.index_task, T.index_emit,
                outputs=("bundle",), each="sizes", tool=plan.aligner)

    # ---- alignment ----
    align_in = (index.out["bundle"]
                .cross(reads_align, key=lambda b: b.genome.key, other_key=_genome_key, name="align.cross")
                .map(AlignInput.crossed))
    align = add("align", {"input": align_in}, T.align_task, T.align_emit,
                outputs=("sam",), each="input")
    samtools = add("samtools", {"sam": align.out["sam"]}, T.samtools_task, T.samtools_emit,
                   outputs=("bam", "mqc"), each="sam", tool=TOOLS["samtools"])
    bam_bg, bam_bed, bam_report = samtools.out["bam"].split(3)
    stats_mqc, stats_report = samtools.out["mqc"].split(2)

    # ---- tracks ----
    bedgraph = add("bedgraph", {"bam": bam_bg}, T.bedgraph_task, T.bedgraph_emit,
                   outputs=("interval",), each="bam", tool=TOOLS["bedgraph"])
    bigwig = add("bigwig", {"interval": bedgraph.out["interval"]}, T.ucsc_task("bigwig"),
                 T.ucsc_emit("bigwig"), outputs=("track",), each="interval", tool=TOOLS["bigwig"])
    bed12 = add("bed12", {"bam": bam_bed}, T.bed12_task, T.bed12_emit,
                outputs=("interval",), each="bam", tool=TOOLS["bed12"])
    bigbed = add("bigbed", {"interval": bed12.out["interval"]}, T.ucsc_task("bigbed"),
                 T.ucsc_emit("bigbed"), outputs=("track",), each="interval", tool=TOOLS["bigbed"])

    # ---- aggregation ----
    graph_tools = list(dict.fromkeys(st.tool for st in stages if st.tool))
    probes = {"MultiQC": ["multiqc", "--version"]} if plan.is_active("multiqc") else {}
    version_ports = [st.out["versions"] for st in stages if "versions" in st.out]
    reported = version_ports[0].mix(*version_ports[1:], name="versions.mix")
    versions = add("versions", {"versions": reported.collect().if_empty([])},
                   versions_task(graph_tools + ["MultiQC"], probes), versions_emit, outputs=("mqc",))

    qc_files = pycoqc.out["mqc"].mix(fastqc.out["mqc"], stats_mqc, name="qc.mix")
    add("multiqc", {"qc": qc_files.collect().if_empty([]),
                    "versions": versions.out["mqc"].collect().if_empty([])},
        multiqc_task, multiqc_emit, outputs=("report",))

    tracks = bigwig.out["track"].mix(bigbed.out["track"], name="tracks")
    add("run_summary", {
        "reads": reads_report.collect().if_empty([]),
        "bams": bam_report.collect().if_empty([]),
        "tracks": tracks.collect().if_empty([]),
        "stats": stats_report.collect().if_empty([]),
    }, run_summary_task(catalog.sample_ids()), run_summary_emit, outputs=("summary",))

    return sched
