#!/usr/bin/env python3
from __future__ import annotations
from pathlib import Path
import json
import typer
from typing import Any, Dict, List, Optional

from . import __version__
from .config import RunOptions, resolve_plan, active_stages
from .exceptions import NanoflowError
from .log import log, log_ok, log_err, set_verbose
from .pipeline import run_pipeline
from .samplesheet import SampleCatalog
from .sentinels import remove_step_sentinels

app = typer.Typer(help="nanoflow: nanopore basecalling, QC and alignment pipeline")

# ----------------
# Helpers
# ----------------
def _parse_csv_list(s: str | None) -> List[str]:
    if not s:
        return []
    return [x.strip() for x in s.split(",") if x.strip()]

def _options(params_file: Optional[Path], values: Dict[str, Any]) -> RunOptions:
    """Params file first, then every option given on the command line (None = not given)."""
    opts = RunOptions.load(params_file) if params_file else RunOptions()
    return opts.update({k: (str(v) if isinstance(v, Path) else v) for k, v in values.items()})

def _fail(e: Exception) -> None:
    log_err(f"ERROR: {e}")
    raise typer.Exit(code=1)


# ----------------
# Commands
# ----------------
@app.command()
def run(
    params_file: Optional[Path] = typer.Option(None, "--params-file", exists=True, readable=True,
                                               help="YAML/JSON with any of the options below"),
    input: Optional[Path] = typer.Option(None, "--input", help="Samplesheet CSV (genome,barcode,sample,fastq)"),
    protocol: Optional[str] = typer.Option(None, "--protocol", help="DNA, cDNA or directRNA"),
    outdir: Optional[Path] = typer.Option(None, "--outdir"),
    workdir: Optional[Path] = typer.Option(None, "--workdir", help="Task work directories and sentinels"),
    # basecalling / demultiplexing
    input_path: Optional[Path] = typer.Option(None, "--input-path",
                                              help="Run directory (basecalling) or FASTQ to demultiplex"),
    flowcell: Optional[str] = typer.Option(None, "--flowcell"),
    kit: Optional[str] = typer.Option(None, "--kit"),
    guppy_config: Optional[Path] = typer.Option(None, "--guppy-config"),
    barcode_kit: Optional[str] = typer.Option(None, "--barcode-kit"),
    guppy_gpu: Optional[bool] = typer.Option(None, "--guppy-gpu/--no-guppy-gpu"),
    guppy_gpu_runners: Optional[int] = typer.Option(None, "--guppy-gpu-runners", min=1),
    guppy_cpu_threads: Optional[int] = typer.Option(None, "--guppy-cpu-threads", min=1),
    gpu_device: Optional[str] = typer.Option(None, "--gpu-device"),
    skip_basecalling: Optional[bool] = typer.Option(None, "--skip-basecalling/--basecalling"),
    skip_demultiplexing: Optional[bool] = typer.Option(None, "--skip-demultiplexing/--demultiplexing"),
    # alignment
    stranded: Optional[bool] = typer.Option(None, "--stranded/--unstranded"),
    aligner: Optional[str] = typer.Option(None, "--aligner", help="minimap2 or graphmap2"),
    save_align_intermeds: Optional[bool] = typer.Option(None, "--save-align-intermeds"),
    skip_alignment: Optional[bool] = typer.Option(None, "--skip-alignment/--alignment"),
    skip_bigwig: Optional[bool] = typer.Option(None, "--skip-bigwig"),
    skip_bigbed: Optional[bool] = typer.Option(None, "--skip-bigbed"),
    # QC
    skip_qc: Optional[bool] = typer.Option(None, "--skip-qc"),
    skip_pycoqc: Optional[bool] = typer.Option(None, "--skip-pycoqc"),
    skip_nanoplot: Optional[bool] = typer.Option(None, "--skip-nanoplot"),
    skip_fastqc: Optional[bool] = typer.Option(None, "--skip-fastqc"),
    skip_multiqc: Optional[bool] = typer.Option(None, "--skip-multiqc"),
    # references
    genomes_base: Optional[Path] = typer.Option(None, "--genomes-base", help="Root of the genome table paths"),
    genome_table: Optional[Path] = typer.Option(None, "--genome-table", help="JSON {name: {fasta: path}}"),
    # notification
    email: Optional[str] = typer.Option(None, "--email"),
    email_on_fail: Optional[str] = typer.Option(None, "--email-on-fail"),
    max_multiqc_email_size: Optional[str] = typer.Option(None, "--max-multiqc-email-size"),
    # engine
    max_cpus: Optional[int] = typer.Option(None, "--max-cpus", min=1),
    max_memory_gb: Optional[int] = typer.Option(None, "--max-memory-gb", min=1),
    executor: Optional[str] = typer.Option(None, "--executor", help="process or thread"),
    error_strategy: Optional[str] = typer.Option(None, "--error-strategy", help="terminate or ignore"),
    resume: Optional[bool] = typer.Option(None, "--resume/--no-resume"),
    force_stages: str = typer.Option("", "--force-stages", help="Comma-separated stages to recompute"),
    stub: Optional[bool] = typer.Option(None, "--stub", help="Touch declared outputs instead of running tools"),
    profile: Optional[str] = typer.Option(None, "--profile"),
    awsqueue: Optional[str] = typer.Option(None, "--awsqueue"),
    verbose: Optional[bool] = typer.Option(None, "--verbose/--quiet"),
):
    """Run the pipeline."""
    values = dict(locals())
    values.pop("params_file")
    values.pop("force_stages")
    try:
        opts = _options(params_file, values)
        set_verbose(opts.verbose)
        plan = resolve_plan(opts)
        for st in _parse_csv_list(force_stages):
            if st not in plan.stages:
                raise typer.BadParameter(f"Unknown stage '{st}'. Valid: {', '.join(plan.stages)}")
            n = remove_step_sentinels(plan.workdir, st)
            log(f"[run] --force-stages {st}: removed {n} sentinel(s)")
        stats = run_pipeline(plan)
    except NanoflowError as e:
        _fail(e)
    if stats.failed:
        raise typer.Exit(code=1)
    if stats.ignored:
        typer.secho(f"[run] {stats.ignored} task(s) failed and were ignored", fg=typer.colors.YELLOW, err=True)


@app.command()
def plan(
    params_file: Optional[Path] = typer.Option(None, "--params-file", exists=True, readable=True),
    input: Optional[Path] = typer.Option(None, "--input"),
    protocol: Optional[str] = typer.Option(None, "--protocol"),
    input_path: Optional[Path] = typer.Option(None, "--input-path"),
    barcode_kit: Optional[str] = typer.Option(None, "--barcode-kit"),
    skip_basecalling: Optional[bool] = typer.Option(None, "--skip-basecalling/--basecalling"),
    skip_demultiplexing: Optional[bool] = typer.Option(None, "--skip-demultiplexing/--demultiplexing"),
    skip_alignment: Optional[bool] = typer.Option(None, "--skip-alignment/--alignment"),
    aligner: Optional[str] = typer.Option(None, "--aligner"),
    skip_qc: Optional[bool] = typer.Option(None, "--skip-qc"),
    outdir: Optional[Path] = typer.Option(None, "--outdir"),
    max_cpus: Optional[int] = typer.Option(None, "--max-cpus", min=1),
    as_json: bool = typer.Option(False, "--json", help="Print the plan as JSON"),
):
    """Resolve options and print the execution plan without running anything."""
    values = dict(locals())
    for k in ("params_file", "as_json"):
        values.pop(k)
    try:
        p = resolve_plan(_options(params_file, values))
    except NanoflowError as e:
        _fail(e)
    if as_json:
        typer.echo(json.dumps(p.summary(), indent=2))
        return
    typer.echo(f"nanoflow {__version__}")
    typer.echo(f"samplesheet: {p.samplesheet}")
    typer.echo(f"basecall={p.basecall} demultiplex={p.demultiplex} align={p.align}"
               f"{f' ({p.aligner}, {p.protocol}, stranded={p.stranded})' if p.align else ''}")
    for name, sp in p.stages.items():
        t = p.tiers[sp.tier]
        mark = "✓" if sp.active else "-"
        typer.echo(f"  {mark} {name:<17} {sp.tier:<6} cpus={t.cpus} mem={t.memory_gb}G x{t.max_parallel}")
    typer.echo(f"active: {', '.join(active_stages(p))}")


@app.command("check-samplesheet")
def check_samplesheet(
    input: Path = typer.Option(..., "--input", exists=True, readable=True),
    out: Optional[Path] = typer.Option(None, "--out", help="Normalized CSV (default: samplesheet.valid.csv beside input)"),
    params_file: Optional[Path] = typer.Option(None, "--params-file", exists=True, readable=True),
    protocol: Optional[str] = typer.Option(None, "--protocol"),
    input_path: Optional[Path] = typer.Option(None, "--input-path"),
    barcode_kit: Optional[str] = typer.Option(None, "--barcode-kit"),
    skip_basecalling: Optional[bool] = typer.Option(None, "--skip-basecalling/--basecalling"),
    skip_demultiplexing: Optional[bool] = typer.Option(None, "--skip-demultiplexing/--demultiplexing"),
    skip_alignment: Optional[bool] = typer.Option(None, "--skip-alignment/--alignment"),
    genomes_base: Optional[Path] = typer.Option(None, "--genomes-base"),
    genome_table: Optional[Path] = typer.Option(None, "--genome-table"),
):
    """Validate a samplesheet and write its normalized form."""
    values = dict(locals())
    for k in ("params_file", "out"):
        values.pop(k)
    try:
        p = resolve_plan(_options(params_file, values))
        catalog = SampleCatalog.from_csv(p.samplesheet, p)
        dest = catalog.write_normalized(out or input.with_name("samplesheet.valid.csv"))
    except NanoflowError as e:
        _fail(e)
    log_ok(f"[samplesheet] {len(catalog)} sample(s) OK → {dest}")


@app.command()
def version():
    """Print the nanoflow version."""
    typer.echo(__version__)


if __name__ == "__main__":
    app()
