from __future__ import annotations
import json
import re
from dataclasses import dataclass, field, fields, asdict
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

import yaml

from .exceptions import ConfigValidationError
from .log import log_warn

ALIGNERS = ("minimap2", "graphmap2")
PROTOCOLS = ("DNA", "cDNA", "directRNA")
ERROR_STRATEGIES = ("terminate", "ignore")
EXECUTORS = ("process", "thread")

# stage name -> resource tier
STAGE_TIERS: Dict[str, str] = {
    "guppy": "high",
    "qcat": "medium",
    "pycoqc": "low",
    "nanoplot_summary": "low",
    "nanoplot_fastq": "low",
    "fastqc": "low",
    "chrom_sizes": "low",
    "index": "high",
    "align": "high",
    "samtools": "medium",
    "bedgraph": "medium",
    "bigwig": "low",
    "bed12": "medium",
    "bigbed": "low",
    "versions": "low",
    "multiqc": "low",
    "run_summary": "low",
}

# (cpus, memory_gb) before scaling by --max-cpus / --max-memory
_TIER_DEFAULTS: Dict[str, tuple] = {
    "low": (2, 6),
    "medium": (6, 36),
    "high": (12, 72),
}


@dataclass
class RunOptions:
    """Raw run options, as given on the command line or in a params file."""
    input: Optional[str] = None
    protocol: Optional[str] = None
    outdir: str = "./results"
    workdir: str = "./work"

    # basecalling / demultiplexing
    input_path: Optional[str] = None
    flowcell: Optional[str] = None
    kit: Optional[str] = None
    guppy_config: Optional[str] = None
    barcode_kit: Optional[str] = None
    guppy_gpu: bool = False
    guppy_gpu_runners: int = 6
    guppy_cpu_threads: int = 1
    gpu_device: str = "auto"
    skip_basecalling: bool = False
    skip_demultiplexing: bool = False

    # alignment
    stranded: bool = False
    aligner: str = "minimap2"
    save_align_intermeds: bool = False
    skip_alignment: bool = False

    # tracks
    skip_bigwig: bool = False
    skip_bigbed: bool = False

    # QC
    skip_qc: bool = False
    skip_pycoqc: bool = False
    skip_nanoplot: bool = False
    skip_fastqc: bool = False
    skip_multiqc: bool = False

    # reference genomes
    genomes_base: Optional[str] = None
    genome_table: Optional[str] = None

    # notification
    email: Optional[str] = None
    email_on_fail: Optional[str] = None
    max_multiqc_email_size: str = "25 MB"

    # engine
    max_cpus: int = 16
    max_memory_gb: int = 128
    executor: str = "process"
    error_strategy: str = "terminate"
    resume: bool = False
    stub: bool = False
    verbose: bool = True
    profile: Optional[str] = None
    awsqueue: Optional[str] = None

    @classmethod
    def load(cls, path: str | Path) -> "RunOptions":
        """Read options from a YAML or JSON params file."""
        p = Path(path)
        text = p.read_text()
        if p.suffix.lower() == ".json":
            d = json.loads(text)
        else:
            d = yaml.safe_load(text) or {}
        if not isinstance(d, dict):
            raise ConfigValidationError(f"params file must hold a mapping: {p}", flag="--params-file")
        return cls().update(d)

    def update(self, values: Mapping[str, Any]) -> "RunOptions":
        """Apply values (None entries are ignored); unknown keys are fatal."""
        known = {f.name for f in fields(self)}
        bad = sorted(k for k in values if k not in known)
        if bad:
            raise ConfigValidationError(f"Unknown option(s): {', '.join(bad)}", flag="--params-file")
        for k, v in values.items():
            if v is not None:
                setattr(self, k, v)
        return self


@dataclass(frozen=True)
class Tier:
    name: str
    cpus: int
    memory_gb: int
    max_parallel: int


@dataclass(frozen=True)
class StagePlan:
    name: str
    active: bool
    tier: str
    flags: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))


@dataclass(frozen=True)
class ExecutionPlan:
    """Immutable execution plan; built once by resolve_plan() and never mutated."""
    samplesheet: Path
    protocol: Optional[str]
    aligner: str
    stranded: bool
    input_path: Optional[Path]
    basecall: bool
    demultiplex: bool
    align: bool
    outdir: Path
    workdir: Path
    stages: Mapping[str, StagePlan]
    tiers: Mapping[str, Tier]
    genomes_base: Optional[Path] = None
    genome_table: Optional[Path] = None
    email: Optional[str] = None
    email_on_fail: Optional[str] = None
    max_multiqc_email_size: int = 25 * 1024 ** 2
    executor: str = "process"
    error_strategy: str = "terminate"
    resume: bool = False
    stub: bool = False
    verbose: bool = True
    profile: Optional[str] = None

    def is_active(self, stage: str) -> bool:
        sp = self.stages.get(stage)
        return bool(sp and sp.active)

    def tier_for(self, stage: str) -> Tier:
        return self.tiers[self.stages[stage].tier]

    def flags(self, stage: str) -> Mapping[str, Any]:
        return self.stages[stage].flags

    # output layout
    def dir_info(self) -> Path: return self.outdir / "pipeline_info"
    def dir_basecalling(self) -> Path: return self.outdir / "guppy"
    def dir_demux(self) -> Path: return self.outdir / "qcat"
    def dir_qc(self, tool: str) -> Path: return self.outdir / tool
    def dir_align(self) -> Path: return self.outdir / self.aligner
    def dir_bigwig(self) -> Path: return self.dir_align() / "bigwig"
    def dir_bigbed(self) -> Path: return self.dir_align() / "bigbed"
    def dir_stats(self) -> Path: return self.dir_align() / "samtools_stats"
    def dir_multiqc(self) -> Path: return self.outdir / "multiqc"

    def summary(self) -> Dict[str, Any]:
        """Flat, JSON-friendly view used by `nanoflow plan` and the run report."""
        return {
            "samplesheet": str(self.samplesheet),
            "protocol": self.protocol,
            "aligner": self.aligner if self.align else None,
            "stranded": self.stranded,
            "basecall": self.basecall,
            "demultiplex": self.demultiplex,
            "align": self.align,
            "outdir": str(self.outdir),
            "workdir": str(self.workdir),
            "error_strategy": self.error_strategy,
            "resume": self.resume,
            "stub": self.stub,
            "stages": {n: s.active for n, s in self.stages.items()},
            "tiers": {n: asdict(t) for n, t in self.tiers.items()},
        }


# --------------------------------------------------------------------
# Helpers
# --------------------------------------------------------------------
_SIZE_UNITS = {"B": 1, "KB": 1024, "MB": 1024 ** 2, "GB": 1024 ** 3, "TB": 1024 ** 4}


def parse_size(s: str | int) -> int:
    """'25 MB' / '500.KB' / '1GB' -> bytes."""
    if isinstance(s, int):
        return s
    m = re.fullmatch(r"\s*(\d+(?:\.\d+)?)\s*\.?\s*([KMGT]?B)\s*", str(s), flags=re.IGNORECASE)
    if not m:
        raise ConfigValidationError(f"Cannot parse size '{s}'", flag="--max-multiqc-email-size")
    return int(float(m.group(1)) * _SIZE_UNITS[m.group(2).upper()])


def _check_enum(value: Optional[str], allowed: tuple, flag: str) -> str:
    if value not in allowed:
        raise ConfigValidationError(
            f"Invalid option: '{value}'. Valid options for '{flag}': {', '.join(allowed)}",
            flag=flag,
        )
    return value


def default_tiers(max_cpus: int, max_memory_gb: int) -> Dict[str, Tier]:
    out = {}
    max_cpus = max(1, int(max_cpus))
    for name, (cpus, mem) in _TIER_DEFAULTS.items():
        c = max(1, min(cpus, max_cpus))
        out[name] = Tier(name=name, cpus=c, memory_gb=min(mem, int(max_memory_gb)),
                         max_parallel=max(1, max_cpus // c))
    return out


def _frozen(d: Dict[str, Any]) -> Mapping[str, Any]:
    return MappingProxyType(dict(d))


# --------------------------------------------------------------------
# Resolver
# --------------------------------------------------------------------
def resolve_plan(opts: RunOptions) -> ExecutionPlan:
    """Validate raw options and derive the execution plan.

    Raises ConfigValidationError on the first violated rule; performs no I/O
    other than existence checks.
    """
    if not opts.input:
        raise ConfigValidationError("Samplesheet not specified", flag="--input")
    samplesheet = Path(opts.input).expanduser()
    if not samplesheet.exists():
        raise ConfigValidationError(f"Samplesheet file not found: {samplesheet}", flag="--input")

    basecall = not opts.skip_basecalling
    input_path = Path(opts.input_path).expanduser() if opts.input_path else None

    if basecall:
        if input_path is None or not input_path.is_dir():
            raise ConfigValidationError(
                f"Input run directory not found: {opts.input_path}", flag="--input-path")
        if opts.guppy_config:
            if opts.flowcell or opts.kit:
                raise ConfigValidationError(
                    "Specify either --guppy-config or --flowcell/--kit, not both", flag="--guppy-config")
            if not Path(opts.guppy_config).expanduser().exists():
                raise ConfigValidationError(
                    f"Guppy config file not found: {opts.guppy_config}", flag="--guppy-config")
        elif not (opts.flowcell and opts.kit):
            raise ConfigValidationError(
                "Both --flowcell and --kit are required when --guppy-config is not given",
                flag="--flowcell")

    demultiplex = not opts.skip_demultiplexing
    if demultiplex and not opts.barcode_kit:
        log_warn("[config] no --barcode-kit given; demultiplexing disabled")
        demultiplex = False

    if not basecall and demultiplex:
        if input_path is None or not input_path.is_file():
            raise ConfigValidationError(
                f"FASTQ to demultiplex not found: {opts.input_path}", flag="--input-path")

    align = not opts.skip_alignment
    aligner = opts.aligner
    protocol = opts.protocol
    if align:
        aligner = _check_enum(opts.aligner, ALIGNERS, "--aligner")
        protocol = _check_enum(opts.protocol, PROTOCOLS, "--protocol")
    stranded = True if protocol == "directRNA" else bool(opts.stranded)

    _check_enum(opts.error_strategy, ERROR_STRATEGIES, "--error-strategy")
    _check_enum(opts.executor, EXECUTORS, "--executor")

    if opts.profile == "awsbatch":
        if not opts.awsqueue:
            raise ConfigValidationError("Specify the AWS Batch job queue for the awsbatch profile",
                                        flag="--awsqueue")
        if not str(opts.outdir).startswith("s3:"):
            raise ConfigValidationError("Outdir not on S3 - specify an S3 bucket for the awsbatch profile",
                                        flag="--outdir")

    if opts.genome_table and not Path(opts.genome_table).expanduser().exists():
        raise ConfigValidationError(f"Genome table not found: {opts.genome_table}", flag="--genome-table")

    email_size = parse_size(opts.max_multiqc_email_size)

    qc = not opts.skip_qc
    active = {
        "guppy": basecall,
        "qcat": (not basecall) and demultiplex,
        "pycoqc": basecall and qc and not opts.skip_pycoqc,
        "nanoplot_summary": basecall and qc and not opts.skip_nanoplot,
        "nanoplot_fastq": qc and not opts.skip_nanoplot,
        "fastqc": qc and not opts.skip_fastqc,
        "chrom_sizes": align,
        "index": align,
        "align": align,
        "samtools": align,
        "bedgraph": align and not opts.skip_bigwig,
        "bigwig": align and not opts.skip_bigwig,
        "bed12": align and not opts.skip_bigbed,
        "bigbed": align and not opts.skip_bigbed,
        "versions": True,
        "multiqc": qc and not opts.skip_multiqc,
        "run_summary": True,
    }
    flags: Dict[str, Dict[str, Any]] = {
        "guppy": {
            "flowcell": opts.flowcell, "kit": opts.kit, "config": opts.guppy_config,
            "barcode_kit": opts.barcode_kit if demultiplex else None,
            "gpu": bool(opts.guppy_gpu), "gpu_device": opts.gpu_device,
            "gpu_runners": int(opts.guppy_gpu_runners), "cpu_threads": int(opts.guppy_cpu_threads),
        },
        "qcat": {"barcode_kit": opts.barcode_kit},
        "index": {"aligner": aligner, "protocol": protocol, "stranded": stranded},
        "align": {"aligner": aligner, "protocol": protocol, "stranded": stranded},
        "samtools": {"save_intermeds": bool(opts.save_align_intermeds)},
    }
    stages = {
        name: StagePlan(name=name, active=bool(active[name]), tier=tier,
                        flags=_frozen(flags.get(name, {})))
        for name, tier in STAGE_TIERS.items()
    }

    return ExecutionPlan(
        samplesheet=samplesheet.resolve(),
        protocol=protocol,
        aligner=aligner,
        stranded=stranded,
        input_path=input_path.resolve() if input_path else None,
        basecall=basecall,
        demultiplex=demultiplex,
        align=align,
        outdir=Path(opts.outdir).expanduser().resolve() if not str(opts.outdir).startswith("s3:") else Path(opts.outdir),
        workdir=Path(opts.workdir).expanduser().resolve(),
        stages=_frozen(stages),
        tiers=_frozen(default_tiers(opts.max_cpus, opts.max_memory_gb)),
        genomes_base=Path(opts.genomes_base).expanduser() if opts.genomes_base else None,
        genome_table=Path(opts.genome_table).expanduser() if opts.genome_table else None,
        email=opts.email,
        email_on_fail=opts.email_on_fail,
        max_multiqc_email_size=email_size,
        executor=opts.executor,
        error_strategy=opts.error_strategy,
        resume=bool(opts.resume),
        stub=bool(opts.stub),
        verbose=bool(opts.verbose),
        profile=opts.profile,
    )


def active_stages(plan: ExecutionPlan) -> List[str]:
    return [n for n, s in plan.stages.items() if s.active]
