# src/nanoflow/samplesheet.py
from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

import pandas as pd

from .config import ExecutionPlan
from .data import load_genome_table
from .exceptions import ConfigValidationError, MissingInputError

COLUMNS = ("genome", "barcode", "sample", "fastq")


@dataclass(frozen=True)
class GenomeReference:
    identity: str   # symbolic name or path as written in the samplesheet
    fasta: Path

    @property
    def key(self) -> str:
        return self.identity

    @property
    def stem(self) -> str:
        """File-name-safe label for per-genome outputs, unique per identity."""
        name = re.sub(r"[^A-Za-z0-9_.-]+", "_", Path(self.identity).name)
        if Path(self.identity).name == self.identity:
            return name
        # paths: equal file names in different directories must not collide
        return f"{name}_{hashlib.sha1(self.identity.encode()).hexdigest()[:8]}"


@dataclass(frozen=True)
class SampleRecord:
    sample: str
    barcode: Optional[str] = None
    genome: Optional[GenomeReference] = None
    fastq: Optional[Path] = None

    @property
    def join_key(self) -> str:
        """Key matched against demultiplexed FASTQ names."""
        return self.barcode or self.sample


def normalize_barcode(raw: str) -> Optional[str]:
    """
    Map a samplesheet barcode to the basecaller's directory naming.

      '1'         -> 'barcode01'
      'barcode7'  -> 'barcode07'
      'barcode12' -> 'barcode12'
      ''          -> None
    """
    s = str(raw).strip()
    if not s:
        return None
    if s.isdigit():
        return f"barcode{int(s):02d}"
    m = re.fullmatch(r"barcode(\d+)", s, flags=re.IGNORECASE)
    if m:
        return f"barcode{int(m.group(1)):02d}"
    return s


def fastq_key(path: str | Path) -> str:
    """'barcode01.fastq.gz' -> 'barcode01'; 'S1.fastq' -> 'S1'."""
    name = Path(path).name
    for ext in (".fastq.gz", ".fq.gz", ".fastq", ".fq"):
        if name.endswith(ext):
            return name[: -len(ext)]
    return Path(name).stem


class GenomeResolver:
    """Resolve samplesheet genome fields to GenomeReference values (cached per identity)."""

    def __init__(self, table: Dict[str, Dict[str, str]], base: Optional[Path] = None):
        self.table = table
        self.base = Path(base) if base else None
        self._seen: Dict[str, GenomeReference] = {}

    def resolve(self, identity: str) -> GenomeReference:
        if identity in self._seen:
            return self._seen[identity]
        if identity in self.table:
            fasta = Path(self.table[identity]["fasta"])
            if not fasta.is_absolute() and self.base is not None:
                fasta = self.base / fasta
        else:
            fasta = Path(identity)
        fasta = fasta.expanduser()
        if not fasta.exists():
            raise MissingInputError(fasta, what=f"Genome fasta for '{identity}'")
        ref = GenomeReference(identity=identity, fasta=fasta.resolve())
        self._seen[identity] = ref
        return ref


class SampleCatalog:
    """Ordered, immutable set of SampleRecords parsed from a normalized samplesheet."""

    def __init__(self, records: List[SampleRecord]):
        if not records:
            raise ConfigValidationError("Samplesheet contains no samples", flag="--input")
        self.records: Tuple[SampleRecord, ...] = tuple(records)

    def __iter__(self) -> Iterator[SampleRecord]:
        return iter(self.records)

    def __len__(self) -> int:
        return len(self.records)

    @property
    def representative_sample(self) -> str:
        """Names the basecaller's single concatenated FASTQ when not demultiplexing."""
        return self.records[0].sample

    def sample_ids(self) -> List[str]:
        return [r.sample for r in self.records]

    def genomes(self) -> List[GenomeReference]:
        out: Dict[str, GenomeReference] = {}
        for r in self.records:
            if r.genome is not None and r.genome.key not in out:
                out[r.genome.key] = r.genome
        return list(out.values())

    @classmethod
    def from_csv(cls, path: str | Path, plan: ExecutionPlan) -> "SampleCatalog":
        """
        Parse a samplesheet (header: genome, barcode, sample, fastq).

        Basecalling or demultiplexing runs: fastq is produced by the pipeline
        and the column is ignored. Otherwise every row must point at an
        existing FASTQ file.
        """
        df = pd.read_csv(path, dtype=str, keep_default_na=False)
        df.columns = [c.strip().lower() for c in df.columns]
        if "sample" not in df.columns:
            raise ConfigValidationError(f"Samplesheet {path} missing required column: sample", flag="--input")
        for c in COLUMNS:
            if c not in df.columns:
                df[c] = ""

        table = load_genome_table(plan.genome_table)
        genomes = GenomeResolver(table, plan.genomes_base)
        produces_fastq = plan.basecall or plan.demultiplex

        records: List[SampleRecord] = []
        for i, row in enumerate(df.itertuples(index=False), start=1):
            sample = str(row.sample).strip()
            if not sample:
                raise ConfigValidationError(f"Samplesheet row {i}: empty sample name", flag="--input")
            if " " in sample:
                raise ConfigValidationError(f"Samplesheet row {i}: sample '{sample}' contains spaces",
                                            flag="--input")
            genome = genomes.resolve(row.genome.strip()) if row.genome.strip() else None
            if plan.align and genome is None:
                raise ConfigValidationError(
                    f"Samplesheet row {i}: genome required for alignment (sample '{sample}')", flag="--input")

            barcode = normalize_barcode(row.barcode) if plan.demultiplex else None
            if plan.demultiplex and barcode is None:
                raise ConfigValidationError(
                    f"Samplesheet row {i}: barcode required when demultiplexing (sample '{sample}')",
                    flag="--input")

            fastq = None
            if not produces_fastq:
                if not row.fastq.strip():
                    raise ConfigValidationError(
                        f"Samplesheet row {i}: fastq required with --skip-basecalling (sample '{sample}')",
                        flag="--input")
                fastq = Path(row.fastq.strip()).expanduser()
                if not fastq.exists():
                    raise MissingInputError(fastq, what=f"FASTQ for sample '{sample}'")
                fastq = fastq.resolve()

            records.append(SampleRecord(sample=sample, barcode=barcode, genome=genome, fastq=fastq))

        if plan.demultiplex or not produces_fastq:
            _check_unique([r.sample for r in records], "sample")
        if plan.demultiplex:
            _check_unique([r.barcode for r in records], "barcode")
        return cls(records)

    def write_normalized(self, out_csv: str | Path) -> Path:
        out = Path(out_csv)
        out.parent.mkdir(parents=True, exist_ok=True)
        rows = [{
            "sample": r.sample,
            "barcode": r.barcode or "",
            "genome": r.genome.identity if r.genome else "",
            "fasta": str(r.genome.fasta) if r.genome else "",
            "fastq": str(r.fastq) if r.fastq else "",
        } for r in self.records]
        pd.DataFrame(rows, columns=["sample", "barcode", "genome", "fasta", "fastq"]).to_csv(out, index=False)
        return out


def _check_unique(values: List[Optional[str]], what: str) -> None:
    seen, dup = set(), []
    for v in values:
        if v in seen:
            dup.append(v)
        seen.add(v)
    if dup:
        raise ConfigValidationError(f"Duplicate {what} in samplesheet: {', '.join(sorted(set(dup)))}",
                                    flag="--input")
