"""Typed items carried by the pipeline's channels (one type per stage-output shape)."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

from .samplesheet import GenomeReference, SampleRecord, fastq_key


@dataclass(frozen=True)
class RawRun:
    """Input of the basecaller (run directory) or of the demultiplexer (pooled FASTQ)."""
    path: Path
    name: str                       # names the single output FASTQ when not demultiplexing
    expected_keys: Tuple[str, ...]  # barcodes we expect to find; used by stub runs


@dataclass(frozen=True)
class DemuxFastq:
    """One FASTQ discovered in a basecaller/demultiplexer output directory."""
    key: str          # 'barcode01', or the sample name when not demultiplexing
    fastq: Path

    @classmethod
    def from_path(cls, p: Path) -> "DemuxFastq":
        return cls(key=fastq_key(p), fastq=Path(p))


@dataclass(frozen=True)
class ReadSet:
    sample: str
    fastq: Path
    genome: Optional[GenomeReference] = None

    @classmethod
    def joined(cls, pair: Tuple[DemuxFastq, SampleRecord]) -> "ReadSet":
        fq, rec = pair
        return cls(sample=rec.sample, fastq=fq.fastq, genome=rec.genome)

    @classmethod
    def from_record(cls, rec: SampleRecord) -> "ReadSet":
        return cls(sample=rec.sample, fastq=rec.fastq, genome=rec.genome)


@dataclass(frozen=True)
class SequencingSummary:
    path: Path


@dataclass(frozen=True)
class ChromSizes:
    genome: GenomeReference
    sizes: Path


@dataclass(frozen=True)
class ReferenceBundle:
    genome: GenomeReference
    fasta: Path
    index: Path
    sizes: Path


@dataclass(frozen=True)
class AlignInput:
    bundle: ReferenceBundle
    reads: ReadSet

    @classmethod
    def crossed(cls, pair: Tuple[ReferenceBundle, ReadSet]) -> "AlignInput":
        return cls(bundle=pair[0], reads=pair[1])

    @property
    def sample(self) -> str:
        return self.reads.sample


@dataclass(frozen=True)
class Alignment:
    sample: str
    sam: Path
    sizes: Path


@dataclass(frozen=True)
class SortedBam:
    sample: str
    bam: Path
    bai: Path
    sizes: Path


@dataclass(frozen=True)
class Interval:
    """bedGraph or BED12 produced from a sorted BAM; input to the UCSC converters."""
    sample: str
    path: Path
    sizes: Path


@dataclass(frozen=True)
class Track:
    sample: str
    kind: str         # 'bigwig' | 'bigbed'
    path: Path
