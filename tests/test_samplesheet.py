import json
import pathlib

import pandas as pd
import pytest

from nanoflow.data import load_genome_table
from nanoflow.exceptions import ConfigValidationError, MissingInputError
from nanoflow.samplesheet import (
    GenomeResolver, SampleCatalog, fastq_key, normalize_barcode,
)
from conftest import write_fastq


def test_normalize_barcode():
    assert normalize_barcode("1") == "barcode01"
    assert normalize_barcode("12") == "barcode12"
    assert normalize_barcode("barcode7") == "barcode07"
    assert normalize_barcode("barcode12") == "barcode12"
    assert normalize_barcode("  ") is None
    assert normalize_barcode("RB01") == "RB01"


def test_fastq_key():
    assert fastq_key("/x/barcode01.fastq.gz") == "barcode01"
    assert fastq_key("S1.fq") == "S1"
    assert fastq_key("S1.fastq") == "S1"


def test_catalog_skip_basecalling(two_sample_sheet, refA, make_plan):
    plan = make_plan(input=str(two_sample_sheet), protocol="DNA", skip_basecalling=True)
    cat = SampleCatalog.from_csv(plan.samplesheet, plan)
    assert cat.sample_ids() == ["S1", "S2"]
    assert cat.representative_sample == "S1"
    assert len(cat.genomes()) == 1
    assert cat.genomes()[0].fasta == refA.resolve()
    assert all(r.fastq is not None and r.fastq.exists() for r in cat)
    # no demultiplexing -> records join on their sample id
    assert [r.join_key for r in cat] == ["S1", "S2"]


def test_missing_fastq_is_missing_input(tmp_path, refA, make_plan):
    sheet = tmp_path / "s.csv"
    sheet.write_text(f"genome,barcode,sample,fastq\n{refA},,S1,{tmp_path / 'gone.fastq.gz'}\n")
    plan = make_plan(input=str(sheet), protocol="DNA", skip_basecalling=True)
    with pytest.raises(MissingInputError) as ei:
        SampleCatalog.from_csv(plan.samplesheet, plan)
    assert "gone.fastq.gz" in str(ei.value)


def test_fastq_required_without_basecalling(tmp_path, refA, make_plan):
    sheet = tmp_path / "s.csv"
    sheet.write_text(f"genome,barcode,sample,fastq\n{refA},,S1,\n")
    plan = make_plan(input=str(sheet), protocol="DNA", skip_basecalling=True)
    with pytest.raises(ConfigValidationError, match="fastq required"):
        SampleCatalog.from_csv(plan.samplesheet, plan)


def test_genome_required_for_alignment_only(tmp_path, make_plan):
    fq = write_fastq(tmp_path / "S1.fastq.gz")
    sheet = tmp_path / "s.csv"
    sheet.write_text(f"genome,barcode,sample,fastq\n,,S1,{fq}\n")
    plan = make_plan(input=str(sheet), protocol="DNA", skip_basecalling=True)
    with pytest.raises(ConfigValidationError, match="genome required"):
        SampleCatalog.from_csv(plan.samplesheet, plan)

    plan = make_plan(input=str(sheet), skip_basecalling=True, skip_alignment=True)
    cat = SampleCatalog.from_csv(plan.samplesheet, plan)
    assert cat.records[0].genome is None
    assert cat.genomes() == []


def test_sample_names_without_spaces(tmp_path, refA, make_plan):
    fq = write_fastq(tmp_path / "S1.fastq.gz")
    sheet = tmp_path / "s.csv"
    sheet.write_text(f"genome,barcode,sample,fastq\n{refA},,S 1,{fq}\n")
    plan = make_plan(input=str(sheet), protocol="DNA", skip_basecalling=True)
    with pytest.raises(ConfigValidationError, match="spaces"):
        SampleCatalog.from_csv(plan.samplesheet, plan)


def _demux_plan(tmp_path, sheet, make_plan):
    pooled = write_fastq(tmp_path / "pooled.fastq.gz")
    return make_plan(input=str(sheet), protocol="DNA", skip_basecalling=True,
                     barcode_kit="NBD103/NBD104", input_path=str(pooled))


def test_demultiplexing_normalizes_barcodes(tmp_path, refA, make_plan):
    sheet = tmp_path / "s.csv"
    sheet.write_text(f"genome,barcode,sample,fastq\n{refA},1,S1,\n{refA},barcode2,S2,\n")
    plan = _demux_plan(tmp_path, sheet, make_plan)
    cat = SampleCatalog.from_csv(plan.samplesheet, plan)
    assert [r.barcode for r in cat] == ["barcode01", "barcode02"]
    assert [r.join_key for r in cat] == ["barcode01", "barcode02"]
    assert all(r.fastq is None for r in cat)


def test_demultiplexing_rejects_duplicates(tmp_path, refA, make_plan):
    sheet = tmp_path / "s.csv"
    sheet.write_text(f"genome,barcode,sample,fastq\n{refA},1,S1,\n{refA},2,S1,\n")
    plan = _demux_plan(tmp_path, sheet, make_plan)
    with pytest.raises(ConfigValidationError, match="Duplicate sample"):
        SampleCatalog.from_csv(plan.samplesheet, plan)

    sheet.write_text(f"genome,barcode,sample,fastq\n{refA},1,S1,\n{refA},barcode01,S2,\n")
    with pytest.raises(ConfigValidationError, match="Duplicate barcode"):
        SampleCatalog.from_csv(plan.samplesheet, plan)


def test_fastq_rows_reject_duplicate_samples(tmp_path, refA, make_plan):
    a = write_fastq(tmp_path / "a.fastq.gz")
    b = write_fastq(tmp_path / "b.fastq.gz")
    sheet = tmp_path / "s.csv"
    sheet.write_text(f"genome,barcode,sample,fastq\n{refA},,S1,{a}\n{refA},,S1,{b}\n")
    plan = make_plan(input=str(sheet), protocol="DNA", skip_basecalling=True)
    with pytest.raises(ConfigValidationError, match="Duplicate sample"):
        SampleCatalog.from_csv(plan.samplesheet, plan)


def test_genome_stem_distinguishes_same_file_name(tmp_path, make_plan):
    fqs, rows = [], []
    for d, s in (("a", "S1"), ("b", "S2")):
        fa = tmp_path / d / "genome.fa"
        fa.parent.mkdir()
        fa.write_text(">chr1\nACGT\n")
        rows.append(f"{fa},,{s},{write_fastq(tmp_path / f'{s}.fastq.gz')}")
    sheet = tmp_path / "s.csv"
    sheet.write_text("genome,barcode,sample,fastq\n" + "\n".join(rows) + "\n")
    plan = make_plan(input=str(sheet), protocol="DNA", skip_basecalling=True)
    g1, g2 = SampleCatalog.from_csv(plan.samplesheet, plan).genomes()
    assert g1.stem != g2.stem
    assert g1.stem.startswith("genome.fa_") and g2.stem.startswith("genome.fa_")


def test_demultiplexing_requires_barcode(tmp_path, refA, make_plan):
    sheet = tmp_path / "s.csv"
    sheet.write_text(f"genome,barcode,sample,fastq\n{refA},,S1,\n")
    plan = _demux_plan(tmp_path, sheet, make_plan)
    with pytest.raises(ConfigValidationError, match="barcode required"):
        SampleCatalog.from_csv(plan.samplesheet, plan)


def test_genome_table_rooted_at_genomes_base(tmp_path, make_plan):
    base = tmp_path / "igenomes"
    fa = base / "Homo_sapiens/NCBI/GRCh38/Sequence/WholeGenomeFasta/genome.fa"
    fa.parent.mkdir(parents=True)
    fa.write_text(">chr1\nACGT\n")
    fq = write_fastq(tmp_path / "S1.fastq.gz")
    sheet = tmp_path / "s.csv"
    sheet.write_text(f"genome,barcode,sample,fastq\nGRCh38,,S1,{fq}\n")
    plan = make_plan(input=str(sheet), protocol="DNA", skip_basecalling=True, genomes_base=str(base))
    cat = SampleCatalog.from_csv(plan.samplesheet, plan)
    g = cat.records[0].genome
    assert g.identity == "GRCh38" and g.fasta == fa.resolve()
    assert g.stem == "GRCh38"


def test_bundled_and_custom_genome_tables(tmp_path):
    table = load_genome_table()
    assert "GRCh38" in table and table["GRCh38"]["fasta"].endswith("genome.fa")

    custom = tmp_path / "genomes.json"
    custom.write_text(json.dumps({"mine": {"fasta": str(tmp_path / "mine.fa")}}))
    assert load_genome_table(custom) == {"mine": {"fasta": str(tmp_path / "mine.fa")}}


def test_genome_resolver_missing_fasta(tmp_path):
    r = GenomeResolver({"GRCh38": {"fasta": "x/genome.fa"}}, base=tmp_path)
    with pytest.raises(MissingInputError, match="GRCh38"):
        r.resolve("GRCh38")


def test_write_normalized(two_sample_sheet, make_plan, tmp_path):
    plan = make_plan(input=str(two_sample_sheet), protocol="DNA", skip_basecalling=True)
    cat = SampleCatalog.from_csv(plan.samplesheet, plan)
    out = cat.write_normalized(tmp_path / "info" / "samplesheet.valid.csv")
    df = pd.read_csv(out, dtype=str, keep_default_na=False)
    assert list(df.columns) == ["sample", "barcode", "genome", "fasta", "fastq"]
    assert df["sample"].tolist() == ["S1", "S2"]
    assert df["barcode"].tolist() == ["", ""]
    assert pathlib.Path(df["fastq"][0]).name == "S1.fastq.gz"
