import gzip
import pathlib

import pytest

from nanoflow.config import RunOptions, resolve_plan
from nanoflow.log import set_verbose


@pytest.fixture(autouse=True)
def _verbose():
    set_verbose(True)
    yield
    set_verbose(True)


def write_fastq(path: pathlib.Path, n: int = 2) -> pathlib.Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with gzip.open(path, "wt") as f:
        for i in range(n):
            f.write(f"@read{i}\nACGTACGT\n+\nIIIIIIII\n")
    return path


@pytest.fixture
def refA(tmp_path: pathlib.Path) -> pathlib.Path:
    fa = tmp_path / "ref" / "refA.fa"
    fa.parent.mkdir(parents=True, exist_ok=True)
    fa.write_text(">chr1\nACGTACGTACGTACGT\n>chr2\nGGGGCCCC\n")
    return fa


@pytest.fixture
def two_sample_sheet(tmp_path: pathlib.Path, refA: pathlib.Path) -> pathlib.Path:
    """Two samples sharing one genome, FASTQs already on disk."""
    s1 = write_fastq(tmp_path / "reads" / "S1.fastq.gz")
    s2 = write_fastq(tmp_path / "reads" / "S2.fastq.gz")
    sheet = tmp_path / "samplesheet.csv"
    sheet.write_text(
        "genome,barcode,sample,fastq\n"
        f"{refA},,S1,{s1}\n"
        f"{refA},,S2,{s2}\n"
    )
    return sheet


@pytest.fixture
def make_plan(tmp_path: pathlib.Path):
    """resolve_plan() with test-friendly defaults (thread pool, stub runs, tmp dirs)."""
    def _make(**kw):
        base = dict(
            outdir=str(tmp_path / "results"),
            workdir=str(tmp_path / "work"),
            executor="thread",
            stub=True,
            max_cpus=2,
            max_memory_gb=4,
        )
        base.update(kw)
        return resolve_plan(RunOptions().update(base))
    return _make
