# src/nanoflow/versions.py
"""
Software-version manifest.

Each tool-running stage reports the raw output of its `--version` probe once
(see Scheduler._emit). The versions stage collects those, scrapes one version
string per tool and writes:

  pipeline_info/software_versions.csv       tool,version
  pipeline_info/software_versions_mqc.yaml  MultiQC custom-content section

Tools that are part of the graph but never ran get an empty version.
"""
from __future__ import annotations

import platform
import re
import subprocess
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import pandas as pd
import yaml

from . import __version__
from .stage import Ctx, PyCall, Task, ToolVersion

# tool -> regex whose first group is the version
_PATTERNS: Dict[str, str] = {
    "guppy_basecaller": r"Version\s+(\S+)",
    "qcat": r"qcat\s+v?(\S+)",
    "pycoQC": r"pycoQC\s+v?(\S+)",
    "NanoPlot": r"NanoPlot\s+v?(\S+)",
    "FastQC": r"FastQC\s+v(\S+)",
    "pysam": r"^(\S+)$",
    "minimap2": r"^(\S+)",
    "graphmap2": r"Version:\s*v?(\S+)",
    "samtools": r"samtools\s+(\S+)",
    "bedtools": r"bedtools\s+v?(\S+)",
    "MultiQC": r"multiqc, version\s+(\S+)",
}
_GENERIC = r"(\d+\.\d+(?:\.\d+)*[\w.+-]*)"


def scrape_version(tool: str, text: str) -> str:
    """Pull a version number out of a tool's --version output ('' if none)."""
    text = (text or "").strip()
    if not text:
        return ""
    for pat in (_PATTERNS.get(tool), _GENERIC):
        if not pat:
            continue
        m = re.search(pat, text, flags=re.MULTILINE)
        if m:
            return m.group(1).lstrip("v").rstrip(",")
    return ""


def version_table(reported: Iterable[Tuple[str, str]], tools: Sequence[str]) -> pd.DataFrame:
    """Rows: pipeline, Python, then every graph tool in order (reported or empty)."""
    seen: Dict[str, str] = {}
    for tool, text in reported:
        if not seen.get(tool):
            seen[tool] = scrape_version(tool, text)
    rows = [("nanoflow", __version__), ("Python", platform.python_version())]
    order = list(dict.fromkeys([*tools, *seen]))
    rows += [(t, seen.get(t, "")) for t in order]
    return pd.DataFrame(rows, columns=["tool", "version"])


def _mqc_section(df: pd.DataFrame) -> Dict[str, str]:
    items = "\n".join(
        f"    <dt>{t}</dt><dd><samp>{v or 'N/A'}</samp></dd>" for t, v in df.itertuples(index=False)
    )
    return {
        "id": "software_versions",
        "section_name": "nanoflow Software Versions",
        "plot_type": "html",
        "description": "are collected at run time from the software output.",
        "data": f'<dl class="dl-horizontal">\n{items}\n</dl>\n',
    }


def probe_version(argv: List[str]) -> str:
    """Run a `--version` command; an absent or broken tool gives ''."""
    try:
        cp = subprocess.run(argv, capture_output=True, text=True, check=False, timeout=60)
    except (OSError, subprocess.TimeoutExpired):
        return ""
    return (cp.stdout + cp.stderr).strip()


def write_versions(reported: List[Tuple[str, str]], tools: List[str], csv: str, mqc_yaml: str,
                   probes: Optional[Dict[str, List[str]]] = None) -> None:
    # tools that run after the manifest is written (MultiQC reads it) are probed here
    reported = list(reported) + [(t, probe_version(argv)) for t, argv in (probes or {}).items()]
    df = version_table(reported, tools)
    Path(csv).parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(csv, index=False)
    with open(mqc_yaml, "w") as f:
        yaml.safe_dump(_mqc_section(df), f, sort_keys=False, default_flow_style=False)


# --------------------------------------------------------------------
# Stage wiring
# --------------------------------------------------------------------
def _paths(ctx: Ctx) -> Tuple[Path, Path]:
    d = ctx.plan.dir_info()
    return d / "software_versions.csv", d / "software_versions_mqc.yaml"


def versions_task(tools: Sequence[str], probes: Optional[Dict[str, List[str]]] = None):
    """Command builder for the versions stage; `tools` lists every tool in the graph."""
    tool_list = list(tools)
    probe_map = dict(probes or {})

    def build(item: Optional[object], values: Dict[str, object], ctx: Ctx) -> Task:
        reported: List[ToolVersion] = list(values.get("versions") or [])
        csv, mqc = _paths(ctx)
        return Task(
            label="manifest",
            steps=[PyCall(write_versions, {
                "reported": [(v.tool, v.text) for v in reported],
                "tools": tool_list, "csv": str(csv), "mqc_yaml": str(mqc),
                "probes": {} if ctx.plan.stub else probe_map,
            })],
            outputs=[str(csv), str(mqc)],
            local=True,
        )
    return build


def versions_emit(item: Optional[object], values: Dict[str, object], ctx: Ctx) -> Dict[str, list]:
    return {"mqc": [_paths(ctx)[1]]}
