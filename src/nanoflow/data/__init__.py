# nanoflow/data/__init__.py

from __future__ import annotations

import json
from importlib import resources
from pathlib import Path
from typing import Dict, Optional

_DEFAULT_TABLE = "genomes.json"


def load_genome_table(path: Optional[str | Path] = None) -> Dict[str, Dict[str, str]]:
    """
    Return {genome_name: {"fasta": <path>, ...}}.

    With no path, reads the bundled iGenomes-style table; its FASTA paths are
    relative and get rooted at --genomes-base by the sample catalog.
    """
    if path is not None:
        return json.loads(Path(path).read_text())
    traversable = resources.files(__name__).joinpath(_DEFAULT_TABLE)
    if not traversable.is_file():
        raise FileNotFoundError(
            f"Bundled genome table '{_DEFAULT_TABLE}' not found in the installed package.\n"
            "Workaround: pass --genome-table /path/to/genomes.json"
        )
    return json.loads(traversable.read_text())
