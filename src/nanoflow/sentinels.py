from __future__ import annotations
import os, json, time, hashlib
from pathlib import Path
from typing import Dict, Iterable, Tuple, List, Any

from .stage import Task, TaskResult


def _sha256_bytes(b: bytes) -> str:
    return hashlib.sha256(b).hexdigest()

def _sha256_json(obj: object) -> str:
    return _sha256_bytes(json.dumps(obj, sort_keys=True, separators=(",", ":"), default=str).encode())

def _inputs_meta(paths: Iterable[str]) -> List[Tuple[str, int, float]]:
    meta = []
    for p in map(Path, paths):
        if p.is_dir():
            meta.append((str(p), 0, p.stat().st_mtime))
            continue
        st = p.stat()
        meta.append((str(p), st.st_size, st.st_mtime))
    return meta

def fingerprint(task: Task, flags: Dict[str, Any]) -> Dict[str, str]:
    return {
        "script_sha256": _sha256_json(task.script()),
        "flags_sha256": _sha256_json(flags),
        "inputs_sha256": _sha256_json(_inputs_meta(task.inputs)),
        "outputs_sha256": _sha256_json(sorted(task.outputs)),
        # stub sentinels never satisfy a real run
        "stub": str(bool(task.stub)),
    }

def _sent_base(root: Path) -> Path:
    return Path(root) / "_sentinels"

def sentinel_path(root: Path, stage: str, label: str) -> Path:
    out = _sent_base(root) / stage / f"{label}.ok.json"
    out.parent.mkdir(parents=True, exist_ok=True)
    return out

def load_sentinel(path: Path) -> Dict | None:
    if not Path(path).exists():
        return None
    with open(path, "r") as f:
        return json.load(f)

def write_sentinel(path: Path, payload: Dict) -> None:
    tmp = Path(str(path) + ".tmp")
    with tmp.open("w") as f:
        json.dump(payload, f, indent=2, sort_keys=True)
        f.write("\n")
    os.replace(tmp, path)

def make_payload(task: Task, fp: Dict[str, str], result: TaskResult, version: str, note: str = "") -> Dict:
    return {
        "stage": task.stage,
        "label": task.label,
        "status": "ok",
        "created_at": time.strftime("%Y-%m-%dT%H:%M:%S%z", time.localtime()),
        "nanoflow_version": version,
        "fingerprint": fp,
        "inputs": list(map(str, task.inputs)),
        "outputs": list(map(str, task.outputs)),
        "hostname": os.uname().nodename if hasattr(os, "uname") else "unknown",
        "pid": os.getpid(),
        "duration_sec": result.duration_sec,
        "version_text": result.version_text,
        "stub": task.stub,
        "note": note,
    }

def _output_ok(o: str, stub: bool) -> bool:
    p = Path(o.rstrip("/"))
    if not p.exists():
        return False
    if o.endswith("/") or stub:
        return True
    return p.stat().st_size > 0

def sentinel_ok(existing: Dict | None, expected_fp: Dict[str, str], outputs: Iterable[str]) -> bool:
    if not existing:
        return False
    f = existing.get("fingerprint", {})
    ok = (
        all(f.get(k) == v for k, v in expected_fp.items()) and
        existing.get("status") == "ok"
    )
    if not ok:
        return False
    stub = bool(existing.get("stub", False))
    return all(_output_ok(o, stub) for o in outputs)

def remove_step_sentinels(root: Path, step_prefix: str) -> int:
    removed = 0
    base = _sent_base(root)
    if not base.exists():
        return 0
    for dirpath, _, files in os.walk(base):
        for fn in files:
            if not fn.endswith(".ok.json"):
                continue
            full = Path(dirpath) / fn
            if full.parent.name.startswith(step_prefix):
                full.unlink(missing_ok=True)
                removed += 1
    return removed
