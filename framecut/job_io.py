from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Dict

from .model import Job


def write_json_atomic(path: Path, data: Dict[str, Any]) -> None:
    """
    Replace `path` with `data` as JSON.

    The text goes to a sibling temp file first, so a failed write leaves the
    previous file intact.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fp:
            json.dump(data, fp, ensure_ascii=False, indent=2)
            fp.flush()
            os.fsync(fp.fileno())
        os.replace(tmp, str(path))
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


def save_job(job: Job, path: str) -> None:
    write_json_atomic(Path(path), job.to_dict())


def _resolve(base: Path, raw: str) -> str:
    p = Path(raw)
    return raw if p.is_absolute() else str(base / p)


def load_job(path: str) -> Job:
    """
    Read a job file. Relative clip and output paths are resolved against the
    file's folder.
    """
    p = Path(path)
    data = json.loads(p.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"Job file must contain an object: {p}")
    job = Job.from_dict(data)
    for clip in job.clips:
        clip.src = _resolve(p.parent, clip.src)
    if job.output:
        job.output = _resolve(p.parent, job.output)
    return job
