"""
Output finalizer: turn completed `.inprogress` partitions into upload-ready files.

A partition is finalized only after its worker has returned. The file is
renamed to `.jsonl` and compressed on its own (one .jsonl.gz per partition),
going through a `.tmp` name so a crash never leaves a truncated .gz behind.
"""

import gzip
import json
import logging
import shutil
import time
from pathlib import Path

from filter_worker import INPROGRESS_SUFFIX

log = logging.getLogger(__name__)

FINAL_SUFFIXES = {"gzip": ".jsonl.gz", "none": ".jsonl"}
INCOMPLETE_SUFFIX = ".incomplete"
SUCCESS_MARKER = "_SUCCESS"
INCOMPLETE_MARKER = "_INCOMPLETE"
GZIP_LEVEL = 6
COPY_BUFFER = 8 * 1024 * 1024  # 8MB


def final_path(output_dir, name: str, compression: str = "gzip") -> Path:
    return Path(output_dir) / f"{name}{FINAL_SUFFIXES[compression]}"


def finalize_partition(inprogress_path, output_dir, compression: str = "gzip") -> Path:
    """Rename a finished partition to .jsonl and compress it independently."""
    src = Path(inprogress_path)
    name = src.name[: -len(INPROGRESS_SUFFIX)]
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    jsonl = output_dir / f"{name}.jsonl"
    src.replace(jsonl)

    if compression == "none":
        return jsonl

    target = final_path(output_dir, name, compression)
    tmp = target.with_name(target.name + ".tmp")
    with open(jsonl, "rb") as fin, gzip.open(tmp, "wb", compresslevel=GZIP_LEVEL) as fout:
        shutil.copyfileobj(fin, fout, COPY_BUFFER)
    tmp.replace(target)
    jsonl.unlink()
    return target


def list_partitions(output_dir, compression: str | None = None) -> list[Path]:
    """Finalized partition files in `output_dir`, sorted by name."""
    output_dir = Path(output_dir)
    if not output_dir.exists():
        return []
    suffixes = ([FINAL_SUFFIXES[compression]] if compression
                else list(FINAL_SUFFIXES.values()))
    files = [
        f for f in output_dir.iterdir()
        if f.is_file() and f.name.startswith("part-")
        and any(f.name.endswith(s) for s in suffixes)
    ]
    return sorted(files)


def clear_markers(output_dir):
    for marker in (SUCCESS_MARKER, INCOMPLETE_MARKER):
        (Path(output_dir) / marker).unlink(missing_ok=True)


def mark_incomplete(output_dir, reason: str, work_dir=None) -> list[Path]:
    """Flag partial output so it is never mistaken for finalized partitions."""
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    renamed = []
    for directory in {output_dir, Path(work_dir or output_dir)}:
        if not directory.exists():
            continue
        for f in sorted(directory.iterdir()):
            if f.name.endswith(INPROGRESS_SUFFIX) or f.name.endswith(".tmp"):
                dest = f.with_name(f.name + INCOMPLETE_SUFFIX)
                f.replace(dest)
                renamed.append(dest)

    (output_dir / SUCCESS_MARKER).unlink(missing_ok=True)
    with open(output_dir / INCOMPLETE_MARKER, "w") as f:
        json.dump({
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S"),
            "reason": reason,
            "incomplete_files": [p.name for p in renamed],
        }, f, indent=2)
    if renamed:
        log.warning(f"marked {len(renamed)} partial files as {INCOMPLETE_SUFFIX}")
    return renamed


def mark_success(output_dir):
    output_dir = Path(output_dir)
    (output_dir / INCOMPLETE_MARKER).unlink(missing_ok=True)
    (output_dir / SUCCESS_MARKER).write_text(time.strftime("%Y-%m-%dT%H:%M:%S") + "\n")
