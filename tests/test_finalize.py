from __future__ import annotations

import gzip
import json
from pathlib import Path

from finalize import (INCOMPLETE_MARKER, SUCCESS_MARKER, finalize_partition,
                      list_partitions, mark_incomplete, mark_success)


def _inprogress(work: Path, name: str, body: bytes) -> Path:
    work.mkdir(parents=True, exist_ok=True)
    path = work / f"{name}.jsonl.inprogress"
    path.write_bytes(body)
    return path


def test_finalize_compresses_each_partition(tmp_path: Path) -> None:
    body = b'{"doi":"10.1/1"}\n{"doi":"10.1/2"}\n'
    src = _inprogress(tmp_path / "_work", "part-00003", body)

    out = finalize_partition(src, tmp_path / "out")

    assert out.name == "part-00003.jsonl.gz"
    assert gzip.decompress(out.read_bytes()) == body
    assert not src.exists()
    assert not (tmp_path / "out" / "part-00003.jsonl").exists()
    assert not list((tmp_path / "out").glob("*.tmp"))


def test_finalize_without_compression(tmp_path: Path) -> None:
    src = _inprogress(tmp_path, "part-00000", b"{}\n")
    out = finalize_partition(src, tmp_path / "out", compression="none")
    assert out.name == "part-00000.jsonl"
    assert out.read_bytes() == b"{}\n"


def test_empty_partition_is_still_finalized(tmp_path: Path) -> None:
    src = _inprogress(tmp_path, "part-00001", b"")
    out = finalize_partition(src, tmp_path / "out")
    assert gzip.decompress(out.read_bytes()) == b""


def test_list_partitions_ignores_markers_and_partials(tmp_path: Path) -> None:
    for name in ["part-00001.jsonl.gz", "part-00000.jsonl.gz", "part-00002.jsonl.gz.tmp",
                 "_manifest.json", SUCCESS_MARKER, "notes.txt"]:
        (tmp_path / name).write_bytes(b"")

    assert [p.name for p in list_partitions(tmp_path)] == [
        "part-00000.jsonl.gz", "part-00001.jsonl.gz"]


def test_mark_incomplete_renames_partial_files(tmp_path: Path) -> None:
    work = tmp_path / "_work"
    _inprogress(work, "part-00004", b'{"doi":')
    (tmp_path / "part-00002.jsonl.gz.tmp").write_bytes(b"\x1f\x8b")
    (tmp_path / "part-00001.jsonl.gz").write_bytes(b"done")
    mark_success(tmp_path)

    renamed = mark_incomplete(tmp_path, "boom", work_dir=work)

    assert sorted(p.name for p in renamed) == [
        "part-00002.jsonl.gz.tmp.incomplete", "part-00004.jsonl.inprogress.incomplete"]
    assert not (tmp_path / SUCCESS_MARKER).exists()
    marker = json.loads((tmp_path / INCOMPLETE_MARKER).read_text())
    assert marker["reason"] == "boom"
    assert [p.name for p in list_partitions(tmp_path)] == ["part-00001.jsonl.gz"]


def test_mark_success_clears_incomplete(tmp_path: Path) -> None:
    mark_incomplete(tmp_path, "earlier failure")
    mark_success(tmp_path)
    assert (tmp_path / SUCCESS_MARKER).exists()
    assert not (tmp_path / INCOMPLETE_MARKER).exists()
