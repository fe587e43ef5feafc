from __future__ import annotations

import gzip
import json
from pathlib import Path

import pytest


def make_record(i: int, year, **extra) -> dict:
    record = {
        "doi": f"10.1234/test.{i}",
        "is_oa": i % 2 == 0,
        "oa_locations": [{"url": f"https://example.org/{i}.pdf", "host_type": "repository"}],
        "oa_status": "green" if i % 2 == 0 else "closed",
        "publisher": "Example Press",
        "title": f"Paper {i}",
        "genre": "journal-article",
    }
    if year is not None:
        record["year"] = year
    record.update(extra)
    return record


def write_snapshot(path: Path, lines: list, compress: bool = True) -> Path:
    """Write records (dicts) or raw lines (str) as NDJSON, gzip'd by default."""
    body = "".join(
        (line if isinstance(line, str) else json.dumps(line)) + "\n" for line in lines
    ).encode("utf-8")
    if compress:
        with gzip.open(path, "wb") as f:
            f.write(body)
    else:
        path.write_bytes(body)
    return path


def read_partitions(output_dir: Path) -> dict[str, list[dict]]:
    out = {}
    for f in sorted(Path(output_dir).glob("part-*.jsonl.gz")):
        with gzip.open(f, "rt", encoding="utf-8") as fh:
            out[f.name] = [json.loads(line) for line in fh if line.strip()]
    return out


@pytest.fixture
def scenario_snapshot(tmp_path: Path) -> Path:
    """Five records with years 2017, 2018, 2019, 2020, 2018."""
    years = [2017, 2018, 2019, 2020, 2018]
    return write_snapshot(tmp_path / "snapshot.jsonl.gz",
                          [make_record(i, y) for i, y in enumerate(years)])


@pytest.fixture
def large_snapshot(tmp_path: Path) -> Path:
    records = [make_record(i, 2010 + i % 15) for i in range(400)]
    return write_snapshot(tmp_path / "large.jsonl.gz", records)
