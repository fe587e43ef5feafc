from __future__ import annotations

import io
import json
import random

import pytest

from errors import PartitionBoundaryError
from partition import Chunk, check_boundary, iter_chunks, partition_name, scan_boundaries


def _stream_of(sizes: list[int]) -> bytes:
    lines = []
    for i, size in enumerate(sizes):
        record = {"doi": f"10.1/{i}", "pad": "x" * size}
        lines.append(json.dumps(record).encode() + b"\n")
    return b"".join(lines)


@pytest.mark.parametrize("chunk_size", [1, 7, 64, 500, 10_000])
def test_chunks_reconstruct_stream(chunk_size: int) -> None:
    rng = random.Random(chunk_size)
    data = _stream_of([rng.randint(0, 300) for _ in range(200)])

    chunks = list(iter_chunks(io.BytesIO(data), chunk_size))

    assert b"".join(c.data for c in chunks) == data
    assert [c.index for c in chunks] == list(range(len(chunks)))
    offset = 0
    for c in chunks:
        assert c.offset == offset
        offset += c.length


def test_every_chunk_holds_whole_records() -> None:
    data = _stream_of([10, 2000, 5, 5, 3000, 1, 50])

    for chunk in iter_chunks(io.BytesIO(data), 100):
        assert chunk.data.endswith(b"\n")
        for line in chunk.data.splitlines():
            json.loads(line)


def test_oversized_record_is_not_split() -> None:
    data = _stream_of([5, 50_000, 5])
    chunks = list(iter_chunks(io.BytesIO(data), 1024))

    big = [c for c in chunks if c.length > 1024]
    assert len(big) == 1
    assert b"x" * 50_000 in big[0].data
    assert b"".join(c.data for c in chunks) == data


def test_missing_final_newline_kept_in_last_chunk() -> None:
    data = b'{"a":1}\n{"a":2}\n{"a":3}'
    chunks = list(iter_chunks(io.BytesIO(data), 4))

    assert b"".join(c.data for c in chunks) == data
    assert chunks[-1].data.endswith(b'{"a":3}')


def test_empty_stream_has_no_chunks() -> None:
    assert list(iter_chunks(io.BytesIO(b""), 100)) == []


def test_check_boundary_flags_mid_record_split() -> None:
    chunk = Chunk(index=3, offset=100, data=b'{"doi":"10.1/1"}\n{"doi":')
    with pytest.raises(PartitionBoundaryError) as exc:
        check_boundary(chunk, is_last=False)
    assert exc.value.chunk_index == 3
    assert exc.value.offset == 100 + chunk.length

    check_boundary(chunk, is_last=True)


def test_scan_boundaries_matches_chunks() -> None:
    data = _stream_of([100] * 50)
    bounds = scan_boundaries(io.BytesIO(data), 1000)

    assert sum(length for _, length in bounds) == len(data)
    assert bounds[0][0] == 0


def test_partition_names_are_deterministic() -> None:
    assert partition_name(0) == "part-00000"
    assert partition_name(123) == "part-00123"
    assert Chunk(7, 0, b"").name == "part-00007"


def test_invalid_chunk_size() -> None:
    with pytest.raises(ValueError):
        list(iter_chunks(io.BytesIO(b"x\n"), 0))
