"""
Block partitioner: split the decompressed stream into record-aligned chunks.

Reads `chunk_size` bytes, then keeps reading up to the next newline, so a
chunk always ends on a record boundary. A record longer than the chunk size
is never split; its chunk just grows past the target.
"""

import logging
from dataclasses import dataclass

from errors import PartitionBoundaryError

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Chunk:
    """A contiguous, record-aligned slice of the decompressed stream."""

    index: int
    offset: int
    data: bytes

    @property
    def length(self) -> int:
        return len(self.data)

    @property
    def name(self) -> str:
        return partition_name(self.index)


def partition_name(index: int) -> str:
    """Deterministic base name for the partition produced from chunk `index`."""
    return f"part-{index:05d}"


def check_boundary(chunk: Chunk, is_last: bool):
    """Every chunk except the final one must end exactly after a newline."""
    if not is_last and chunk.data and not chunk.data.endswith(b"\n"):
        raise PartitionBoundaryError(chunk.index, chunk.offset + chunk.length)


def _read_block(stream, chunk_size: int) -> bytes:
    block = stream.read(chunk_size)
    if block and not block.endswith(b"\n"):
        # Extend to the end of the record that straddles the target boundary
        block += stream.readline()
    return block


def iter_chunks(stream, chunk_size: int):
    """Yield Chunks covering every byte of `stream` exactly once, in order."""
    if chunk_size < 1:
        raise ValueError("chunk_size must be >= 1")

    index = 0
    offset = 0
    block = _read_block(stream, chunk_size)
    while block:
        following = _read_block(stream, chunk_size)
        chunk = Chunk(index=index, offset=offset, data=block)
        check_boundary(chunk, is_last=not following)
        yield chunk
        index += 1
        offset += len(block)
        block = following


def scan_boundaries(stream, chunk_size: int) -> list[tuple[int, int]]:
    """(offset, length) of every chunk, without keeping chunk data around."""
    bounds = []
    for chunk in iter_chunks(stream, chunk_size):
        bounds.append((chunk.offset, chunk.length))
    log.debug(f"scanned {len(bounds)} chunk boundaries")
    return bounds
