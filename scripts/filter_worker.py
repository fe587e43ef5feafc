"""
Filter + project stage.

Each chunk is handled by one worker: every line is parsed as JSON, kept if
`lower <= year <= upper`, projected to the configured fields and appended to
the chunk's own `.inprogress` partition file. Workers share nothing but the
run counters, which are only touched from the fan-in loop.

process_chunk() is a top-level function so it can run in a
ProcessPoolExecutor (JSON parsing is CPU-bound).
"""

import json
import logging
import signal
import threading
from concurrent.futures import (FIRST_COMPLETED, ProcessPoolExecutor,
                                ThreadPoolExecutor, wait)
from dataclasses import dataclass, field
from pathlib import Path

from tqdm import tqdm

from errors import MalformedRecordError, RunCancelledError
from partition import partition_name

log = logging.getLogger(__name__)

INPROGRESS_SUFFIX = ".jsonl.inprogress"
MAX_MALFORMED_SAMPLES = 5
CANCEL_POLL_SECONDS = 0.5


@dataclass(frozen=True)
class FilterSpec:
    """Per-run worker parameters (picklable)."""

    lower: int
    upper: int
    fields: tuple
    required: tuple = ("doi",)
    policy: str = "skip"

    @classmethod
    def from_config(cls, cfg) -> "FilterSpec":
        return cls(
            lower=cfg.lower_year,
            upper=cfg.upper_year,
            fields=tuple(cfg.fields),
            required=tuple(cfg.required_fields),
            policy=cfg.malformed_policy,
        )


@dataclass
class ChunkResult:
    index: int
    path: str
    seen: int = 0
    matched: int = 0
    skipped: int = 0
    bytes_written: int = 0
    malformed: list = field(default_factory=list)


def year_in_range(record: dict, lower: int, upper: int) -> bool:
    """Inclusive year predicate. Missing or non-integer years never match."""
    year = record.get("year")
    if isinstance(year, bool) or not isinstance(year, int):
        return False
    return lower <= year <= upper


def project(record: dict, fields) -> dict:
    """Reduce a record to exactly `fields`, in that order; absent fields become null."""
    return {name: record.get(name) for name in fields}


def serialize(record: dict) -> bytes:
    payload = json.dumps(record, ensure_ascii=False, allow_nan=False, separators=(",", ":"))
    return payload.encode("utf-8") + b"\n"


def _reject_constant(name):
    raise ValueError(f"non-standard JSON constant {name}")


def _parse(line: bytes):
    try:
        record = json.loads(line, parse_constant=_reject_constant)
    except ValueError as e:  # JSONDecodeError, UnicodeDecodeError, NaN/Infinity
        return None, f"invalid JSON: {e}"
    except RecursionError:
        return None, "invalid JSON: nested too deeply"
    if not isinstance(record, dict):
        return None, f"expected a JSON object, got {type(record).__name__}"
    return record, None


def process_chunk(chunk, spec: FilterSpec, work_dir: str) -> ChunkResult:
    """Filter and project one chunk into its dedicated partition file."""
    out_path = Path(work_dir) / f"{partition_name(chunk.index)}{INPROGRESS_SUFFIX}"
    result = ChunkResult(index=chunk.index, path=str(out_path))

    def malformed(line_number, reason):
        if spec.policy == "fail-fast":
            raise MalformedRecordError(chunk.index, line_number, reason)
        result.skipped += 1
        if len(result.malformed) < MAX_MALFORMED_SAMPLES:
            result.malformed.append((line_number, reason))

    with open(out_path, "wb") as out:
        for line_number, line in enumerate(chunk.data.split(b"\n"), 1):
            if not line.strip():
                continue
            result.seen += 1

            record, error = _parse(line)
            if error:
                malformed(line_number, error)
                continue

            if not year_in_range(record, spec.lower, spec.upper):
                continue

            missing = [name for name in spec.required if record.get(name) is None]
            if missing:
                malformed(line_number, f"missing required field(s): {', '.join(missing)}")
                continue

            try:
                payload = serialize(project(record, spec.fields))
            except ValueError as e:  # out-of-range floats such as 1e400
                malformed(line_number, f"unserializable value: {e}")
                continue
            out.write(payload)
            result.matched += 1
            result.bytes_written += len(payload)

    return result


class RunCounters:
    """Run-level seen/matched/skipped counters, safe under concurrent add()."""

    def __init__(self, seen=0, matched=0, skipped=0):
        self._lock = threading.Lock()
        self.seen = seen
        self.matched = matched
        self.skipped = skipped
        self.malformed_samples = []

    def add(self, result: ChunkResult):
        with self._lock:
            self.seen += result.seen
            self.matched += result.matched
            self.skipped += result.skipped
            room = MAX_MALFORMED_SAMPLES * 4 - len(self.malformed_samples)
            for line_number, reason in result.malformed[:max(room, 0)]:
                self.malformed_samples.append(
                    {"chunk": result.index, "line": line_number, "reason": reason})

    def snapshot(self) -> dict:
        with self._lock:
            return {"seen": self.seen, "matched": self.matched, "skipped": self.skipped}

    @property
    def malformed_fraction(self) -> float:
        with self._lock:
            return self.skipped / self.seen if self.seen else 0.0


def _ignore_interrupts():
    # Cancellation is driven by the parent through cancel_event.
    signal.signal(signal.SIGINT, signal.SIG_IGN)
    signal.signal(signal.SIGTERM, signal.SIG_DFL)


class WorkerPool:
    """Fixed-size pool fed from the partitioner through a bounded window.

    Any idle worker takes the next chunk; at most 2 x workers chunks are in
    flight, which bounds memory to a few chunk sizes regardless of input
    size.
    """

    def __init__(self, spec: FilterSpec, work_dir, workers: int,
                 executor: str = "process", cancel_event=None, progress: bool = True):
        self.spec = spec
        self.work_dir = Path(work_dir)
        self.workers = workers
        self.executor = executor
        self.cancel_event = cancel_event or threading.Event()
        self.progress = progress

    def _executor(self):
        if self.executor == "thread":
            return ThreadPoolExecutor(max_workers=self.workers,
                                      thread_name_prefix="filter")
        return ProcessPoolExecutor(max_workers=self.workers,
                                   initializer=_ignore_interrupts)

    def _drain(self, pending: dict, on_complete, pbar):
        while True:
            if self.cancel_event.is_set():
                raise RunCancelledError("cancelled while filtering")
            done, _ = wait(pending, timeout=CANCEL_POLL_SECONDS,
                           return_when=FIRST_COMPLETED)
            if done:
                break
        for future in done:
            pending.pop(future)
            result = future.result()
            on_complete(result)
            pbar.update(1)

    def run(self, chunks, on_complete, skip=frozenset()):
        """Process every chunk not in `skip`; call on_complete(result) as each finishes.

        on_complete runs in the calling thread, only after the worker that
        wrote the partition has returned.
        """
        self.work_dir.mkdir(parents=True, exist_ok=True)
        window = self.workers * 2
        pending = {}
        submitted = 0

        executor = self._executor()
        pbar = tqdm(unit="chunk", desc="filtering", disable=not self.progress)
        try:
            for chunk in chunks:
                if self.cancel_event.is_set():
                    raise RunCancelledError("cancelled while partitioning")
                if chunk.index in skip:
                    log.debug(f"chunk {chunk.index}: already completed, skipping")
                    continue
                while len(pending) >= window:
                    self._drain(pending, on_complete, pbar)
                future = executor.submit(process_chunk, chunk, self.spec, str(self.work_dir))
                pending[future] = chunk.index
                submitted += 1

            while pending:
                self._drain(pending, on_complete, pbar)
        except BaseException:
            for future in pending:
                future.cancel()
            executor.shutdown(wait=True, cancel_futures=True)
            raise
        else:
            executor.shutdown(wait=True)
        finally:
            pbar.close()

        log.info(f"filtering: {submitted} chunks processed by {self.workers} "
                 f"{self.executor} workers")
        return submitted
