"""
Pipeline run orchestration.

One run = one snapshot, one year range, one projection, one output directory:

    INITIALIZED -> DECOMPRESSING -> PARTITIONING -> FILTERING (fan-out/fan-in)
                -> FINALIZING -> UPLOADING -> COMPLETED

with FAILED reachable from every stage. Decompression, partitioning and
filtering are streamed, so the first three stages are entered as soon as
their first output exists. Partitions are finalized as soon as their worker
returns; FINALIZING waits for the stragglers.

Output directory layout:
    part-00000.jsonl.gz ...   finalized partitions
    _manifest.json            run summary (always written, also on failure)
    _SUCCESS / _INCOMPLETE    completion markers
    _work/                    partitions still being written
    .pipeline_checkpoint.json completed-chunk ledger (--resume)
    pipeline.log              run log (written by the CLI)
"""

import json
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path

from decompress import open_decompressed
from errors import PipelineError, RunCancelledError, ThresholdExceededError
from filter_worker import INPROGRESS_SUFFIX, FilterSpec, RunCounters, WorkerPool
from finalize import (INCOMPLETE_SUFFIX, clear_markers, finalize_partition,
                      list_partitions, mark_incomplete, mark_success)
from partition import iter_chunks
from upload import UploadDriver, UploadReport, open_store

log = logging.getLogger(__name__)

CHECKPOINT_NAME = ".pipeline_checkpoint.json"
MANIFEST_NAME = "_manifest.json"
WORK_DIR_NAME = "_work"
LOG_NAME = "pipeline.log"


class RunState(str, Enum):
    INITIALIZED = "INITIALIZED"
    DECOMPRESSING = "DECOMPRESSING"
    PARTITIONING = "PARTITIONING"
    FILTERING = "FILTERING"
    FINALIZING = "FINALIZING"
    UPLOADING = "UPLOADING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


# ── Checkpoint ledger ───────────────────────────────────────────────────────

def run_signature(cfg) -> dict:
    """Everything that must match for a checkpoint to be reusable."""
    stat = Path(cfg.input_path).stat()
    return {
        "input": str(Path(cfg.input_path).resolve()),
        "input_size": stat.st_size,
        "input_mtime": stat.st_mtime,
        "lower_year": cfg.lower_year,
        "upper_year": cfg.upper_year,
        "fields": list(cfg.fields),
        "required_fields": list(cfg.required_fields),
        "chunk_size": cfg.chunk_size,
        "malformed_policy": cfg.malformed_policy,
        "output_compression": cfg.output_compression,
    }


def load_checkpoint(output_dir) -> dict:
    path = Path(output_dir) / CHECKPOINT_NAME
    if path.exists():
        with open(path) as f:
            return json.load(f)
    return {"signature": None, "completed_chunks": {}}


def save_checkpoint(output_dir, checkpoint: dict):
    path = Path(output_dir) / CHECKPOINT_NAME
    tmp = path.with_name(path.name + ".tmp")
    with open(tmp, "w") as f:
        json.dump(checkpoint, f, indent=2)
    tmp.replace(path)


def mark_chunk_completed(checkpoint: dict, result, final_file: Path):
    checkpoint.setdefault("completed_chunks", {})[str(result.index)] = {
        "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S"),
        "file": final_file.name,
        "seen": result.seen,
        "matched": result.matched,
        "skipped": result.skipped,
    }


# ── Manifest ────────────────────────────────────────────────────────────────

def load_manifest(output_dir) -> dict:
    path = Path(output_dir) / MANIFEST_NAME
    if not path.exists():
        return {}
    with open(path) as f:
        return json.load(f)


def write_manifest(output_dir, manifest: dict):
    path = Path(output_dir) / MANIFEST_NAME
    tmp = path.with_name(path.name + ".tmp")
    with open(tmp, "w") as f:
        json.dump(manifest, f, indent=2, default=str)
    tmp.replace(path)


@dataclass
class RunSummary:
    state: str
    stages: list
    seen: int = 0
    matched: int = 0
    skipped: int = 0
    partitions: list = field(default_factory=list)
    resumed_chunks: int = 0
    malformed_samples: list = field(default_factory=list)
    upload: dict | None = None
    elapsed: float = 0.0
    error: str | None = None
    cancelled: bool = False
    config: dict = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.state == RunState.COMPLETED.value

    @property
    def exit_code(self) -> int:
        if self.ok:
            return 0
        return 130 if self.cancelled else 1

    def to_dict(self) -> dict:
        d = asdict(self)
        d["partition_count"] = len(self.partitions)
        return d


# ── Run ─────────────────────────────────────────────────────────────────────

class PipelineRun:
    """Drive one snapshot through filter, finalize and (optionally) upload."""

    def __init__(self, cfg, store=None, cancel_event: threading.Event | None = None,
                 sleep=None):
        self.cfg = cfg
        self.store = store
        self.cancel_event = cancel_event or threading.Event()
        self.sleep = sleep
        self.output_dir = Path(cfg.output_dir)
        self.work_dir = self.output_dir / WORK_DIR_NAME
        self.state = RunState.INITIALIZED
        self.stages = [RunState.INITIALIZED.value]
        self.counters = RunCounters()
        self.checkpoint = {"signature": None, "completed_chunks": {}}
        self.resumed = 0
        self.upload_report: UploadReport | None = None
        self._ckpt_lock = threading.Lock()

    def _enter(self, state: RunState):
        self.state = state
        self.stages.append(state.value)
        log.info(f"run state -> {state.value}")

    def _clear_outputs(self):
        for directory in (self.output_dir, self.work_dir):
            if not directory.exists():
                continue
            for f in directory.iterdir():
                if f.is_file() and f.name.startswith("part-"):
                    f.unlink()

    def _prepare(self) -> set:
        """Set up directories and the ledger; return chunk indices to skip."""
        cfg = self.cfg
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.work_dir.mkdir(parents=True, exist_ok=True)
        clear_markers(self.output_dir)

        for f in self.work_dir.iterdir():
            if f.is_file() and (f.name.endswith(INCOMPLETE_SUFFIX)
                                or f.name.endswith(INPROGRESS_SUFFIX)):
                f.unlink()

        signature = run_signature(cfg)
        if cfg.resume:
            checkpoint = load_checkpoint(self.output_dir)
            if checkpoint.get("signature") == signature:
                self.checkpoint = checkpoint
            elif checkpoint.get("signature") is not None:
                log.warning("checkpoint belongs to a different input or parameters, "
                            "starting over")

        self.checkpoint["signature"] = signature
        if not self.checkpoint.get("completed_chunks"):
            self._clear_outputs()
            self.checkpoint["completed_chunks"] = {}

        skip = set()
        for key, info in list(self.checkpoint["completed_chunks"].items()):
            if (self.output_dir / info["file"]).exists():
                skip.add(int(key))
                self.counters.seen += info["seen"]
                self.counters.matched += info["matched"]
                self.counters.skipped += info["skipped"]
            else:
                del self.checkpoint["completed_chunks"][key]

        save_checkpoint(self.output_dir, self.checkpoint)
        if skip:
            log.info(f"resume: {len(skip)} chunks already finalized, skipping them")
        self.resumed = len(skip)
        return skip

    def _staged(self, chunks):
        for chunk in chunks:
            if self.state is RunState.PARTITIONING:
                self._enter(RunState.FILTERING)
            yield chunk

    def _filter_and_finalize(self, skip: set):
        cfg = self.cfg
        spec = FilterSpec.from_config(cfg)
        pool = WorkerPool(spec, self.work_dir, cfg.workers, executor=cfg.executor,
                          cancel_event=self.cancel_event, progress=cfg.progress)
        finalize_futures = []

        def record(result, future):
            if future.cancelled() or future.exception() is not None:
                return
            with self._ckpt_lock:
                mark_chunk_completed(self.checkpoint, result, future.result())
                save_checkpoint(self.output_dir, self.checkpoint)

        with ThreadPoolExecutor(max_workers=max(1, min(cfg.workers, 4)),
                                thread_name_prefix="finalize") as finalizer:

            def on_complete(result):
                self.counters.add(result)
                future = finalizer.submit(finalize_partition, result.path,
                                          self.output_dir, cfg.output_compression)
                future.add_done_callback(lambda f, r=result: record(r, f))
                finalize_futures.append(future)

            self._enter(RunState.DECOMPRESSING)
            with open_decompressed(cfg.input_path, cfg.compression,
                                   cfg.decompress_threads) as stream:
                self._enter(RunState.PARTITIONING)
                pool.run(self._staged(iter_chunks(stream, cfg.chunk_size)),
                         on_complete, skip=skip)
            if self.state is RunState.PARTITIONING:
                self._enter(RunState.FILTERING)

            self._enter(RunState.FINALIZING)
            for future in finalize_futures:
                future.result()

        totals = self.counters.snapshot()
        log.info(f"filtering: {totals['seen']:,} records seen, {totals['matched']:,} matched, "
                 f"{totals['skipped']:,} malformed skipped")

        limit = cfg.max_malformed_fraction
        if limit is not None and self.counters.malformed_fraction > limit:
            raise ThresholdExceededError("malformed record", self.counters.malformed_fraction, limit)

    def _upload(self):
        cfg = self.cfg
        self._enter(RunState.UPLOADING)
        store = self.store or open_store(cfg.destination)
        driver = UploadDriver.from_config(cfg, store, cancel_event=self.cancel_event,
                                          sleep=self.sleep)
        self.upload_report = driver.upload_directory(self.output_dir,
                                                     compression=cfg.output_compression)
        if self.upload_report.cancelled:
            raise RunCancelledError("cancelled while uploading")
        rate = self.upload_report.failure_rate
        if rate > cfg.max_failed_upload_fraction:
            raise ThresholdExceededError("failed upload", rate, cfg.max_failed_upload_fraction)

    def _execute(self):
        skip = self._prepare()
        self._filter_and_finalize(skip)
        if self.cfg.destination or self.store is not None:
            self._upload()
        self._enter(RunState.COMPLETED)

    def summary(self, elapsed: float = 0.0, error: str | None = None,
                cancelled: bool = False) -> RunSummary:
        totals = self.counters.snapshot()
        return RunSummary(
            state=self.state.value,
            stages=list(self.stages),
            seen=totals["seen"],
            matched=totals["matched"],
            skipped=totals["skipped"],
            partitions=[p.name for p in list_partitions(self.output_dir,
                                                        self.cfg.output_compression)],
            resumed_chunks=self.resumed,
            malformed_samples=list(self.counters.malformed_samples),
            upload=self.upload_report.to_dict() if self.upload_report else None,
            elapsed=round(elapsed, 2),
            error=error,
            cancelled=cancelled,
            config={
                "input_path": str(self.cfg.input_path),
                "lower_year": self.cfg.lower_year,
                "upper_year": self.cfg.upper_year,
                "fields": list(self.cfg.fields),
                "chunk_size": self.cfg.chunk_size,
                "workers": self.cfg.workers,
                "destination": self.cfg.destination,
                "output_compression": self.cfg.output_compression,
            },
        )

    def run(self) -> RunSummary:
        """Execute the run. Pipeline errors end in FAILED, never in an exception."""
        start = time.time()
        error = None
        cancelled = False
        try:
            self._execute()
        except RunCancelledError as e:
            cancelled = True
            error = f"cancelled: {e}"
        except (PipelineError, OSError) as e:
            error = f"{type(e).__name__}: {e}"
        except Exception as e:  # BrokenProcessPool, worker bugs
            log.exception(f"unexpected error in {self.state.value}")
            error = f"{type(e).__name__}: {e}"

        if error:
            log.error(f"run failed in {self.state.value}: {error}")
            self.state = RunState.FAILED
            self.stages.append(RunState.FAILED.value)
            if self.output_dir.exists():
                mark_incomplete(self.output_dir, error, work_dir=self.work_dir)
        else:
            mark_success(self.output_dir)
            if self.work_dir.exists() and not any(self.work_dir.iterdir()):
                self.work_dir.rmdir()

        summary = self.summary(time.time() - start, error=error, cancelled=cancelled)
        if self.output_dir.exists():
            write_manifest(self.output_dir, summary.to_dict())
        return summary


def upload_only(output_dir, driver: UploadDriver, failed_only: bool = False) -> UploadReport:
    """Upload an existing output directory, or only the files that failed last time.

    The manifest's upload section is updated so repeated retries converge on
    the still-failing subset.
    """
    output_dir = Path(output_dir)
    manifest = load_manifest(output_dir)
    only = None
    if failed_only:
        only = (manifest.get("upload") or {}).get("failed_files", [])
        log.info(f"retrying {len(only)} previously failed uploads")

    report = driver.upload_directory(output_dir, only=only)

    if manifest:
        upload = dict(manifest.get("upload") or {})
        if failed_only and upload:
            errors = dict(upload.get("errors", {}))
            for key in report.succeeded + report.skipped:
                errors.pop(key, None)
            errors.update(report.failed)
            upload.update({
                "succeeded": upload.get("succeeded", 0) + len(report.succeeded),
                "skipped": upload.get("skipped", 0) + len(report.skipped),
                "failed": len(errors),
                "failed_files": sorted(errors),
                "errors": dict(sorted(errors.items())),
                "bytes_transferred": upload.get("bytes_transferred", 0) + report.bytes_transferred,
                "cancelled": report.cancelled,
            })
        else:
            upload = report.to_dict()
        upload["last_upload"] = time.strftime("%Y-%m-%dT%H:%M:%S")
        manifest["upload"] = upload
        write_manifest(output_dir, manifest)
    return report
