"""
Upload driver: push finalized partitions to object storage.

The driver never acquires credentials. It is handed an ObjectStore, a
capability that already knows how to reach the destination (an authorised
requests.Session, a configured gsutil/aws CLI, or a mounted directory).

Transfers run on a bounded thread pool. Transient failures (connection
errors, timeouts, HTTP 429/5xx) are retried with exponential backoff; a file
that exhausts its retries is reported as failed and the rest keep going.
"""

import logging
import shutil
import subprocess
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

import requests
from tqdm import tqdm

from errors import (DestinationExistsError, RunCancelledError, TransferError,
                    TransientTransferError)
from finalize import list_partitions

log = logging.getLogger(__name__)

RETRYABLE_STATUS = {408, 429, 500, 502, 503, 504}


# ── Object stores ───────────────────────────────────────────────────────────

class ObjectStore:
    """Destination capability: put a local file under a relative key."""

    def url(self, key: str) -> str:
        raise NotImplementedError

    def put(self, local_path: Path, key: str, timeout: float | None = None) -> int:
        """Upload one file, returning the bytes transferred."""
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        raise NotImplementedError


class LocalObjectStore(ObjectStore):
    """Directory-backed store (mounted bucket, NFS share, tests)."""

    def __init__(self, root):
        self.root = Path(root)

    def url(self, key: str) -> str:
        return str(self.root / key)

    def put(self, local_path, key, timeout=None) -> int:
        dest = self.root / key
        dest.parent.mkdir(parents=True, exist_ok=True)
        tmp = dest.with_name(dest.name + ".part")
        try:
            shutil.copyfile(local_path, tmp)
            tmp.replace(dest)
        except OSError as e:
            raise TransientTransferError(key, f"{type(e).__name__}: {e}") from e
        return dest.stat().st_size

    def exists(self, key) -> bool:
        return (self.root / key).exists()


class HttpObjectStore(ObjectStore):
    """PUT objects to `{base_url}/{key}` (signed URLs, XML/REST storage APIs)."""

    def __init__(self, base_url: str, session: requests.Session | None = None):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()

    def url(self, key: str) -> str:
        return f"{self.base_url}/{key}"

    def _check(self, key: str, response):
        if response.status_code in RETRYABLE_STATUS:
            raise TransientTransferError(key, f"HTTP {response.status_code}")
        if response.status_code >= 400:
            raise TransferError(key, f"HTTP {response.status_code}: {response.text[:200]}")

    def put(self, local_path, key, timeout=None) -> int:
        size = Path(local_path).stat().st_size
        content_type = ("application/gzip" if str(local_path).endswith(".gz")
                        else "application/x-ndjson")
        try:
            with open(local_path, "rb") as f:
                response = self.session.put(
                    self.url(key), data=f, timeout=timeout,
                    headers={"Content-Type": content_type,
                             "Content-Length": str(size)})
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            raise TransientTransferError(key, f"{type(e).__name__}: {e}") from e
        except requests.exceptions.RequestException as e:
            raise TransferError(key, f"{type(e).__name__}: {e}") from e
        self._check(key, response)
        return size

    def exists(self, key) -> bool:
        try:
            response = self.session.head(self.url(key), timeout=60)
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            raise TransientTransferError(key, f"{type(e).__name__}: {e}") from e
        if response.status_code == 404:
            return False
        self._check(key, response)
        return True


class CliObjectStore(ObjectStore):
    """Shell out to gsutil (gs://) or the AWS CLI (s3://)."""

    COMMANDS = {
        "gs": (["gsutil", "-q", "cp"], ["gsutil", "-q", "stat"]),
        "s3": (["aws", "s3", "cp", "--only-show-errors"], ["aws", "s3", "ls"]),
    }

    def __init__(self, prefix: str):
        self.prefix = prefix.rstrip("/")
        self.scheme = urlparse(prefix).scheme
        if self.scheme not in self.COMMANDS:
            raise ValueError(f"unsupported destination scheme: {prefix}")

    def url(self, key: str) -> str:
        return f"{self.prefix}/{key}"

    def _run(self, key: str, cmd: list, timeout):
        try:
            return subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
        except subprocess.TimeoutExpired as e:
            raise TransientTransferError(key, f"timed out after {timeout}s") from e
        except FileNotFoundError as e:
            raise TransferError(key, f"{cmd[0]} not found on PATH") from e

    def put(self, local_path, key, timeout=None) -> int:
        cp, _ = self.COMMANDS[self.scheme]
        result = self._run(key, cp + [str(local_path), self.url(key)], timeout)
        if result.returncode != 0:
            raise TransientTransferError(
                key, f"{cp[0]} exited {result.returncode}: {result.stderr.strip()[:200]}")
        return Path(local_path).stat().st_size

    def exists(self, key) -> bool:
        _, stat = self.COMMANDS[self.scheme]
        result = self._run(key, stat + [self.url(key)], 60)
        return result.returncode == 0


def open_store(destination: str, session: requests.Session | None = None) -> ObjectStore:
    """Pick a store implementation from the destination's scheme."""
    scheme = urlparse(destination).scheme
    if scheme in CliObjectStore.COMMANDS:
        return CliObjectStore(destination)
    if scheme in ("http", "https"):
        return HttpObjectStore(destination, session=session)
    if scheme == "file":
        return LocalObjectStore(urlparse(destination).path)
    if scheme == "":
        return LocalObjectStore(destination)
    raise ValueError(f"unsupported destination: {destination}")


# ── Driver ──────────────────────────────────────────────────────────────────

@dataclass
class UploadReport:
    attempted: int = 0
    succeeded: list = field(default_factory=list)
    skipped: list = field(default_factory=list)
    failed: dict = field(default_factory=dict)
    bytes_transferred: int = 0
    cancelled: bool = False

    @property
    def failure_rate(self) -> float:
        return len(self.failed) / self.attempted if self.attempted else 0.0

    def to_dict(self) -> dict:
        return {
            "attempted": self.attempted,
            "succeeded": len(self.succeeded),
            "skipped": len(self.skipped),
            "failed": len(self.failed),
            "failed_files": sorted(self.failed),
            "errors": dict(sorted(self.failed.items())),
            "bytes_transferred": self.bytes_transferred,
            "cancelled": self.cancelled,
        }


class UploadDriver:
    """Concurrent, retrying, partial-failure tolerant uploader."""

    def __init__(
        self,
        store: ObjectStore,
        concurrency: int = 8,
        retries: int = 5,
        backoff_base: float = 1.0,
        backoff_cap: float = 60.0,
        timeout: float | None = 300.0,
        if_exists: str = "overwrite",
        cancel_event: threading.Event | None = None,
        sleep=None,
        progress: bool = True,
    ):
        self.store = store
        self.concurrency = concurrency
        self.retries = retries
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.timeout = timeout
        self.if_exists = if_exists
        self.cancel_event = cancel_event or threading.Event()
        # Waiting on the cancel event lets Ctrl-C cut a backoff short
        self.sleep = sleep or self.cancel_event.wait
        self.progress = progress

    def backoff(self, attempt: int) -> float:
        return min(self.backoff_cap, self.backoff_base * 2 ** attempt)

    def upload_file(self, local_path: Path, key: str) -> tuple[str, int]:
        """Upload one file with retries. Returns (status, bytes)."""
        attempt = 0
        while True:
            if self.cancel_event.is_set():
                raise RunCancelledError(f"cancelled before uploading {key}")
            try:
                if self.if_exists != "overwrite" and self.store.exists(key):
                    if self.if_exists == "skip":
                        return "skipped", 0
                    raise DestinationExistsError(key, f"{self.store.url(key)} already exists")
                return "uploaded", self.store.put(local_path, key, timeout=self.timeout)
            except TransientTransferError as e:
                if attempt >= self.retries:
                    raise TransferError(key, f"gave up after {attempt + 1} attempts: {e.reason}") from e
                delay = self.backoff(attempt)
                log.warning(f"  {key}: {e.reason}, retry {attempt + 1}/{self.retries} in {delay:.1f}s")
                self.sleep(delay)
                attempt += 1

    def upload_files(self, local_dir, files) -> UploadReport:
        """Upload `files` (paths under local_dir) keyed by their relative path."""
        local_dir = Path(local_dir)
        tasks = [(Path(f), Path(f).relative_to(local_dir).as_posix()) for f in files]
        report = UploadReport(attempted=len(tasks))
        if not tasks:
            return report

        log.info(f"uploading {len(tasks)} files | {self.concurrency} streams | "
                 f"{self.retries} retries")

        with ThreadPoolExecutor(max_workers=self.concurrency,
                                thread_name_prefix="upload") as executor:
            futures = {executor.submit(self.upload_file, path, key): key
                       for path, key in tasks}
            with tqdm(total=len(tasks), unit="file", desc="uploading",
                      disable=not self.progress) as pbar:
                for future in as_completed(futures):
                    key = futures[future]
                    pbar.update(1)
                    try:
                        status, nbytes = future.result()
                    except RunCancelledError:
                        report.cancelled = True
                        report.failed[key] = "cancelled"
                        continue
                    except Exception as e:
                        report.failed[key] = str(e)
                        log.error(f"  {key}: FAILED - {e}")
                        continue
                    if status == "skipped":
                        report.skipped.append(key)
                        log.info(f"  {key}: exists, skipped")
                    else:
                        report.succeeded.append(key)
                        report.bytes_transferred += nbytes

        log.info(f"upload: {len(report.succeeded)}/{report.attempted} files, "
                 f"{report.bytes_transferred / (1024**2):.1f} MB"
                 + (f", {len(report.failed)} failed" if report.failed else ""))
        return report

    def upload_directory(self, local_dir, only=None, compression: str | None = None) -> UploadReport:
        """Upload the finalized partitions below local_dir, or just those named in `only`."""
        local_dir = Path(local_dir)
        files = list_partitions(local_dir, compression)
        if only is not None:
            wanted = set(only)
            files = [f for f in files if f.relative_to(local_dir).as_posix() in wanted]
        return self.upload_files(local_dir, files)

    @classmethod
    def from_config(cls, cfg, store: ObjectStore, cancel_event=None, sleep=None):
        return cls(
            store,
            concurrency=cfg.upload_concurrency,
            retries=cfg.retries,
            backoff_base=cfg.backoff_base,
            backoff_cap=cfg.backoff_cap,
            timeout=cfg.upload_timeout,
            if_exists=cfg.if_exists,
            cancel_event=cancel_event,
            sleep=sleep,
            progress=cfg.progress,
        )
