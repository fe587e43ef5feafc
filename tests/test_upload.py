from __future__ import annotations

import subprocess
import threading
from pathlib import Path

import pytest
import requests
import responses

import upload
from errors import TransferError, TransientTransferError
from upload import (CliObjectStore, HttpObjectStore, LocalObjectStore,
                    ObjectStore, UploadDriver, open_store)


def _files(root: Path, n: int) -> list[Path]:
    root.mkdir(parents=True, exist_ok=True)
    paths = []
    for i in range(n):
        p = root / f"part-{i:05d}.jsonl.gz"
        p.write_bytes(b"x" * (100 + i))
        paths.append(p)
    return paths


class FlakyStore(LocalObjectStore):
    """Fails the first `failures[key]` puts of a key with a transient error."""

    def __init__(self, root, failures: dict, permanent: set = frozenset()):
        super().__init__(root)
        self.failures = dict(failures)
        self.permanent = permanent
        self.calls = {}
        self._lock = threading.Lock()

    def put(self, local_path, key, timeout=None):
        with self._lock:
            self.calls[key] = self.calls.get(key, 0) + 1
            if key in self.permanent:
                raise TransferError(key, "HTTP 403")
            if self.failures.get(key, 0) > 0:
                self.failures[key] -= 1
                raise TransientTransferError(key, "HTTP 503")
        return super().put(local_path, key, timeout)


def test_local_store_copies_file(tmp_path: Path) -> None:
    (src,) = _files(tmp_path / "out", 1)
    store = LocalObjectStore(tmp_path / "bucket")

    assert store.put(src, "nested/part-00000.jsonl.gz") == src.stat().st_size
    assert store.exists("nested/part-00000.jsonl.gz")
    assert (tmp_path / "bucket" / "nested" / "part-00000.jsonl.gz").read_bytes() == src.read_bytes()


def test_driver_uploads_whole_directory(tmp_path: Path) -> None:
    files = _files(tmp_path / "out", 4)
    (tmp_path / "out" / "_manifest.json").write_text("{}")
    driver = UploadDriver(LocalObjectStore(tmp_path / "bucket"), concurrency=2, progress=False)

    report = driver.upload_directory(tmp_path / "out")

    assert report.attempted == 4
    assert sorted(report.succeeded) == [f.name for f in files]
    assert report.bytes_transferred == sum(f.stat().st_size for f in files)
    assert not (tmp_path / "bucket" / "_manifest.json").exists()


def test_driver_uploads_only_named_partitions(tmp_path: Path) -> None:
    _files(tmp_path / "out", 4)
    (tmp_path / "out" / "part-00009.jsonl.gz.tmp").write_bytes(b"partial")
    driver = UploadDriver(LocalObjectStore(tmp_path / "bucket"), progress=False)

    report = driver.upload_directory(tmp_path / "out",
                                     only=["part-00002.jsonl.gz", "part-00009.jsonl.gz.tmp"])

    assert report.attempted == 1
    assert [p.name for p in (tmp_path / "bucket").iterdir()] == ["part-00002.jsonl.gz"]


def test_transient_failures_are_retried_with_backoff(tmp_path: Path) -> None:
    files = _files(tmp_path / "out", 1)
    store = FlakyStore(tmp_path / "bucket", {"part-00000.jsonl.gz": 3})
    delays = []
    driver = UploadDriver(store, retries=5, backoff_base=0.5, backoff_cap=1.5,
                          sleep=delays.append, progress=False)

    report = driver.upload_files(tmp_path / "out", files)

    assert report.succeeded == ["part-00000.jsonl.gz"]
    assert store.calls["part-00000.jsonl.gz"] == 4
    assert delays == [0.5, 1.0, 1.5]


def test_one_bad_file_does_not_stop_the_others(tmp_path: Path) -> None:
    files = _files(tmp_path / "out", 10)
    bad = "part-00007.jsonl.gz"
    store = FlakyStore(tmp_path / "bucket", {bad: 99})
    driver = UploadDriver(store, concurrency=4, retries=2, sleep=lambda s: None, progress=False)

    report = driver.upload_files(tmp_path / "out", files)

    assert report.attempted == 10
    assert len(report.succeeded) == 9
    assert list(report.failed) == [bad]
    assert store.calls[bad] == 3
    assert report.failure_rate == pytest.approx(0.1)
    assert report.to_dict()["failed_files"] == [bad]
    assert sorted(p.name for p in (tmp_path / "bucket").iterdir()) == sorted(
        f.name for f in files if f.name != bad)


def test_permanent_errors_are_not_retried(tmp_path: Path) -> None:
    files = _files(tmp_path / "out", 2)
    store = FlakyStore(tmp_path / "bucket", {}, permanent={"part-00001.jsonl.gz"})
    driver = UploadDriver(store, retries=5, sleep=lambda s: None, progress=False)

    report = driver.upload_files(tmp_path / "out", files)

    assert store.calls["part-00001.jsonl.gz"] == 1
    assert "HTTP 403" in report.failed["part-00001.jsonl.gz"]


def test_if_exists_policies(tmp_path: Path) -> None:
    files = _files(tmp_path / "out", 2)
    bucket = tmp_path / "bucket"
    bucket.mkdir()
    (bucket / "part-00000.jsonl.gz").write_bytes(b"old")

    skip = UploadDriver(LocalObjectStore(bucket), if_exists="skip", progress=False)
    report = skip.upload_files(tmp_path / "out", files)
    assert report.skipped == ["part-00000.jsonl.gz"]
    assert (bucket / "part-00000.jsonl.gz").read_bytes() == b"old"

    (bucket / "part-00001.jsonl.gz").unlink()
    error = UploadDriver(LocalObjectStore(bucket), if_exists="error", progress=False)
    report = error.upload_files(tmp_path / "out", files)
    assert "already exists" in report.failed["part-00000.jsonl.gz"]
    assert report.succeeded == ["part-00001.jsonl.gz"]

    overwrite = UploadDriver(LocalObjectStore(bucket), progress=False)
    overwrite.upload_files(tmp_path / "out", files)
    assert (bucket / "part-00000.jsonl.gz").read_bytes() == files[0].read_bytes()


def test_cancelled_driver_uploads_nothing(tmp_path: Path) -> None:
    files = _files(tmp_path / "out", 3)
    cancel = threading.Event()
    cancel.set()
    driver = UploadDriver(LocalObjectStore(tmp_path / "bucket"), cancel_event=cancel,
                          progress=False)

    report = driver.upload_files(tmp_path / "out", files)

    assert report.cancelled
    assert not report.succeeded
    assert set(report.failed.values()) == {"cancelled"}


def test_base_store_is_abstract(tmp_path: Path) -> None:
    with pytest.raises(NotImplementedError):
        ObjectStore().put(tmp_path / "x", "x")


# ── HTTP store ──────────────────────────────────────────────────────────────

BASE = "https://storage.example.com/bucket/unpaywall"


@responses.activate
def test_http_store_put_and_retry(tmp_path: Path) -> None:
    files = _files(tmp_path / "out", 1)
    url = f"{BASE}/part-00000.jsonl.gz"
    responses.add(responses.PUT, url, status=503)
    responses.add(responses.PUT, url, status=200)

    driver = UploadDriver(HttpObjectStore(BASE), retries=3, sleep=lambda s: None, progress=False)
    report = driver.upload_files(tmp_path / "out", files)

    assert report.succeeded == ["part-00000.jsonl.gz"]
    assert len(responses.calls) == 2
    assert responses.calls[1].request.headers["Content-Type"] == "application/gzip"


@responses.activate
def test_http_store_client_error_is_permanent(tmp_path: Path) -> None:
    (src,) = _files(tmp_path / "out", 1)
    responses.add(responses.PUT, f"{BASE}/k", status=403, body="denied")

    with pytest.raises(TransferError) as exc:
        HttpObjectStore(BASE).put(src, "k")
    assert not isinstance(exc.value, TransientTransferError)


@responses.activate
def test_http_store_connection_error_is_transient(tmp_path: Path) -> None:
    (src,) = _files(tmp_path / "out", 1)
    responses.add(responses.PUT, f"{BASE}/k", body=requests.exceptions.ConnectionError("reset"))

    with pytest.raises(TransientTransferError):
        HttpObjectStore(BASE).put(src, "k")


@responses.activate
def test_http_store_exists() -> None:
    responses.add(responses.HEAD, f"{BASE}/there", status=200)
    responses.add(responses.HEAD, f"{BASE}/gone", status=404)

    store = HttpObjectStore(BASE + "/")
    assert store.exists("there") is True
    assert store.exists("gone") is False


# ── CLI store / dispatch ────────────────────────────────────────────────────

def test_cli_store_builds_gsutil_command(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    (src,) = _files(tmp_path / "out", 1)
    seen = []

    def fake_run(cmd, **kwargs):
        seen.append(cmd)
        return subprocess.CompletedProcess(cmd, 0, "", "")

    monkeypatch.setattr(upload.subprocess, "run", fake_run)
    store = CliObjectStore("gs://bucket/unpaywall/")

    assert store.put(src, "part-00000.jsonl.gz", timeout=10) == src.stat().st_size
    assert seen[0] == ["gsutil", "-q", "cp", str(src), "gs://bucket/unpaywall/part-00000.jsonl.gz"]


def test_cli_store_failure_and_timeout_are_transient(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    (src,) = _files(tmp_path / "out", 1)
    store = CliObjectStore("s3://bucket/prefix")

    monkeypatch.setattr(upload.subprocess, "run",
                        lambda cmd, **kw: subprocess.CompletedProcess(cmd, 1, "", "SlowDown"))
    with pytest.raises(TransientTransferError, match="SlowDown"):
        store.put(src, "k")

    def timeout(cmd, **kw):
        raise subprocess.TimeoutExpired(cmd, kw.get("timeout"))

    monkeypatch.setattr(upload.subprocess, "run", timeout)
    with pytest.raises(TransientTransferError, match="timed out"):
        store.put(src, "k", timeout=5)


def test_open_store_dispatch(tmp_path: Path) -> None:
    assert isinstance(open_store("gs://b/p"), CliObjectStore)
    assert isinstance(open_store("s3://b/p"), CliObjectStore)
    assert isinstance(open_store("https://host/b"), HttpObjectStore)
    assert isinstance(open_store(str(tmp_path)), LocalObjectStore)
    assert isinstance(open_store(f"file://{tmp_path}"), LocalObjectStore)
    with pytest.raises(ValueError):
        open_store("ftp://host/b")
