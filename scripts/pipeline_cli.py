#!/usr/bin/env python3
"""
Filter an open-access snapshot (NDJSON, compressed) to a year range, project
it to a field subset and package it as independently uploadable partitions.

Usage:
    python scripts/pipeline_cli.py run --input unpaywall_snapshot.jsonl.gz \\
        --from-year 2018 --to-year 2019 --output out/2018-2019
    python scripts/pipeline_cli.py run --input snap.jsonl.gz --from-year 2018 \\
        --to-year 2019 --output out/ --destination gs://my-bucket/unpaywall/ --workers 6
    python scripts/pipeline_cli.py run ... --resume         # skip finalized chunks
    python scripts/pipeline_cli.py run ... --dry-run        # only count chunks
    python scripts/pipeline_cli.py upload out/ --destination gs://my-bucket/unpaywall/
    python scripts/pipeline_cli.py upload out/ --destination ... --failed-only
    python scripts/pipeline_cli.py status out/
    python scripts/pipeline_cli.py verify out/              # DuckDB row count + schema
    python scripts/pipeline_cli.py query out/ "SELECT oa_status, COUNT(*) FROM partitions GROUP BY 1"

Destinations: gs://... (gsutil), s3://... (aws cli), http(s)://... (PUT, bearer
token from OAPIPE_UPLOAD_TOKEN), or a local directory. Credentials must
already be configured for the chosen tool.
"""

import argparse
import gzip
import json
import logging
import os
import signal
import sys
import threading
import time
from pathlib import Path

import duckdb
import requests

SCRIPT_DIR = Path(__file__).resolve().parent
sys.path.insert(0, str(SCRIPT_DIR))

from config import (COMPRESSIONS, EXECUTORS, IF_EXISTS_POLICIES,
                    MALFORMED_POLICIES, OUTPUT_COMPRESSIONS, load_config,
                    parse_size)
from decompress import open_decompressed
from errors import PipelineError
from finalize import INCOMPLETE_MARKER, SUCCESS_MARKER, list_partitions
from partition import scan_boundaries
from pipeline import (LOG_NAME, PipelineRun, load_checkpoint, load_manifest,
                      upload_only)
from upload import HttpObjectStore, UploadDriver, open_store

log = logging.getLogger(__name__)


def setup_logging(output_dir=None, verbose: bool = False):
    handlers = [logging.StreamHandler()]
    if output_dir is not None:
        Path(output_dir).mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(Path(output_dir) / LOG_NAME))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=handlers,
        force=True,
    )


def build_store(destination: str):
    """Resolve the destination into a store; HTTP gets a pre-issued bearer token."""
    store = open_store(destination)
    if isinstance(store, HttpObjectStore):
        token = os.environ.get("OAPIPE_UPLOAD_TOKEN")
        session = requests.Session()
        session.headers.update({"User-Agent": "oa-snapshot-pipeline/1.0"})
        if token:
            session.headers["Authorization"] = f"Bearer {token}"
        store.session = session
    return store


def install_cancel_handler() -> threading.Event:
    """First Ctrl-C/SIGTERM requests a clean stop; the second one kills."""
    cancel = threading.Event()

    def handler(signum, frame):
        if cancel.is_set():
            raise KeyboardInterrupt
        print("\nCancelling: finishing in-flight work, partial output will be "
              "marked incomplete (Ctrl-C again to abort)", file=sys.stderr)
        cancel.set()

    signal.signal(signal.SIGINT, handler)
    signal.signal(signal.SIGTERM, handler)
    return cancel


def _parse_fields(value):
    if value is None:
        return None
    return tuple(f.strip() for f in value.split(",") if f.strip())


def _size(value):
    try:
        return parse_size(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))


# ── Commands ────────────────────────────────────────────────────────────────

def cmd_run(args):
    """Run the filter pipeline over one snapshot."""
    setup_logging(args.output, args.verbose)
    try:
        cfg = load_config(
            args.input, args.output, args.from_year, args.to_year,
            fields=_parse_fields(args.fields),
            required_fields=_parse_fields(args.required),
            compression=args.compression,
            decompress_threads=args.decompress_threads,
            workers=args.workers,
            executor=args.executor,
            chunk_size=args.chunk_size,
            output_compression=args.output_compression,
            malformed_policy=args.on_malformed,
            max_malformed_fraction=args.max_malformed_fraction,
            destination=args.destination,
            upload_concurrency=args.upload_concurrency,
            retries=args.retries,
            backoff_base=args.backoff,
            upload_timeout=args.upload_timeout,
            if_exists=args.if_exists,
            max_failed_upload_fraction=args.max_failed_upload_fraction,
            resume=args.resume or None,
            progress=False if args.no_progress else None,
        )
    except ValueError as e:
        log.error(f"invalid configuration: {e}")
        return 2

    if args.dry_run:
        start = time.time()
        try:
            with open_decompressed(cfg.input_path, cfg.compression,
                                   cfg.decompress_threads) as stream:
                bounds = scan_boundaries(stream, cfg.chunk_size)
        except PipelineError as e:
            log.error(str(e))
            return 1
        total = sum(length for _, length in bounds)
        print(f"{len(bounds)} chunks, {total / (1024**3):.2f} GB decompressed "
              f"({time.time() - start:.0f}s)")
        return 0

    log.info(f"=== Filtering {cfg.input_path.name}: years {cfg.lower_year}-{cfg.upper_year} ===")
    log.info(f"    Fields:  {', '.join(cfg.fields)}")
    log.info(f"    Workers: {cfg.workers} ({cfg.executor}), chunk size "
             f"{cfg.chunk_size / (1024**2):.0f} MB")
    log.info(f"    Output:  {cfg.output_dir}")
    if cfg.destination:
        log.info(f"    Upload:  {cfg.destination}")

    store = build_store(cfg.destination) if cfg.destination else None
    run = PipelineRun(cfg, store=store, cancel_event=install_cancel_handler())
    summary = run.run()

    print(json.dumps(summary.to_dict(), indent=2, default=str))
    if summary.upload and summary.upload["failed_files"]:
        print(f"\nRetry failed uploads with:\n  python scripts/pipeline_cli.py upload "
              f"{cfg.output_dir} --destination {cfg.destination} --failed-only",
              file=sys.stderr)
    return summary.exit_code


def cmd_upload(args):
    """Upload an already finalized output directory."""
    setup_logging(args.output_dir, args.verbose)
    output_dir = Path(args.output_dir)
    destination = args.destination or os.environ.get("OAPIPE_DESTINATION")
    if not destination:
        log.error("no destination: pass --destination or set OAPIPE_DESTINATION")
        return 2
    if (output_dir / INCOMPLETE_MARKER).exists() and not args.force:
        log.error(f"{output_dir} is marked incomplete; finish the run or pass --force")
        return 1

    driver = UploadDriver(
        build_store(destination),
        concurrency=args.upload_concurrency,
        retries=args.retries,
        backoff_base=args.backoff,
        timeout=args.upload_timeout,
        if_exists=args.if_exists,
        cancel_event=install_cancel_handler(),
        progress=not args.no_progress,
    )
    report = upload_only(output_dir, driver, failed_only=args.failed_only)
    print(json.dumps(report.to_dict(), indent=2))
    if report.cancelled:
        return 130
    return 0 if not report.failed else 1


def cmd_status(args):
    """Show the state of an output directory."""
    output_dir = Path(args.output_dir)
    if not output_dir.exists():
        print(f"  {output_dir}: does not exist")
        return 1

    print(f"=== Run status: {output_dir} ===\n")
    if (output_dir / SUCCESS_MARKER).exists():
        marker = "COMPLETED"
    elif (output_dir / INCOMPLETE_MARKER).exists():
        marker = "INCOMPLETE"
    else:
        marker = "IN PROGRESS / UNKNOWN"
    print(f"  {'marker':20s}  {marker}")

    manifest = load_manifest(output_dir)
    if manifest:
        print(f"  {'state':20s}  {manifest.get('state')}")
        print(f"  {'stages':20s}  {' -> '.join(manifest.get('stages', []))}")
        for key in ("seen", "matched", "skipped"):
            print(f"  {key:20s}  {manifest.get(key, 0):>15,}")
        if manifest.get("error"):
            print(f"  {'error':20s}  {manifest['error']}")
        upload = manifest.get("upload")
        if upload:
            print(f"  {'uploaded':20s}  {upload.get('succeeded', 0)}/{upload.get('attempted', 0)} files")
            for name in upload.get("failed_files", []):
                print(f"    FAILED  {name}")

    checkpoint = load_checkpoint(output_dir)
    print(f"  {'checkpointed chunks':20s}  {len(checkpoint.get('completed_chunks', {}))}")

    files = list_partitions(output_dir)
    size = sum(f.stat().st_size for f in files)
    print(f"  {'partitions':20s}  {len(files)} files, {size / (1024**2):.1f} MB")
    return 0


def _has_rows(path: Path) -> bool:
    opener = gzip.open if path.name.endswith(".gz") else open
    with opener(path, "rb") as f:
        return bool(f.read(1))


def _json_source(files) -> str | None:
    """read_json_auto() over the partitions that hold at least one row."""
    non_empty = [f for f in files if _has_rows(f)]
    if not non_empty:
        return None
    file_list = ", ".join(f"'{f}'" for f in non_empty)
    return f"read_json_auto([{file_list}], format='newline_delimited', union_by_name=true)"


def cmd_verify(args):
    """Count finalized rows with DuckDB and compare against the manifest."""
    output_dir = Path(args.output_dir)
    files = list_partitions(output_dir)
    expected = load_manifest(output_dir).get("matched")

    rows = 0
    columns = []
    source = _json_source(files)
    if source:
        conn = duckdb.connect(":memory:")
        try:
            rows = conn.execute(f"SELECT COUNT(*) FROM {source}").fetchone()[0]
            columns = conn.execute(f"DESCRIBE SELECT * FROM {source}").fetchall()
        except duckdb.Error as e:
            print(f"  verify failed: {e}")
            return 1
        finally:
            conn.close()

    print(f"  {'partitions':20s}  {len(files)}")
    print(f"  {'rows':20s}  {rows:>15,}")
    if expected is not None:
        print(f"  {'manifest matched':20s}  {expected:>15,}")
    if columns:
        print("\n  Inferred columns:")
        for col in columns:
            print(f"    {col[0]:30s}  {col[1]}")

    if expected is not None and rows != expected:
        print("\n  MISMATCH between partitions and manifest")
        return 1
    return 0


def cmd_query(args):
    """Run a DuckDB query against a `partitions` view over the output."""
    output_dir = Path(args.output_dir)
    source = _json_source(list_partitions(output_dir))
    if source is None:
        print(f"No rows in {output_dir}")
        return 1

    conn = duckdb.connect(":memory:")
    try:
        conn.execute(f"CREATE VIEW partitions AS SELECT * FROM {source}")
        start = time.time()
        result = conn.execute(args.sql)
        if result.description:
            names = [d[0] for d in result.description]
            rows = result.fetchall()
            print("\t".join(names))
            for row in rows:
                print("\t".join("" if v is None else str(v) for v in row))
            print(f"\n({len(rows)} rows, {time.time() - start:.2f}s)")
        else:
            print(f"OK ({time.time() - start:.2f}s)")
    except duckdb.Error as e:
        print(f"Query error: {e}")
        return 1
    finally:
        conn.close()
    return 0


# ── CLI ─────────────────────────────────────────────────────────────────────

def _add_upload_args(sub, defaults: dict):
    """Upload flags. `run` passes empty defaults so RunConfig/env values apply."""
    sub.add_argument("--destination", type=str, default=None,
                     help="Upload prefix: gs://, s3://, http(s):// or a directory")
    sub.add_argument("--upload-concurrency", type=int, default=defaults.get("concurrency"),
                     help="Concurrent transfer streams (default: 8)")
    sub.add_argument("--retries", type=int, default=defaults.get("retries"),
                     help="Retries per file for transient failures (default: 5)")
    sub.add_argument("--backoff", type=float, default=defaults.get("backoff"),
                     help="Base backoff in seconds, doubled per retry (default: 1)")
    sub.add_argument("--upload-timeout", type=float, default=defaults.get("timeout"),
                     help="Timeout per upload attempt in seconds (default: 300)")
    sub.add_argument("--if-exists", choices=IF_EXISTS_POLICIES, default=defaults.get("if_exists"),
                     help="Existing remote object: overwrite (default), skip, error")
    sub.add_argument("--no-progress", action="store_true", help="Disable progress bars")
    sub.add_argument("--verbose", "-v", action="store_true", help="Debug logging")


UPLOAD_DEFAULTS = {
    "concurrency": 8,
    "retries": 5,
    "backoff": 1.0,
    "timeout": 300.0,
    "if_exists": "overwrite",
}


def build_parser():
    parser = argparse.ArgumentParser(
        description="Open-access snapshot filter pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # run
    sub = subparsers.add_parser("run", help="Filter, finalize and upload one snapshot")
    sub.add_argument("--input", required=True, help="Compressed NDJSON snapshot")
    sub.add_argument("--from-year", type=int, required=True, help="Lower year bound (inclusive)")
    sub.add_argument("--to-year", type=int, required=True, help="Upper year bound (inclusive)")
    sub.add_argument("--output", required=True, help="Output directory for this run")
    sub.add_argument("--fields", type=str, default=None,
                     help="Comma-separated projection (default: doi,is_oa,oa_locations,"
                          "oa_status,publisher)")
    sub.add_argument("--required", type=str, default=None,
                     help="Comma-separated fields a matching record must have (default: doi)")
    sub.add_argument("--compression", choices=COMPRESSIONS, default=None,
                     help="Input compression (default: auto from suffix)")
    sub.add_argument("--decompress-threads", type=int, default=None,
                     help="Threads for a parallel decoder binary (pigz, pbzip2, ...)")
    sub.add_argument("--workers", type=int, default=None,
                     help=f"Filter workers (default: {os.cpu_count()} = CPU cores)")
    sub.add_argument("--executor", choices=EXECUTORS, default=None,
                     help="Worker kind (default: process)")
    sub.add_argument("--chunk-size", type=_size, default=None,
                     help="Target chunk size, e.g. 100MB (default: 100MiB)")
    sub.add_argument("--output-compression", choices=OUTPUT_COMPRESSIONS, default=None,
                     help="Partition compression (default: gzip)")
    sub.add_argument("--on-malformed", choices=MALFORMED_POLICIES, default=None,
                     help="Malformed lines: skip and count (default) or fail-fast")
    sub.add_argument("--max-malformed-fraction", type=float, default=None,
                     help="Fail the run when skipped/seen exceeds this fraction")
    sub.add_argument("--max-failed-upload-fraction", type=float, default=None,
                     help="Fail the run when failed/attempted uploads exceed this (default: 0.25)")
    sub.add_argument("--resume", action="store_true",
                     help="Skip chunks finalized by a previous identical run")
    sub.add_argument("--dry-run", action="store_true",
                     help="Only decompress and count chunk boundaries")
    _add_upload_args(sub, {})
    sub.set_defaults(func=cmd_run)

    # upload
    sub = subparsers.add_parser("upload", help="Upload an existing output directory")
    sub.add_argument("output_dir", type=str)
    sub.add_argument("--failed-only", action="store_true",
                     help="Only retry files the manifest lists as failed")
    sub.add_argument("--force", action="store_true",
                     help="Upload even if the directory is marked incomplete")
    _add_upload_args(sub, UPLOAD_DEFAULTS)
    sub.set_defaults(func=cmd_upload)

    # status
    sub = subparsers.add_parser("status", help="Show run status of an output directory")
    sub.add_argument("output_dir", type=str)
    sub.set_defaults(func=cmd_status)

    # verify
    sub = subparsers.add_parser("verify", help="Count partition rows with DuckDB")
    sub.add_argument("output_dir", type=str)
    sub.set_defaults(func=cmd_verify)

    # query
    sub = subparsers.add_parser("query", help="Run SQL over the partitions")
    sub.add_argument("output_dir", type=str)
    sub.add_argument("sql", type=str, help="SQL against the `partitions` view")
    sub.set_defaults(func=cmd_query)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
