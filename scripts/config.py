"""
Run configuration and environment resolution.

Settings are layered: built-in defaults, then OAPIPE_* environment variables
(optionally loaded from a .env file), then explicit overrides from the CLI.

Resolution order for the .env file:
1. OAPIPE_HOME environment variable
2. Walk up from this script's location to find pyproject.toml
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

PROJECT_MARKER = "pyproject.toml"

DEFAULT_FIELDS = ("doi", "is_oa", "oa_locations", "oa_status", "publisher")
DEFAULT_REQUIRED = ("doi",)
DEFAULT_CHUNK_SIZE = 100 * 1024 * 1024  # 100 MiB of decompressed input

COMPRESSIONS = ("auto", "gzip", "bz2", "xz", "zstd", "none")
OUTPUT_COMPRESSIONS = ("gzip", "none")
MALFORMED_POLICIES = ("skip", "fail-fast")
IF_EXISTS_POLICIES = ("overwrite", "skip", "error")
EXECUTORS = ("process", "thread")

# env var -> (RunConfig field, converter)
ENV_SETTINGS = {
    "OAPIPE_WORKERS": ("workers", int),
    "OAPIPE_EXECUTOR": ("executor", str),
    "OAPIPE_CHUNK_SIZE": ("chunk_size", lambda v: parse_size(v)),
    "OAPIPE_COMPRESSION": ("compression", str),
    "OAPIPE_DECOMPRESS_THREADS": ("decompress_threads", int),
    "OAPIPE_DESTINATION": ("destination", str),
    "OAPIPE_UPLOAD_CONCURRENCY": ("upload_concurrency", int),
    "OAPIPE_RETRIES": ("retries", int),
    "OAPIPE_UPLOAD_TIMEOUT": ("upload_timeout", float),
    "OAPIPE_IF_EXISTS": ("if_exists", str),
    "OAPIPE_ON_MALFORMED": ("malformed_policy", str),
}


def _load_dotenv(root: Path):
    """Load .env file from root into os.environ (setdefault, won't override)."""
    env_file = root / ".env"
    if env_file.exists():
        with open(env_file) as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith("#") and "=" in line:
                    key, _, val = line.partition("=")
                    os.environ.setdefault(key.strip(), val.strip().strip('"'))


def find_project_root() -> Path | None:
    """Find the directory holding the project's .env, if any."""
    env_root = os.environ.get("OAPIPE_HOME")
    if env_root and Path(env_root).is_dir():
        return Path(env_root)

    current = Path(__file__).resolve().parent
    for _ in range(5):  # max 5 levels up
        if (current / PROJECT_MARKER).exists():
            return current
        current = current.parent
    return None


def parse_size(s) -> int:
    """Parse size string like '100MB', '2.5 GiB' or '1048576' to bytes."""
    if isinstance(s, int):
        return s
    s = str(s).strip().upper().replace(" ", "")
    multipliers = {
        "KIB": 1024, "MIB": 1024**2, "GIB": 1024**3, "TIB": 1024**4,
        "KB": 1000, "MB": 1000**2, "GB": 1000**3, "TB": 1000**4,
        "K": 1024, "M": 1024**2, "G": 1024**3,
        "B": 1,
    }
    for unit, mult in multipliers.items():
        if s.endswith(unit):
            number = s[: -len(unit)]
            try:
                return int(float(number) * mult)
            except ValueError:
                raise ValueError(f"invalid size: {s!r}") from None
    try:
        return int(s)
    except ValueError:
        raise ValueError(f"invalid size: {s!r}") from None


@dataclass(frozen=True)
class RunConfig:
    """Every parameter of one pipeline run."""

    input_path: Path
    output_dir: Path
    lower_year: int
    upper_year: int
    fields: tuple = DEFAULT_FIELDS
    required_fields: tuple = DEFAULT_REQUIRED
    compression: str = "auto"
    decompress_threads: int = 0
    workers: int = field(default_factory=lambda: os.cpu_count() or 6)
    executor: str = "process"
    chunk_size: int = DEFAULT_CHUNK_SIZE
    output_compression: str = "gzip"
    malformed_policy: str = "skip"
    max_malformed_fraction: float | None = None
    destination: str | None = None
    upload_concurrency: int = 8
    retries: int = 5
    backoff_base: float = 1.0
    backoff_cap: float = 60.0
    upload_timeout: float = 300.0
    if_exists: str = "overwrite"
    max_failed_upload_fraction: float = 0.25
    resume: bool = False
    progress: bool = True

    def validate(self) -> "RunConfig":
        """Raise ValueError for settings no run can honour."""
        if self.lower_year > self.upper_year:
            raise ValueError(f"lower year {self.lower_year} > upper year {self.upper_year}")
        if not self.fields:
            raise ValueError("projection needs at least one field")
        if len(set(self.fields)) != len(self.fields):
            raise ValueError(f"duplicate projection fields: {list(self.fields)}")
        for name in ("workers", "chunk_size", "upload_concurrency"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be >= 1")
        if self.retries < 0:
            raise ValueError("retries must be >= 0")
        choices = {
            "compression": COMPRESSIONS,
            "output_compression": OUTPUT_COMPRESSIONS,
            "malformed_policy": MALFORMED_POLICIES,
            "if_exists": IF_EXISTS_POLICIES,
            "executor": EXECUTORS,
        }
        for name, allowed in choices.items():
            if getattr(self, name) not in allowed:
                raise ValueError(f"{name} must be one of {allowed}, got {getattr(self, name)!r}")
        for name in ("max_malformed_fraction", "max_failed_upload_fraction"):
            value = getattr(self, name)
            if value is not None and not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be within [0, 1]")
        return self


def env_overrides(environ=None) -> dict:
    """Collect RunConfig overrides from OAPIPE_* environment variables."""
    environ = os.environ if environ is None else environ
    overrides = {}
    for var, (name, convert) in ENV_SETTINGS.items():
        raw = environ.get(var)
        if raw:
            try:
                overrides[name] = convert(raw)
            except ValueError:
                raise ValueError(f"{var}: cannot parse {raw!r}") from None
    fields = environ.get("OAPIPE_FIELDS")
    if fields:
        overrides["fields"] = tuple(f.strip() for f in fields.split(",") if f.strip())
    return overrides


def load_config(input_path, output_dir, lower_year, upper_year, **overrides) -> RunConfig:
    """Build a validated RunConfig: defaults < environment < overrides.

    Overrides whose value is None are ignored so argparse namespaces can be
    passed straight through.
    """
    root = find_project_root()
    if root is not None:
        _load_dotenv(root)

    settings = env_overrides()
    settings.update({k: v for k, v in overrides.items() if v is not None})
    if "fields" in settings:
        settings["fields"] = tuple(settings["fields"])
    if "required_fields" in settings:
        settings["required_fields"] = tuple(settings["required_fields"])

    cfg = RunConfig(
        input_path=Path(input_path),
        output_dir=Path(output_dir),
        lower_year=int(lower_year),
        upper_year=int(upper_year),
        **settings,
    )
    return cfg.validate()
