"""
Error taxonomy for the snapshot filter pipeline.

Per-record and per-file errors are contained by their stage and counted;
everything else ends the run in the FAILED state.

Workers run in a ProcessPoolExecutor, so every exception here keeps its
constructor arguments in ``self.args`` and unpickles cleanly.
"""


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class CorruptInputError(PipelineError):
    """Compressed input is malformed or truncated. Aborts the run."""

    def __init__(self, path, reason):
        super().__init__(path, reason)
        self.path = path
        self.reason = reason

    def __str__(self):
        return f"corrupt input {self.path}: {self.reason}"


class MalformedRecordError(PipelineError):
    """A line could not be used as a record (fail-fast policy only)."""

    def __init__(self, chunk_index, line_number, reason):
        super().__init__(chunk_index, line_number, reason)
        self.chunk_index = chunk_index
        self.line_number = line_number
        self.reason = reason

    def __str__(self):
        return (f"malformed record in chunk {self.chunk_index}, "
                f"line {self.line_number}: {self.reason}")


class PartitionBoundaryError(PipelineError):
    """A chunk boundary landed inside a record. Always a bug."""

    def __init__(self, chunk_index, offset):
        super().__init__(chunk_index, offset)
        self.chunk_index = chunk_index
        self.offset = offset

    def __str__(self):
        return (f"chunk {self.chunk_index} ends mid-record "
                f"(stream offset {self.offset})")


class TransferError(PipelineError):
    """Upload of a single file failed and should not be retried."""

    def __init__(self, name, reason):
        super().__init__(name, reason)
        self.name = name
        self.reason = reason

    def __str__(self):
        return f"{self.name}: {self.reason}"


class TransientTransferError(TransferError):
    """Network error, timeout, rate limit or 5xx. Retried with backoff."""


class DestinationExistsError(TransferError):
    """Object already exists and the re-upload policy is 'error'."""


class ThresholdExceededError(PipelineError):
    """Too many malformed records or failed uploads for the run."""

    def __init__(self, what, fraction, limit):
        super().__init__(what, fraction, limit)
        self.what = what
        self.fraction = fraction
        self.limit = limit

    def __str__(self):
        return (f"{self.what} fraction {self.fraction:.4f} exceeds "
                f"threshold {self.limit:.4f}")


class RunCancelledError(PipelineError):
    """The run-level cancellation signal was observed."""
