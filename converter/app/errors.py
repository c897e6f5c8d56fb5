"""
Error types for the conversion service.

Submission-time errors (validation, storage) reach the caller directly.
Encoding errors never do: the orchestrator records them on the job.
"""


class ConverterError(Exception):
    """Base exception for all conversion service failures."""
    pass


class ValidationError(ConverterError):
    """Raised when an upload or its options are rejected before a job exists."""
    pass


class UploadTooLarge(ValidationError):
    def __init__(self, limit_bytes: int):
        self.limit_bytes = limit_bytes
        super().__init__(f"Upload exceeds {limit_bytes // (1024 * 1024)} MB limit")


class NotFound(ConverterError):
    """Raised when a job id is unknown or its record has been evicted."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class NotReady(ConverterError):
    """Raised when output is requested for a job that cannot deliver it yet."""

    def __init__(self, job_id: str, status: str, progress: int, error: str | None = None, reason: str = "Video not ready"):
        self.job_id = job_id
        self.status = status
        self.progress = progress
        self.error = error
        super().__init__(reason)


class InvalidStateTransition(ConverterError):
    def __init__(self, job_id: str, current_state: str, target_state: str):
        self.job_id = job_id
        self.current_state = current_state
        self.target_state = target_state
        super().__init__(
            f"Invalid job state transition for {job_id}: "
            f"{current_state} -> {target_state}"
        )


class EncodingError(ConverterError):
    """Raised inside the orchestrator when the encoder cannot produce output.

    `diagnostic` is what ends up on the failed job, already truncated.
    """

    def __init__(self, diagnostic: str):
        self.diagnostic = diagnostic
        super().__init__(diagnostic)


class ColorSamplingError(EncodingError):
    pass


class StorageError(ConverterError):
    """Raised when a disk read/write for an artifact fails."""
    pass
