"""Service error hierarchy for the video pipeline.

This module defines the exception hierarchy for service-level errors:
- ServiceError: Base for all service errors
- TransientError: Retryable errors (network, storage, encoder crashes)
- PermanentError: Non-retryable errors (duplicate submission, missing tooling)

Every pipeline failure is recorded with ``fail()`` and retried while attempts
remain. The worker pool logs PermanentError attempts at error level and all
other failures at warning level.
"""


class ServiceError(Exception):
    """Base exception for all service errors."""

    pass


class TransientError(ServiceError):
    """Transient error that may succeed on retry.

    Examples:
    - Object storage timeouts or 5xx responses
    - Encoder exiting non-zero on a flaky input read
    """

    pass


class PermanentError(ServiceError):
    """Permanent error that will not succeed on retry.

    Examples:
    - Duplicate job submission
    - Encoder binary not installed
    """

    pass


# Queue-specific errors
class DuplicateJobError(PermanentError):
    """A job with the same jobId was already submitted."""

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} already exists")
        self.job_id = job_id


# Media-specific errors
class MediaError(ServiceError):
    """Base exception for probe/rasterize/encode errors."""

    pass


class FFmpegNotFoundError(PermanentError, MediaError):
    """The configured encoder binary could not be executed."""

    pass


class ProbeError(TransientError, MediaError):
    """Video metadata could not be parsed from the encoder's diagnostics."""

    pass


class TranscodeError(TransientError, MediaError):
    """Encoder exited with a non-zero status.

    The message carries the tail of the encoder's diagnostic stream.
    """

    def __init__(self, message: str, returncode: int | None = None):
        super().__init__(message)
        self.returncode = returncode


# Storage-specific errors
class StorageError(TransientError):
    """Object storage operation failed."""

    pass


class StorageObjectNotFoundError(StorageError):
    """Requested key does not exist in the bucket."""

    pass
