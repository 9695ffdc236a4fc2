from typing import Optional


class TileWorkerError(Exception):
    """Base error for the tile worker."""


class ValidationError(TileWorkerError):
    """Raised when an upload is not a usable PDF. Never enqueued."""


class ToolExecutionError(TileWorkerError):
    """Raised when an external tool exits non-zero or times out."""

    def __init__(self, kind: str, tool: str, exit_info: str, message: Optional[str] = None):
        self.kind = kind
        self.tool = tool
        self.exit_info = exit_info
        super().__init__(message or f"{tool} failed ({kind}): {exit_info}")


class StorageError(TileWorkerError):
    """Raised when an object store read or write fails."""

    def __init__(self, path: str, status: Optional[int], detail: str):
        self.path = path
        self.status = status
        self.detail = detail
        super().__init__(f"storage request for {path} failed ({status}): {detail}")


class MetadataStoreError(TileWorkerError):
    """Raised when a document record read or update fails."""


class PipelineError(TileWorkerError):
    """Raised when the document pipeline cannot continue."""


class RetriesExhaustedError(TileWorkerError):
    """Raised to a waiting caller once a job failed its last attempt."""

    def __init__(self, job_id: str, attempts_made: int, reason: Optional[str]):
        self.job_id = job_id
        self.attempts_made = attempts_made
        self.reason = reason
        super().__init__(f"job {job_id} failed after {attempts_made} attempts: {reason}")


class LockLostError(TileWorkerError):
    """Raised when a worker no longer owns the lock of the job it is finishing."""
