from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, TypedDict

from type_defs.errors import PipelineError, StorageError, ToolExecutionError


class JobPayload(TypedDict):
    document_bytes: str  # base64.
    project_id: str
    document_id: str
    file_name: str
    correlation_id: str


class BackoffOptions(TypedDict):
    type: str
    delay: int  # ms.


class JobOptions(TypedDict, total=False):
    attempts: int
    backoff: BackoffOptions
    remove_on_complete: int
    remove_on_fail: int


class JobState(str, Enum):
    Waiting = "waiting"
    Delayed = "delayed"
    Active = "active"
    Completed = "completed"
    Failed = "failed"


class DocumentStatus(str, Enum):
    Queued = "queued"
    Processing = "processing"
    Ready = "ready"
    Failed = "failed"


class ToolErrorKind(str, Enum):
    NonZero = "nonzero"
    Timeout = "timeout"


class PageOutcomeKind(str, Enum):
    Success = "success"
    ToolError = "tool_error"
    StorageError = "storage_error"
    Error = "error"


ProgressCallback = Callable[[int], None]


@dataclass(frozen=True)
class DocumentInput:
    document_bytes: bytes
    project_id: str
    document_id: str
    file_name: str
    correlation_id: str


@dataclass(frozen=True)
class PageInput:
    normalized_document: str  # local path of the linearized pdf.
    page_number: int  # 1-based.
    page_count: int
    project_id: str
    document_id: str
    file_name: str
    correlation_id: str


@dataclass(frozen=True)
class PageResult:
    page_number: int
    width: int
    height: int


@dataclass(frozen=True)
class PipelineResult:
    page_count: int
    width: int
    height: int
    tiles_root_ref: str


@dataclass
class Job:
    id: str
    name: str
    data: dict[str, Any]
    opts: dict[str, Any]
    attempts_made: int = 0
    max_attempts: int = 1
    progress: int = 0
    state: str = JobState.Waiting.value
    failed_reason: Optional[str] = None
    return_value: Any = None
    lock_token: Optional[str] = None
    lock_expires_at: Optional[int] = None  # ms epoch.
    timestamp: int = 0
    processed_on: Optional[int] = None
    finished_on: Optional[int] = None


@dataclass(frozen=True)
class PageOutcome:
    """
    Result of one page task: either a PageResult or the error that stopped it.
    """

    kind: PageOutcomeKind
    page_number: int
    result: Optional[PageResult] = None
    error: Optional[BaseException] = None

    @classmethod
    def success(cls, result: PageResult) -> "PageOutcome":
        return cls(PageOutcomeKind.Success, result.page_number, result=result)

    @classmethod
    def failure(cls, page_number: int, error: BaseException) -> "PageOutcome":
        if isinstance(error, ToolExecutionError):
            kind = PageOutcomeKind.ToolError
        elif isinstance(error, StorageError):
            kind = PageOutcomeKind.StorageError
        else:
            kind = PageOutcomeKind.Error

        return cls(kind, page_number, error=error)

    @property
    def ok(self) -> bool:
        return self.kind == PageOutcomeKind.Success

    def unwrap(self) -> PageResult:
        if self.error is not None:
            raise self.error

        if self.result is None:
            raise PipelineError(f"page {self.page_number} finished without a result")

        return self.result
