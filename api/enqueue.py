import base64
import logging
import uuid

from typing import Optional, Tuple

from config.settings import MAX_UPLOAD_BYTES
from lib.document_records import DocumentRecords
from lib.redis import JobQueue
from type_defs.errors import ValidationError
from type_defs.shared import DocumentStatus, Job, JobOptions, JobPayload

logger = logging.getLogger(__name__)

PDF_MAGIC = b"%PDF"

job_name = "process-pdf"


def new_correlation_id() -> str:
    return uuid.uuid4().hex[:8]


def validate_pdf(document_bytes: bytes, file_name: str):
    if not document_bytes:
        raise ValidationError(f"{file_name} is empty")

    if len(document_bytes) > MAX_UPLOAD_BYTES:
        raise ValidationError(
            f"{file_name} is {len(document_bytes)} bytes, limit is {MAX_UPLOAD_BYTES}"
        )

    # some writers put junk before the header, readers accept it within the first 1KB.
    if PDF_MAGIC not in document_bytes[:1024]:
        raise ValidationError(f"{file_name} is not a pdf")


def enqueue_request(
    queue: JobQueue,
    records: DocumentRecords,
    document_bytes: bytes,
    project_id: str,
    document_id: str,
    file_name: str,
    correlation_id: Optional[str] = None,
    options: Optional[JobOptions] = None,
) -> Tuple[Job, str]:
    """
    Validates the pdf, marks its record as queued and adds a processing job.

    return -> (job, correlation_id).
    """

    validate_pdf(document_bytes, file_name)
    correlation_id = correlation_id or new_correlation_id()

    records.set_status(document_id, DocumentStatus.Queued.value, 0, {"error_message": None})

    payload: JobPayload = {
        "document_bytes": base64.b64encode(document_bytes).decode("ascii"),
        "project_id": project_id,
        "document_id": document_id,
        "file_name": file_name,
        "correlation_id": correlation_id,
    }
    job = queue.add(job_name, dict(payload), options)

    logger.info(
        "[%s] queued %s (%.2f MB) as job %s",
        correlation_id,
        file_name,
        len(document_bytes) / 1024 / 1024,
        job.id,
    )

    return job, correlation_id
