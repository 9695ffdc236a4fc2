import base64
import logging

from typing import Any, Dict, TYPE_CHECKING

from core import DocumentPipeline
from type_defs.shared import DocumentInput

if TYPE_CHECKING:
    from services.job_workers import JobContext

logger = logging.getLogger(__name__)


def process_request(
    job_context: "JobContext",
    pipeline: DocumentPipeline,
) -> Dict[str, Any]:
    """
    Runs the document pipeline for one leased job.

    Parameters
    ----------
    job_context : JobContext
        The leased job plus `update_progress`, which mirrors document
        progress onto the job hash.

    pipeline : DocumentPipeline
        Pipeline to run, built once per worker process.

    Returns
    -------
    dict
        `{success, document_id, pages}`, stored as the job's return value.
    """

    data = job_context.job.data
    correlation_id = data.get("correlation_id") or job_context.job.id

    logger.info(
        "[%s] processing %s (document %s, attempt %d/%d)",
        correlation_id,
        data.get("file_name"),
        data.get("document_id"),
        job_context.job.attempts_made + 1,
        job_context.job.max_attempts,
    )

    document = DocumentInput(
        document_bytes=base64.b64decode(data["document_bytes"]),
        project_id=str(data["project_id"]),
        document_id=str(data["document_id"]),
        file_name=str(data["file_name"]),
        correlation_id=correlation_id,
    )

    result = pipeline.run(document, on_progress=job_context.update_progress)

    logger.info("[%s] document %s ready, %d pages", correlation_id, document.document_id, result.page_count)

    return {
        "success": True,
        "document_id": document.document_id,
        "pages": result.page_count,
    }
