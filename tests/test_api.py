import base64

import pytest

from api import enqueue_request, process_request, validate_pdf
from config.settings import MAX_UPLOAD_BYTES
from type_defs.errors import ValidationError
from type_defs.shared import Job, PipelineResult


class TestValidatePdf:
    def test_accepts_pdf(self, plan_pdf):
        validate_pdf(plan_pdf, "plan.pdf")

    def test_rejects_empty(self):
        with pytest.raises(ValidationError, match="empty"):
            validate_pdf(b"", "plan.pdf")

    def test_rejects_non_pdf(self):
        with pytest.raises(ValidationError, match="not a pdf"):
            validate_pdf(b"\x89PNG\r\n\x1a\n", "plan.png")

    def test_rejects_oversized(self, monkeypatch):
        import api.enqueue

        monkeypatch.setattr(api.enqueue, "MAX_UPLOAD_BYTES", 16)

        validate_pdf(b"%PDF" + b"0" * 12, "plan.pdf")
        with pytest.raises(ValidationError, match="limit is 16"):
            validate_pdf(b"%PDF" + b"0" * 13, "plan.pdf")

    def test_default_upload_limit(self):
        assert MAX_UPLOAD_BYTES == 100 * 1024 * 1024


class TestEnqueueRequest:
    def test_queues_job_and_marks_record(self, queue, records, plan_pdf):
        job, correlation_id = enqueue_request(queue, records, plan_pdf, "proj1", "doc-1", "plan.pdf")

        assert len(correlation_id) == 8
        assert records.rows["doc-1"]["status"] == "queued"
        assert records.rows["doc-1"]["progress"] == 0

        stored = queue.get_job(job.id)
        assert stored.name == "process-pdf"
        assert stored.max_attempts == 3
        assert stored.data["correlation_id"] == correlation_id
        assert base64.b64decode(stored.data["document_bytes"]) == plan_pdf

    def test_keeps_given_correlation_id(self, queue, records, plan_pdf):
        _, correlation_id = enqueue_request(
            queue, records, plan_pdf, "proj1", "doc-1", "plan.pdf", correlation_id="req-42"
        )

        assert correlation_id == "req-42"

    def test_invalid_pdf_is_never_queued(self, queue, records):
        with pytest.raises(ValidationError):
            enqueue_request(queue, records, b"hello", "proj1", "doc-1", "plan.pdf")

        assert queue.counts()["waiting"] == 0
        assert records.updates == []


class StubPipeline:
    def __init__(self):
        self.documents = []

    def run(self, document, on_progress=None):
        self.documents.append(document)
        on_progress(50)
        return PipelineResult(page_count=3, width=700, height=300, tiles_root_ref="proj1/tiles/plan-page1")


class StubContext:
    def __init__(self, job):
        self.job = job
        self.progress = []

    def update_progress(self, value):
        self.progress.append(value)


def test_process_request(plan_pdf):
    job = Job(
        id="7",
        name="process-pdf",
        data={
            "document_bytes": base64.b64encode(plan_pdf).decode("ascii"),
            "project_id": "proj1",
            "document_id": "doc-1",
            "file_name": "plan.pdf",
            "correlation_id": "abcd1234",
        },
        opts={},
    )
    context = StubContext(job)
    pipeline = StubPipeline()

    result = process_request(context, pipeline)

    assert result == {"success": True, "document_id": "doc-1", "pages": 3}
    assert pipeline.documents[0].document_bytes == plan_pdf
    assert pipeline.documents[0].correlation_id == "abcd1234"
    assert context.progress == [50]
