import logging
import os
import tempfile

from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Optional, Type

from config.settings import (
    TMP_DIR,
    page_concurrency as default_page_concurrency,
    tile_upload_concurrency as default_tile_upload_concurrency,
    progress as marks,
)
from lib.doc_tools import ToolRunner, linearize, count_pages
from lib.document_records import DocumentRecords
from lib.storage import StorageGateway
from type_defs.errors import MetadataStoreError, PipelineError
from type_defs.shared import (
    DocumentInput,
    DocumentStatus,
    PageInput,
    PageOutcome,
    PageResult,
    PipelineResult,
    ProgressCallback,
)
from utils.general import get_safe_base_name, get_source_path, get_tiles_root

from .page_pipeline import PagePipeline, remove_quietly
from .progress import ProgressReporter

logger = logging.getLogger(__name__)


class DocumentPipeline:
    """
    Linearizes a pdf, fans its pages out to page pipelines and finalizes the
    document record.

    A document is either fully tiled or not ready at all: the first failing
    page fails the whole run, pages that have not started are cancelled.
    """

    def __init__(
        self,
        storage: StorageGateway,
        records: DocumentRecords,
        runner: Optional[ToolRunner] = None,
        page_concurrency: int = default_page_concurrency,
        tile_upload_concurrency: int = default_tile_upload_concurrency,
        tmp_dir: str = TMP_DIR,
        page_pipeline_cls: Type[PagePipeline] = PagePipeline,
    ):
        self.storage = storage
        self.records = records
        self.runner = runner or ToolRunner()
        self.page_concurrency = page_concurrency
        self.tile_upload_concurrency = tile_upload_concurrency
        self.tmp_dir = tmp_dir
        self.page_pipeline_cls = page_pipeline_cls

    def run(
        self,
        document: DocumentInput,
        on_progress: Optional[ProgressCallback] = None,
    ) -> PipelineResult:
        """
        Parameters
        ----------
        document : DocumentInput
            Pdf bytes plus the ids and file name used to build storage paths.

        on_progress : callable, optional
            Receives every persisted document progress value (0-100).

        Returns
        -------
        PipelineResult
            Page count and page 1 dimensions, as written to the record.
        """

        cid = document.correlation_id
        work_dir: Optional[str] = None
        reporter: Optional[ProgressReporter] = None

        try:
            os.makedirs(self.tmp_dir, exist_ok=True)
            work_dir = tempfile.mkdtemp(prefix=f"tiles-{get_safe_base_name(cid)}-", dir=self.tmp_dir)

            input_pdf = os.path.join(work_dir, "input.pdf")
            linearized_pdf = os.path.join(work_dir, "linearized.pdf")
            pages_dir = os.path.join(work_dir, "pages")
            os.makedirs(pages_dir, exist_ok=True)

            with open(input_pdf, "wb") as f:
                f.write(document.document_bytes)

            # 1. original pdf.
            source_path = get_source_path(document.project_id, document.file_name)
            logger.info("[%s] uploading pdf to %s", cid, source_path)
            self.storage.put(source_path, document.document_bytes, "application/pdf")

            self.records.set_status(
                document.document_id,
                DocumentStatus.Processing.value,
                marks["source_uploaded"],
                {"source_file_ref": source_path, "error_message": None},
            )

            reporter = ProgressReporter(
                self.records,
                document.document_id,
                on_progress,
                initial=marks["source_uploaded"],
                correlation_id=cid,
            )
            reporter.report(marks["started"])

            # 2. linearize.
            logger.info("[%s] linearizing...", cid)
            linearize(self.runner, input_pdf, linearized_pdf)

            # 3. page count.
            page_count = count_pages(linearized_pdf)
            if page_count <= 0:
                raise PipelineError(f"{document.file_name} has no pages")

            logger.info("[%s] pages: %d", cid, page_count)
            reporter.set_page_count(page_count)
            reporter.report(marks["pages_counted"])

            # 4. + 5. pages.
            results = self.process_pages(document, linearized_pdf, pages_dir, page_count, reporter)

            # late page callbacks must not touch the record from here on.
            reporter.close()
            logger.info("[%s] all pages processed", cid)

            # 6. finalize.
            first = results[0]
            tiles_root = get_tiles_root(document.project_id, document.file_name, 1)

            self.records.set_status(
                document.document_id,
                DocumentStatus.Ready.value,
                marks["done"],
                {
                    "width": first.width,
                    "height": first.height,
                    "page_count": page_count,
                    "tiles_root_ref": tiles_root,
                },
            )
            if on_progress:
                on_progress(marks["done"])

            logger.info("[%s] status updated to ready (%dx%d, %d pages)", cid, first.width, first.height, page_count)

            return PipelineResult(
                page_count=page_count,
                width=first.width,
                height=first.height,
                tiles_root_ref=tiles_root,
            )

        except Exception as e:
            if reporter:
                reporter.close()

            logger.error("[%s] processing error: %s", cid, e)

            try:
                self.records.set_status(
                    document.document_id,
                    DocumentStatus.Failed.value,
                    extra={"error_message": str(e) or e.__class__.__name__},
                )
            except MetadataStoreError as record_error:
                logger.error("[%s] could not mark document as failed: %s", cid, record_error)

            raise

        finally:
            # 7. cleanup.
            if work_dir:
                remove_quietly(work_dir, cid)

    def process_pages(
        self,
        document: DocumentInput,
        linearized_pdf: str,
        pages_dir: str,
        page_count: int,
        reporter: ProgressReporter,
    ) -> list[PageResult]:
        """
        Runs one page pipeline per page, at most `page_concurrency` at a
        time. Returns the page results ordered by page number.
        """

        cid = document.correlation_id
        outcomes: list[PageOutcome] = []

        def on_preview(preview_path: str):
            reporter.report_fields({"preview_ref": preview_path})

        with ThreadPoolExecutor(
            max_workers=self.tile_upload_concurrency,
            thread_name_prefix=f"uploads-{cid}",
        ) as uploads:
            page_pipeline = self.page_pipeline_cls(
                self.runner, self.storage, uploads, pages_dir, on_preview=on_preview
            )
            pages = ThreadPoolExecutor(
                max_workers=self.page_concurrency,
                thread_name_prefix=f"pages-{cid}",
            )

            try:
                futures = [
                    pages.submit(
                        self.run_page,
                        page_pipeline,
                        PageInput(
                            normalized_document=linearized_pdf,
                            page_number=n,
                            page_count=page_count,
                            project_id=document.project_id,
                            document_id=document.document_id,
                            file_name=document.file_name,
                            correlation_id=cid,
                        ),
                        reporter,
                    )
                    for n in range(1, page_count + 1)
                ]

                for future in as_completed(futures):
                    outcome: PageOutcome = future.result()

                    if not outcome.ok:
                        logger.error(
                            "[%s] page %d failed (%s), cancelling remaining pages",
                            cid,
                            outcome.page_number,
                            outcome.kind.value,
                        )
                        pages.shutdown(wait=True, cancel_futures=True)
                        outcome.unwrap()

                    outcomes.append(outcome)

            finally:
                pages.shutdown(wait=True, cancel_futures=True)

        return sorted((o.unwrap() for o in outcomes), key=lambda r: r.page_number)

    def run_page(
        self,
        page_pipeline: PagePipeline,
        page: PageInput,
        reporter: ProgressReporter,
    ) -> PageOutcome:
        def on_page_progress(value: int):
            reporter.report_page(page.page_number, value)

        try:
            return PageOutcome.success(page_pipeline.run(page, on_page_progress))

        except Exception as e:
            return PageOutcome.failure(page.page_number, e)
