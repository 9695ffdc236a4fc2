import logging
import queue
import threading

from typing import Any, Dict, Optional

from config.settings import progress as progress_marks
from lib.document_records import DocumentRecords
from type_defs.errors import TileWorkerError
from type_defs.shared import ProgressCallback

logger = logging.getLogger(__name__)


def get_document_progress(page_progress: Dict[int, int], page_count: int) -> int:
    """
    Maps per-page progress (0-100 each) onto the 10-90 band of the document.
    """

    if page_count <= 0:
        return progress_marks["pages_counted"]

    done = sum(min(100, max(0, p)) for p in page_progress.values())
    value = progress_marks["pages_counted"] + progress_marks["pages_band"] * done / (page_count * 100)

    return round(value)


class ProgressReporter:
    """
    Single owner of progress writes for one document run.

    Pages and stages post messages; one thread turns them into record and
    job updates, only ever writing a value higher than the last one. Once
    `close` returns nothing else is written, so late page callbacks cannot
    overwrite the final status.
    """

    def __init__(
        self,
        records: DocumentRecords,
        document_id: str,
        on_progress: Optional[ProgressCallback] = None,
        initial: int = 0,
        correlation_id: str = "",
    ):
        self.records = records
        self.document_id = document_id
        self.on_progress = on_progress
        self.correlation_id = correlation_id
        self.last = initial

        self._messages: queue.Queue = queue.Queue()
        self._closed = threading.Event()
        self._page_count = 0
        self._page_progress: Dict[int, int] = {}

        self._thread = threading.Thread(
            target=self._run, daemon=True, name=f"progress-{document_id}"
        )
        self._thread.start()

    def report(self, value: int):
        self._post(("stage", value))

    def set_page_count(self, page_count: int):
        self._post(("pages", page_count))

    def report_page(self, page_number: int, page_progress: int):
        self._post(("page", page_number, page_progress))

    def report_fields(self, fields: Dict[str, Any]):
        # record fields that ride along with progress writes, e.g. preview_ref.
        self._post(("fields", fields))

    def _post(self, message: tuple):
        if self._closed.is_set():
            return

        self._messages.put(message)

    def close(self, timeout: Optional[float] = None):
        if self._closed.is_set():
            return

        self._closed.set()
        self._messages.put(None)
        self._thread.join(timeout)

    def _run(self):
        while True:
            message = self._messages.get()

            if message is None:  # sentinel value.
                break

            kind = message[0]

            if kind == "fields":
                self._write_fields(message[1])
                continue

            if kind == "pages":
                self._page_count = message[1]
                continue

            if kind == "page":
                _, page_number, page_progress = message
                previous = self._page_progress.get(page_number, 0)
                self._page_progress[page_number] = max(previous, page_progress)
                value = get_document_progress(self._page_progress, self._page_count)
            else:
                value = message[1]

            self._write_progress(min(100, value))

    def _write_progress(self, value: int):
        if value <= self.last:
            return

        self.last = value

        try:
            self.records.update(self.document_id, {"progress": value})
            if self.on_progress:
                self.on_progress(value)

        except TileWorkerError as e:
            logger.warning("[%s] progress %d not saved: %s", self.correlation_id, value, e)

    def _write_fields(self, fields: Dict[str, Any]):
        try:
            self.records.update(self.document_id, fields)

        except TileWorkerError as e:
            logger.warning("[%s] %s not saved: %s", self.correlation_id, list(fields), e)
