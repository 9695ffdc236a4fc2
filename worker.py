import logging
import signal

from functools import partial

from config.settings import LOG_LEVEL, QUEUE_NAME, job_concurrency
from api import process_request
from core import DocumentPipeline
from lib.document_records import DocumentRecords
from lib.redis import JobQueue, redis
from lib.storage import StorageGateway
from services import JobWorker

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("worker")

# max seconds to wait for active jobs on shutdown.
shutdown_timeout = 30 * 60


def build_worker() -> JobWorker:
    queue = JobQueue(redis, QUEUE_NAME)
    pipeline = DocumentPipeline(StorageGateway(), DocumentRecords())

    return JobWorker(queue, partial(process_request, pipeline=pipeline), concurrency=job_concurrency)


def main():
    worker = build_worker()

    def shutdown(signum, _frame):
        logger.info("received %s, shutting down gracefully...", signal.Signals(signum).name)
        worker.stop()

    signal.signal(signal.SIGTERM, shutdown)
    signal.signal(signal.SIGINT, shutdown)

    logger.info("PDF worker ready, waiting for jobs on %s...", QUEUE_NAME)

    # returns once a signal stops leasing, active jobs are still running.
    worker.run_forever()

    if not worker.close(shutdown_timeout):
        logger.warning("active jobs did not finish, their locks expire and they will be retried")

    logger.info("bye")


if __name__ == "__main__":
    main()
