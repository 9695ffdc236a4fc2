import logging
import os
import socket
import threading
import time

from typing import Any, Callable, Optional

from redis.exceptions import RedisError

from config.settings import (
    job_concurrency,
    lock_renew_time_ms,
    stalled_interval_ms,
    cleanup_interval_ms,
    completed_grace_ms,
    failed_grace_ms,
    remove_on_complete,
    remove_on_fail,
)
from lib.redis import JobQueue
from type_defs.errors import LockLostError
from type_defs.shared import Job, JobState

logger = logging.getLogger(__name__)


def get_correlation_id(job: Job) -> str:
    return str(job.data.get("correlation_id") or job.id)


class JobContext:
    """
    What a handler sees of its leased job.
    """

    def __init__(self, worker: "JobWorker", job: Job):
        self.worker = worker
        self.job = job
        self.correlation_id = get_correlation_id(job)
        self.lost = threading.Event()

    def update_progress(self, value: int):
        if self.lost.is_set():
            return

        try:
            self.worker.queue.update_progress(self.job, value)
        except RedisError as e:
            logger.warning("[%s] job %s progress %d not saved: %s", self.correlation_id, self.job.id, value, e)
            return

        try:
            self.worker.on_progress(self.job, self.job.progress)
        except Exception:
            logger.exception("[%s] job %s progress hook failed", self.correlation_id, self.job.id)


class LockRenewer(threading.Thread):
    """
    Extends the lease of one job every `interval` seconds while its handler
    runs. Stops on the first failed renewal and flags the job as lost.
    """

    def __init__(self, queue: JobQueue, context: JobContext, interval: float):
        super().__init__(daemon=True, name=f"lock-renewer-{context.job.id}")
        self.queue = queue
        self.context = context
        self.interval = interval
        self._stop_event = threading.Event()

    def run(self):
        job = self.context.job

        while not self._stop_event.wait(self.interval):
            try:
                renewed = self.queue.extend_lock(job)
            except RedisError as e:
                # a transient error is retried, the lock outlives many renew intervals.
                logger.warning("[%s] could not renew lock of job %s: %s", self.context.correlation_id, job.id, e)
                continue

            if not renewed:
                logger.error("[%s] lost lock of job %s", self.context.correlation_id, job.id)
                self.context.lost.set()
                return

    def stop(self):
        self._stop_event.set()
        self.join()


class JobWorker:
    """
    Leases jobs from a `JobQueue` and runs `handler(context)` for each, with
    at most `concurrency` jobs in flight in this process.

    Times are in seconds.

    Hooks `on_completed(job, result)`, `on_failed(job, error, state)` and
    `on_progress(job, progress)` log by default and can be replaced by
    passing callables.
    """

    def __init__(
        self,
        queue: JobQueue,
        handler: Callable[[JobContext], Any],
        concurrency: int = job_concurrency,
        lock_renew_time: float = lock_renew_time_ms / 1000,
        stalled_interval: float = stalled_interval_ms / 1000,
        cleanup_interval: float = cleanup_interval_ms / 1000,
        poll_interval: float = 1.0,
        on_completed: Optional[Callable[[Job, Any], None]] = None,
        on_failed: Optional[Callable[[Job, BaseException, str], None]] = None,
        on_progress: Optional[Callable[[Job, int], None]] = None,
    ):
        self.queue = queue
        self.handler = handler
        self.concurrency = max(1, concurrency)
        self.lock_renew_time = lock_renew_time
        self.stalled_interval = stalled_interval
        self.cleanup_interval = cleanup_interval
        self.poll_interval = poll_interval
        self.token = f"{socket.gethostname()}:{os.getpid()}"

        if on_completed:
            self.on_completed = on_completed
        if on_failed:
            self.on_failed = on_failed
        if on_progress:
            self.on_progress = on_progress

        self._closing = threading.Event()
        self._threads: list[threading.Thread] = []
        self._lease_threads: list[threading.Thread] = []

    # --------------------------------------------------------
    # HOOKS
    # --------------------------------------------------------
    def on_completed(self, job: Job, result: Any):
        logger.info("[%s] job %s completed: %s", get_correlation_id(job), job.id, result)

    def on_failed(self, job: Job, error: BaseException, state: str):
        if state == JobState.Delayed.value:
            logger.warning(
                "[%s] job %s failed (attempt %d/%d), retrying: %s",
                get_correlation_id(job),
                job.id,
                job.attempts_made,
                job.max_attempts,
                error,
            )
        else:
            logger.error(
                "[%s] job %s failed after %d attempts: %s",
                get_correlation_id(job),
                job.id,
                job.attempts_made,
                error,
            )

    def on_progress(self, job: Job, progress: int):
        logger.debug("[%s] job %s progress: %d%%", get_correlation_id(job), job.id, progress)

    # --------------------------------------------------------
    # LIFECYCLE
    # --------------------------------------------------------
    def start(self):
        if self._threads:
            return

        self._closing.clear()

        for i in range(self.concurrency):
            thread = threading.Thread(target=self._lease_loop, daemon=True, name=f"lease-{i}")
            self._lease_threads.append(thread)

        self._threads = [
            *self._lease_threads,
            threading.Thread(
                target=self._every,
                args=(self.stalled_interval, self.check_stalled),
                daemon=True,
                name="stalled-checker",
            ),
            threading.Thread(
                target=self._every,
                args=(self.cleanup_interval, self.clean),
                daemon=True,
                name="cleanup",
            ),
        ]

        for thread in self._threads:
            thread.start()

        logger.info(
            "worker %s started on queue %s (concurrency %d)",
            self.token,
            self.queue.name,
            self.concurrency,
        )

    def stop(self):
        """
        Stops leasing new jobs without waiting, safe to call from a signal handler.
        """

        self._closing.set()

    def close(self, timeout: Optional[float] = None) -> bool:
        """
        Stops leasing and waits for jobs in flight.

        return -> False when jobs were still running after `timeout`.
        """

        logger.info("worker %s closing, waiting for active jobs...", self.token)
        self.stop()

        deadline = None if timeout is None else time.monotonic() + timeout
        for thread in self._threads:
            remaining = None if deadline is None else max(0, deadline - time.monotonic())
            thread.join(remaining)

        finished = not any(thread.is_alive() for thread in self._lease_threads)
        if finished:
            self._threads = []
            self._lease_threads = []
            logger.info("worker %s closed", self.token)
        else:
            logger.warning("worker %s closed with jobs still running", self.token)

        return finished

    def run_forever(self):
        self.start()
        self._closing.wait()

    @property
    def closing(self) -> bool:
        return self._closing.is_set()

    # --------------------------------------------------------
    # LOOPS
    # --------------------------------------------------------
    def _lease_loop(self):
        while not self._closing.is_set():
            try:
                job = self.queue.lease(self.token)

                if job is None:
                    delay = self.queue.rate_limit_delay() / 1000
                    if delay > 0:
                        logger.debug("rate limited, waiting %.1fs", delay)

                    self._closing.wait(max(delay, self.poll_interval))
                    continue

            except RedisError as e:
                logger.error("could not lease a job: %s", e)
                self._closing.wait(self.poll_interval)
                continue

            try:
                self.process(job)
            except Exception:
                # the lease thread must outlive a broken hook or an unstorable result.
                logger.exception("[%s] job %s could not be finished", get_correlation_id(job), job.id)

    def _every(self, interval: float, task: Callable[[], Any]):
        while not self._closing.wait(interval):
            try:
                task()
            except RedisError as e:
                logger.error("%s failed: %s", getattr(task, "__name__", task), e)

    def check_stalled(self) -> list[str]:
        return self.queue.requeue_stalled()

    def clean(self) -> list[str]:
        removed = [
            *self.queue.clean(completed_grace_ms, remove_on_complete, JobState.Completed.value),
            *self.queue.clean(failed_grace_ms, remove_on_fail, JobState.Failed.value),
        ]

        if removed:
            logger.info("cleaned %d old jobs", len(removed))

        return removed

    # --------------------------------------------------------
    # JOBS
    # --------------------------------------------------------
    def process(self, job: Job):
        context = JobContext(self, job)
        cid = context.correlation_id

        logger.info("[%s] job %s leased by %s", cid, job.id, self.token)

        renewer = LockRenewer(self.queue, context, self.lock_renew_time)
        renewer.start()

        try:
            result = self.handler(context)

        except Exception as e:
            renewer.stop()
            self._finish_failed(context, e)
            return

        renewer.stop()
        self._finish_completed(context, result)

    def _finish_completed(self, context: JobContext, result: Any):
        job = context.job

        if context.lost.is_set():
            logger.error("[%s] job %s finished after losing its lock, result dropped", context.correlation_id, job.id)
            self.queue.release_local(job)
            return

        try:
            self.queue.complete(job, result)
        except (LockLostError, RedisError) as e:
            logger.error("[%s] could not complete job %s: %s", context.correlation_id, job.id, e)
            return

        self.on_completed(job, result)

    def _finish_failed(self, context: JobContext, error: BaseException):
        job = context.job

        if context.lost.is_set():
            logger.error("[%s] job %s failed after losing its lock: %s", context.correlation_id, job.id, error)
            self.queue.release_local(job)
            return

        try:
            state = self.queue.fail(job, error)
        except (LockLostError, RedisError) as e:
            logger.error("[%s] could not fail job %s: %s", context.correlation_id, job.id, e)
            return

        self.on_failed(job, error, state)
