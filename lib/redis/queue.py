import logging
import threading
import time
import uuid

from typing import Any, Callable, Dict, Iterable, Optional

from redis.client import Redis
from redis.exceptions import LockError
from redis.lock import Lock

from config.settings import (
    QUEUE_NAME,
    job_attempts,
    job_backoff_delay_ms,
    remove_on_complete,
    remove_on_fail,
    lock_duration_ms as default_lock_duration_ms,
    rate_limit_max as default_rate_limit_max,
    rate_limit_duration_ms as default_rate_limit_duration_ms,
)
from type_defs.errors import LockLostError, RetriesExhaustedError
from type_defs.shared import Job, JobOptions, JobState

from .config import get_lock
from .utils import encode_job_hash, decode_job_hash, encode_value, now_ms

logger = logging.getLogger(__name__)

STALLED_REASON = "job stalled more than allowable limit"


def default_job_options() -> JobOptions:
    return {
        "attempts": job_attempts,
        "backoff": {"type": "exponential", "delay": job_backoff_delay_ms},
        "remove_on_complete": remove_on_complete,
        "remove_on_fail": remove_on_fail,
    }


def get_backoff_delay(opts: Dict[str, Any], attempts_made: int) -> int:
    """
    attempts_made -> attempts already failed, including the current one.

    exponential, delay 5000: 5s, 10s, 20s...
    """

    backoff = opts.get("backoff") or {}
    delay = int(backoff.get("delay", 0))

    if backoff.get("type") == "exponential":
        return delay * 2 ** max(0, attempts_made - 1)

    return delay


class JobQueue:
    """
    Durable, at-least-once job queue on redis.

    Keys (prefix "queue:{name}"):
        id                  job id counter.
        job:{id}            job hash.
        job:{id}:lock       lease lock, expires unless renewed.
        wait                list of job ids ready to run, oldest first.
        delayed             zset of job ids, score = ms when they become ready.
        active              list of leased job ids.
        completed, failed   zsets, score = ms when they finished.
        limiter             number of jobs started in the current window.
        meta-lock           mutex held while jobs move between the above.
    """

    def __init__(
        self,
        client: Redis,
        name: str = QUEUE_NAME,
        lock_duration_ms: int = default_lock_duration_ms,
        rate_limit_max: int = default_rate_limit_max,
        rate_limit_duration_ms: int = default_rate_limit_duration_ms,
    ):
        self.redis = client
        self.name = name
        self.prefix = f"queue:{name}"
        self.lock_duration_ms = lock_duration_ms
        self.rate_limit_max = rate_limit_max
        self.rate_limit_duration_ms = rate_limit_duration_ms

        # lease locks held by this process, keyed by lock token.
        self._locks: Dict[str, Lock] = {}
        self._locks_guard = threading.Lock()

    # --------------------------------------------------------
    # KEYS
    # --------------------------------------------------------
    def key(self, *parts: str) -> str:
        return ":".join([self.prefix, *parts])

    def job_key(self, job_id: str) -> str:
        return self.key("job", job_id)

    def lock_key(self, job_id: str) -> str:
        return self.key("job", job_id, "lock")

    def _mutex(self) -> Lock:
        return get_lock(self.redis, self.key("meta-lock"), timeout=5, blocking_timeout=5)

    # --------------------------------------------------------
    # PRODUCER
    # --------------------------------------------------------
    def add(self, name: str, payload: Dict[str, Any], options: Optional[JobOptions] = None) -> Job:
        opts: Dict[str, Any] = {**default_job_options(), **(options or {})}
        job_id = str(self.redis.incr(self.key("id")))

        job = Job(
            id=job_id,
            name=name,
            data=dict(payload),
            opts=opts,
            max_attempts=max(1, int(opts.get("attempts", 1))),
            state=JobState.Waiting.value,
            timestamp=now_ms(),
        )

        pipe = self.redis.pipeline()
        pipe.hset(self.job_key(job_id), mapping=encode_job_hash(job))  # type: ignore
        pipe.rpush(self.key("wait"), job_id)
        pipe.execute()

        return job

    # --------------------------------------------------------
    # LEASING
    # --------------------------------------------------------
    def lease(self, worker_token: str = "worker") -> Optional[Job]:
        """
        Leases the oldest waiting job, or returns None when there is none or
        the rate limiter is exhausted (see `rate_limit_delay`).
        """

        with self._mutex():
            self._promote_delayed()

            if self._is_rate_limited():
                return None

            while True:
                raw_id = self.redis.lpop(self.key("wait"))
                if raw_id is None:
                    return None

                job_id = raw_id.decode("utf-8")  # type: ignore
                if self.redis.exists(self.job_key(job_id)):
                    break

                logger.warning("dropping dangling job id %s from wait list", job_id)

            lock = get_lock(
                self.redis,
                self.lock_key(job_id),
                timeout=self.lock_duration_ms / 1000,
                blocking=False,
            )
            token = f"{worker_token}:{uuid.uuid4().hex}"

            if not lock.acquire(blocking=False, token=token):
                # a previous lease of this job still holds its lock, try again later.
                self.redis.rpush(self.key("wait"), job_id)
                return None

            now = now_ms()
            expires_at = now + self.lock_duration_ms

            pipe = self.redis.pipeline()
            pipe.hset(
                self.job_key(job_id),
                mapping={
                    "state": JobState.Active.value,
                    "processed_on": now,
                    "lock_token": token,
                    "lock_expires_at": expires_at,
                },
            )
            pipe.rpush(self.key("active"), job_id)
            pipe.incr(self.key("limiter"))
            pipe.pttl(self.key("limiter"))
            _, _, _, limiter_ttl = pipe.execute()

            if limiter_ttl is None or int(limiter_ttl) < 0:
                self.redis.pexpire(self.key("limiter"), self.rate_limit_duration_ms)

        with self._locks_guard:
            self._locks[token] = lock

        return self.get_job(job_id)

    def _promote_delayed(self):
        due = self.redis.zrangebyscore(self.key("delayed"), 0, now_ms())

        for raw_id in due:  # type: ignore
            job_id = raw_id.decode("utf-8")
            pipe = self.redis.pipeline()
            pipe.zrem(self.key("delayed"), job_id)
            pipe.rpush(self.key("wait"), job_id)
            pipe.hset(self.job_key(job_id), "state", JobState.Waiting.value)
            pipe.execute()

    def _is_rate_limited(self) -> bool:
        if self.rate_limit_max <= 0:
            return False

        started = self.redis.get(self.key("limiter"))
        return started is not None and int(started) >= self.rate_limit_max  # type: ignore

    def rate_limit_delay(self) -> int:
        """
        return -> ms until the limiter lets another job start, 0 when it already does.
        """

        if not self._is_rate_limited():
            return 0

        ttl = self.redis.pttl(self.key("limiter"))
        return max(0, int(ttl))  # type: ignore

    def _take_lock(self, job: Job) -> Optional[Lock]:
        if job.lock_token is None:
            return None

        with self._locks_guard:
            return self._locks.pop(job.lock_token, None)

    def _peek_lock(self, job: Job) -> Optional[Lock]:
        if job.lock_token is None:
            return None

        with self._locks_guard:
            return self._locks.get(job.lock_token)

    def release_local(self, job: Job):
        """
        Forgets the lease lock of a job this process gave up on. The redis key
        is left to expire so the stalled checker can requeue the job.
        """

        self._take_lock(job)

    def extend_lock(self, job: Job) -> bool:
        """
        Renews the lease for another full lock duration.

        return -> False when the lock expired or was taken over.
        """

        lock = self._peek_lock(job)
        if lock is None:
            return False

        try:
            lock.extend(self.lock_duration_ms / 1000, replace_ttl=True)
        except LockError:
            return False

        expires_at = now_ms() + self.lock_duration_ms
        self.redis.hset(self.job_key(job.id), "lock_expires_at", expires_at)
        job.lock_expires_at = expires_at

        return True

    def update_progress(self, job: Job, progress: int):
        value = max(0, min(100, int(progress)))
        self.redis.hset(self.job_key(job.id), "progress", value)
        job.progress = value

    # --------------------------------------------------------
    # FINISHING
    # --------------------------------------------------------
    def complete(self, job: Job, return_value: Any = None):
        lock = self._take_lock(job)

        with self._mutex():
            if lock is None or not lock.owned():
                raise LockLostError(f"lost lock of job {job.id} before completing it")

            now = now_ms()
            pipe = self.redis.pipeline()
            pipe.lrem(self.key("active"), 0, job.id)
            pipe.zadd(self.key("completed"), {job.id: now})
            pipe.hset(
                self.job_key(job.id),
                mapping={
                    "state": JobState.Completed.value,
                    "progress": 100,
                    "return_value": encode_value(return_value),
                    "finished_on": now,
                },
            )
            pipe.hdel(self.job_key(job.id), "lock_token", "lock_expires_at")
            pipe.delete(self.lock_key(job.id))
            pipe.execute()

            self._trim(self.key("completed"), job.opts.get("remove_on_complete"))

        job.state = JobState.Completed.value
        job.progress = 100
        job.return_value = return_value
        job.finished_on = now

    def fail(self, job: Job, error: BaseException) -> str:
        """
        Records a failed attempt.

        return -> "delayed" when another attempt is scheduled, "failed" when
        attempts are exhausted.
        """

        lock = self._take_lock(job)
        reason = str(error) or error.__class__.__name__

        with self._mutex():
            if lock is None or not lock.owned():
                raise LockLostError(f"lost lock of job {job.id} before failing it")

            state = self._record_failure(job, reason)

        return state

    def _record_failure(self, job: Job, reason: str) -> str:
        """
        Must be called holding the queue mutex.
        """

        now = now_ms()
        attempts_made = job.attempts_made + 1

        pipe = self.redis.pipeline()
        pipe.lrem(self.key("active"), 0, job.id)
        pipe.hdel(self.job_key(job.id), "lock_token", "lock_expires_at")
        pipe.delete(self.lock_key(job.id))

        if attempts_made < job.max_attempts:
            state = JobState.Delayed.value
            delay = get_backoff_delay(job.opts, attempts_made)
            pipe.zadd(self.key("delayed"), {job.id: now + delay})
            pipe.hset(
                self.job_key(job.id),
                mapping={
                    "state": state,
                    "attempts_made": attempts_made,
                    "failed_reason": reason,
                },
            )
            pipe.execute()
        else:
            state = JobState.Failed.value
            pipe.zadd(self.key("failed"), {job.id: now})
            pipe.hset(
                self.job_key(job.id),
                mapping={
                    "state": state,
                    "attempts_made": attempts_made,
                    "failed_reason": reason,
                    "finished_on": now,
                },
            )
            pipe.execute()
            self._trim(self.key("failed"), job.opts.get("remove_on_fail"))

        job.attempts_made = attempts_made
        job.state = state
        job.failed_reason = reason

        return state

    def requeue_stalled(self) -> list[str]:
        """
        Active jobs whose lease lock expired (worker crashed or froze) count
        as a failed attempt and go back to the wait list.
        """

        moved = []

        with self._mutex():
            for raw_id in self.redis.lrange(self.key("active"), 0, -1):  # type: ignore
                job_id = raw_id.decode("utf-8")

                if self.redis.exists(self.lock_key(job_id)):
                    continue

                job = self.get_job(job_id)
                if job is None:
                    self.redis.lrem(self.key("active"), 0, job_id)
                    continue

                attempts_made = job.attempts_made + 1
                if attempts_made >= job.max_attempts:
                    self._record_failure(job, STALLED_REASON)
                else:
                    pipe = self.redis.pipeline()
                    pipe.lrem(self.key("active"), 0, job_id)
                    pipe.lpush(self.key("wait"), job_id)
                    pipe.hset(
                        self.job_key(job_id),
                        mapping={
                            "state": JobState.Waiting.value,
                            "attempts_made": attempts_made,
                        },
                    )
                    pipe.hdel(self.job_key(job_id), "lock_token", "lock_expires_at")
                    pipe.execute()

                moved.append(job_id)

        if moved:
            logger.warning("requeued stalled jobs: %s", moved)

        return moved

    # --------------------------------------------------------
    # CANCELLATION / RETENTION
    # --------------------------------------------------------
    def remove(self, job_id: str) -> bool:
        """
        Removes a job that has not started yet. An active job keeps running.
        """

        with self._mutex():
            state = self.get_state(job_id)

            if state == JobState.Waiting.value:
                self.redis.lrem(self.key("wait"), 0, job_id)
            elif state == JobState.Delayed.value:
                self.redis.zrem(self.key("delayed"), job_id)
            else:
                return False

            self.redis.delete(self.job_key(job_id))

        return True

    def find_jobs(
        self,
        states: Iterable[str],
        predicate: Callable[[Job], bool] = lambda job: True,
    ) -> list[Job]:
        jobs = []

        for state in states:
            for job_id in self._ids_in_state(state):
                job = self.get_job(job_id)
                if job is not None and predicate(job):
                    jobs.append(job)

        return jobs

    def remove_by_document(self, document_id: str) -> Dict[str, list[str]]:
        """
        return -> {"removed": [...], "active": [...]}, active runs are not interrupted.
        """

        jobs = self.find_jobs(
            [JobState.Waiting.value, JobState.Delayed.value, JobState.Active.value],
            lambda job: str(job.data.get("document_id")) == str(document_id),
        )

        removed, active = [], []
        for job in jobs:
            if self.remove(job.id):
                removed.append(job.id)
            else:
                active.append(job.id)

        return {"removed": removed, "active": active}

    def clean(self, grace_ms: int, limit: int, state: str) -> list[str]:
        """
        Deletes up to `limit` completed/failed jobs finished more than `grace_ms` ago.
        """

        if state not in (JobState.Completed.value, JobState.Failed.value):
            raise ValueError(f"can only clean completed or failed jobs, got {state}")

        key = self.key(state)
        cutoff = now_ms() - grace_ms

        with self._mutex():
            ids = [
                raw.decode("utf-8")
                for raw in self.redis.zrangebyscore(key, 0, cutoff, start=0, num=limit)  # type: ignore
            ]
            self._delete_finished(key, ids)

        return ids

    def _trim(self, key: str, keep: Any):
        """
        keep -> number of newest finished jobs to retain; True keeps none,
        None/False keeps all.
        """

        if keep is None or keep is False:
            return

        keep = 0 if keep is True else int(keep)
        ids = [
            raw.decode("utf-8")
            for raw in self.redis.zrange(key, 0, -(keep + 1))  # type: ignore
        ]
        self._delete_finished(key, ids)

    def _delete_finished(self, key: str, ids: list[str]):
        if not ids:
            return

        pipe = self.redis.pipeline()
        pipe.zrem(key, *ids)
        pipe.delete(*[self.job_key(job_id) for job_id in ids])
        pipe.execute()

    # --------------------------------------------------------
    # INSPECTION
    # --------------------------------------------------------
    def get_job(self, job_id: str) -> Optional[Job]:
        raw = self.redis.hgetall(self.job_key(job_id))
        if not raw:
            return None

        return decode_job_hash(job_id, raw)  # type: ignore

    def get_state(self, job_id: str) -> Optional[str]:
        raw = self.redis.hget(self.job_key(job_id), "state")
        return raw.decode("utf-8") if raw else None  # type: ignore

    def _ids_in_state(self, state: str) -> list[str]:
        if state == JobState.Waiting.value:
            raw_ids = self.redis.lrange(self.key("wait"), 0, -1)
        elif state == JobState.Active.value:
            raw_ids = self.redis.lrange(self.key("active"), 0, -1)
        else:
            raw_ids = self.redis.zrange(self.key(state), 0, -1)

        return [raw.decode("utf-8") for raw in raw_ids]  # type: ignore

    def counts(self) -> Dict[str, int]:
        pipe = self.redis.pipeline()
        pipe.llen(self.key("wait"))
        pipe.zcard(self.key("delayed"))
        pipe.llen(self.key("active"))
        pipe.zcard(self.key("completed"))
        pipe.zcard(self.key("failed"))
        waiting, delayed, active, completed, failed = pipe.execute()

        return {
            JobState.Waiting.value: int(waiting),
            JobState.Delayed.value: int(delayed),
            JobState.Active.value: int(active),
            JobState.Completed.value: int(completed),
            JobState.Failed.value: int(failed),
        }

    def wait_until_finished(
        self, job_id: str, timeout: Optional[float] = None, poll_interval: float = 0.5
    ) -> Any:
        """
        Blocks until the job completed (returns its return value) or failed
        for good (raises RetriesExhaustedError).
        """

        deadline = None if timeout is None else time.monotonic() + timeout

        while True:
            job = self.get_job(job_id)
            if job is None:
                raise KeyError(f"job {job_id} not found")

            if job.state == JobState.Completed.value:
                return job.return_value

            if job.state == JobState.Failed.value:
                raise RetriesExhaustedError(job.id, job.attempts_made, job.failed_reason)

            if deadline is not None and time.monotonic() >= deadline:
                raise TimeoutError(f"job {job_id} still {job.state} after {timeout}s")

            time.sleep(poll_interval)
