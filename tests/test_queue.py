import pytest

from lib.redis import JobQueue
from lib.redis.queue import STALLED_REASON, get_backoff_delay
from lib.redis.utils import now_ms
from type_defs.errors import LockLostError, RetriesExhaustedError
from type_defs.shared import JobState


def payload(document_id="doc-1"):
    return {
        "document_bytes": "JVBERi0=",
        "project_id": "proj1",
        "document_id": document_id,
        "file_name": "plan.pdf",
        "correlation_id": "abcd1234",
    }


def make_due(redis_client, queue: JobQueue, job_id: str):
    redis_client.zadd(queue.key("delayed"), {job_id: 0})


def test_add_uses_default_options(queue):
    job = queue.add("process-pdf", payload())

    assert job.max_attempts == 3
    assert job.opts["backoff"] == {"type": "exponential", "delay": 5000}
    assert job.opts["remove_on_complete"] == 100
    assert job.opts["remove_on_fail"] == 500
    assert queue.get_state(job.id) == JobState.Waiting.value

    stored = queue.get_job(job.id)
    assert stored is not None
    assert stored.data == payload()


def test_lease_is_fifo_and_marks_active(queue):
    first = queue.add("process-pdf", payload("a"))
    second = queue.add("process-pdf", payload("b"))

    leased = queue.lease("w1")

    assert leased is not None
    assert leased.id == first.id
    assert leased.state == JobState.Active.value
    assert leased.lock_token.startswith("w1:")
    assert leased.lock_expires_at > now_ms()
    assert queue.counts() == {
        "waiting": 1,
        "delayed": 0,
        "active": 1,
        "completed": 0,
        "failed": 0,
    }

    assert queue.lease("w1").id == second.id
    assert queue.lease("w1") is None


def test_complete_stores_return_value(queue):
    job = queue.add("process-pdf", payload())
    leased = queue.lease()

    queue.complete(leased, {"success": True, "document_id": "doc-1", "pages": 3})

    stored = queue.get_job(job.id)
    assert stored.state == JobState.Completed.value
    assert stored.progress == 100
    assert stored.return_value == {"success": True, "document_id": "doc-1", "pages": 3}
    assert stored.lock_token is None
    assert queue.wait_until_finished(job.id, timeout=1) == stored.return_value


def test_fail_backs_off_exponentially_then_fails(queue, redis_client):
    job = queue.add("process-pdf", payload())

    leased = queue.lease()
    before = now_ms()
    assert queue.fail(leased, RuntimeError("gs crashed")) == JobState.Delayed.value

    score = redis_client.zscore(queue.key("delayed"), job.id)
    assert before + 5000 <= score <= now_ms() + 5000

    # not due yet.
    assert queue.lease() is None

    make_due(redis_client, queue, job.id)
    leased = queue.lease()
    assert leased.id == job.id
    assert leased.attempts_made == 1

    before = now_ms()
    assert queue.fail(leased, RuntimeError("gs crashed")) == JobState.Delayed.value
    score = redis_client.zscore(queue.key("delayed"), job.id)
    assert before + 10000 <= score <= now_ms() + 10000

    make_due(redis_client, queue, job.id)
    leased = queue.lease()
    assert queue.fail(leased, RuntimeError("gs crashed")) == JobState.Failed.value

    stored = queue.get_job(job.id)
    assert stored.attempts_made == 3
    assert stored.failed_reason == "gs crashed"

    with pytest.raises(RetriesExhaustedError) as e:
        queue.wait_until_finished(job.id, timeout=1)

    assert e.value.attempts_made == 3


def test_backoff_delay():
    opts = {"backoff": {"type": "exponential", "delay": 5000}}

    assert get_backoff_delay(opts, 1) == 5000
    assert get_backoff_delay(opts, 2) == 10000
    assert get_backoff_delay(opts, 3) == 20000
    assert get_backoff_delay({"backoff": {"type": "fixed", "delay": 700}}, 3) == 700
    assert get_backoff_delay({}, 2) == 0


def test_retention_keeps_newest_finished_jobs(queue):
    ids = []
    for i in range(3):
        job = queue.add("process-pdf", payload(f"doc-{i}"), {"remove_on_complete": 2})
        queue.complete(queue.lease(), None)
        ids.append(job.id)

    assert queue.counts()["completed"] == 2
    assert queue.get_job(ids[0]) is None
    assert queue.get_job(ids[2]) is not None


def test_unrenewed_lock_makes_job_leasable_again(queue, redis_client):
    job = queue.add("process-pdf", payload())
    queue.lease("crashed-worker")

    # lock expired without renewal.
    redis_client.delete(queue.lock_key(job.id))

    assert queue.requeue_stalled() == [job.id]

    leased = queue.lease("w2")
    assert leased.id == job.id
    assert leased.attempts_made == 1
    assert leased.lock_token.startswith("w2:")


def test_live_lock_is_not_stalled(queue):
    job = queue.add("process-pdf", payload())
    queue.lease()

    assert queue.requeue_stalled() == []
    assert queue.get_state(job.id) == JobState.Active.value


def test_stalled_on_last_attempt_fails(queue, redis_client):
    job = queue.add("process-pdf", payload(), {"attempts": 1})
    queue.lease()
    redis_client.delete(queue.lock_key(job.id))

    queue.requeue_stalled()

    stored = queue.get_job(job.id)
    assert stored.state == JobState.Failed.value
    assert stored.failed_reason == STALLED_REASON


def test_extend_lock(queue, redis_client):
    job = queue.add("process-pdf", payload())
    leased = queue.lease()

    assert queue.extend_lock(leased)
    assert redis_client.pttl(queue.lock_key(job.id)) > 59_000

    redis_client.delete(queue.lock_key(job.id))
    assert not queue.extend_lock(leased)


def test_finishing_without_the_lock_raises(queue, redis_client):
    job = queue.add("process-pdf", payload())
    leased = queue.lease()
    redis_client.delete(queue.lock_key(job.id))

    with pytest.raises(LockLostError):
        queue.complete(leased, None)

    assert queue.get_state(job.id) == JobState.Active.value


def test_rate_limit(redis_client):
    queue = JobQueue(redis_client, "limited", rate_limit_max=2, rate_limit_duration_ms=60_000)
    for i in range(3):
        queue.add("process-pdf", payload(f"doc-{i}"))

    assert queue.rate_limit_delay() == 0
    assert queue.lease() is not None
    assert queue.lease() is not None
    assert queue.lease() is None

    assert 0 < queue.rate_limit_delay() <= 60_000
    assert queue.counts()["waiting"] == 1


def test_update_progress_is_clamped(queue):
    job = queue.add("process-pdf", payload())
    leased = queue.lease()

    queue.update_progress(leased, 140)
    assert queue.get_job(job.id).progress == 100

    queue.update_progress(leased, -3)
    assert queue.get_job(job.id).progress == 0


def test_remove_only_touches_jobs_not_started(queue):
    active = queue.add("process-pdf", payload("doc-1"))
    waiting = queue.add("process-pdf", payload("doc-1"))
    other = queue.add("process-pdf", payload("doc-2"))
    queue.lease()

    assert queue.remove(waiting.id)
    assert queue.get_job(waiting.id) is None
    assert not queue.remove(active.id)

    result = queue.remove_by_document("doc-2")
    assert result == {"removed": [other.id], "active": []}

    result = queue.remove_by_document("doc-1")
    assert result == {"removed": [], "active": [active.id]}


def test_clean(queue):
    job = queue.add("process-pdf", payload())
    queue.complete(queue.lease(), None)

    assert queue.clean(60_000, 10, JobState.Completed.value) == []
    assert queue.clean(0, 10, JobState.Completed.value) == [job.id]
    assert queue.get_job(job.id) is None

    with pytest.raises(ValueError):
        queue.clean(0, 10, JobState.Active.value)


def test_wait_until_finished(queue):
    job = queue.add("process-pdf", payload())

    with pytest.raises(TimeoutError):
        queue.wait_until_finished(job.id, timeout=0.05, poll_interval=0.01)

    with pytest.raises(KeyError):
        queue.wait_until_finished("missing", timeout=0.05)


def test_dangling_wait_ids_are_skipped(queue, redis_client):
    redis_client.rpush(queue.key("wait"), "999")
    job = queue.add("process-pdf", payload())

    assert queue.lease().id == job.id


def test_release_local_forgets_the_lock(queue):
    queue.add("process-pdf", payload())
    leased = queue.lease()

    queue.release_local(leased)

    assert queue._locks == {}
    assert not queue.extend_lock(leased)
