import msgpack
import time

from typing import Any, Dict, Optional

from type_defs.shared import Job


def now_ms() -> int:
    return int(time.time() * 1000)


def encode_value(value: Any) -> bytes:
    return msgpack.packb(value, use_bin_type=True)  # type: ignore


def decode_value(payload: Optional[bytes]) -> Any:
    if payload is None:
        return None

    return msgpack.unpackb(payload, raw=False)


def _int_or_none(raw: Optional[bytes]) -> Optional[int]:
    return int(raw) if raw not in (None, b"") else None


def encode_job_hash(job: Job) -> Dict[str, bytes | int | str]:
    fields: Dict[str, bytes | int | str] = {
        "name": job.name,
        "data": encode_value(job.data),
        "opts": encode_value(job.opts),
        "attempts_made": job.attempts_made,
        "max_attempts": job.max_attempts,
        "progress": job.progress,
        "state": job.state,
        "timestamp": job.timestamp,
    }

    return fields


def decode_job_hash(job_id: str, raw: Dict[bytes, bytes]) -> Job:
    """
    raw -> HGETALL result of a job hash, keys and values as bytes.
    """

    def text(key: str) -> Optional[str]:
        value = raw.get(key.encode())
        return value.decode("utf-8") if value is not None else None

    return Job(
        id=job_id,
        name=text("name") or "",
        data=decode_value(raw.get(b"data")) or {},
        opts=decode_value(raw.get(b"opts")) or {},
        attempts_made=int(raw.get(b"attempts_made", b"0")),
        max_attempts=int(raw.get(b"max_attempts", b"1")),
        progress=int(raw.get(b"progress", b"0")),
        state=text("state") or "",
        failed_reason=text("failed_reason"),
        return_value=decode_value(raw.get(b"return_value")),
        lock_token=text("lock_token"),
        lock_expires_at=_int_or_none(raw.get(b"lock_expires_at")),
        timestamp=int(raw.get(b"timestamp", b"0")),
        processed_on=_int_or_none(raw.get(b"processed_on")),
        finished_on=_int_or_none(raw.get(b"finished_on")),
    )
