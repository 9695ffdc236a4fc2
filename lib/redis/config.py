from redis.client import Redis
from redis.lock import Lock

import redis as r

from config.settings import REDIS_HOST, REDIS_PORT, REDIS_PASSWORD

# connects lazily, on first command.
redis: Redis = r.Redis(
    host=REDIS_HOST,
    port=REDIS_PORT,
    password=REDIS_PASSWORD,
    decode_responses=False,
)


def get_lock(
    client: Redis,
    lock_name: str,
    timeout: float = 10,
    blocking: bool = True,
    blocking_timeout: float = 10,
) -> Lock:
    # thread_local=False: locks are extended from a different thread than the one that took them.
    return client.lock(
        lock_name,
        timeout=timeout,
        blocking=blocking,
        blocking_timeout=blocking_timeout,
        thread_local=False,
    )
