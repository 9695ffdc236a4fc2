from .config import redis, get_lock
from .queue import JobQueue, default_job_options
