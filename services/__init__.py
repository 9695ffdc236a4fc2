"""
Job Worker Services

This module runs leased jobs from the redis queue in worker threads,
keeping their locks alive while they run.

Classes
-------
JobWorker
    Lease threads, stalled job checker and periodic cleanup for one process.

JobContext
    The leased job handed to a handler, with progress reporting.

LockRenewer
    Extends one job's lease lock while its handler runs.
"""

from .job_workers import JobWorker, JobContext, LockRenewer
