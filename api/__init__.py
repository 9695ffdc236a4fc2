"""
API Module

This module provides the producer and consumer ends of pdf processing:
validating and queueing uploads, and handling leased jobs.

Functions
---------
validate_pdf(document_bytes, file_name)
    Rejects empty, oversized or non pdf uploads.

enqueue_request(queue, records, ...)
    Marks the document as queued and adds a processing job.

process_request(job_context, pipeline)
    Runs the document pipeline for a leased job.
"""

from .enqueue import validate_pdf, enqueue_request
from .process import process_request
