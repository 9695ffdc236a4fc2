"""
Core Processing Pipeline

This module provides the document and page pipelines that turn a pdf into
uploaded Deep Zoom tile pyramids, one per page.

Classes
-------
DocumentPipeline
    Linearizes the pdf, fans pages out under a concurrency limit and finalizes the record.

PagePipeline
    Extracts, rasterizes, tiles and uploads a single page.

ProgressReporter
    Owns every progress write of one document run.
"""

from .pipeline import DocumentPipeline
from .page_pipeline import PagePipeline
from .progress import ProgressReporter
