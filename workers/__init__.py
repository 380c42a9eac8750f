"""
Workers module for the media transcription pipeline
"""

from workers.base import BaseWorker, StageOutcome, WorkerStatus
from workers.transcriber import TranscribeWorker
from workers.job_worker import JobWorker

__all__ = [
    'BaseWorker',
    'StageOutcome',
    'WorkerStatus',
    'TranscribeWorker',
    'JobWorker',
]
