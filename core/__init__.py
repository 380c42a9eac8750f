"""
Core module for the media transcription pipeline
"""

__all__ = [
    'admission',
    'audio_pipeline',
    'dispatcher',
    'job_state',
    'poller',
    'queue',
    'refinement',
    'service',
]
