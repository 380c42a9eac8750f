"""
Caller-facing job status polling.

Internal and provider status words are mapped onto a small stable vocabulary.
``poll_until_done`` polls on a fixed interval for a bounded number of attempts
and stops immediately when its cancel event is set, without touching server-side
job state.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional

from .job_state import JobRepository, JobState

logger = logging.getLogger(__name__)

STALE_QUEUE_SECONDS = 300


class PollStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    NOT_FOUND = "not_found"
    TIMEOUT = "timeout"

    @property
    def is_final(self) -> bool:
        return self in (PollStatus.COMPLETED, PollStatus.FAILED, PollStatus.CANCELLED, PollStatus.NOT_FOUND)


STATUS_VOCABULARY: Dict[str, PollStatus] = {
    # Internal states
    "submitted": PollStatus.QUEUED,
    "queued": PollStatus.QUEUED,
    "pending": PollStatus.QUEUED,
    "downloading": PollStatus.PROCESSING,
    "transcribing": PollStatus.PROCESSING,
    "refining": PollStatus.PROCESSING,
    "processing": PollStatus.PROCESSING,
    "completed": PollStatus.COMPLETED,
    "failed": PollStatus.FAILED,
    "cancelled": PollStatus.CANCELLED,
    # Provider vocabularies
    "starting": PollStatus.PROCESSING,
    "succeeded": PollStatus.COMPLETED,
    "success": PollStatus.COMPLETED,
    "error": PollStatus.FAILED,
    "canceled": PollStatus.CANCELLED,
}

STATUS_MESSAGES: Dict[str, str] = {
    "submitted": "Job received",
    "queued": "Waiting in queue",
    "downloading": "Fetching audio",
    "transcribing": "Transcribing audio",
    "refining": "Polishing transcript",
    "completed": "Transcription complete",
    "failed": "Transcription failed",
    "cancelled": "Job cancelled",
}


def normalize_status(raw: Optional[str]) -> PollStatus:
    """Map any known status word to the caller vocabulary; unknown words count as processing."""
    if not raw:
        return PollStatus.PROCESSING
    return STATUS_VOCABULARY.get(raw.lower(), PollStatus.PROCESSING)


@dataclass
class PollResult:
    job_id: str
    status: PollStatus
    state: Optional[str] = None
    progress: Optional[int] = None
    message: Optional[str] = None
    warning: Optional[str] = None
    should_retry: bool = False
    error: Optional[str] = None
    attempts: int = 0
    polling_cancelled: bool = False
    queue_position: Optional[int] = None
    estimated_wait_seconds: Optional[int] = None

    def to_dict(self) -> Dict[str, object]:
        data = {
            "job_id": self.job_id,
            "status": self.status.value,
            "state": self.state,
            "progress": self.progress,
            "message": self.message,
            "should_retry": self.should_retry,
        }
        if self.warning:
            data["warning"] = self.warning
        if self.error:
            data["error"] = self.error
        if self.queue_position is not None:
            data["queue_position"] = self.queue_position
            data["estimated_wait_seconds"] = self.estimated_wait_seconds
        return data


class JobStatusPoller:
    """Reads persisted job state and reports it in the caller vocabulary."""

    def __init__(
        self,
        repository: JobRepository,
        interval: float = 2.0,
        max_attempts: int = 60,
        stale_after_seconds: float = STALE_QUEUE_SECONDS,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.repository = repository
        self.interval = interval
        self.max_attempts = max_attempts
        self.stale_after_seconds = stale_after_seconds
        self._clock = clock

    async def poll(self, job_id: str) -> PollResult:
        """Single status read."""
        record = await self.repository.get(job_id)
        if record is None:
            return PollResult(job_id, PollStatus.NOT_FOUND, message="Job not found")

        state = record.status.value
        result = PollResult(
            job_id=job_id,
            status=normalize_status(state),
            state=state,
            progress=record.progress,
            message=STATUS_MESSAGES.get(state, state),
        )
        if record.status == JobState.FAILED:
            result.error = record.error_message
        if record.status in (JobState.SUBMITTED, JobState.QUEUED):
            waiting_since = record.queued_at or record.created_at
            if waiting_since and (self._clock() - waiting_since).total_seconds() > self.stale_after_seconds:
                result.warning = "staging_delayed"
                result.should_retry = True
        return result

    async def poll_until_done(
        self,
        job_id: str,
        cancel_event: Optional[asyncio.Event] = None,
        on_update: Optional[Callable[[PollResult], Awaitable[None]]] = None,
    ) -> PollResult:
        """
        Poll until a final status, the attempt limit, or cancellation.

        Args:
            job_id: Job to watch
            cancel_event: Set by the caller to stop polling
            on_update: Awaited with every intermediate result

        Returns:
            The final result; status TIMEOUT when attempts ran out, and
            ``polling_cancelled`` set when the caller stopped polling
        """
        last: Optional[PollResult] = None
        for attempt in range(1, self.max_attempts + 1):
            if cancel_event is not None and cancel_event.is_set():
                break
            last = await self.poll(job_id)
            last.attempts = attempt
            if on_update is not None:
                await on_update(last)
            if last.status.is_final:
                return last
            if attempt == self.max_attempts:
                break
            if cancel_event is None:
                await asyncio.sleep(self.interval)
                continue
            try:
                await asyncio.wait_for(cancel_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

        if cancel_event is not None and cancel_event.is_set():
            logger.debug(f"Polling for job {job_id} cancelled by caller")
            base = last or PollResult(job_id, PollStatus.PROCESSING)
            base.polling_cancelled = True
            return base

        logger.info(f"Polling for job {job_id} timed out after {self.max_attempts} attempts")
        return PollResult(
            job_id=job_id,
            status=PollStatus.TIMEOUT,
            state=last.state if last else None,
            progress=last.progress if last else None,
            message="Polling timed out",
            should_retry=True,
            attempts=self.max_attempts,
        )
