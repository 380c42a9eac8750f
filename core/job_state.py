"""
Job lifecycle state machine with persisted transitions.

    submitted -> queued -> downloading -> transcribing -> refining -> completed

``failed`` is reachable from every non-terminal state and ``cancelled`` from the
two pending states. Transitions are written through a JobRepository with a
compare-and-set on the current status, so concurrent workers cannot apply an
edge from a stale state and pollers can resume after a restart.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update

from .database import DatabaseManager, TranscriptionJob, TranscriptionOutput
from .error_handling import InvalidTransitionError, JobNotFoundError

logger = logging.getLogger(__name__)


class JobState(str, Enum):
    SUBMITTED = "submitted"
    QUEUED = "queued"
    DOWNLOADING = "downloading"
    TRANSCRIBING = "transcribing"
    REFINING = "refining"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED})

ALLOWED_TRANSITIONS: Dict[JobState, frozenset] = {
    JobState.SUBMITTED: frozenset({JobState.QUEUED, JobState.FAILED, JobState.CANCELLED}),
    JobState.QUEUED: frozenset({JobState.DOWNLOADING, JobState.FAILED, JobState.CANCELLED}),
    JobState.DOWNLOADING: frozenset({JobState.TRANSCRIBING, JobState.FAILED}),
    JobState.TRANSCRIBING: frozenset({JobState.REFINING, JobState.FAILED}),
    JobState.REFINING: frozenset({JobState.COMPLETED, JobState.FAILED}),
    JobState.COMPLETED: frozenset(),
    JobState.FAILED: frozenset(),
    JobState.CANCELLED: frozenset(),
}

STATE_PROGRESS: Dict[JobState, int] = {
    JobState.SUBMITTED: 0,
    JobState.QUEUED: 5,
    JobState.DOWNLOADING: 20,
    JobState.TRANSCRIBING: 50,
    JobState.REFINING: 85,
    JobState.COMPLETED: 100,
}


def can_transition(current: JobState, target: JobState) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


@dataclass
class JobRecord:
    """Durable view of a job."""
    job_id: str
    owner: str
    source_kind: str
    source_ref: str
    tier: str = "free"
    job_type: str = "transcription"
    options: Dict[str, Any] = field(default_factory=dict)
    priority: float = 0.0
    status: JobState = JobState.SUBMITTED
    progress: int = 0
    provider: Optional[str] = None
    audio_url: Optional[str] = None
    error_category: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)
    queued_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


UPDATABLE_FIELDS = (
    "progress", "provider", "audio_url", "error_category", "error_message",
    "queued_at", "completed_at", "priority",
)


class JobRepository(ABC):
    """Persistence for jobs and their outputs."""

    @abstractmethod
    async def create(self, record: JobRecord) -> None:
        pass

    @abstractmethod
    async def get(self, job_id: str) -> Optional[JobRecord]:
        pass

    @abstractmethod
    async def compare_and_set(
        self, job_id: str, expected: JobState, target: JobState, fields: Dict[str, Any]
    ) -> bool:
        """Move ``job_id`` to ``target`` only if it is currently ``expected``."""
        pass

    @abstractmethod
    async def save_outputs(self, job_id: str, outputs: Dict[str, str], language: Optional[str]) -> None:
        pass

    @abstractmethod
    async def get_output(self, job_id: str, fmt: str) -> Optional[str]:
        pass

    @abstractmethod
    async def list_by_status(self, status: JobState) -> List[JobRecord]:
        pass


class InMemoryJobRepository(JobRepository):
    """Process-local repository for tests and single-process runs."""

    def __init__(self):
        self._jobs: Dict[str, JobRecord] = {}
        self._outputs: Dict[str, Dict[str, str]] = {}

    async def create(self, record: JobRecord) -> None:
        self._jobs[record.job_id] = replace(record)

    async def get(self, job_id: str) -> Optional[JobRecord]:
        record = self._jobs.get(job_id)
        return replace(record) if record else None

    async def compare_and_set(
        self, job_id: str, expected: JobState, target: JobState, fields: Dict[str, Any]
    ) -> bool:
        record = self._jobs.get(job_id)
        if record is None or record.status != expected:
            return False
        record.status = target
        record.updated_at = datetime.utcnow()
        for key, value in fields.items():
            setattr(record, key, value)
        return True

    async def save_outputs(self, job_id: str, outputs: Dict[str, str], language: Optional[str]) -> None:
        self._outputs.setdefault(job_id, {}).update(outputs)

    async def get_output(self, job_id: str, fmt: str) -> Optional[str]:
        return self._outputs.get(job_id, {}).get(fmt)

    async def list_by_status(self, status: JobState) -> List[JobRecord]:
        return [replace(r) for r in self._jobs.values() if r.status == status]


class SqlJobRepository(JobRepository):
    """Jobs in the relational store; safe for multi-process access."""

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    @staticmethod
    def _to_record(row: TranscriptionJob) -> JobRecord:
        return JobRecord(
            job_id=row.job_id,
            owner=row.owner,
            source_kind=row.source_kind,
            source_ref=row.source_ref,
            tier=row.tier,
            job_type=row.job_type,
            options=dict(row.options or {}),
            priority=row.priority or 0.0,
            status=JobState(row.status),
            progress=row.progress or 0,
            provider=row.provider,
            audio_url=row.audio_url,
            error_category=row.error_category,
            error_message=row.error_message,
            created_at=row.created_at,
            updated_at=row.updated_at,
            queued_at=row.queued_at,
            completed_at=row.completed_at,
        )

    async def create(self, record: JobRecord) -> None:
        async with self.db_manager.get_session() as session:
            session.add(TranscriptionJob(
                job_id=record.job_id,
                owner=record.owner,
                tier=record.tier,
                job_type=record.job_type,
                source_kind=record.source_kind,
                source_ref=record.source_ref,
                options=record.options,
                priority=record.priority,
                status=record.status.value,
                progress=record.progress,
                created_at=record.created_at,
                updated_at=record.updated_at,
            ))

    async def get(self, job_id: str) -> Optional[JobRecord]:
        async with self.db_manager.get_session() as session:
            row = await session.get(TranscriptionJob, job_id)
            return self._to_record(row) if row else None

    async def compare_and_set(
        self, job_id: str, expected: JobState, target: JobState, fields: Dict[str, Any]
    ) -> bool:
        values = {"status": target.value, "updated_at": datetime.utcnow(), **fields}
        async with self.db_manager.get_session() as session:
            result = await session.execute(
                update(TranscriptionJob)
                .where(TranscriptionJob.job_id == job_id, TranscriptionJob.status == expected.value)
                .values(**values)
            )
            return result.rowcount == 1

    async def save_outputs(self, job_id: str, outputs: Dict[str, str], language: Optional[str]) -> None:
        async with self.db_manager.get_session() as session:
            existing = await session.execute(
                select(TranscriptionOutput).where(TranscriptionOutput.job_id == job_id)
            )
            by_format = {row.format: row for row in existing.scalars()}
            for fmt, content in outputs.items():
                if fmt in by_format:
                    by_format[fmt].content = content
                    by_format[fmt].language = language
                else:
                    session.add(TranscriptionOutput(job_id=job_id, format=fmt, content=content, language=language))

    async def get_output(self, job_id: str, fmt: str) -> Optional[str]:
        async with self.db_manager.get_session() as session:
            return await session.scalar(
                select(TranscriptionOutput.content).where(
                    TranscriptionOutput.job_id == job_id,
                    TranscriptionOutput.format == fmt,
                )
            )

    async def list_by_status(self, status: JobState) -> List[JobRecord]:
        async with self.db_manager.get_session() as session:
            result = await session.execute(
                select(TranscriptionJob)
                .where(TranscriptionJob.status == status.value)
                .order_by(TranscriptionJob.created_at)
            )
            return [self._to_record(row) for row in result.scalars()]


class JobStateMachine:
    """Validates and persists job state transitions."""

    def __init__(self, repository: JobRepository):
        self.repository = repository

    async def create(self, record: JobRecord) -> JobRecord:
        record.status = JobState.SUBMITTED
        record.progress = STATE_PROGRESS[JobState.SUBMITTED]
        await self.repository.create(record)
        logger.info(f"Job {record.job_id} submitted ({record.source_kind})")
        return record

    async def get(self, job_id: str) -> JobRecord:
        record = await self.repository.get(job_id)
        if record is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return record

    async def transition(self, job_id: str, target: JobState, **fields: Any) -> JobRecord:
        """
        Move a job to ``target``.

        Args:
            job_id: Job identifier
            target: Desired state
            **fields: Extra columns to update (provider, audio_url, error_message, ...)

        Returns:
            The updated record

        Raises:
            JobNotFoundError: Unknown job
            InvalidTransitionError: ``target`` is not reachable from the current state
        """
        unknown = set(fields) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update fields: {sorted(unknown)}")

        record = await self.get(job_id)
        current = record.status
        if not can_transition(current, target):
            raise InvalidTransitionError(f"Job {job_id}: {current.value} -> {target.value} is not allowed")

        if target in STATE_PROGRESS and "progress" not in fields:
            fields["progress"] = STATE_PROGRESS[target]
        if target == JobState.QUEUED:
            fields.setdefault("queued_at", datetime.utcnow())
        if target.is_terminal:
            fields.setdefault("completed_at", datetime.utcnow())

        if not await self.repository.compare_and_set(job_id, current, target, fields):
            latest = await self.get(job_id)
            raise InvalidTransitionError(
                f"Job {job_id}: concurrent update, now {latest.status.value}, wanted {target.value}"
            )

        logger.info(f"Job {job_id}: {current.value} -> {target.value}")
        return await self.get(job_id)

    async def fail(self, job_id: str, error_category: str, error_message: str) -> Optional[JobRecord]:
        """Mark a job failed unless it already reached a terminal state."""
        record = await self.get(job_id)
        if record.status.is_terminal:
            logger.warning(f"Job {job_id} already {record.status.value}, not marking failed: {error_message}")
            return None
        return await self.transition(
            job_id, JobState.FAILED,
            error_category=error_category,
            error_message=error_message[:2000],
        )
