"""
Transport-agnostic job service.

TranscriptionService is the surface consumed by the HTTP API and the CLI:
submit a job, read its status, cancel it, fetch its outputs. Admission denials
are raised as AdmissionDenied subclasses; status reads use the caller-facing
poll vocabulary.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Dict, Optional

from .abuse_detector import AbuseDetector, AbuseWeights
from .admission import AdmissionContext, AdmissionController, BotVerifier, Identity
from .audio_pipeline import AudioAcquisitionPipeline
from .database import DatabaseManager
from .dispatcher import ProviderDispatcher
from .error_handling import (
    AdmissionDenied,
    IdentityBlocked,
    InvalidTransitionError,
    JobNotFoundError,
    QueueFullError,
    QuotaExceeded,
    RateLimited,
    UnsupportedJobType,
)
from .job_state import (
    InMemoryJobRepository,
    JobRecord,
    JobRepository,
    JobState,
    JobStateMachine,
    SqlJobRepository,
)
from .models import JobOptions, JobType, SourceDescriptor, Tier
from .poller import JobStatusPoller, PollResult, PollStatus
from .providers import DeepgramProvider, WhisperReplicateProvider
from .queue import PriorityJobQueue, TierConcurrencyLimiter, base_priority
from .quota_tracker import InMemoryUsageStore, QuotaTracker, SqlUsageStore
from .rate_limit_manager import RateLimiter
from .refinement import RefinementEngine
from .result_cache import InMemoryCacheStore, SqlCacheStore, TranscriptionCache
from .storage import LocalBlobStore

logger = logging.getLogger(__name__)

DEFAULT_RESERVED_MINUTES = 1.0

# Chapter and summary jobs keep their queue weights but have no processing stage
SUPPORTED_JOB_TYPES = frozenset({JobType.TRANSCRIPTION})

_BLOCKED_REASONS = ("blocked", "bot_verification_failed")


@dataclass
class SubmittedJob:
    job_id: str
    status: str
    queue_position: int
    estimated_wait_seconds: Optional[int]
    remaining: Dict[str, Optional[float]]

    def to_dict(self) -> Dict[str, object]:
        return {
            "job_id": self.job_id,
            "status": self.status,
            "queue_position": self.queue_position,
            "estimated_wait_seconds": self.estimated_wait_seconds,
            "remaining": self.remaining,
        }


def reserved_minutes(source: SourceDescriptor, options: JobOptions) -> float:
    """
    Minutes charged at admission.

    Known durations are charged exactly, capped by the preview window. Unknown
    durations reserve the preview window or one minute; the worker charges
    the difference, or fails the job, once the real duration is known.
    """
    preview = options.preview_seconds
    if source.duration_seconds is not None:
        seconds = source.duration_seconds
        if preview:
            seconds = min(seconds, preview)
        return round(seconds / 60.0, 3)
    if preview:
        return round(preview / 60.0, 3)
    return DEFAULT_RESERVED_MINUTES


def denial_to_exception(reason: Optional[str], retry_after=None, remaining=None) -> AdmissionDenied:
    if reason in _BLOCKED_REASONS:
        return IdentityBlocked(reason)
    if reason == "rate_limited":
        return RateLimited(reason, retry_after=retry_after)
    return QuotaExceeded(reason or "quota_exceeded", remaining=remaining)


class TranscriptionService:
    """Admission, persistence and queueing of transcription jobs."""

    def __init__(
        self,
        admission: AdmissionController,
        state_machine: JobStateMachine,
        queue: PriorityJobQueue,
        poller: JobStatusPoller,
    ):
        self.admission = admission
        self.state_machine = state_machine
        self.queue = queue
        self.poller = poller

    async def submit_job(
        self,
        identity: Identity,
        source: SourceDescriptor,
        options: Optional[JobOptions] = None,
        context: Optional[AdmissionContext] = None,
    ) -> SubmittedJob:
        """
        Admit, persist and queue a job.

        Args:
            identity: Caller identity and tier
            source: Media source
            options: Job options
            context: Request signals for admission control

        Returns:
            SubmittedJob with the queue position

        Raises:
            RateLimited: Rate limit exhausted; carries retry_after
            QuotaExceeded: Tier quota exhausted; carries remaining balances
            IdentityBlocked: Identity blocked or bot verification failed
            QueueFullError: Pending queue at capacity
            UnsupportedJobType: Job type other than transcription
        """
        options = options or JobOptions()
        if options.job_type not in SUPPORTED_JOB_TYPES:
            raise UnsupportedJobType(options.job_type.value)
        context = context or AdmissionContext()
        minutes = reserved_minutes(source, options)
        context.requested_minutes = minutes
        context.accuracy = options.accuracy
        context.is_preview = options.preview_seconds is not None
        if context.target is None:
            context.target = source.reference

        decision = await self.admission.admit(identity, context)
        if not decision.allowed:
            logger.info(f"Submission denied for {decision.identity_key}: {decision.reason}")
            raise denial_to_exception(decision.reason, decision.retry_after, decision.remaining)

        job_id = uuid.uuid4().hex
        record = JobRecord(
            job_id=job_id,
            owner=decision.identity_key,
            source_kind=source.kind.value,
            source_ref=source.reference,
            tier=identity.tier.value,
            job_type=options.job_type.value,
            options={
                **options.model_dump(mode="json"),
                "source_duration": source.duration_seconds,
                "reserved_minutes": minutes,
            },
            priority=base_priority(identity.tier, options.job_type),
        )
        await self.state_machine.create(record)
        await self.state_machine.transition(job_id, JobState.QUEUED)

        try:
            await self.queue.enqueue(job_id, decision.identity_key, identity.tier, options.job_type)
        except QueueFullError as e:
            await self.state_machine.fail(job_id, e.category.value, str(e))
            raise

        position = await self.queue.position_of(job_id)
        return SubmittedJob(
            job_id=job_id,
            status=PollStatus.QUEUED.value,
            queue_position=position,
            estimated_wait_seconds=await self.queue.estimated_wait_seconds(job_id),
            remaining=decision.remaining,
        )

    async def get_job_status(self, job_id: str, owner: Optional[str] = None) -> PollResult:
        """Current status in the caller vocabulary; NOT_FOUND for unknown or foreign jobs."""
        if owner is not None:
            record = await self.state_machine.repository.get(job_id)
            if record is None or record.owner != owner:
                return PollResult(job_id, PollStatus.NOT_FOUND, message="Job not found")

        result = await self.poller.poll(job_id)
        if result.status == PollStatus.QUEUED:
            position = await self.queue.position_of(job_id)
            if position > 0:
                result.queue_position = position
                result.estimated_wait_seconds = await self.queue.estimated_wait_seconds(job_id)
        return result

    async def cancel_job(self, job_id: str, owner: str) -> PollResult:
        """
        Cancel a pending job on behalf of its owner.

        Raises:
            JobNotFoundError: Unknown job or not owned by ``owner``
            InvalidTransitionError: Job already left the pending states
        """
        record = await self.state_machine.repository.get(job_id)
        if record is None or record.owner != owner:
            raise JobNotFoundError(f"Job {job_id} not found")
        if record.status not in (JobState.SUBMITTED, JobState.QUEUED):
            raise InvalidTransitionError(f"Job {job_id} is {record.status.value} and can no longer be cancelled")

        await self.queue.cancel(job_id, owner)
        await self.state_machine.transition(job_id, JobState.CANCELLED)
        return await self.poller.poll(job_id)

    async def get_output(self, job_id: str, fmt: str, owner: Optional[str] = None) -> str:
        """
        Rendered output of a completed job.

        Raises:
            JobNotFoundError: Unknown job, foreign job, or format not produced
        """
        record = await self.state_machine.repository.get(job_id)
        if record is None or (owner is not None and record.owner != owner):
            raise JobNotFoundError(f"Job {job_id} not found")
        content = await self.state_machine.repository.get_output(job_id, fmt)
        if content is None:
            raise JobNotFoundError(f"No {fmt} output for job {job_id}")
        return content

    def reset_identity(self, identity_key: str) -> None:
        """Clear rate-limit counters and abuse state for an identity."""
        self.admission.rate_limiter.reset(identity_key)
        self.admission.abuse_detector.reset(identity_key)
        logger.info(f"Reset admission state for {identity_key}")


@dataclass
class PipelineComponents:
    """Every collaborator of the pipeline, wired from settings."""
    settings: object
    db_manager: Optional[DatabaseManager]
    repository: JobRepository
    state_machine: JobStateMachine
    queue: PriorityJobQueue
    concurrency: TierConcurrencyLimiter
    quota_tracker: QuotaTracker
    acquisition: AudioAcquisitionPipeline
    dispatcher: ProviderDispatcher
    refinement: RefinementEngine
    poller: JobStatusPoller
    service: TranscriptionService
    cache: Optional[TranscriptionCache] = None


def build_components(
    settings,
    db_manager: Optional[DatabaseManager] = None,
    bot_verifier: Optional[BotVerifier] = None,
    use_database: bool = True,
) -> PipelineComponents:
    """
    Wire the pipeline from settings.

    Args:
        settings: Settings instance
        db_manager: Existing database manager; created from settings when omitted
        bot_verifier: Optional bot-challenge verifier
        use_database: Use SQL-backed jobs and quotas instead of in-memory stores

    Returns:
        PipelineComponents sharing one queue and one repository
    """
    if use_database:
        db_manager = db_manager or DatabaseManager(settings.database_url)
        repository: JobRepository = SqlJobRepository(db_manager)
        usage_store = SqlUsageStore(db_manager)
        cache_store = SqlCacheStore(db_manager)
    else:
        db_manager = None
        repository = InMemoryJobRepository()
        usage_store = InMemoryUsageStore()
        cache_store = InMemoryCacheStore()

    state_machine = JobStateMachine(repository)
    queue = PriorityJobQueue(max_pending=settings.queue_max_pending)
    concurrency = TierConcurrencyLimiter({Tier(k): v for k, v in settings.tier_concurrency.items()})
    quota_tracker = QuotaTracker(usage_store)
    abuse_detector = AbuseDetector(weights=AbuseWeights(block_threshold=settings.abuse_block_threshold))
    admission = AdmissionController(
        RateLimiter(),
        quota_tracker,
        abuse_detector,
        bot_verifier=bot_verifier,
        require_bot_verification=settings.require_bot_verification,
    )
    poller = JobStatusPoller(
        repository,
        interval=settings.poll_interval_seconds,
        max_attempts=settings.poll_max_attempts,
    )

    blob_store = LocalBlobStore(settings.storage_path, settings.public_base_url)
    acquisition = AudioAcquisitionPipeline.from_settings(settings, blob_store)
    dispatcher = ProviderDispatcher(
        [
            DeepgramProvider(
                settings.deepgram_api_key,
                base_url=settings.deepgram_base_url,
                model=settings.deepgram_model,
            ),
            WhisperReplicateProvider(
                settings.replicate_api_token,
                base_url=settings.replicate_base_url,
                model=settings.whisper_model_version,
                poll_interval=settings.whisper_poll_interval,
                max_polls=settings.whisper_max_polls,
            ),
        ],
        mode=settings.dispatch_mode,
        fallback_timeout=settings.provider_fallback_timeout,
    )

    service = TranscriptionService(admission, state_machine, queue, poller)
    return PipelineComponents(
        settings=settings,
        db_manager=db_manager,
        repository=repository,
        state_machine=state_machine,
        queue=queue,
        concurrency=concurrency,
        quota_tracker=quota_tracker,
        acquisition=acquisition,
        dispatcher=dispatcher,
        refinement=RefinementEngine.from_settings(settings),
        poller=poller,
        service=service,
        cache=TranscriptionCache.from_settings(settings, cache_store),
    )
