"""
Job worker: drains the priority queue and drives each job through the pipeline.

For every dequeued job, under the submitter's tier slot:

    queued -> downloading (cache lookup, resolve, length check, clip)
           -> transcribing (dispatch, usage settlement)
           -> refining (refinement + outputs) -> completed

A job is only ever charged up to its tier ceilings: media found to be longer
than the admission reservation is charged the difference, or failed when the
difference does not fit.

Any failure is contained to the job: it is logged with the job id, source kind
and stage, and the job is marked failed with the error category. The loop itself
never stops on a job failure.
"""

import asyncio
import logging
import os
import time
from datetime import datetime
from typing import Any, Dict, Optional

from core.error_handling import (
    InvalidTransitionError,
    JobNotFoundError,
    PipelineError,
    QuotaExceeded,
    log_pipeline_error,
)
from core.export import render_outputs
from core.job_state import JobRecord, JobState
from core.models import JobOptions, SourceDescriptor, SourceKind, Tier
from core.queue import QueueEntry
from core.service import PipelineComponents
from workers.transcriber import TranscribeWorker

logger = logging.getLogger("job_worker")

HEARTBEAT_INTERVAL = 60
RECOVERY_INTERVAL = 5
# Rounding slack between admitted, looked-up and provider-reported lengths
CHARGE_TOLERANCE_MINUTES = 0.05


class JobWorker:
    """
    Pulls jobs from the queue and processes them concurrently within tier limits.
    """

    def __init__(
        self,
        components: PipelineComponents,
        worker_id: str = "worker-1",
        idle_sleep: float = 1.0,
        sync_from_repository: bool = False,
    ):
        """
        Initialize the job worker.

        Args:
            components: Wired pipeline collaborators
            worker_id: Identifier used in logs
            idle_sleep: Seconds to wait for new work when the queue is empty
            sync_from_repository: Periodically enqueue jobs persisted as queued by
                other processes
        """
        self.components = components
        self.worker_id = worker_id
        self.idle_sleep = idle_sleep
        self.sync_from_repository = sync_from_repository
        self.transcriber = TranscribeWorker(components.dispatcher)
        self.running = False
        self.jobs_processed = 0
        self.jobs_failed = 0
        self.start_time = datetime.utcnow()
        self.last_job_time: Optional[datetime] = None
        self._tasks: Dict[str, asyncio.Task] = {}

    @property
    def max_in_flight(self) -> int:
        return sum(self.components.concurrency.limits.values())

    async def recover_pending(self) -> int:
        """
        Enqueue persisted queued jobs that this process does not know about.

        Returns:
            Number of jobs added to the in-process queue
        """
        queue = self.components.queue
        recovered = 0
        for record in await self.components.repository.list_by_status(JobState.QUEUED):
            if await queue.position_of(record.job_id) > 0:
                continue
            if record.job_id in self._tasks:
                continue
            await queue.enqueue(
                record.job_id,
                record.owner,
                Tier(record.tier),
                JobOptions(**_option_fields(record.options)).job_type,
                created_at=(record.queued_at or record.created_at).timestamp(),
            )
            recovered += 1
        if recovered:
            logger.info(f"Recovered {recovered} queued job(s) from the repository")
        return recovered

    async def process_entry(self, entry: QueueEntry) -> bool:
        """Process one dequeued entry inside its tier slot."""
        async with self.components.concurrency.slot(entry.tier):
            success = await self.process_job(entry.job_id)
        if success:
            self.jobs_processed += 1
        else:
            self.jobs_failed += 1
        self.last_job_time = datetime.utcnow()
        return success

    async def process_job(self, job_id: str) -> bool:
        """
        Run the full pipeline for one job.

        Returns:
            True when the job completed, False when it failed or was skipped
        """
        state_machine = self.components.state_machine
        try:
            record = await state_machine.get(job_id)
        except JobNotFoundError:
            logger.warning(f"Dequeued unknown job {job_id}")
            return False
        if record.status != JobState.QUEUED:
            logger.info(f"Skipping job {job_id}: status is {record.status.value}")
            return False

        options = JobOptions(**_option_fields(record.options))
        source = SourceDescriptor(
            kind=SourceKind(record.source_kind),
            reference=record.source_ref,
            duration_seconds=record.options.get("source_duration"),
        )
        try:
            await state_machine.transition(job_id, JobState.DOWNLOADING)
        except InvalidTransitionError as e:
            # Claimed by another worker or cancelled after dequeue
            logger.info(f"Skipping job {job_id}: {e}")
            return False

        stage = "downloading"
        charged = float(record.options.get("reserved_minutes") or 0.0)
        cache = self.components.cache
        try:
            cached = None
            if cache is not None:
                cached = await cache.get(cache.key_for(source, options, record.owner))

            if cached is not None:
                charged = await self._charge_minutes(record, options, cached.duration, charged)
                stage = "transcribing"
                await state_machine.transition(job_id, JobState.TRANSCRIBING)
                result = cached
                provider = cached.provider or "cache"
            else:
                acquisition = self.components.acquisition
                asset = await acquisition.resolve_audio(source, job_id)
                if asset.duration_seconds is None:
                    asset.duration_seconds = await acquisition.lookup_duration(asset)
                if asset.duration_seconds is not None:
                    charged = await self._charge_minutes(
                        record, options, _billable_seconds(options, asset.duration_seconds), charged
                    )
                if options.preview_seconds:
                    asset = await acquisition.clip(asset, options.preview_seconds, options.offset_seconds)

                stage = "transcribing"
                await state_machine.transition(job_id, JobState.TRANSCRIBING, audio_url=asset.url)
                outcome = await self.transcriber.run({
                    "job_id": job_id,
                    "asset": asset,
                    "options": options,
                    "tier": record.tier,
                })
                if not outcome.ok:
                    await self._mark_failed(
                        job_id, outcome.error_category or "provider", outcome.error or "transcription failed"
                    )
                    return False

                result = outcome.data["result"]
                provider = outcome.data["provider"]
                if result.duration is None:
                    if asset.duration_seconds is not None:
                        result.duration = _billable_seconds(options, asset.duration_seconds)
                    elif result.segments:
                        result.duration = result.segments[-1].end
                if cache is not None:
                    await cache.put(source, options, record.owner, Tier(record.tier), result)
                # Unknown or underestimated lengths are settled before any output exists
                charged = await self._charge_minutes(record, options, result.duration, charged)

            stage = "refining"
            await state_machine.transition(job_id, JobState.REFINING, provider=provider)
            refined = await self.components.refinement.refine(
                result.text,
                result.segments,
                result.language or options.language,
                anchors=result.words,
                job_id=job_id,
            )
            result.text = refined.text
            result.segments = refined.segments

            outputs = render_outputs(result, options.formats)
            await self.components.repository.save_outputs(job_id, outputs, result.language)
            await state_machine.transition(job_id, JobState.COMPLETED)
        except (PipelineError, ValueError, OSError) as e:
            details = log_pipeline_error(e, job_id, source.kind.value, stage, level=logging.ERROR)
            await self._mark_failed(job_id, details.category.value, details.message)
            return False

        logger.info(f"Job {job_id} completed by {provider} ({len(result.segments)} segments, {charged:.2f} min)")
        return True

    async def _mark_failed(self, job_id: str, category: str, message: str) -> None:
        try:
            await self.components.state_machine.fail(job_id, category, message)
        except (InvalidTransitionError, JobNotFoundError) as e:
            logger.warning(f"Could not mark job {job_id} failed: {e}")

    async def _charge_minutes(
        self, record: JobRecord, options: JobOptions, seconds: Optional[float], charged: float
    ) -> float:
        """
        Bring the job's usage up to ``seconds`` of billable audio.

        Admission reserved ``charged`` minutes. Anything beyond that must fit the
        tier's file length limit and the remaining monthly balance; otherwise
        the job fails and nothing more is recorded.

        Returns:
            Total minutes charged for the job so far

        Raises:
            QuotaExceeded: When the media is longer than the tier allows
        """
        if not seconds:
            return charged
        if options.preview_seconds:
            seconds = min(seconds, options.preview_seconds)
        minutes = seconds / 60.0
        extra = minutes - charged
        if extra <= CHARGE_TOLERANCE_MINUTES:
            return charged

        tracker = self.components.quota_tracker
        tier = Tier(record.tier)
        limit = tracker.quota_for(tier).max_file_minutes
        if minutes > limit + CHARGE_TOLERANCE_MINUTES:
            raise QuotaExceeded("file_too_long", remaining={"max_file_minutes": limit})

        check = await tracker.charge_additional(record.owner, tier, extra, options.accuracy.value)
        if not check.allowed:
            raise QuotaExceeded(check.reason or "monthly_minutes_exceeded", remaining=check.remaining)
        logger.info(f"Charged {extra:.2f} additional minutes to {record.owner} for job {record.job_id}")
        return minutes

    def _spawn(self, entry: QueueEntry) -> None:
        task = asyncio.create_task(self._guarded(entry))
        self._tasks[entry.job_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(entry.job_id, None))

    async def _guarded(self, entry: QueueEntry) -> None:
        try:
            await self.process_entry(entry)
        except Exception as e:
            # Keeps the loop alive on unexpected failures such as a lost database
            details = log_pipeline_error(e, entry.job_id, None, "worker", level=logging.CRITICAL)
            await self._mark_failed(entry.job_id, details.category.value, details.message)

    async def run_once(self) -> bool:
        """Dequeue and fully process one job. Returns False when the queue was empty."""
        entry = await self.components.queue.dequeue()
        if entry is None:
            return False
        await self.process_entry(entry)
        return True

    def stop(self) -> None:
        self.running = False

    async def run_forever(self) -> None:
        """Main loop: dequeue while capacity allows, spawn a task per job."""
        self.running = True
        logger.info(f"Worker {self.worker_id} starting main loop (max in flight {self.max_in_flight})")

        last_heartbeat = time.time()
        last_recovery = 0.0

        while self.running:
            if self.sync_from_repository and time.time() - last_recovery > RECOVERY_INTERVAL:
                await self.recover_pending()
                last_recovery = time.time()

            if len(self._tasks) >= self.max_in_flight:
                await asyncio.wait(list(self._tasks.values()), return_when=asyncio.FIRST_COMPLETED)
                continue

            entry = await self.components.queue.dequeue()
            if entry is not None:
                self._spawn(entry)
                continue

            await self.components.queue.wait_for_entry(self.idle_sleep)

            if time.time() - last_heartbeat > HEARTBEAT_INTERVAL:
                await self.heartbeat()
                last_heartbeat = time.time()

        if self._tasks:
            logger.info(f"Waiting for {len(self._tasks)} in-flight job(s)")
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        logger.info(f"Worker {self.worker_id} shutting down after processing {self.jobs_processed} jobs")

    async def heartbeat(self) -> None:
        removed = await self.components.acquisition.blob_store.cleanup_expired()
        evicted = await self.components.cache.cleanup() if self.components.cache is not None else 0
        logger.debug(f"Heartbeat - processed {self.jobs_processed}, failed {self.jobs_failed}, "
                     f"expired blobs removed {removed}, cache entries evicted {evicted}")

    def get_status(self) -> Dict[str, Any]:
        runtime = datetime.utcnow() - self.start_time
        return {
            'worker_id': self.worker_id,
            'pid': os.getpid(),
            'running': self.running,
            'jobs_processed': self.jobs_processed,
            'jobs_failed': self.jobs_failed,
            'in_flight': len(self._tasks),
            'runtime': str(runtime),
            'last_job_time': str(self.last_job_time) if self.last_job_time else None,
            'start_time': str(self.start_time),
            'stages': [self.transcriber.get_stats()],
            'cache': self.components.cache.get_stats() if self.components.cache is not None else None,
        }


def _option_fields(options: Dict[str, Any]) -> Dict[str, Any]:
    """JobOptions fields from a persisted options dict."""
    return {k: v for k, v in (options or {}).items() if k in JobOptions.model_fields}


def _billable_seconds(options: JobOptions, duration: float) -> float:
    """Audio seconds a job consumes: the preview window when set, else the whole media."""
    if options.preview_seconds:
        return max(0.0, min(duration - options.offset_seconds, float(options.preview_seconds)))
    return duration
