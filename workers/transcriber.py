"""
TranscribeWorker - sends a job's audio to the transcription providers.

Runs provider dispatch for one audio asset and normalizes the winning result.
Provider fallback happens inside the dispatcher; when every provider fails the
worker reports a provider failure for the job.
"""

import re
from typing import Any, Dict, Optional

from core.audio_pipeline import trim_result_to_window
from core.dispatcher import AllProvidersFailed, ProviderDispatcher
from core.error_handling import ProviderFailure
from core.models import AudioAsset, JobOptions, Tier
from core.providers import ProviderOptions
from workers.base import BaseWorker

JOB_ID_PATTERN = re.compile(r'^[0-9a-f]{32}$')


class TranscribeWorker(BaseWorker):
    """
    Worker that turns an audio asset into a TranscriptionResult.

    Input:
        job_id: 32-character hex job id
        asset: AudioAsset to transcribe
        options: JobOptions of the job
        tier: Tier of the submitter
    """

    def __init__(self, dispatcher: ProviderDispatcher, log_level: str = "INFO"):
        super().__init__("transcriber", "transcribing", log_level=log_level)
        self.dispatcher = dispatcher

    def validate_input(self, input_data: Dict[str, Any]) -> bool:
        required = ['job_id', 'asset', 'options']

        if not all(field in input_data for field in required):
            self.log_with_context(
                f"Missing required fields. Required: {required}",
                level="ERROR",
                extra_context={"input_fields": list(input_data.keys())}
            )
            return False

        if not JOB_ID_PATTERN.match(str(input_data['job_id'])):
            self.log_with_context(f"Invalid job id: {input_data['job_id']}", level="ERROR")
            return False

        if not isinstance(input_data['asset'], AudioAsset) or not input_data['asset'].url:
            self.log_with_context("Asset has no URL", level="ERROR")
            return False

        return True

    async def execute(self, input_data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Dispatch the asset and return the winning provider and result.

        Returns:
            Dict with ``provider``, ``result`` and ``failed_providers``

        Raises:
            ProviderFailure: When every provider failed
        """
        asset: AudioAsset = input_data['asset']
        options: JobOptions = input_data['options']
        tier = Tier(input_data.get('tier', Tier.FREE))

        provider_options = ProviderOptions(
            language=options.language,
            diarize=options.diarize,
            high_accuracy=options.accuracy.value == "high",
            is_preview=options.preview_seconds is not None,
        )
        outcome = await self.dispatcher.dispatch(asset, provider_options, tier)

        if isinstance(outcome, AllProvidersFailed):
            raise ProviderFailure("all", outcome.message)

        result = outcome.result
        if options.preview_seconds:
            # Unclipped pass-through audio still carries the full source timeline
            start = 0.0 if asset.clipped else options.offset_seconds
            result = trim_result_to_window(result, options.preview_seconds, start)

        self.log_with_context(
            "Transcription finished",
            extra_context={
                "job_id": input_data['job_id'],
                "provider": outcome.provider_id,
                "segments": len(result.segments),
                "language": result.language,
            }
        )
        return {
            "provider": outcome.provider_id,
            "result": result,
            "failed_providers": [e.provider_id for e in outcome.errors],
        }

    def source_kind(self, input_data: Dict[str, Any]) -> Optional[str]:
        asset = input_data.get('asset')
        kind = getattr(asset, 'source_kind', None)
        return getattr(kind, 'value', kind)
