"""
Provider dispatch with fallback.

Providers are tried once each, either in order or fanned out concurrently. The
outcome is a tagged result: DispatchSuccess carries the winning provider id,
AllProvidersFailed carries every branch failure.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple, Union

from .error_handling import ProviderFailure, ProviderTimeout
from .models import AudioAsset, Tier, TranscriptionResult
from .providers import ProviderOptions, TranscriptionProvider, is_chinese_language

logger = logging.getLogger(__name__)

SLO_TIMEOUTS: Dict[Tier, float] = {
    Tier.PREMIUM: 30.0,
    Tier.PRO: 30.0,
    Tier.BASIC: 60.0,
    Tier.FREE: 45.0,
}
PREVIEW_SLO_TIMEOUT = 15.0
# Ceiling for the last fallback and for fan-out branches, which have no SLO
DEFAULT_FALLBACK_TIMEOUT = 600.0

# Whisper handles Mandarin better; Deepgram is faster elsewhere
CHINESE_PROVIDER_ORDER = ("whisper", "deepgram")
DEFAULT_PROVIDER_ORDER = ("deepgram", "whisper")


@dataclass(frozen=True)
class DispatchSuccess:
    provider_id: str
    result: TranscriptionResult
    errors: Tuple[ProviderFailure, ...] = ()


@dataclass(frozen=True)
class AllProvidersFailed:
    errors: Tuple[ProviderFailure, ...]

    @property
    def message(self) -> str:
        return "; ".join(str(e) for e in self.errors) or "no providers configured"


DispatchOutcome = Union[DispatchSuccess, AllProvidersFailed]


class ProviderDispatcher:
    """
    Sends an audio asset to transcription providers.

    Modes:
    - sequential: ordered fallback; every provider but the last runs under the
      tier SLO timeout, the last under the fallback ceiling
    - fan_out: all providers run concurrently under the fallback ceiling; the
      first well-formed result wins and the remaining branches are cancelled
      and awaited
    """

    def __init__(
        self,
        providers: List[TranscriptionProvider],
        mode: str = "sequential",
        slo_timeouts: Optional[Dict[Tier, float]] = None,
        fallback_timeout: Optional[float] = DEFAULT_FALLBACK_TIMEOUT,
    ):
        if mode not in ("sequential", "fan_out"):
            raise ValueError(f"Unknown dispatch mode: {mode}")
        self.providers = list(providers)
        self.mode = mode
        self.slo_timeouts = slo_timeouts or SLO_TIMEOUTS
        self.fallback_timeout = fallback_timeout

    def order_providers(self, language: Optional[str]) -> List[TranscriptionProvider]:
        """Configured providers ordered for the language hint."""
        preferred = CHINESE_PROVIDER_ORDER if is_chinese_language(language) else DEFAULT_PROVIDER_ORDER
        rank = {pid: i for i, pid in enumerate(preferred)}
        configured = [p for p in self.providers if p.is_configured]
        return sorted(configured, key=lambda p: rank.get(p.provider_id, len(rank)))

    def timeout_for(self, tier: Tier, is_preview: bool = False) -> float:
        timeout = self.slo_timeouts.get(tier, SLO_TIMEOUTS[Tier.FREE])
        if is_preview:
            timeout = min(timeout, PREVIEW_SLO_TIMEOUT)
        return timeout

    async def _run_branch(
        self,
        provider: TranscriptionProvider,
        asset: AudioAsset,
        options: ProviderOptions,
        timeout: Optional[float],
    ) -> TranscriptionResult:
        try:
            if timeout is not None:
                result = await asyncio.wait_for(provider.transcribe(asset, options), timeout)
            else:
                result = await provider.transcribe(asset, options)
        except asyncio.TimeoutError as e:
            raise ProviderTimeout(provider.provider_id, f"exceeded {timeout:.0f}s budget") from e
        except ProviderFailure:
            raise
        except Exception as e:
            raise ProviderFailure(provider.provider_id, f"unexpected error: {e}") from e
        if not result.is_well_formed():
            raise ProviderFailure(provider.provider_id, "malformed result")
        result.provider = provider.provider_id
        return result

    async def dispatch(self, asset: AudioAsset, options: ProviderOptions, tier: Tier = Tier.FREE) -> DispatchOutcome:
        """
        Transcribe an asset using the configured providers.

        Args:
            asset: Audio to transcribe
            options: Provider options (language hint, diarization, preview)
            tier: Submitter tier, selects the SLO timeout

        Returns:
            DispatchSuccess or AllProvidersFailed
        """
        providers = self.order_providers(options.language)
        if not providers:
            logger.error(f"No transcription providers configured for job {asset.job_id}")
            return AllProvidersFailed(errors=())
        if self.mode == "fan_out":
            return await self._dispatch_fan_out(providers, asset, options)
        return await self._dispatch_sequential(providers, asset, options, self.timeout_for(tier, options.is_preview))

    async def _dispatch_sequential(
        self,
        providers: List[TranscriptionProvider],
        asset: AudioAsset,
        options: ProviderOptions,
        slo_timeout: float,
    ) -> DispatchOutcome:
        errors: List[ProviderFailure] = []
        for index, provider in enumerate(providers):
            is_last = index == len(providers) - 1
            try:
                result = await self._run_branch(provider, asset, options, self.fallback_timeout if is_last else slo_timeout)
            except ProviderFailure as e:
                errors.append(e)
                logger.warning(f"Provider {provider.provider_id} failed for job {asset.job_id}: {e}")
                continue
            logger.info(f"Job {asset.job_id} transcribed by {provider.provider_id}")
            return DispatchSuccess(provider.provider_id, result, tuple(errors))
        return AllProvidersFailed(tuple(errors))

    async def _dispatch_fan_out(
        self,
        providers: List[TranscriptionProvider],
        asset: AudioAsset,
        options: ProviderOptions,
    ) -> DispatchOutcome:
        tasks = {
            asyncio.create_task(self._run_branch(p, asset, options, self.fallback_timeout)): p
            for p in providers
        }
        errors: List[ProviderFailure] = []
        pending = set(tasks)
        try:
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                winner = None
                # Every finished branch is inspected so no exception goes unretrieved
                for task in sorted(done, key=lambda t: providers.index(tasks[t])):
                    provider = tasks[task]
                    error = task.exception()
                    if error is None:
                        if winner is None:
                            winner = task
                        continue
                    errors.append(error)
                    logger.warning(f"Provider {provider.provider_id} failed for job {asset.job_id}: {error}")
                if winner is not None:
                    provider = tasks[winner]
                    logger.info(f"Job {asset.job_id} transcribed by {provider.provider_id} (fan-out)")
                    return DispatchSuccess(provider.provider_id, winner.result(), tuple(errors))
        finally:
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        return AllProvidersFailed(tuple(errors))
