"""
Audio acquisition and clipping.

Turns any source descriptor into a fetchable AudioAsset and optionally truncates
it to a bounded preview. Clipping falls back in a fixed order, each stage tried
once: local ffmpeg, the remote clipping worker, then pass-through of the
unclipped asset when that is explicitly allowed.
"""

import asyncio
import logging
import re
import shutil
from typing import List, Optional

import httpx
import yt_dlp

from .downloader import PlatformResolver
from .error_handling import AcquisitionFailed
from .models import AudioAsset, Segment, SourceDescriptor, SourceKind, TranscriptionResult
from .providers import clean_cjk_spacing
from .storage import BlobStore

logger = logging.getLogger(__name__)

CLIP_SAMPLE_RATE = 16000
CLIP_CHANNELS = 1
CLIPPED_FOLDER = "clipped-audio"
SOURCE_FOLDER = "source-audio"
MIN_CLIP_SECONDS = 1
MAX_CLIP_SECONDS = 3600
ACCEPTED_CONTENT_PREFIXES = ("audio/", "video/", "application/octet-stream", "binary/octet-stream")
DURATION_PATTERN = re.compile(r"Duration:\s*(\d+):(\d{2}):(\d{2}(?:\.\d+)?)")


def build_ffmpeg_args(binary: str, source_url: str, seconds: int, offset_seconds: float = 0.0) -> List[str]:
    """ffmpeg command producing 16 kHz mono PCM WAV on stdout."""
    args = [binary, "-hide_banner", "-loglevel", "error"]
    if offset_seconds > 0:
        args += ["-ss", f"{offset_seconds:g}"]
    args += [
        "-t", str(seconds),
        "-i", source_url,
        "-ar", str(CLIP_SAMPLE_RATE),
        "-ac", str(CLIP_CHANNELS),
        "-f", "wav",
        "-acodec", "pcm_s16le",
        "pipe:1",
    ]
    return args


def trim_segments_to_seconds(segments: List[Segment], seconds: float, start: float = 0.0) -> List[Segment]:
    """
    Cut a transcript to ``seconds`` of audio beginning at ``start``.

    Segments outside the window are dropped and the ones straddling either
    edge are shortened.
    """
    end = start + seconds
    trimmed = []
    for seg in segments:
        if start > 0 and seg.end <= start:
            continue
        if seg.start >= end:
            break
        if seg.start < start or seg.end > end:
            seg = Segment(max(seg.start, start), min(seg.end, float(end)), seg.text, seg.speaker, seg.confidence)
        trimmed.append(seg)
    return trimmed


def trim_result_to_window(result: TranscriptionResult, seconds: float, start: float = 0.0) -> TranscriptionResult:
    """
    Restrict a whole transcription result to a preview window.

    Segments, words and the flat text all end at ``start + seconds``; the
    duration becomes the covered length.
    """
    end = start + seconds
    segments = trim_segments_to_seconds(result.segments, seconds, start)
    words = [w for w in result.words if start <= w.start < end]
    if segments:
        text = clean_cjk_spacing(" ".join(seg.text.strip() for seg in segments if seg.text.strip()))
    elif words:
        text = clean_cjk_spacing(" ".join(w.text for w in words))
    else:
        text = result.text
    duration = float(seconds)
    if result.duration is not None:
        duration = min(duration, max(0.0, result.duration - start))
    return TranscriptionResult(
        text=text,
        segments=segments,
        words=words,
        language=result.language,
        duration=duration,
        provider=result.provider,
    )


def parse_ffmpeg_duration(output: str) -> Optional[float]:
    """Seconds from the ``Duration: HH:MM:SS.cc`` banner ffmpeg prints for an input."""
    match = DURATION_PATTERN.search(output)
    if not match:
        return None
    hours, minutes, seconds = match.groups()
    return int(hours) * 3600 + int(minutes) * 60 + float(seconds)


class AudioAcquisitionPipeline:
    """Resolves sources to audio assets and clips them with ordered fallback."""

    def __init__(
        self,
        blob_store: BlobStore,
        resolver: Optional[PlatformResolver] = None,
        ffmpeg_enabled: bool = True,
        ffmpeg_binary: str = "ffmpeg",
        ffmpeg_timeout: float = 120.0,
        clip_worker_url: Optional[str] = None,
        clip_worker_timeout: float = 120.0,
        allow_passthrough: bool = False,
        blob_prefix: str = "media",
        blob_ttl_seconds: int = 24 * 3600,
        range_check_timeout: float = 15.0,
        duration_lookup_timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.blob_store = blob_store
        self.resolver = resolver or PlatformResolver()
        self.ffmpeg_enabled = ffmpeg_enabled
        self.ffmpeg_binary = ffmpeg_binary
        self.ffmpeg_timeout = ffmpeg_timeout
        self.clip_worker_url = clip_worker_url
        self.clip_worker_timeout = clip_worker_timeout
        self.allow_passthrough = allow_passthrough
        self.blob_prefix = blob_prefix
        self.blob_ttl_seconds = blob_ttl_seconds
        self.range_check_timeout = range_check_timeout
        self.duration_lookup_timeout = duration_lookup_timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings, blob_store: BlobStore, **overrides) -> "AudioAcquisitionPipeline":
        kwargs = dict(
            ffmpeg_enabled=settings.ffmpeg_enabled,
            ffmpeg_binary=settings.ffmpeg_binary,
            ffmpeg_timeout=settings.ffmpeg_timeout,
            clip_worker_url=settings.clip_worker_url,
            clip_worker_timeout=settings.clip_worker_timeout,
            allow_passthrough=settings.allow_passthrough,
            blob_prefix=settings.blob_prefix,
            blob_ttl_seconds=settings.blob_ttl_hours * 3600,
            range_check_timeout=settings.range_check_timeout,
            duration_lookup_timeout=settings.duration_lookup_timeout,
        )
        kwargs.update(overrides)
        return cls(blob_store, **kwargs)

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport, follow_redirects=True)

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def resolve_audio(self, source: SourceDescriptor, job_id: Optional[str] = None) -> AudioAsset:
        """
        Resolve a source descriptor to a fetchable audio asset.

        Args:
            source: Source kind and reference
            job_id: Owning job

        Returns:
            AudioAsset for the source

        Raises:
            AcquisitionFailed: If the source cannot be resolved
        """
        if source.kind == SourceKind.STORED:
            return AudioAsset(
                url=source.reference,
                source_kind=source.kind,
                job_id=job_id,
                duration_seconds=source.duration_seconds,
            )
        if source.kind == SourceKind.REMOTE_URL:
            return await self._resolve_remote(source, job_id)
        if source.kind == SourceKind.PLATFORM:
            return await self._resolve_platform(source, job_id)
        raise AcquisitionFailed(f"Unsupported source kind: {source.kind}", source_ref=source.reference)

    async def _resolve_remote(self, source: SourceDescriptor, job_id: Optional[str]) -> AudioAsset:
        try:
            async with self._client(self.range_check_timeout) as client:
                async with client.stream("GET", source.reference, headers={"Range": "bytes=0-0"}) as response:
                    response.raise_for_status()
                    content_type = response.headers.get("content-type", "").split(";")[0].strip().lower()
        except httpx.HTTPError as e:
            logger.warning(f"Range check failed for {source.reference}: {e}")
            raise AcquisitionFailed(f"Remote source unreachable: {e}", source_ref=source.reference) from e

        if content_type and not content_type.startswith(ACCEPTED_CONTENT_PREFIXES):
            raise AcquisitionFailed(
                f"Remote source is not media (content-type {content_type})", source_ref=source.reference
            )

        return AudioAsset(
            url=source.reference,
            source_kind=source.kind,
            job_id=job_id,
            duration_seconds=source.duration_seconds,
            content_type=content_type or None,
        )

    async def _resolve_platform(self, source: SourceDescriptor, job_id: Optional[str]) -> AudioAsset:
        try:
            media = await self.resolver.download_audio(source.reference)
        except yt_dlp.utils.DownloadError as e:
            logger.warning(f"Platform resolution failed for {source.reference}: {e}")
            raise AcquisitionFailed(f"Platform source unresolvable: {e}", source_ref=source.reference) from e

        key = f"{SOURCE_FOLDER}/{self.blob_prefix}_{job_id or media.media_id}.{media.ext}"
        try:
            blob = await self.blob_store.put_file(
                key, media.path, f"audio/{media.ext}", ttl_seconds=self.blob_ttl_seconds
            )
        finally:
            shutil.rmtree(media.path.parent, ignore_errors=True)

        return AudioAsset(
            url=blob.url,
            source_kind=source.kind,
            job_id=job_id,
            duration_seconds=media.duration,
            expires_at=blob.expires_at,
            content_type=blob.content_type,
            blob_key=blob.key,
        )

    # ------------------------------------------------------------------
    # Duration lookup
    # ------------------------------------------------------------------

    async def lookup_duration(self, asset: AudioAsset) -> Optional[float]:
        """
        Read the media length of an asset from the ffmpeg input banner.

        Only the container header is read; nothing is decoded. Returns None
        when ffmpeg is disabled, fails, or prints no duration.
        """
        if asset.duration_seconds is not None:
            return asset.duration_seconds
        if not self.ffmpeg_enabled:
            return None
        try:
            process = await asyncio.create_subprocess_exec(
                self.ffmpeg_binary, "-hide_banner", "-i", asset.url,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.warning(f"Duration lookup could not start ffmpeg for job {asset.job_id}: {e}")
            return None
        try:
            _, stderr = await asyncio.wait_for(process.communicate(), timeout=self.duration_lookup_timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            logger.warning(f"Duration lookup timed out for job {asset.job_id} ({asset.url})")
            return None
        # ffmpeg exits non-zero without an output file; the banner is still printed
        duration = parse_ffmpeg_duration(stderr.decode("utf-8", errors="replace"))
        if duration is None:
            logger.warning(f"No duration reported for job {asset.job_id} ({asset.url})")
        else:
            logger.debug(f"Job {asset.job_id} media is {duration:.1f}s")
        return duration

    # ------------------------------------------------------------------
    # Clipping
    # ------------------------------------------------------------------

    async def clip(self, asset: AudioAsset, max_seconds: int, offset_seconds: float = 0.0) -> AudioAsset:
        """
        Truncate an asset to ``max_seconds`` starting at ``offset_seconds``.

        Args:
            asset: Resolved audio asset
            max_seconds: Maximum clip length
            offset_seconds: Start offset into the source

        Returns:
            A new clipped asset, or the original when pass-through is allowed and
            every clipping stage failed

        Raises:
            AcquisitionFailed: If every allowed stage failed
        """
        seconds = max(MIN_CLIP_SECONDS, min(int(max_seconds), MAX_CLIP_SECONDS))
        offset_seconds = max(0.0, offset_seconds)

        if (
            asset.duration_seconds is not None
            and offset_seconds == 0
            and asset.duration_seconds <= seconds
        ):
            logger.debug(f"Asset for job {asset.job_id} already within {seconds}s, not clipping")
            return asset

        attempts: List[str] = []
        data: Optional[bytes] = None

        if self.ffmpeg_enabled:
            try:
                data = await self._clip_local(asset.url, seconds, offset_seconds)
            except (OSError, RuntimeError, asyncio.TimeoutError) as e:
                attempts.append(f"local: {e}")
                self._log_stage_failure("local", asset, seconds, offset_seconds, e)
        else:
            attempts.append("local: disabled")

        if data is None and self.clip_worker_url:
            try:
                data = await self._clip_remote(asset.url, seconds, offset_seconds)
            except (httpx.HTTPError, RuntimeError) as e:
                attempts.append(f"remote: {e}")
                self._log_stage_failure("remote", asset, seconds, offset_seconds, e)
        elif data is None:
            attempts.append("remote: not configured")

        if data is None:
            if self.allow_passthrough:
                logger.warning(
                    f"All clipping stages failed for job {asset.job_id}, passing through unclipped "
                    f"{asset.url} (requested {seconds}s at offset {offset_seconds}s)"
                )
                return asset
            raise AcquisitionFailed(
                f"Clipping failed for {asset.url} ({seconds}s at {offset_seconds}s)",
                source_ref=asset.url,
                attempts=attempts,
            )

        key = f"{CLIPPED_FOLDER}/{self.blob_prefix}_preview_{asset.job_id or 'adhoc'}_{seconds}s.wav"
        blob = await self.blob_store.put_bytes(key, data, "audio/wav", ttl_seconds=self.blob_ttl_seconds)

        # A job keeps a single live asset
        if asset.blob_key:
            await self.blob_store.delete(asset.blob_key)

        return AudioAsset(
            url=blob.url,
            source_kind=asset.source_kind,
            job_id=asset.job_id,
            clipped=True,
            duration_seconds=float(seconds) if asset.duration_seconds is None
            else min(float(seconds), max(0.0, asset.duration_seconds - offset_seconds)),
            offset_seconds=offset_seconds,
            expires_at=blob.expires_at,
            content_type="audio/wav",
            blob_key=blob.key,
        )

    async def _clip_local(self, source_url: str, seconds: int, offset_seconds: float) -> bytes:
        args = build_ffmpeg_args(self.ffmpeg_binary, source_url, seconds, offset_seconds)
        process = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.ffmpeg_timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise
        if process.returncode != 0:
            message = stderr.decode("utf-8", errors="replace").strip()[:500]
            raise RuntimeError(f"ffmpeg exited with {process.returncode}: {message}")
        if not stdout:
            raise RuntimeError("ffmpeg produced no output")
        return stdout

    async def _clip_remote(self, source_url: str, seconds: int, offset_seconds: float) -> bytes:
        payload = {
            "sourceUrl": source_url,
            "targetSeconds": seconds,
            "offsetSeconds": offset_seconds,
        }
        async with self._client(self.clip_worker_timeout) as client:
            response = await client.post(self.clip_worker_url, json=payload)
            response.raise_for_status()
            data = response.content
        if not data:
            raise RuntimeError("Remote clipping worker returned an empty body")
        return data

    @staticmethod
    def _log_stage_failure(
        stage: str, asset: AudioAsset, seconds: int, offset_seconds: float, error: Exception
    ) -> None:
        logger.warning(
            f"Clip stage '{stage}' failed | Context: job_id={asset.job_id}, source={asset.url}, "
            f"source_kind={asset.source_kind.value}, seconds={seconds}, offset={offset_seconds}, error={error}"
        )
