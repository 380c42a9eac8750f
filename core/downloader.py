"""
Platform source resolution using yt-dlp.

Hosted-platform references (video pages, share links) are resolved to a playable
audio stream. Stream URLs handed out by platforms are short-lived, so the audio
is downloaded to a temporary directory and the caller persists it to blob storage.
"""

import asyncio
import logging
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yt_dlp

logger = logging.getLogger(__name__)


@dataclass
class ResolvedMedia:
    """Audio fetched for a platform reference."""
    reference: str
    media_id: str
    title: Optional[str]
    duration: Optional[float]
    path: Path
    ext: str
    info: Dict[str, Any] = field(default_factory=dict)


class PlatformResolver:
    """Resolve and download platform media with yt-dlp."""

    def __init__(self, audio_format: str = "bestaudio/best", socket_timeout: int = 30):
        self.audio_format = audio_format
        self.socket_timeout = socket_timeout

    def extract_info(self, reference: str) -> Dict[str, Any]:
        """
        Extract media metadata without downloading.

        Args:
            reference: Platform URL

        Returns:
            yt-dlp info dict

        Raises:
            yt_dlp.utils.DownloadError: If the reference cannot be resolved
        """
        ydl_opts = {
            'quiet': True,
            'no_warnings': True,
            'format': self.audio_format,
            'socket_timeout': self.socket_timeout,
        }
        with yt_dlp.YoutubeDL(ydl_opts) as ydl:
            info = ydl.extract_info(reference, download=False)
        if not info:
            raise yt_dlp.utils.DownloadError(f"No media information for {reference}")
        return info

    def _download(self, reference: str, target_dir: Path) -> ResolvedMedia:
        ydl_opts = {
            'format': self.audio_format,
            'outtmpl': str(target_dir / '%(id)s.%(ext)s'),
            'quiet': True,
            'no_warnings': True,
            'noplaylist': True,
            'socket_timeout': self.socket_timeout,
        }
        with yt_dlp.YoutubeDL(ydl_opts) as ydl:
            info = ydl.extract_info(reference, download=True)
            path = Path(ydl.prepare_filename(info))

        if not path.exists():
            raise yt_dlp.utils.DownloadError(f"Downloaded file missing for {reference}")

        return ResolvedMedia(
            reference=reference,
            media_id=str(info.get('id') or path.stem),
            title=info.get('title'),
            duration=info.get('duration'),
            path=path,
            ext=info.get('ext') or path.suffix.lstrip('.'),
            info={k: info.get(k) for k in ('id', 'title', 'duration', 'ext', 'extractor')},
        )

    async def download_audio(self, reference: str, target_dir: Optional[Path] = None) -> ResolvedMedia:
        """
        Download the best audio stream for a reference without blocking the loop.

        Args:
            reference: Platform URL
            target_dir: Directory for the file; a temporary one is created if omitted
                and removed again when the download fails

        Returns:
            ResolvedMedia pointing at the downloaded file
        """
        created = target_dir is None
        if created:
            target_dir = Path(tempfile.mkdtemp(prefix="platform_audio_"))
        target_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"Resolving platform reference {reference}")
        try:
            media = await asyncio.to_thread(self._download, reference, target_dir)
        except BaseException:
            if created:
                shutil.rmtree(target_dir, ignore_errors=True)
            raise
        logger.info(f"Downloaded {media.media_id} ({media.duration}s) to {media.path}")
        return media
