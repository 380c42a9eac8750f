"""
Rendering of transcription results into the supported output formats.

Formats: plain text, SRT, WebVTT, JSON and Markdown. Renderers are pure
functions of a TranscriptionResult; persistence is handled by the job
repository.
"""

import json
import logging
import re
from typing import Callable, Dict, Iterable, Optional

from .models import OUTPUT_FORMATS, TranscriptionResult

logger = logging.getLogger(__name__)

_CJK = re.compile(r'[\u4e00-\u9fff]')
_ZH_LINE_BREAK = re.compile(r'([。！？；][”’）】]?)')
_EXTRA_BLANK_LINES = re.compile(r'\n{3,}')


def _split_seconds(seconds: float):
    ms = int(round(max(0.0, seconds or 0.0) * 1000))
    hours = ms // 3600000
    minutes = (ms % 3600000) // 60000
    secs = (ms % 60000) // 1000
    return hours, minutes, secs, ms % 1000


def format_srt_time(seconds: float) -> str:
    """Seconds to ``HH:MM:SS,mmm``."""
    hours, minutes, secs, millis = _split_seconds(seconds)
    return f"{hours:02d}:{minutes:02d}:{secs:02d},{millis:03d}"


def format_vtt_time(seconds: float) -> str:
    """Seconds to ``HH:MM:SS.mmm``."""
    return format_srt_time(seconds).replace(',', '.')


def format_timestamp(seconds: float) -> str:
    """Seconds to ``MM:SS``, or ``HH:MM:SS`` past the hour."""
    hours, minutes, secs, _ = _split_seconds(seconds)
    if hours:
        return f"{hours:02d}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


def _is_chinese_output(result: TranscriptionResult) -> bool:
    return 'zh' in (result.language or '').lower() or bool(_CJK.search(result.text or ''))


def to_txt(result: TranscriptionResult) -> str:
    """Plain text; Chinese output gets one sentence per line."""
    text = (result.text or '').strip()
    if _is_chinese_output(result):
        text = _ZH_LINE_BREAK.sub('\\1\n', text)
        text = _EXTRA_BLANK_LINES.sub('\n\n', text).strip()
    return text


def to_srt(result: TranscriptionResult) -> str:
    blocks = []
    for index, seg in enumerate(result.segments, start=1):
        blocks.append(
            f"{index}\n{format_srt_time(seg.start)} --> {format_srt_time(seg.end)}\n{seg.text.strip()}\n"
        )
    return '\n'.join(blocks)


def to_vtt(result: TranscriptionResult) -> str:
    lines = ['WEBVTT', '']
    for seg in result.segments:
        lines.append(f"{format_vtt_time(seg.start)} --> {format_vtt_time(seg.end)}")
        lines.append(seg.text.strip())
        lines.append('')
    return '\n'.join(lines)


def to_json(result: TranscriptionResult) -> str:
    return json.dumps(result.to_dict(), ensure_ascii=False, indent=2)


def to_markdown(result: TranscriptionResult, title: Optional[str] = None) -> str:
    """
    Markdown document with a header block and timestamped paragraphs.

    Args:
        result: Transcription to render
        title: Optional document title

    Returns:
        Markdown text
    """
    parts = []
    if title:
        parts.append(f"# {title}\n")
    parts.append("## Transcription\n")
    parts.append(f"**Language:** {result.language or 'unknown'}")
    if result.duration is not None:
        parts.append(f"**Duration:** {round(result.duration)}s")
    parts.append("\n### Content\n")
    if result.segments:
        for seg in result.segments:
            parts.append(f"**[{format_timestamp(seg.start)}]** {seg.text.strip()}\n")
    else:
        parts.append((result.text or '').strip())
    return '\n'.join(parts).rstrip() + '\n'


RENDERERS: Dict[str, Callable[[TranscriptionResult], str]] = {
    "txt": to_txt,
    "srt": to_srt,
    "vtt": to_vtt,
    "json": to_json,
    "md": to_markdown,
}


def render_outputs(result: TranscriptionResult, formats: Iterable[str]) -> Dict[str, str]:
    """
    Render a result in each requested format.

    Raises:
        ValueError: For a format outside OUTPUT_FORMATS
    """
    outputs: Dict[str, str] = {}
    for fmt in formats:
        if fmt not in OUTPUT_FORMATS:
            raise ValueError(f"Unsupported format: {fmt}. Must be one of: {list(OUTPUT_FORMATS)}")
        outputs[fmt] = RENDERERS[fmt](result)
    logger.debug(f"Rendered formats: {', '.join(outputs)}")
    return outputs
