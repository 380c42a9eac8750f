"""
Deterministic punctuation normalization for Chinese transcripts.

Covers the logographic-dominance check that gates all Chinese refinement, per-segment
punctuation normalization, and the heuristic that adds terminal punctuation to
segments from their duration and the pause that follows them.
"""

import logging
import re
from dataclasses import replace
from typing import List, Optional

from .models import Segment

logger = logging.getLogger(__name__)

CJK_CHAR = re.compile(r'[\u4e00-\u9fff]')
LATIN_CHAR = re.compile(r'[A-Za-z]')

MIN_CJK_RATIO = 0.05
MIN_CJK_COUNT = 30
CJK_DOMINANCE = 1.2

# Segment terminal punctuation thresholds (seconds)
PERIOD_MIN_DURATION = 3.2
PERIOD_MIN_GAP = 1.0
COMMA_MIN_DURATION = 1.6
COMMA_MIN_GAP = 0.6

QUESTION_PARTICLES = ('吗', '呢', '吧')
CONNECTORS = (
    '因为', '由于', '如果', '虽然', '但是', '然而', '不过', '而且', '另外',
    '其次', '最后', '所以', '因此', '那么', '然后', '此外', '比如', '例如',
)

_WHITESPACE_CONTROL = re.compile(r'[\t\r\f]+')
_MULTI_SPACE = re.compile(r' {2,}')
_SPACED_DIGITS = re.compile(r'(\d)\s+(?=\d)')
_CJK_SPACE_CJK = re.compile(r'([\u4e00-\u9fff])\s+(?=[\u4e00-\u9fff])')
_CJK_THEN_LATIN = re.compile(r'([\u4e00-\u9fff])([A-Za-z0-9])')
_LATIN_THEN_CJK = re.compile(r'([A-Za-z0-9])([\u4e00-\u9fff])')
_ASCII_TO_NATIVE = [
    (re.compile(r'([\u4e00-\u9fff])\s*,\s*'), '\\1，'),
    (re.compile(r'([\u4e00-\u9fff])\s*\.\s*'), '\\1。'),
    (re.compile(r'([\u4e00-\u9fff])\s*;\s*'), '\\1；'),
    (re.compile(r'([\u4e00-\u9fff])\s*:\s*'), '\\1：'),
    (re.compile(r'([\u4e00-\u9fff])\s*!\s*'), '\\1！'),
    (re.compile(r'([\u4e00-\u9fff])\s*\?\s*'), '\\1？'),
]
_DOUBLE_QUOTES = re.compile(r'"([^"]+)"')
_SINGLE_QUOTES = re.compile(r"'([^']+)'")
_REPEATED = re.compile(r'([，。！？])\1+')
_SPACE_AROUND_PUNCT = re.compile(r'\s*([，。！？；：、“”‘’（）])\s*')
_CONNECTOR_BREAK = re.compile(r'([\u4e00-\u9fff])\s*(' + '|'.join(CONNECTORS) + ')')
_PARTICLE_BREAK = re.compile(r'([吗呢])(?=[\u4e00-\u9fff])')
_SENTENCE_PUNCT = re.compile(r'[。！？]')
_ENDS_WITH_PUNCT = re.compile(r'(?:[。！？…，；：.!?]|[”’）】」』])$')


def count_scripts(text: str):
    """Return (cjk, latin) character counts."""
    return len(CJK_CHAR.findall(text or "")), len(LATIN_CHAR.findall(text or ""))


def is_chinese(language: Optional[str], text: Optional[str]) -> bool:
    """
    Strict logographic-dominance check.

    Requires the language tag to contain 'zh', CJK characters to be significant
    (at least 5% of letters or at least 30 characters) and CJK to outnumber
    Latin letters by more than 20%.
    """
    if not language or 'zh' not in language.lower() or not text:
        return False
    cjk, latin = count_scripts(text)
    letters = cjk + latin
    ratio_ok = (cjk / letters) >= MIN_CJK_RATIO if letters else False
    return (ratio_ok or cjk >= MIN_CJK_COUNT) and cjk > latin * CJK_DOMINANCE


def local_chinese_punctuate(text: str) -> str:
    """Normalize spacing and punctuation in Chinese text without changing wording."""
    if not text:
        return text
    t = _WHITESPACE_CONTROL.sub(' ', text).replace('\u00a0', ' ')
    t = _MULTI_SPACE.sub(' ', t)
    t = _SPACED_DIGITS.sub(r'\1', t)
    t = _CJK_SPACE_CJK.sub(r'\1', t)
    t = _CJK_THEN_LATIN.sub(r'\1 \2', t)
    t = _LATIN_THEN_CJK.sub(r'\1 \2', t)
    for pattern, repl in _ASCII_TO_NATIVE:
        t = pattern.sub(repl, t)
    t = _DOUBLE_QUOTES.sub('“\\1”', t)
    t = _SINGLE_QUOTES.sub('‘\\1’', t)
    t = t.replace('(', '（').replace(')', '）')
    t = _REPEATED.sub(r'\1', t)
    t = _SPACE_AROUND_PUNCT.sub(r'\1', t)
    return t.strip()


def heuristic_punctuate_chinese(text: str) -> str:
    """Add commas before discourse connectors and question marks after mid-text particles."""
    if not text:
        return text
    t = _CONNECTOR_BREAK.sub(r'\1，\2', text)
    t = _PARTICLE_BREAK.sub(r'\1？', t)
    return local_chinese_punctuate(t)


def terminal_mark(text: str, duration: float, gap: Optional[float]) -> str:
    """
    Choose the punctuation to append to a segment lacking one.

    Args:
        text: Segment text
        duration: Segment length in seconds
        gap: Silence before the next segment, None for the last segment

    Returns:
        '？', '。', '，' or '' when no mark applies
    """
    if text.endswith(QUESTION_PARTICLES):
        return '？'
    if gap is None:
        return '。'
    if duration >= PERIOD_MIN_DURATION or gap >= PERIOD_MIN_GAP:
        return '。'
    if duration >= COMMA_MIN_DURATION or gap >= COMMA_MIN_GAP:
        return '，'
    return ''


def normalize_segments_punctuation(segments: List[Segment]) -> List[Segment]:
    """Apply local_chinese_punctuate to every segment; timings are untouched."""
    return [replace(seg, text=local_chinese_punctuate(seg.text.strip())) for seg in segments]


def add_terminal_punctuation(segments: List[Segment]) -> List[Segment]:
    """
    Insert heuristic punctuation into segments that lack sentence punctuation.

    Returns:
        New segment list; segment timings are untouched
    """
    result: List[Segment] = []
    for index, seg in enumerate(segments):
        text = seg.text
        if CJK_CHAR.search(text) and not _SENTENCE_PUNCT.search(text):
            text = heuristic_punctuate_chinese(text)
        if text and CJK_CHAR.search(text) and not _ENDS_WITH_PUNCT.search(text):
            following = segments[index + 1] if index + 1 < len(segments) else None
            gap = (following.start - seg.end) if following is not None else None
            text += terminal_mark(text, seg.end - seg.start, gap)
        result.append(replace(seg, text=text))
    return result


def rebuild_text(segments: List[Segment]) -> str:
    """Full text from segment texts, joined without separators."""
    return ''.join(seg.text.strip() for seg in segments)
