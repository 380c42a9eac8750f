"""
Sentence re-splitting and timestamp realignment.

After refinement the text no longer lines up with provider segments. The refined
text is split into sentences and each sentence is mapped greedily onto the word
anchors whose timings the provider reported, so subtitles stay in sync.
"""

import logging
import re
from collections import Counter
from typing import List, Optional, Sequence

from .error_handling import RealignmentFailure
from .models import Segment

logger = logging.getLogger(__name__)

DEFAULT_OVERSHOOT = 0.92

# Every character belongs to exactly one match so sentences rejoin to the source text
_ZH_SENTENCE = re.compile(r'[^。！？；]*[。！？；]+[”’）】」』]*|[^。！？；]+')
_LATIN_BOUNDARY = re.compile(r'(?<=[.!?])\s+')
_WHITESPACE = re.compile(r'\s+')
# Lengths are compared without whitespace, and without punctuation for Chinese since anchors carry none
_ZH_IGNORED = re.compile(r'[\s，。！？；：、“”‘’（）《》【】「」『』…,.!?;:]+')


def split_into_sentences(text: str, is_zh: bool) -> List[str]:
    """
    Split punctuated text into display sentences.

    Args:
        text: Final refined text
        is_zh: Split on Chinese sentence marks instead of ``.!?`` plus whitespace

    Returns:
        Non-empty sentences with their end punctuation kept
    """
    raw = (text or '').strip()
    if not raw:
        return []
    parts = _ZH_SENTENCE.findall(raw) if is_zh else _LATIN_BOUNDARY.split(raw)
    return [p.strip() for p in parts if p.strip()]


def _clean(text: str, is_zh: bool) -> str:
    if is_zh:
        return _ZH_IGNORED.sub('', text or '')
    return _WHITESPACE.sub('', text or '')


def _majority_speaker(window: Sequence) -> Optional[int]:
    counts = Counter(a.speaker for a in window if getattr(a, 'speaker', None) is not None)
    if not counts:
        return None
    return counts.most_common(1)[0][0]


def _check_anchors(anchors: Sequence) -> None:
    previous_start = float('-inf')
    for index, anchor in enumerate(anchors):
        if anchor.end < anchor.start:
            raise RealignmentFailure(f"anchor {index} ends before it starts")
        if anchor.start < previous_start:
            raise RealignmentFailure(f"anchor {index} is out of order")
        previous_start = anchor.start


def align_sentences_with_anchors(
    text: str,
    anchors: Sequence,
    is_zh: bool,
    overshoot: float = DEFAULT_OVERSHOOT,
) -> List[Segment]:
    """
    Map refined sentences onto timed anchors.

    For each sentence, anchors are consumed until their combined text is as long
    as the sentence, stopping early once ``overshoot`` of the length is covered.
    A sentence spans from its first anchor's start to its last anchor's end and
    takes the majority speaker of that window. Sentences left over when anchors
    run out sit at the final anchor's end.

    Args:
        text: Refined text
        anchors: Word or segment objects with ``text``, ``start``, ``end`` and
            optionally ``speaker``
        is_zh: Whether the text is Chinese
        overshoot: Fraction of a sentence's length that ends anchor consumption

    Returns:
        One segment per sentence, time-ordered and non-overlapping

    Raises:
        RealignmentFailure: No anchors, no sentences, or anchors with invalid timing
    """
    if not anchors:
        raise RealignmentFailure("no anchors to align against")
    sentences = split_into_sentences(text, is_zh)
    if not sentences:
        raise RealignmentFailure("refined text has no sentences")
    _check_anchors(anchors)

    anchor_texts = [_clean(a.text, is_zh) for a in anchors]
    aligned: List[Segment] = []
    previous_end = 0.0
    position = 0
    sentence_index = 0

    while sentence_index < len(sentences) and position < len(anchors):
        target_len = len(_clean(sentences[sentence_index], is_zh))
        if target_len == 0:
            aligned.append(Segment(previous_end, previous_end, sentences[sentence_index]))
            sentence_index += 1
            continue
        first = position
        consumed = 0
        while position < len(anchors) and consumed < target_len:
            consumed += len(anchor_texts[position])
            position += 1
            if consumed >= target_len * overshoot:
                break

        window = anchors[first:position]
        start = max(window[0].start, previous_end)
        end = max(window[-1].end, start)
        aligned.append(Segment(start, end, sentences[sentence_index], _majority_speaker(window)))
        previous_end = end
        sentence_index += 1

    tail_end = max(anchors[-1].end, previous_end)
    for sentence in sentences[sentence_index:]:
        aligned.append(Segment(tail_end, tail_end, sentence))

    if sentence_index < len(sentences):
        logger.debug(f"{len(sentences) - sentence_index} sentence(s) placed at tail {tail_end:.2f}s")
    return aligned
