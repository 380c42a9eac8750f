"""
Clean-up of Latin-script noise in Chinese speech transcripts.

Recognizers often garble English terms spoken inside Mandarin: digits replace
letters and proper nouns come out fused or misspelled. Only ASCII tokens are
touched; CJK text and timestamps are left alone.
"""

import logging
import re
from dataclasses import replace
from typing import List, Tuple

from .models import Segment

logger = logging.getLogger(__name__)

_ZERO_IN_WORD = re.compile(r'(?<=[A-Za-z])0(?=[A-Za-z])')

# re.ASCII keeps \b meaningful next to CJK characters
_FLAGS = re.IGNORECASE | re.ASCII

LEXICON: List[Tuple[re.Pattern, str]] = [
    (re.compile(r'\bY[0O]?UTUBE\b', _FLAGS), 'YouTube'),
    (re.compile(r'\bHARR?Y\s*POT+ER\b', _FLAGS), 'Harry Potter'),
    (re.compile(r'\bHAVIRP[0O]T\b', _FLAGS), 'Harry Potter'),
    (re.compile(r'\bST[EA]PH?EN\s*FRY\b', _FLAGS), 'Stephen Fry'),
    (re.compile(r'\bSTEVENFRY\b', _FLAGS), 'Stephen Fry'),
    (re.compile(r'\bSHAD?OWI?NG\b', _FLAGS), 'shadowing'),
    (re.compile(r'\bSHAT[0O]IN\b', _FLAGS), 'shadowing'),
    (re.compile(r'\bI[MN]PUT[- ]?BAS(?:ED|TE?|E)?[- ]?LEARN(?:ING)?\b', _FLAGS), 'input-based learning'),
    (re.compile(r'\b[0O]?OUTP[UV]T[- ]?BAS(?:ED|TE?|E)?[- ]?LEARN(?:ING)?\b', _FLAGS), 'output-based learning'),
]


def fix_latin_noise(text: str) -> str:
    """
    Repair common transliteration noise in Latin tokens.

    Args:
        text: Transcript text, possibly mixed CJK and Latin

    Returns:
        Text with '0' read as 'o' inside words and known terms normalized
    """
    if not text:
        return text
    fixed = _ZERO_IN_WORD.sub('o', text)
    for pattern, replacement in LEXICON:
        fixed = pattern.sub(replacement, fixed)
    return fixed


def fix_latin_noise_in_segments(segments: List[Segment]) -> Tuple[List[Segment], int]:
    """
    Apply fix_latin_noise to every segment.

    Returns:
        Tuple of (new segments, number of segments changed)
    """
    cleaned: List[Segment] = []
    changed = 0
    for seg in segments:
        text = fix_latin_noise(seg.text or '')
        if text != seg.text:
            changed += 1
        cleaned.append(replace(seg, text=text))
    if changed:
        logger.debug(f"Latin noise fixed in {changed} segment(s)")
    return cleaned, changed
